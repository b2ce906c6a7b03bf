"""Integration tests for async computations and their task records."""

import asyncio

import pytest

from interaqt import (
    ComputationError,
    ComputationResult,
    Custom,
    Interaction,
    MatchExp,
    Property,
    PropertyDataDep,
    SchemaRegistry,
)


def summarized(blog):
    """Post.summary computed asynchronously from the title"""
    blog.Post.add_property(
        Property(
            "summary",
            computation=Custom(
                compute=lambda handle, deps, record: ComputationResult.pending({"title": deps["_current"]["title"]}),
                async_return=lambda handle, result, args: result.upper(),
                data_deps={"_current": PropertyDataDep(["title"])},
            ),
        )
    )
    return SchemaRegistry(entities=[blog.Post])


async def summary_of(controller, post_id):
    found = await controller.storage.find_one("Post", MatchExp.atom("id", "=", post_id), attribute_query=["summary"])
    return found["summary"]


async def task_status(controller, computation, task_id):
    name = controller.async_tasks.task_record_name(computation)
    found = await controller.storage.find_one(name, MatchExp.atom("id", "=", task_id), attribute_query=["status"])
    return found["status"]


@pytest.mark.integration
def test_task_is_created_and_applied(blog, start):
    """A pending result becomes a task; its completed result is written to the host"""
    schema = summarized(blog)

    async def scenario():
        controller = await start(schema)
        computation = controller.scheduler.get_computation("Post_summary")
        post = await controller.storage.create("Post", {"title": "hello"})

        tasks = await controller.async_tasks.pending_tasks(computation)
        assert len(tasks) == 1
        assert tasks[0]["args"] == {"title": "hello"}
        assert await summary_of(controller, post["id"]) is None

        # Not finished yet
        assert await controller.async_tasks.handle_async_return(computation, tasks[0]) is False

        await controller.async_tasks.complete_task(computation, tasks[0], result="a greeting")
        assert await controller.async_tasks.handle_async_return(computation, tasks[0]) is True
        assert await summary_of(controller, post["id"]) == "A GREETING"
        assert await task_status(controller, computation, tasks[0]["id"]) == "resolved"

        # Consumed tasks are not applied twice
        assert await controller.async_tasks.handle_async_return(computation, tasks[0]) is False

    asyncio.run(scenario())


@pytest.mark.integration
def test_superseded_task_is_stale(blog, start):
    """A task replaced by a newer one for the same record is discarded"""
    schema = summarized(blog)

    async def scenario():
        controller = await start(schema)
        computation = controller.scheduler.get_computation("Post_summary")
        post = await controller.storage.create("Post", {"title": "first"})
        [old_task] = await controller.async_tasks.pending_tasks(computation)

        await controller.storage.update("Post", MatchExp.atom("id", "=", post["id"]), {"title": "second"})
        tasks = await controller.async_tasks.pending_tasks(computation)
        assert len(tasks) == 2
        new_task = next(task for task in tasks if task["id"] != old_task["id"])

        await controller.async_tasks.complete_task(computation, old_task, result="old")
        assert await controller.async_tasks.handle_async_return(computation, old_task) is False
        assert await task_status(controller, computation, old_task["id"]) == "stale"
        assert await summary_of(controller, post["id"]) is None

        await controller.async_tasks.complete_task(computation, new_task, result="new")
        assert await controller.async_tasks.handle_async_return(computation, new_task) is True
        assert await summary_of(controller, post["id"]) == "NEW"

    asyncio.run(scenario())


@pytest.mark.integration
def test_process_completed_tasks(blog, start):
    """Every finished task is handed back in one pass"""
    schema = summarized(blog)

    async def scenario():
        controller = await start(schema)
        computation = controller.scheduler.get_computation("Post_summary")
        first = await controller.storage.create("Post", {"title": "a"})
        second = await controller.storage.create("Post", {"title": "b"})
        await controller.storage.create("Post", {"title": "c"})

        tasks = await controller.async_tasks.pending_tasks(computation)
        for task in tasks[:2]:
            await controller.async_tasks.complete_task(computation, task, result=task["args"]["title"] * 2)

        assert await controller.async_tasks.process_completed_tasks() == 2
        assert await summary_of(controller, first["id"]) == "AA"
        assert await summary_of(controller, second["id"]) == "BB"
        assert len(await controller.async_tasks.pending_tasks(computation)) == 1
        assert controller.scheduler.stats()["async_tasks"] == 3

    asyncio.run(scenario())


@pytest.mark.integration
def test_failed_task_raises_once(blog, start):
    """A task finished with an error surfaces as a ComputationError and is then retired"""
    schema = summarized(blog)

    async def scenario():
        controller = await start(schema)
        computation = controller.scheduler.get_computation("Post_summary")
        await controller.storage.create("Post", {"title": "a"})
        [task] = await controller.async_tasks.pending_tasks(computation)
        await controller.async_tasks.complete_task(computation, task, error="model unavailable")

        with pytest.raises(ComputationError) as exc_info:
            await controller.async_tasks.handle_async_return(computation, task)
        assert exc_info.value.computation_phase == "async-return"
        assert exc_info.value.context["task_result"] == "model unavailable"

        assert await task_status(controller, computation, task["id"]) == "failed"
        assert await controller.async_tasks.handle_async_return(computation, task) is False

    asyncio.run(scenario())


@pytest.mark.integration
def test_failed_task_does_not_block_others(blog, start):
    """One failed task is reported while the tasks queued behind it are still applied"""
    schema = summarized(blog)

    async def scenario():
        controller = await start(schema)
        tasks_api = controller.async_tasks
        computation = controller.scheduler.get_computation("Post_summary")
        await controller.storage.create("Post", {"title": "a"})
        second = await controller.storage.create("Post", {"title": "b"})
        failing, succeeding = await tasks_api.pending_tasks(computation)
        await tasks_api.complete_task(computation, failing, error="boom")
        await tasks_api.complete_task(computation, succeeding, result="ok")

        with pytest.raises(ComputationError) as exc_info:
            await tasks_api.process_completed_tasks()
        assert exc_info.value.context["applied"] == 1
        assert len(exc_info.value.context["failures"]) == 1
        assert await summary_of(controller, second["id"]) == "OK"
        assert await task_status(controller, computation, failing["id"]) == "failed"

        # The failure was reported once; nothing is left to hand back
        assert await tasks_api.process_completed_tasks() == 0

    asyncio.run(scenario())


@pytest.mark.integration
def test_failed_async_return_is_undone(blog, start):
    """An async_return that raises leaves the host untouched and retires the task"""
    calls = []

    def reject(handle, result, args):
        calls.append(result)
        raise ValueError("unparseable summary")

    blog.Post.add_property(
        Property(
            "summary",
            computation=Custom(
                compute=lambda handle, deps, record: ComputationResult.pending({"title": deps["_current"]["title"]}),
                async_return=reject,
                data_deps={"_current": PropertyDataDep(["title"])},
            ),
        )
    )
    schema = SchemaRegistry(entities=[blog.Post])

    async def scenario():
        controller = await start(schema)
        computation = controller.scheduler.get_computation("Post_summary")
        post = await controller.storage.create("Post", {"title": "a"})
        [task] = await controller.async_tasks.pending_tasks(computation)
        await controller.async_tasks.complete_task(computation, task, result="garbled")

        with pytest.raises(ComputationError) as exc_info:
            await controller.async_tasks.handle_async_return(computation, task)
        assert isinstance(exc_info.value.caused_by, ValueError)
        assert await summary_of(controller, post["id"]) is None
        assert await task_status(controller, computation, task["id"]) == "failed"
        assert calls == ["garbled"]

    asyncio.run(scenario())


@pytest.mark.integration
def test_resume_waits_for_running_interaction(blog, start):
    """A resume queued behind an interaction call survives that call's rollback"""
    gate = asyncio.Event()

    async def wait_then_fail(controller, event_args):
        await gate.wait()
        raise RuntimeError("rejected downstream")

    slow = Interaction("Slow", resolve=wait_then_fail)
    schema = summarized(blog)
    schema.add_interaction(slow)

    async def scenario():
        controller = await start(schema)
        computation = controller.scheduler.get_computation("Post_summary")
        post = await controller.storage.create("Post", {"title": "a"})
        [task] = await controller.async_tasks.pending_tasks(computation)
        await controller.async_tasks.complete_task(computation, task, result="done")

        call = asyncio.create_task(controller.call_interaction("Slow", {}))
        for _ in range(3):
            await asyncio.sleep(0)
        resume = asyncio.create_task(controller.async_tasks.handle_async_return(computation, task))
        for _ in range(3):
            await asyncio.sleep(0)
        assert not resume.done()

        gate.set()
        response = await call
        assert isinstance(response.error, RuntimeError)
        assert await resume is True
        assert await summary_of(controller, post["id"]) == "DONE"
        assert await task_status(controller, computation, task["id"]) == "resolved"

    asyncio.run(scenario())
