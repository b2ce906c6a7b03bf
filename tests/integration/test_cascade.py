"""Integration tests for cascade budgets and cycles."""

import asyncio

import pytest

from interaqt import (
    Custom,
    Dictionary,
    EngineConfig,
    GlobalDataDep,
    MatchExp,
    Property,
    PropertyDataDep,
    RecordsDataDep,
    SchedulerError,
    SchemaRegistry,
)


@pytest.mark.integration
def test_mutually_dependent_properties_hit_depth_limit(blog, start):
    """Two properties feeding each other never settle"""
    blog.Post.add_property(
        Property(
            "a",
            "number",
            computation=Custom(
                compute=lambda handle, deps, record: (deps["_current"]["b"] or 0) + 1,
                data_deps={"_current": PropertyDataDep(["b"])},
            ),
        )
    )
    blog.Post.add_property(
        Property(
            "b",
            "number",
            computation=Custom(
                compute=lambda handle, deps, record: (deps["_current"]["a"] or 0) + 1,
                data_deps={"_current": PropertyDataDep(["a"])},
            ),
        )
    )
    schema = SchemaRegistry(entities=[blog.Post])

    async def scenario():
        controller = await start(schema, config=EngineConfig(max_cascade_depth=4, max_revisits=1000))
        await controller.storage.create("Post", {"title": "loop"})

    with pytest.raises(SchedulerError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.scheduling_phase == "cascade-depth"
    assert exc_info.value.context["depth"] == 5


@pytest.mark.integration
def test_global_value_depending_on_itself_is_a_cycle(blog, start):
    """A dictionary computed from its own value re-enters itself"""
    total = Dictionary("total")
    total.computation = Custom(
        compute=lambda handle, deps, record: (deps["total"] or 0) + len(deps["posts"]),
        data_deps={"posts": RecordsDataDep(blog.Post), "total": GlobalDataDep(total)},
    )
    schema = SchemaRegistry(entities=[blog.Post], dictionaries=[total])

    async def scenario():
        controller = await start(schema)
        await controller.storage.create("Post", {"title": "a"})

    with pytest.raises(SchedulerError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.scheduling_phase == "cycle"
    assert exc_info.value.computation_name == "total"


@pytest.mark.integration
def test_guard_resets_between_cascades(blog, start):
    """Budgets apply per cascade, not per controller lifetime"""
    blog.Post.add_property(
        Property(
            "shout",
            computation=Custom(
                compute=lambda handle, deps, record: deps["_current"]["title"].upper(),
                data_deps={"_current": PropertyDataDep(["title"])},
            ),
        )
    )
    schema = SchemaRegistry(entities=[blog.Post])

    async def scenario():
        controller = await start(schema, config=EngineConfig(max_cascade_steps=2))
        post = await controller.storage.create("Post", {"title": "a"})
        for title in ("b", "c", "d"):
            await controller.storage.update("Post", MatchExp.atom("id", "=", post["id"]), {"title": title})
        found = await controller.storage.find_one("Post", attribute_query=["shout"])
        return found["shout"], controller.scheduler.guard.depth

    assert asyncio.run(scenario()) == ("D", 0)
