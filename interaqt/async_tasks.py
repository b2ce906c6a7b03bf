"""
interaqt Async Task Coordinator
===============================

A computation with an ``async_return`` hook may answer ``ComputationResult.pending(args)``
instead of a value. The coordinator then writes a task record; something
outside the engine (a worker, a webhook, a test) performs the work and marks the
task ``success`` with a ``result`` or ``error``. Resuming is explicit:

    await controller.async_tasks.handle_async_return(computation, {"id": task_id})
    await controller.async_tasks.process_completed_tasks()

Every async computation gets its own task entity, ``_ASYNC_TASK_{host}_{property}``
for property contexts and ``_ASYNC_TASK_{name}`` otherwise. Property tasks are
linked 1:1 to their host record (``record`` on the task, ``_{property}_task`` on
the host). Creating a newer task for the same host replaces that link, so a
task that lost its link is stale and its result is discarded.

Task statuses: pending -> success | error -> resolved | stale | failed.
A task that finished with an error, or whose result could not be applied,
ends as ``failed`` so that it is reported once and never retried.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from .computations.base import Computation, DataContextType
from .errors import ComputationError, FrameworkError
from .match import MatchExp
from .schema import Entity, Property, Relation

if TYPE_CHECKING:
    from .controller import Controller

ASYNC_TASK_RECORD = "_ASYNC_TASK_"

PENDING = "pending"
SUCCESS = "success"
ERROR = "error"
RESOLVED = "resolved"
STALE = "stale"
FAILED = "failed"


class AsyncTaskCoordinator:
    """Task table and explicit consumer for async computations."""

    def __init__(self, controller: "Controller"):
        self.controller = controller
        self.computations: List[Computation] = []

    @staticmethod
    def task_record_name(computation: Computation) -> str:
        data_context = computation.data_context
        if data_context.type is DataContextType.PROPERTY:
            return f"{ASYNC_TASK_RECORD}_{data_context.host.name}_{data_context.id.name}"
        return f"{ASYNC_TASK_RECORD}_{data_context.name}"

    def register(self, computation: Computation) -> None:
        """Declare the task entity (and host relation) of ``computation`` in the schema."""
        schema = self.controller.schema
        task_entity = Entity(
            self.task_record_name(computation),
            [
                Property("status"),
                Property("args", "object"),
                Property("result", "object"),
            ],
        )
        schema.add_entity(task_entity)
        data_context = computation.data_context
        if data_context.type is DataContextType.PROPERTY:
            schema.add_relation(
                Relation(
                    task_entity,
                    "record",
                    data_context.host,
                    f"_{data_context.id.name}_task",
                    "1:1",
                    name=f"{task_entity.name}_{data_context.host.name}_{data_context.id.name}",
                )
            )
        self.computations.append(computation)

    def _is_property(self, computation: Computation) -> bool:
        return computation.data_context.type is DataContextType.PROPERTY

    async def create_task(
        self, computation: Computation, args: Any, record: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        data: Dict[str, Any] = {"status": PENDING, "args": args}
        if self._is_property(computation):
            data["record"] = {"id": record["id"]}
        task = await self.controller.storage.create(self.task_record_name(computation), data)
        logging.debug(f"{computation.name}: async task {task['id']} created")
        return task

    async def complete_task(
        self,
        computation: Computation,
        task_ref: Mapping[str, Any],
        result: Any = None,
        error: Any = None,
    ) -> None:
        """Record the outcome of the external work (what a worker would write)."""
        status = ERROR if error is not None else SUCCESS
        async with self.controller.transaction(f"complete-task:{computation.name}"):
            await self.controller.storage.update(
                self.task_record_name(computation),
                MatchExp.atom("id", "=", task_ref["id"]),
                {"status": status, "result": error if error is not None else result},
            )

    async def _find_task(self, computation: Computation, task_id: Any) -> Optional[Dict[str, Any]]:
        query: List[Any] = ["*"]
        if self._is_property(computation):
            query.append(["record", {"attribute_query": ["id"]}])
        return await self.controller.storage.find_one(
            self.task_record_name(computation), MatchExp.atom("id", "=", task_id), attribute_query=query
        )

    async def _set_status(self, computation: Computation, task_id: Any, status: str) -> None:
        await self.controller.storage.update(
            self.task_record_name(computation), MatchExp.atom("id", "=", task_id), {"status": status}
        )

    async def handle_async_return(self, computation: Computation, task_ref: Mapping[str, Any]) -> bool:
        """
        Apply a finished task.

        Runs under the controller lock in its own transaction, so a resume never
        interleaves with an interaction call.

        Returns:
            True if the task's result was applied; False for pending, consumed
            or stale tasks.

        Raises:
            ComputationError: The task finished with status ``error``, or
                ``async_return`` failed. Either way the task is marked
                ``failed`` and is not handed back again.
        """
        async with self.controller.transaction(f"async-return:{computation.name}"):
            applied, failure = await self._resume(computation, task_ref)
        if failure is not None:
            raise failure
        return applied

    async def _resume(
        self, computation: Computation, task_ref: Mapping[str, Any]
    ) -> Tuple[bool, Optional[ComputationError]]:
        storage = self.controller.storage
        task = await self._find_task(computation, task_ref["id"])
        if task is None:
            logging.warning(f"{computation.name}: async task {task_ref['id']} does not exist")
            return False, None

        status = task.get("status")
        if status == ERROR:
            await self._set_status(computation, task["id"], FAILED)
            return False, ComputationError(
                f"{computation.name}: async task {task['id']} failed",
                handle_name=computation.handle_name,
                computation_name=computation.name,
                data_context=computation.data_context.name,
                computation_phase="async-return",
                context={"task_id": task["id"], "task_result": task.get("result")},
            )
        if status != SUCCESS:
            return False, None

        record = None
        if self._is_property(computation):
            record = task.get("record")
            if record is None:
                await self._set_status(computation, task["id"], STALE)
                logging.debug(f"{computation.name}: async task {task['id']} is stale")
                return False, None

        # Partial writes of a failed apply are undone; the task status survives.
        await storage.begin_transaction(f"apply-task:{task['id']}")
        try:
            result = await computation.async_return(task.get("result"), task.get("args"))
            if computation.incremental_patch_compute is not None:
                await self.controller.apply_result_patch(computation.data_context, result, record)
            else:
                await self.controller.apply_result(computation.data_context, result, record)
        except Exception as e:
            await storage.rollback_transaction(f"apply-task:{task['id']}")
            await self._set_status(computation, task["id"], FAILED)
            if isinstance(e, FrameworkError):
                return False, e
            return False, ComputationError(
                f"{computation.name}: async_return failed for task {task['id']}: {e}",
                handle_name=computation.handle_name,
                computation_name=computation.name,
                data_context=computation.data_context.name,
                computation_phase="async-return",
                context={"task_id": task["id"]},
                caused_by=e,
            )
        await storage.commit_transaction(f"apply-task:{task['id']}")

        await self._set_status(computation, task["id"], RESOLVED)
        return True, None

    async def pending_tasks(self, computation: Computation) -> List[Dict[str, Any]]:
        return await self.controller.storage.find(
            self.task_record_name(computation), MatchExp.atom("status", "=", PENDING)
        )

    async def process_completed_tasks(self) -> int:
        """
        Hand every finished task to its computation; returns how many results were applied.

        A failing task does not stop the pass. Failures are raised together at
        the end as one ComputationError listing each of them.
        """
        applied = 0
        failures: List[FrameworkError] = []
        for computation in self.computations:
            finished = await self.controller.storage.find(
                self.task_record_name(computation),
                MatchExp.atom("status", "in", [SUCCESS, ERROR]),
                attribute_query=["id"],
            )
            for task in finished:
                try:
                    if await self.handle_async_return(computation, task):
                        applied += 1
                except FrameworkError as e:
                    logging.error(e.detailed_message())
                    failures.append(e)

        if failures:
            raise ComputationError(
                f"{len(failures)} async task(s) failed; {applied} applied",
                computation_phase="async-return",
                context={"applied": applied, "failures": [str(failure) for failure in failures]},
                caused_by=failures[0],
            )
        return applied

    def __repr__(self) -> str:
        return f"AsyncTaskCoordinator(computations={len(self.computations)})"


__all__ = ["AsyncTaskCoordinator", "ASYNC_TASK_RECORD"]
