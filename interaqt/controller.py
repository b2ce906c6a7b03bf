"""
interaqt Controller
===================

The controller wires an application together: schema registry, storage,
scheduler, async task coordinator and side effects. It is also where
computation results reach storage.

Typical use:

    controller = Controller(schema, MemoryStorage())
    await controller.setup(install=True)
    response = await controller.call_interaction("CreatePost", {"user": user, "payload": {...}})
    if response.error is not None:
        ...

Interaction calls are serialized and transactional. The guard runs first, then
the interaction event record is written (which is what event-based computations
listen to), then ``resolve``. Any error rolls the whole call back, including
every computation write of the cascade.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Sequence, Type, Union

from .async_tasks import AsyncTaskCoordinator
from .computations import BUILTIN_HANDLES
from .computations.base import (
    Computation,
    ComputationResult,
    ComputationResultSkip,
    DataContext,
    DataContextType,
    ResultPatch,
)
from .computations.registry import ComputationRegistry
from .config import EngineConfig
from .errors import ConditionError, InteractionExecutionError, SideEffectError
from .events import MutationEvent, collect_effects
from .match import MatchExp
from .scheduler import Scheduler
from .schema import HARD_DELETION_PROPERTY, INTERACTION_RECORD, Interaction, SchemaRegistry
from .storage import Storage
from .util.values import call_maybe_async


@dataclass
class RecordMutationSideEffect:
    """
    Callback run after a committed interaction for each of its events on ``record``.

    ``content(controller, event)`` may be a coroutine function; its return value
    is reported in ``DispatchResponse.side_effects[name]``.
    """

    name: str
    record: Union[str, Any]
    content: Callable[..., Any]

    @property
    def record_name(self) -> str:
        return self.record if isinstance(self.record, str) else self.record.name


@dataclass
class DispatchResponse:
    error: Optional[BaseException] = None
    data: Any = None
    effects: List[MutationEvent] = field(default_factory=list)
    side_effects: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)


class Controller:
    """
    Entry point of an interaqt application.

    Args:
        schema: Declarations; the controller works on its own copy
        storage: Storage implementation
        computations: Extra handle classes, registered after the builtins
        side_effects: Record mutation side effects
        config: Engine configuration (defaults from environment)
    """

    def __init__(
        self,
        schema: SchemaRegistry,
        storage: Storage,
        computations: Iterable[Type[Computation]] = (),
        side_effects: Sequence[RecordMutationSideEffect] = (),
        config: Optional[EngineConfig] = None,
    ):
        self.schema = schema.copy()
        self.schema.add_internal_records()
        self.storage = storage
        self.config = config or EngineConfig()
        self.registry = ComputationRegistry([*BUILTIN_HANDLES, *computations])
        self.async_tasks = AsyncTaskCoordinator(self)
        self.scheduler = Scheduler(self, self.schema, self.registry, self.config)

        self.side_effects: Dict[str, List[RecordMutationSideEffect]] = {}
        for side_effect in side_effects:
            self.side_effects.setdefault(side_effect.record_name, []).append(side_effect)

        self._lock = asyncio.Lock()

    async def setup(self, install: bool = False) -> None:
        states = self.scheduler.create_states()
        await self.storage.setup(self.schema.entities, self.schema.relations, states, install)
        if install:
            for dictionary in self.schema.dictionaries:
                if dictionary.computation is None:
                    await self.storage.set("state", dictionary.name, dictionary.get_default())
        await self.scheduler.setup(install)

    # ------------------------------------------------------------------
    # Computation values
    # ------------------------------------------------------------------

    async def retrieve_last_value(self, data_context: DataContext, record: Optional[Dict[str, Any]] = None) -> Any:
        if data_context.type is DataContextType.GLOBAL:
            return await self.storage.get("state", data_context.id.name)
        if data_context.type in (DataContextType.ENTITY, DataContextType.RELATION):
            return await self.storage.find(data_context.id.name, attribute_query=["*"])
        # Hosts handed to computations can be stale within a cascade, so read storage.
        stored = await self.storage.find_one(
            data_context.host.name,
            MatchExp.atom("id", "=", record["id"]),
            attribute_query=[data_context.id.name],
        )
        return stored.get(data_context.id.name) if stored is not None else None

    async def apply_result(self, data_context: DataContext, result: Any, record: Optional[Dict[str, Any]] = None) -> None:
        if isinstance(result, ComputationResultSkip):
            return

        if data_context.type is DataContextType.GLOBAL:
            await self.storage.set("state", data_context.id.name, result)
            return

        if data_context.type in (DataContextType.ENTITY, DataContextType.RELATION):
            if result is None:
                return
            record_name = data_context.id.name
            await self.storage.delete(record_name, MatchExp.atom("id", "not", None))
            for item in result if isinstance(result, list) else [result]:
                await self.storage.create(record_name, item)
            return

        host_match = MatchExp.atom("id", "=", record["id"])
        if data_context.id.name == HARD_DELETION_PROPERTY and result:
            await self.storage.delete(data_context.host.name, host_match)
        else:
            await self.storage.update(data_context.host.name, host_match, {data_context.id.name: result})

    async def apply_result_patch(
        self,
        data_context: DataContext,
        patch: Union[ResultPatch, List[ResultPatch], ComputationResult, None],
        record: Optional[Dict[str, Any]] = None,
    ) -> None:
        if patch is None or isinstance(patch, ComputationResultSkip):
            return

        for item in patch if isinstance(patch, list) else [patch]:
            if data_context.type is DataContextType.GLOBAL:
                await self.storage.set("state", data_context.id.name, item.data)
            elif data_context.type in (DataContextType.ENTITY, DataContextType.RELATION):
                record_name = data_context.id.name
                if item.type == "insert":
                    await self.storage.create(record_name, item.data)
                elif item.type == "update":
                    await self.storage.update(record_name, MatchExp.atom("id", "=", item.affected_id), item.data)
                else:
                    await self.storage.delete(record_name, MatchExp.atom("id", "=", item.affected_id))
            else:
                host_name = data_context.host.name
                host_match = MatchExp.atom("id", "=", record["id"])
                if data_context.id.name == HARD_DELETION_PROPERTY and item.data:
                    if item.type == "delete":
                        raise ValueError(f"{HARD_DELETION_PROPERTY} on {host_name} cannot be patched with delete")
                    await self.storage.delete(host_name, host_match)
                elif item.type == "delete":
                    await self.storage.update(host_name, host_match, {data_context.id.name: None})
                else:
                    await self.storage.update(host_name, host_match, {data_context.id.name: item.data})

    @asynccontextmanager
    async def transaction(self, name: str) -> AsyncIterator[None]:
        """
        Serialize with interaction calls and run the block in its own storage
        transaction, rolled back if the block raises.

        Not reentrant: calling it from ``resolve`` or a side effect deadlocks.
        """
        async with self._lock:
            await self.storage.begin_transaction(name)
            try:
                yield
            except Exception:
                await self.storage.rollback_transaction(name)
                raise
            await self.storage.commit_transaction(name)

    async def recompute_due(self) -> int:
        """Rerun time-dependent computations whose next recompute time has passed."""
        async with self.transaction("recompute-due"):
            return await self.scheduler.recompute_due()

    # ------------------------------------------------------------------
    # Interactions
    # ------------------------------------------------------------------

    async def _check_guard(self, interaction: Interaction, event_args: Dict[str, Any]) -> None:
        if self.config.ignore_guard or interaction.guard is None:
            return
        try:
            allowed = await call_maybe_async(interaction.guard, event_args)
        except ConditionError:
            raise
        except Exception as e:
            raise ConditionError.guard_failed(interaction.name, e) from e
        if allowed is False:
            raise ConditionError.guard_failed(interaction.name)

    async def dispatch(self, interaction: Interaction, event_args: Optional[Dict[str, Any]] = None) -> DispatchResponse:
        """
        Run ``interaction`` in a transaction.

        Errors are returned in ``DispatchResponse.error`` (the call is rolled
        back) unless ``force_throw_dispatch_error`` is configured.
        """
        event_args = dict(event_args or {})
        async with self._lock:
            with collect_effects() as effects:
                await self.storage.begin_transaction(interaction.name)
                try:
                    await self._check_guard(interaction, event_args)
                    await self.storage.create(
                        INTERACTION_RECORD,
                        {
                            "interaction_name": interaction.name,
                            "interaction_id": interaction.uuid,
                            "user": event_args.get("user"),
                            "payload": event_args.get("payload"),
                        },
                    )
                    data = None
                    if interaction.resolve is not None:
                        data = await call_maybe_async(interaction.resolve, self, event_args)
                    await self.storage.commit_transaction(interaction.name)
                except Exception as e:
                    await self.storage.rollback_transaction(interaction.name)
                    logging.debug(f"Interaction {interaction.name} rolled back: {e}")
                    if self.config.force_throw_dispatch_error:
                        raise
                    return DispatchResponse(error=e)

                response = DispatchResponse(data=data, effects=list(effects))

            await self.run_record_mutation_side_effects(response)
            return response

    async def call_interaction(self, name_or_uuid: str, event_args: Optional[Dict[str, Any]] = None) -> DispatchResponse:
        interaction = self.schema.get_interaction(name_or_uuid)
        if interaction is None:
            user = (event_args or {}).get("user") or {}
            raise InteractionExecutionError(
                f"Cannot find interaction for {name_or_uuid}",
                interaction_name=name_or_uuid,
                user_id=user.get("id") if isinstance(user, dict) else None,
                execution_phase="interaction-lookup",
            )
        return await self.dispatch(interaction, event_args)

    async def run_record_mutation_side_effects(self, response: DispatchResponse) -> None:
        for event in response.effects:
            for side_effect in self.side_effects.get(event.record_name, ()):
                try:
                    result = await call_maybe_async(side_effect.content, self, event)
                    response.side_effects[side_effect.name] = {"result": result}
                except Exception as e:
                    error = SideEffectError(
                        f"Side effect '{side_effect.name}' failed for {event.type.value} on {event.record_name}",
                        side_effect_name=side_effect.name,
                        record_name=event.record_name,
                        mutation_type=event.type.value,
                        record_id=event.record_id,
                        caused_by=e,
                    )
                    logging.error(error.detailed_message())
                    response.side_effects[side_effect.name] = {"error": error}

    def __repr__(self) -> str:
        return f"Controller({self.schema!r}, {self.storage!r})"


__all__ = ["Controller", "DispatchResponse", "RecordMutationSideEffect"]
