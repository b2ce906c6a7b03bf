"""
StateMachine: a current state per host, moved by triggers.

A transfer fires when its trigger matches a mutation event:

- an :class:`~interaqt.schema.Interaction` matches creation of an interaction
  event record for that interaction;
- a mapping is deep-partially matched against the event itself, e.g.
  ``{"record_name": "Review", "type": "create", "record": {"verdict": "ok"}}``.

``compute_target(event)``, ``condition(event, record)`` and
``compute_value(last_value, event)`` receive the interaction event record for
interaction triggers and the :class:`MutationEvent` for data triggers.

Contexts:
    global          the machine's value is a Dictionary value
    property        one machine per host record (``compute_target`` selects hosts)
    entity/relation ``compute_target`` selects records to update, delete or insert
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ComputationError, ConditionError
from ..schema import INTERACTION_RECORD, Interaction, Relation
from ..util.values import call_maybe_async, deep_partial_match
from .aggregate import as_list
from .base import (
    ComputationResult,
    DataContextType,
    EventBasedComputation,
    GlobalBoundState,
    RecordBoundState,
    ResultPatch,
)
from .declarations import StateMachine, StateNode, StateTransfer


class TransitionFinder:
    """Index of a machine's transfers by their current state."""

    def __init__(self, machine: StateMachine):
        self.machine = machine
        self._by_state: Dict[str, List[StateTransfer]] = {}
        for transfer in machine.transfers:
            self._by_state.setdefault(transfer.current.name, []).append(transfer)
        self._states = {state.name: state for state in machine.states}

    @staticmethod
    def trigger_matches(transfer: StateTransfer, event) -> bool:
        trigger = transfer.trigger
        if isinstance(trigger, Interaction):
            return (
                event.record_name == INTERACTION_RECORD
                and event.is_creation
                and event.record.get("interaction_name") == trigger.name
            )
        return deep_partial_match(event, trigger)

    def find_transfers(self, event) -> List[StateTransfer]:
        return [t for t in self.machine.transfers if self.trigger_matches(t, event)]

    def candidates(self, current_state: str, event) -> List[StateTransfer]:
        return [t for t in self._by_state.get(current_state, []) if self.trigger_matches(t, event)]

    def state(self, name: str) -> Optional[StateNode]:
        return self._states.get(name)

    def data_sources(self) -> List[Tuple[str, str]]:
        """``(record_name, event type)`` pairs listened to by mapping triggers."""
        sources: List[Tuple[str, str]] = []
        for transfer in self.machine.transfers:
            trigger = transfer.trigger
            if isinstance(trigger, Interaction):
                continue
            record_name = trigger.get("record_name")
            if record_name is None:
                raise ValueError(f"Data trigger {trigger!r} must name a record_name")
            event_type = trigger.get("type")
            types = [getattr(event_type, "value", event_type)] if event_type else ["create", "update", "delete"]
            for type_ in types:
                if (record_name, type_) not in sources:
                    sources.append((record_name, type_))
        return sources


class _StateMachineHandle(EventBasedComputation):
    kind = "StateMachine"
    use_last_value = True

    def __init__(self, controller, args, data_context):
        super().__init__(controller, args, data_context)
        self.finder = TransitionFinder(args)
        self.default_state = args.default_state

    def event_sources(self):
        sources = []
        if any(isinstance(t.trigger, Interaction) for t in self.args.transfers):
            sources.append((INTERACTION_RECORD, "create"))
        for source in self.finder.data_sources():
            if source not in sources:
                sources.append(source)
        return sources

    @staticmethod
    def event_argument(event) -> Any:
        return event.record if event.record_name == INTERACTION_RECORD else event

    async def state_value(self, state: StateNode, last_value: Any, event) -> Any:
        if state.compute_value is None:
            return state.name
        return await call_maybe_async(state.compute_value, last_value, self.event_argument(event) if event else None)

    async def next_transfer(self, current: str, event, record: Optional[Dict[str, Any]]) -> Optional[StateTransfer]:
        for transfer in self.finder.candidates(current, event):
            if transfer.condition is None:
                return transfer
            try:
                passed = await call_maybe_async(transfer.condition, self.event_argument(event), record)
            except Exception as e:
                raise ConditionError.condition_check_failed(
                    f"{self.name}: {transfer.current.name} -> {transfer.next.name}",
                    e,
                    context={"computation_name": self.name},
                ) from e
            if passed:
                return transfer
            logging.debug(f"{self.name}: condition blocked {transfer.current.name} -> {transfer.next.name}")
        return None

    def get_default_value(self):
        if self.default_state.compute_value is not None:
            return self.default_state.compute_value(None, None)
        return self.default_state.name

    async def targets(self, event) -> List[Dict[str, Any]]:
        """Host records selected by every matching transfer's ``compute_target``."""
        targets: List[Dict[str, Any]] = []
        seen = set()
        for transfer in self.finder.find_transfers(event):
            if transfer.compute_target is None:
                found = [event.record] if event.record_name == self.data_context.record_name else []
            else:
                found = as_list(await call_maybe_async(transfer.compute_target, self.event_argument(event)))
            for target in found:
                if not target:
                    continue
                key = target.get("id")
                if key is not None:
                    if key in seen:
                        continue
                    seen.add(key)
                targets.append(target)
        return targets


class GlobalStateMachineHandle(_StateMachineHandle):
    context_types = (DataContextType.GLOBAL,)

    def create_state(self):
        return {"current_state": GlobalBoundState(self.default_state.name)}

    async def incremental_compute(self, last_value, event, record, data_deps):
        current = await self.state["current_state"].get()
        transfer = await self.next_transfer(current, event, None)
        if transfer is None:
            return ComputationResult.skip()
        await self.state["current_state"].set(transfer.next.name)
        return await self.state_value(transfer.next, last_value, event)


class PropertyStateMachineHandle(_StateMachineHandle):
    context_types = (DataContextType.PROPERTY,)

    def create_state(self):
        return {"current_state": RecordBoundState(self.default_state.name, self.data_context.host.name)}

    async def compute_dirty_records(self, event):
        return await self.targets(event)

    async def incremental_compute(self, last_value, event, record, data_deps):
        current = await self.state["current_state"].get(record)
        transfer = await self.next_transfer(current, event, record)
        if transfer is None:
            return ComputationResult.skip()
        await self.state["current_state"].set(record, transfer.next.name)
        return await self.state_value(transfer.next, last_value, event)


class RecordStateMachineHandle(_StateMachineHandle):
    """
    Entity/relation machine: targets with an ``id`` are existing records (a
    ``compute_value`` of None deletes them); targets without one are inserted
    when the machine moves them out of the default state.
    """

    context_types = (DataContextType.ENTITY, DataContextType.RELATION)
    use_last_value = False

    def create_state(self):
        return {"current_state": RecordBoundState(self.default_state.name, self.data_context.id.name)}

    def get_default_value(self):
        return None

    async def compute_dirty_records(self, event):
        return await self.targets(event)

    async def incremental_patch_compute(self, last_value, event, record, data_deps):
        exists = record.get("id") is not None
        current = await self.state["current_state"].get(record) if exists else self.default_state.name
        transfer = await self.next_transfer(current, event, record)
        if transfer is None:
            return ComputationResult.skip()

        value = {}
        if transfer.next.compute_value is not None:
            value = await call_maybe_async(transfer.next.compute_value, record, self.event_argument(event))
        state_key = self.state["current_state"].key

        if exists:
            if value is None:
                return ResultPatch("delete", affected_id=record["id"])
            return ResultPatch("update", {**value, state_key: transfer.next.name}, affected_id=record["id"])

        if value is None:
            return ComputationResult.skip()
        data = {**record, **value, state_key: transfer.next.name}
        if isinstance(self.data_context.id, Relation) and (data.get("source") is None or data.get("target") is None):
            raise ComputationError(
                f"{self.name}: moving to {transfer.next.name!r} creates a relation record, "
                f"which needs both source and target; compute_target returned {record!r}",
                handle_name=self.handle_name,
                computation_name=self.name,
                computation_phase="incremental-patch-compute",
            )
        return ResultPatch("insert", data)


__all__ = [
    "TransitionFinder",
    "GlobalStateMachineHandle",
    "PropertyStateMachineHandle",
    "RecordStateMachineHandle",
]
