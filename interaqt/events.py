"""
interaqt Mutation Events
========================

A :class:`MutationEvent` describes one committed create/update/delete on an
entity, relation or dictionary record. Storage emits them in batches (one batch
per storage call, nested relation writes included) and the scheduler consumes
them.

Events produced by the scheduler for dirty host records are *derived*: they are
``update`` events on the host whose ``related_attribute`` is the attribute path
from the host to the record that actually changed, and whose
``related_mutation_event`` is that original change.

Example:
    event = MutationEvent("Post", MutationType.UPDATE,
                          record={"id": 1, "title": "new"},
                          old_record={"id": 1, "title": "old"})
    event.changed("title")   # True
"""

import dataclasses
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .util.values import values_equal


class MutationType(str, Enum):
    """Kind of storage change."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True, slots=True)
class MutationEvent:
    """Immutable record of one storage change."""

    record_name: str
    type: MutationType
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None
    related_mutation_event: Optional["MutationEvent"] = None
    related_attribute: Tuple[str, ...] = ()
    keys: Tuple[str, ...] = ()
    data_dep: Any = None

    def __post_init__(self):
        object.__setattr__(self, "type", MutationType(self.type))
        if self.type is MutationType.UPDATE and (self.record is None or self.old_record is None):
            raise ValueError(
                f"update event on '{self.record_name}' must carry both record and old_record"
            )
        if self.type is not MutationType.UPDATE and self.record is None:
            raise ValueError(f"{self.type.value} event on '{self.record_name}' must carry record")

    @property
    def is_creation(self) -> bool:
        return self.type is MutationType.CREATE

    @property
    def is_deletion(self) -> bool:
        return self.type is MutationType.DELETE

    @property
    def is_update(self) -> bool:
        return self.type is MutationType.UPDATE

    @property
    def record_id(self) -> Any:
        source = self.old_record if self.old_record is not None else self.record
        return source.get("id") if source else None

    def changed(self, attribute: str) -> bool:
        """True if an update actually changed ``attribute``."""
        if not self.is_update:
            return False
        if self.keys and attribute not in self.keys:
            return False
        if attribute not in self.record:
            return False
        return not values_equal(self.record.get(attribute), self.old_record.get(attribute))

    def derive(self, **changes: Any) -> "MutationEvent":
        return dataclasses.replace(self, **changes)

    def __repr__(self) -> str:
        via = f" via {'.'.join(self.related_attribute)}" if self.related_attribute else ""
        return f"MutationEvent({self.type.value} {self.record_name}#{self.record_id}{via})"


MutationBatch = List[MutationEvent]


# ============================================================================
# EFFECT COLLECTION
# ============================================================================

_effects: ContextVar[Optional[List[MutationEvent]]] = ContextVar("interaqt_effects", default=None)


@contextmanager
def collect_effects() -> Iterator[List[MutationEvent]]:
    """Collect every event emitted in the current task (used per interaction call)."""
    effects: List[MutationEvent] = []
    token = _effects.set(effects)
    try:
        yield effects
    finally:
        _effects.reset(token)


def record_effects(events: List[MutationEvent]) -> None:
    effects = _effects.get()
    if effects is not None:
        effects.extend(events)


__all__ = [
    "MutationType",
    "MutationEvent",
    "MutationBatch",
    "collect_effects",
    "record_effects",
]
