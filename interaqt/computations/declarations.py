"""
Computation declarations.

These are the objects users attach to ``Property.computation``,
``Entity.computation``, ``Relation.computation`` or ``Dictionary.computation``.
They hold configuration only; the matching handle is looked up by ``kind`` and
context type when the controller is built.

Example:
    Property("post_count", "number",
             computation=Count(property="posts"))
    Dictionary("total_revenue",
               computation=Summation(record=Order, attribute_query=["amount"]))
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Union

from ..schema import Entity, Interaction, Relation

RecordRef = Union[str, Entity, Relation]


def _aggregate_target(record, property):
    if record is None and property is None:
        raise ValueError("Aggregate computations need either a record or a property")


@dataclass(eq=False)
class Count:
    """
    Number of records (global) or related records (property). ``match(item)``
    (or ``match(item, data_deps)`` when ``data_deps`` are declared) filters
    which ones count.
    """

    record: Optional[RecordRef] = None
    property: Optional[str] = None
    direction: Optional[str] = None
    match: Optional[Callable[..., bool]] = None
    attribute_query: Optional[Sequence[Any]] = None
    data_deps: Dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[str] = "Count"

    def __post_init__(self):
        _aggregate_target(self.record, self.property)


@dataclass(eq=False)
class Summation:
    """Sum of the numeric field addressed by ``attribute_query``."""

    record: Optional[RecordRef] = None
    attribute_query: Sequence[Any] = ()
    property: Optional[str] = None
    direction: Optional[str] = None
    kind: ClassVar[str] = "Summation"

    def __post_init__(self):
        _aggregate_target(self.record, self.property)
        if not self.attribute_query:
            raise ValueError("Summation needs an attribute_query naming the summed field")


@dataclass(eq=False)
class Average:
    """Mean of the numeric field addressed by ``attribute_query`` (0 when empty)."""

    record: Optional[RecordRef] = None
    attribute_query: Sequence[Any] = ()
    property: Optional[str] = None
    direction: Optional[str] = None
    kind: ClassVar[str] = "Average"

    def __post_init__(self):
        _aggregate_target(self.record, self.property)
        if not self.attribute_query:
            raise ValueError("Average needs an attribute_query naming the averaged field")


@dataclass(eq=False)
class WeightedSummation:
    """
    ``sum(weight * value)`` where ``match_record_to_weight(item)`` returns
    ``{"weight": w, "value": v}``. Global contexts may sum over several
    ``records``.
    """

    match_record_to_weight: Callable[[Dict[str, Any]], Dict[str, Any]]
    records: Sequence[RecordRef] = ()
    property: Optional[str] = None
    direction: Optional[str] = None
    attribute_query: Optional[Sequence[Any]] = None
    kind: ClassVar[str] = "WeightedSummation"

    def __post_init__(self):
        if not self.records and self.property is None:
            raise ValueError("WeightedSummation needs records or a property")


@dataclass(eq=False)
class Every:
    """True when every (related) record matches ``match``."""

    match: Callable[[Dict[str, Any]], bool]
    record: Optional[RecordRef] = None
    property: Optional[str] = None
    direction: Optional[str] = None
    attribute_query: Optional[Sequence[Any]] = None
    not_empty: bool = False
    data_deps: Dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[str] = "Every"

    def __post_init__(self):
        _aggregate_target(self.record, self.property)


@dataclass(eq=False)
class Any_:
    """
    ``Any`` aggregate (trailing underscore keeps typing.Any usable).

    True when at least one (related) record matches ``match``.
    """

    match: Callable[[Dict[str, Any]], bool]
    record: Optional[RecordRef] = None
    property: Optional[str] = None
    direction: Optional[str] = None
    attribute_query: Optional[Sequence[Any]] = None
    data_deps: Dict[str, Any] = field(default_factory=dict)
    kind: ClassVar[str] = "Any"

    def __post_init__(self):
        _aggregate_target(self.record, self.property)


@dataclass(eq=False)
class Transform:
    """
    Derive one record set from another: ``callback(source_record)`` returns
    the data of the derived record, a list of them, or None.
    """

    record: RecordRef
    callback: Callable[[Dict[str, Any]], Any]
    attribute_query: Optional[Sequence[Any]] = None
    kind: ClassVar[str] = "Transform"


@dataclass(eq=False)
class StateNode:
    """
    A state of a StateMachine. ``compute_value(last_value, event)`` produces
    the stored value when the machine enters the node; by default the node
    name is stored.
    """

    name: str
    compute_value: Optional[Callable[..., Any]] = None

    def __repr__(self) -> str:
        return f"StateNode({self.name!r})"


@dataclass(eq=False)
class StateTransfer:
    """
    Move from ``current`` to ``next`` when ``trigger`` fires.

    ``trigger`` is an :class:`Interaction` (fires on its interaction events) or
    a mapping deep-partially matched against the mutation event, e.g.
    ``{"record_name": "Review", "type": "create"}``. ``compute_target(event)``
    returns the host record(s) to move; ``condition(event)`` may veto.
    """

    current: StateNode
    next: StateNode
    trigger: Union[Interaction, Dict[str, Any]]
    compute_target: Optional[Callable[..., Any]] = None
    condition: Optional[Callable[..., Any]] = None


@dataclass(eq=False)
class StateMachine:
    states: List[StateNode]
    transfers: List[StateTransfer]
    default_state: StateNode
    kind: ClassVar[str] = "StateMachine"

    def __post_init__(self):
        names = [state.name for state in self.states]
        if len(set(names)) != len(names):
            raise ValueError(f"StateMachine has duplicate state names: {names}")
        if self.default_state not in self.states:
            raise ValueError(f"Default state {self.default_state.name!r} is not one of the machine's states")
        for transfer in self.transfers:
            if transfer.current not in self.states or transfer.next not in self.states:
                raise ValueError(
                    f"Transfer {transfer.current.name!r} -> {transfer.next.name!r} uses an undeclared state"
                )


@dataclass(eq=False)
class MapRecordMutation:
    """
    ``map(event, last_value, batch)`` turns a mutation event into the new value
    (or, for entity/relation contexts, record data; data with an ``id`` updates
    that record). ``records`` restricts which record names are listened to.
    """

    map: Callable[..., Any]
    records: Sequence[RecordRef] = ()
    compute_target: Optional[Callable[..., Any]] = None
    kind: ClassVar[str] = "MapRecordMutation"


@dataclass(eq=False)
class Custom:
    """
    User-defined computation. Every callback receives the handle as its first
    argument and may be a coroutine function.
    """

    compute: Optional[Callable[..., Any]] = None
    incremental_compute: Optional[Callable[..., Any]] = None
    incremental_patch_compute: Optional[Callable[..., Any]] = None
    create_state: Optional[Callable[..., Any]] = None
    get_default_value: Optional[Callable[..., Any]] = None
    async_return: Optional[Callable[..., Any]] = None
    data_deps: Dict[str, Any] = field(default_factory=dict)
    use_last_value: bool = True
    kind: ClassVar[str] = "Custom"


def _epoch_millis() -> float:
    return time.time() * 1000


@dataclass(eq=False)
class RealTime:
    """
    A value that depends on the current time.

    ``callback(now, data_deps)`` receives ``now`` as an
    :class:`~interaqt.computations.expressions.Expression` variable and returns
    an Expression (stored as its number) or an Inequality / Equation (stored
    as a boolean). The next recompute time is the solution of the inequality
    or equation, or ``now + next_recompute_time(now, data_deps)`` for plain
    expressions. Times are milliseconds as returned by ``clock()``.
    """

    callback: Callable[..., Any]
    next_recompute_time: Optional[Callable[..., float]] = None
    attribute_query: Sequence[Any] = ()
    data_deps: Dict[str, Any] = field(default_factory=dict)
    clock: Callable[[], float] = _epoch_millis
    kind: ClassVar[str] = "RealTime"


__all__ = [
    "Count",
    "Summation",
    "Average",
    "WeightedSummation",
    "Every",
    "Any_",
    "Transform",
    "StateNode",
    "StateTransfer",
    "StateMachine",
    "MapRecordMutation",
    "Custom",
    "RealTime",
]
