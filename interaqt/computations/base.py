"""
interaqt Computation Contract
=============================

A *computation handle* is the runtime object that maintains one declared
computation (``Count``, ``Summation``, ...) for one data context. Handles are
resolved through the :class:`~interaqt.computations.registry.ComputationRegistry`
dispatch table keyed by ``(kind, context type)``.

Every handle implements a subset of the hooks below; the scheduler checks
which ones exist:

    get_default_value()                                          value before any data exists
    compute(data_deps, record)                                   full recomputation
    incremental_compute(last_value, event, record, data_deps)    new full value
    incremental_patch_compute(last_value, event, record, data_deps)
                                                                 ResultPatch / list of patches
    compute_dirty_records(event)                                 event-based host selection
    create_state()                                               named bound states
    async_return(result, args)                                   finish an async computation

Incremental hooks may also return a :class:`ComputationResult` marker:
``skip()`` (nothing changed), ``full_recompute(reason)``, ``pending(args)``
(start an async task) or ``resolved(result, args)``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Dict, List, Optional, Sequence, Tuple, Union

from ..errors import ComputationStateError
from ..match import MatchExp
from ..schema import INTERACTION_RECORD, Dictionary, Entity, Property, Relation

if TYPE_CHECKING:
    from ..controller import Controller
    from ..events import MutationEvent

_MISSING = object()


class DataContextType(str, Enum):
    GLOBAL = "global"
    ENTITY = "entity"
    RELATION = "relation"
    PROPERTY = "property"


@dataclass(frozen=True, eq=False)
class DataContext:
    """Where a computation's value lives."""

    type: DataContextType
    id: Union[Dictionary, Entity, Relation, Property]
    host: Optional[Union[Entity, Relation]] = None

    def __post_init__(self):
        object.__setattr__(self, "type", DataContextType(self.type))
        if self.type is DataContextType.PROPERTY and self.host is None:
            raise ValueError(f"Property context '{self.id.name}' requires a host record")

    @property
    def name(self) -> str:
        if self.type is DataContextType.PROPERTY:
            return f"{self.host.name}_{self.id.name}"
        return self.id.name

    @property
    def record_name(self) -> Optional[str]:
        """Record that holds the value (None for global contexts)."""
        if self.type is DataContextType.PROPERTY:
            return self.host.name
        if self.type is DataContextType.GLOBAL:
            return None
        return self.id.name

    def __repr__(self) -> str:
        return f"DataContext({self.type.value}:{self.name})"


# ============================================================================
# DATA DEPENDENCIES
# ============================================================================


def _source_name(source: Union[str, Entity, Relation]) -> str:
    return source if isinstance(source, str) else source.name


@dataclass(frozen=True, eq=False)
class RecordsDataDep:
    """All records of ``source`` (optionally filtered by ``match``)."""

    source: Union[str, Entity, Relation]
    attribute_query: Optional[Sequence[Any]] = None
    match: Optional[MatchExp] = None
    type: ClassVar[str] = "records"

    def __post_init__(self):
        object.__setattr__(self, "source", _source_name(self.source))


@dataclass(frozen=True, eq=False)
class PropertyDataDep:
    """Attributes of the host record, possibly across relations."""

    attribute_query: Sequence[Any] = ()
    type: ClassVar[str] = "property"


@dataclass(frozen=True, eq=False)
class GlobalDataDep:
    """The current value of a Dictionary."""

    source: Dictionary
    type: ClassVar[str] = "global"


DataDep = Union[RecordsDataDep, PropertyDataDep, GlobalDataDep]


# ============================================================================
# RESULTS
# ============================================================================


class ComputationResult:
    """Markers a hook can return instead of a value."""

    @staticmethod
    def skip() -> "ComputationResultSkip":
        return ComputationResultSkip()

    @staticmethod
    def resolved(result: Any, args: Any = None) -> "ComputationResultResolved":
        return ComputationResultResolved(result, args)

    @staticmethod
    def pending(args: Any = None) -> "ComputationResultAsync":
        return ComputationResultAsync(args)

    @staticmethod
    def full_recompute(reason: Any = None) -> "ComputationResultFullRecompute":
        return ComputationResultFullRecompute(reason)


class ComputationResultSkip(ComputationResult):
    def __repr__(self) -> str:
        return "ComputationResult.skip()"


class ComputationResultFullRecompute(ComputationResult):
    def __init__(self, reason: Any = None):
        self.reason = reason

    def __repr__(self) -> str:
        return f"ComputationResult.full_recompute({self.reason!r})"


class ComputationResultAsync(ComputationResult):
    def __init__(self, args: Any = None):
        self.args = args

    def __repr__(self) -> str:
        return f"ComputationResult.pending({self.args!r})"


class ComputationResultResolved(ComputationResult):
    def __init__(self, result: Any, args: Any = None):
        self.result = result
        self.args = args

    def __repr__(self) -> str:
        return f"ComputationResult.resolved({self.result!r})"


@dataclass
class ResultPatch:
    """One change to a collection-valued (entity/relation) or property result."""

    type: str
    data: Any = None
    affected_id: Any = None

    def __post_init__(self):
        if self.type not in ("insert", "update", "delete"):
            raise ValueError(f"Unknown patch type {self.type!r}")


# ============================================================================
# BOUND STATE
# ============================================================================


class GlobalBoundState:
    """A named value stored under the ``state`` concept (key ``{context}_{name}``)."""

    def __init__(self, default: Any = None):
        self.default = default
        self.key: Optional[str] = None
        self.controller: Optional["Controller"] = None

    def bind(self, controller: "Controller", key: str) -> None:
        self.controller = controller
        self.key = key

    async def get(self) -> Any:
        value = await self.controller.storage.get("state", self.key, _MISSING)
        if value is _MISSING:
            raise ComputationStateError(f"Global state '{self.key}' is missing", state_key=self.key)
        return value

    async def set(self, value: Any) -> Any:
        await self.controller.storage.set("state", self.key, value)
        return value

    def __repr__(self) -> str:
        return f"GlobalBoundState({self.key!r})"


class RecordBoundState:
    """
    A named value stored as a hidden field on a record
    (key ``_{context}_bound_{name}``).

    ``record_name`` defaults to the host record of the computation and is set
    by handles that keep per-item state on source or relation records.
    """

    def __init__(self, default: Any = None, record_name: Optional[str] = None):
        self.default = default
        self.record_name = record_name
        self.key: Optional[str] = None
        self.controller: Optional["Controller"] = None

    def bind(self, controller: "Controller", key: str) -> None:
        self.controller = controller
        self.key = key

    async def get(self, record: Dict[str, Any]) -> Any:
        value = record.get(self.key)
        if value is not None:
            return value
        stored = await self.controller.storage.find_one(
            self.record_name,
            MatchExp.atom("id", "=", record["id"]),
            attribute_query=[self.key],
        )
        if stored is None:
            raise ComputationStateError(
                f"Cannot read '{self.key}': {self.record_name} #{record['id']} does not exist",
                state_key=self.key,
            )
        value = stored.get(self.key)
        return self.default if value is None else value

    async def set(self, record: Dict[str, Any], value: Any) -> Any:
        await self.controller.storage.update(
            self.record_name, MatchExp.atom("id", "=", record["id"]), {self.key: value}
        )
        return value

    def __repr__(self) -> str:
        return f"RecordBoundState({self.record_name}.{self.key})"


BoundState = Union[GlobalBoundState, RecordBoundState]


# ============================================================================
# HANDLES
# ============================================================================


class Computation(ABC):
    """
    Base class for computation handles.

    Attributes:
        controller: The owning controller (storage access, result application)
        args: The declaration (``Count(...)``, ``StateMachine(...)``, ...)
        data_context: Where the value lives
        data_deps: Named dependencies resolved before each call
        state: Named bound states from ``create_state``
    """

    kind: ClassVar[str] = ""
    context_types: ClassVar[Tuple[DataContextType, ...]] = ()
    event_based: ClassVar[bool] = False
    use_last_value: bool = False

    incremental_compute = None
    incremental_patch_compute = None
    compute_dirty_records = None
    async_return = None

    def __init__(self, controller: "Controller", args: Any, data_context: DataContext):
        self.controller = controller
        self.args = args
        self.data_context = data_context
        self.data_deps: Dict[str, DataDep] = {}
        self.state: Dict[str, BoundState] = {}

    @property
    def name(self) -> str:
        return self.data_context.name

    @property
    def handle_name(self) -> str:
        return type(self).__name__

    @property
    def storage(self):
        return self.controller.storage

    @property
    def is_async(self) -> bool:
        return self.async_return is not None

    @property
    def auxiliary_dep_names(self) -> List[str]:
        """Dependencies passed to incremental hooks (everything but main/_current)."""
        return [name for name in self.data_deps if not name.startswith("main") and name != "_current"]

    def create_state(self) -> Dict[str, BoundState]:
        return {}

    def get_default_value(self) -> Any:
        return None

    def __repr__(self) -> str:
        return f"{self.handle_name}({self.data_context!r})"


class DataBasedComputation(Computation):
    """A computation whose value is a function of declared data dependencies."""

    @abstractmethod
    async def compute(self, data_deps: Dict[str, Any], record: Optional[Dict[str, Any]] = None) -> Any:
        ...


class EventBasedComputation(Computation):
    """
    A computation driven by mutation events rather than data dependencies.

    ``event_sources`` lists ``(record_name, event type)`` pairs to listen to;
    by default, creation of interaction event records.
    """

    event_based = True

    def event_sources(self) -> List[Tuple[str, str]]:
        return [(INTERACTION_RECORD, "create")]

    async def compute(self, data_deps: Dict[str, Any], record: Optional[Dict[str, Any]] = None) -> Any:
        return self.get_default_value()


__all__ = [
    "DataContextType",
    "DataContext",
    "RecordsDataDep",
    "PropertyDataDep",
    "GlobalDataDep",
    "DataDep",
    "ComputationResult",
    "ComputationResultSkip",
    "ComputationResultFullRecompute",
    "ComputationResultAsync",
    "ComputationResultResolved",
    "ResultPatch",
    "GlobalBoundState",
    "RecordBoundState",
    "BoundState",
    "Computation",
    "DataBasedComputation",
    "EventBasedComputation",
]
