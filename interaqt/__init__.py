"""
interaqt - Incremental Reactive Computation Engine

Declare computed values (counts, sums, state machines, derived records) over
entities and relations; the engine keeps them up to date incrementally as
interactions mutate storage.
"""

# Schema declarations
from .schema import (
    DICTIONARY_RECORD,
    HARD_DELETION_PROPERTY,
    INTERACTION_RECORD,
    Dictionary,
    Entity,
    Interaction,
    Property,
    Relation,
    SchemaRegistry,
)

# Computation declarations and the handle contract
from .computations import (
    BUILTIN_HANDLES,
    Any_,
    Average,
    Computation,
    ComputationRegistry,
    ComputationResult,
    Count,
    Custom,
    DataBasedComputation,
    DataContext,
    DataContextType,
    EventBasedComputation,
    Equation,
    Every,
    Expression,
    GlobalBoundState,
    GlobalDataDep,
    Inequality,
    MapRecordMutation,
    PropertyDataDep,
    RealTime,
    RecordBoundState,
    RecordsDataDep,
    ResultPatch,
    StateMachine,
    StateNode,
    StateTransfer,
    Summation,
    Transform,
    WeightedSummation,
)

# Runtime
from .async_tasks import ASYNC_TASK_RECORD, AsyncTaskCoordinator
from .config import EngineConfig, configure_logging
from .controller import Controller, DispatchResponse, RecordMutationSideEffect
from .errors import (
    ComputationDataDepError,
    ComputationError,
    ComputationStateError,
    ConditionError,
    ErrorCategory,
    ErrorSeverity,
    FrameworkError,
    InteractionExecutionError,
    SchedulerError,
    SideEffectError,
    StorageError,
)
from .events import MutationEvent, MutationType
from .match import MatchExp
from .scheduler import CascadeGuard, Scheduler
from .source_map import SourceMap, SourceMapIndex
from .storage import LINK, MemoryStorage, Storage

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # schema
    "Entity",
    "Relation",
    "Property",
    "Dictionary",
    "Interaction",
    "SchemaRegistry",
    "INTERACTION_RECORD",
    "DICTIONARY_RECORD",
    "HARD_DELETION_PROPERTY",
    # computations
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
    "Expression",
    "Inequality",
    "Equation",
    "BUILTIN_HANDLES",
    "Computation",
    "ComputationRegistry",
    "ComputationResult",
    "DataBasedComputation",
    "EventBasedComputation",
    "DataContext",
    "DataContextType",
    "GlobalBoundState",
    "RecordBoundState",
    "RecordsDataDep",
    "PropertyDataDep",
    "GlobalDataDep",
    "ResultPatch",
    # runtime
    "Controller",
    "DispatchResponse",
    "RecordMutationSideEffect",
    "Scheduler",
    "CascadeGuard",
    "AsyncTaskCoordinator",
    "ASYNC_TASK_RECORD",
    "SourceMap",
    "SourceMapIndex",
    "Storage",
    "MemoryStorage",
    "LINK",
    "MatchExp",
    "MutationEvent",
    "MutationType",
    "EngineConfig",
    "configure_logging",
    # errors
    "FrameworkError",
    "ErrorCategory",
    "ErrorSeverity",
    "ComputationError",
    "ComputationStateError",
    "ComputationDataDepError",
    "SchedulerError",
    "ConditionError",
    "InteractionExecutionError",
    "SideEffectError",
    "StorageError",
]
