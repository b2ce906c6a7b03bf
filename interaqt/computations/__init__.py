"""
Computation declarations and the handles that maintain them.
"""

from .any import GlobalAnyHandle, PropertyAnyHandle
from .average import GlobalAverageHandle, PropertyAverageHandle
from .base import (
    ComputationResult,
    Computation,
    DataBasedComputation,
    DataContext,
    DataContextType,
    EventBasedComputation,
    GlobalBoundState,
    GlobalDataDep,
    PropertyDataDep,
    RecordBoundState,
    RecordsDataDep,
    ResultPatch,
)
from .count import GlobalCountHandle, PropertyCountHandle
from .custom import CustomHandle
from .declarations import (
    Any_,
    Average,
    Count,
    Custom,
    Every,
    MapRecordMutation,
    RealTime,
    StateMachine,
    StateNode,
    StateTransfer,
    Summation,
    Transform,
    WeightedSummation,
)
from .every import GlobalEveryHandle, PropertyEveryHandle
from .expressions import Equation, Expression, Inequality
from .map_record_mutation import (
    GlobalMapRecordMutationHandle,
    PropertyMapRecordMutationHandle,
    RecordMapRecordMutationHandle,
)
from .real_time import GlobalRealTimeHandle, PropertyRealTimeHandle
from .registry import ComputationRegistry
from .state_machine import (
    GlobalStateMachineHandle,
    PropertyStateMachineHandle,
    RecordStateMachineHandle,
    TransitionFinder,
)
from .summation import GlobalSummationHandle, PropertySummationHandle
from .transform import RecordsTransformHandle
from .weighted_summation import GlobalWeightedSummationHandle, PropertyWeightedSummationHandle

BUILTIN_HANDLES = (
    GlobalCountHandle,
    PropertyCountHandle,
    GlobalSummationHandle,
    PropertySummationHandle,
    GlobalAverageHandle,
    PropertyAverageHandle,
    GlobalWeightedSummationHandle,
    PropertyWeightedSummationHandle,
    GlobalEveryHandle,
    PropertyEveryHandle,
    GlobalAnyHandle,
    PropertyAnyHandle,
    RecordsTransformHandle,
    GlobalStateMachineHandle,
    PropertyStateMachineHandle,
    RecordStateMachineHandle,
    GlobalMapRecordMutationHandle,
    PropertyMapRecordMutationHandle,
    RecordMapRecordMutationHandle,
    CustomHandle,
    GlobalRealTimeHandle,
    PropertyRealTimeHandle,
)

__all__ = [
    "BUILTIN_HANDLES",
    "ComputationRegistry",
    "ComputationResult",
    "Computation",
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
    "TransitionFinder",
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
]
