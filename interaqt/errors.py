"""
interaqt Errors - Framework Exception Taxonomy
==============================================

Every error raised by the engine derives from :class:`FrameworkError`, which
carries a category, a severity, a free-form context dictionary and an optional
cause. The cause chain is preserved both through ``raise ... from`` and through
``caused_by`` so that errors crossing the interaction boundary (where they are
returned as ``DispatchResponse.error`` instead of raised) can still be inspected.

Hierarchy:

    FrameworkError
    ├── ComputationError
    │   ├── ComputationStateError     (missing or corrupt incremental state)
    │   └── ComputationDataDepError   (declared dependency cannot be resolved)
    ├── SchedulerError                (cascade guard, dispatch table, orchestration)
    ├── ConditionError                (guards, state machine conditions)
    ├── InteractionExecutionError
    ├── SideEffectError
    └── StorageError
"""

import time
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorSeverity(Enum):
    """How bad an error is for the running application."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Which layer an error originated in."""

    VALIDATION = "validation"
    PERMISSION = "permission"
    COMPUTATION = "computation"
    STORAGE = "storage"
    INTERACTION = "interaction"
    SYSTEM = "system"
    CONFIGURATION = "configuration"


class FrameworkError(Exception):
    """
    Base class for all interaqt errors.

    Args:
        message: Human readable description
        category: Layer the error belongs to
        severity: Impact of the error
        context: Extra diagnostic values (names, ids, phases)
        caused_by: The underlying exception, if any
    """

    default_category = ErrorCategory.SYSTEM
    default_severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
        caused_by: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.context: Dict[str, Any] = {
            k: v for k, v in (context or {}).items() if v is not None
        }
        self.caused_by = caused_by
        self.timestamp = time.time()
        self.error_id = f"{type(self).__name__}_{uuid.uuid4().hex[:12]}"

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def error_chain(self) -> List[BaseException]:
        """Return this error followed by every error it was caused by."""
        chain: List[BaseException] = [self]
        current = self.caused_by
        while current is not None and current not in chain:
            chain.append(current)
            current = (
                current.caused_by
                if isinstance(current, FrameworkError)
                else current.__cause__
            )
        return chain

    def detailed_message(self) -> str:
        lines = [f"[{self.error_type}] {self.message}"]
        if self.context:
            details = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            lines.append(f"Context: {details}")
        for depth, err in enumerate(self.error_chain()[1:], start=1):
            lines.append(f"{'  ' * depth}caused by {type(err).__name__}: {err}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.error_type,
            "error_id": self.error_id,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "timestamp": self.timestamp,
            "context": dict(self.context),
            "caused_by": (
                {"type": type(self.caused_by).__name__, "message": str(self.caused_by)}
                if self.caused_by is not None
                else None
            ),
        }


# ============================================================================
# COMPUTATION ERRORS
# ============================================================================


class ComputationError(FrameworkError):
    """Raised when a computation fails to produce a value or patch."""

    default_category = ErrorCategory.COMPUTATION
    default_severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        *,
        handle_name: Optional[str] = None,
        computation_name: Optional[str] = None,
        data_context: Optional[str] = None,
        computation_phase: Optional[str] = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
        caused_by: Optional[BaseException] = None,
    ):
        merged = {
            "handle_name": handle_name,
            "computation_name": computation_name,
            "data_context": data_context,
            "computation_phase": computation_phase,
            **(context or {}),
        }
        super().__init__(message, severity=severity, context=merged, caused_by=caused_by)
        self.handle_name = handle_name
        self.computation_name = computation_name
        self.data_context = data_context
        self.computation_phase = computation_phase


class ComputationStateError(ComputationError):
    """Incremental state that should exist could not be located."""

    default_severity = ErrorSeverity.CRITICAL

    def __init__(self, message: str, *, state_key: Optional[str] = None, **kwargs):
        kwargs.setdefault("computation_phase", "state")
        context = {"state_key": state_key, **kwargs.pop("context", {})}
        super().__init__(message, context=context, **kwargs)
        self.state_key = state_key


class ComputationDataDepError(ComputationError):
    """A declared data dependency could not be resolved."""

    def __init__(
        self,
        message: str,
        *,
        dep_name: Optional[str] = None,
        dep_type: Optional[str] = None,
        **kwargs,
    ):
        kwargs.setdefault("computation_phase", "data-dep-resolution")
        context = {"dep_name": dep_name, "dep_type": dep_type, **kwargs.pop("context", {})}
        super().__init__(message, context=context, **kwargs)
        self.dep_name = dep_name
        self.dep_type = dep_type


# ============================================================================
# ORCHESTRATION ERRORS
# ============================================================================


class SchedulerError(FrameworkError):
    """Raised when mutation propagation cannot proceed safely."""

    default_severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        *,
        scheduling_phase: Optional[str] = None,
        computation_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        caused_by: Optional[BaseException] = None,
    ):
        merged = {
            "scheduling_phase": scheduling_phase,
            "computation_name": computation_name,
            **(context or {}),
        }
        super().__init__(message, context=merged, caused_by=caused_by)
        self.scheduling_phase = scheduling_phase
        self.computation_name = computation_name


class ConditionError(FrameworkError):
    """A guard or state machine condition rejected, or failed to evaluate."""

    default_category = ErrorCategory.PERMISSION
    default_severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        *,
        check_type: str,
        evaluation_error: Any = None,
        severity: Optional[ErrorSeverity] = None,
        context: Optional[Dict[str, Any]] = None,
        caused_by: Optional[BaseException] = None,
    ):
        merged = {"check_type": check_type, **(context or {})}
        super().__init__(message, severity=severity, context=merged, caused_by=caused_by)
        self.check_type = check_type
        self.evaluation_error = evaluation_error

    @classmethod
    def user_check_failed(cls, error: Any = None, context: Optional[Dict[str, Any]] = None) -> "ConditionError":
        return cls(
            "User check failed",
            check_type="user",
            evaluation_error=error,
            context=context,
            caused_by=error if isinstance(error, BaseException) else None,
        )

    @classmethod
    def guard_failed(cls, interaction_name: str, error: Optional[BaseException] = None) -> "ConditionError":
        return cls(
            f"Guard rejected interaction '{interaction_name}'",
            check_type="guard",
            evaluation_error=error,
            context={"interaction_name": interaction_name},
            caused_by=error,
        )

    @classmethod
    def condition_check_failed(
        cls, condition_name: str, error: BaseException, context: Optional[Dict[str, Any]] = None
    ) -> "ConditionError":
        return cls(
            f"Condition check failed: {condition_name}",
            check_type="condition",
            evaluation_error=error,
            context={"condition_name": condition_name, **(context or {})},
            caused_by=error,
        )


class InteractionExecutionError(FrameworkError):
    """Raised when an interaction cannot be located or executed."""

    default_category = ErrorCategory.INTERACTION

    def __init__(
        self,
        message: str,
        *,
        interaction_name: Optional[str] = None,
        user_id: Any = None,
        execution_phase: Optional[str] = None,
        caused_by: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            context={
                "interaction_name": interaction_name,
                "user_id": user_id,
                "execution_phase": execution_phase,
            },
            caused_by=caused_by,
        )
        self.interaction_name = interaction_name
        self.execution_phase = execution_phase


class SideEffectError(FrameworkError):
    """A record mutation side effect raised after its interaction committed."""

    default_severity = ErrorSeverity.LOW

    def __init__(
        self,
        message: str,
        *,
        side_effect_name: str,
        record_name: str,
        mutation_type: str,
        record_id: Any = None,
        caused_by: Optional[BaseException] = None,
    ):
        super().__init__(
            message,
            context={
                "side_effect_name": side_effect_name,
                "record_name": record_name,
                "mutation_type": mutation_type,
                "record_id": record_id,
            },
            caused_by=caused_by,
        )
        self.side_effect_name = side_effect_name
        self.record_name = record_name


class StorageError(FrameworkError):
    """Raised by storage implementations for invalid reads or writes."""

    default_category = ErrorCategory.STORAGE


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "FrameworkError",
    "ComputationError",
    "ComputationStateError",
    "ComputationDataDepError",
    "SchedulerError",
    "ConditionError",
    "InteractionExecutionError",
    "SideEffectError",
    "StorageError",
]
