"""Engine configuration, env-var driven.

All settings have safe defaults; zero config is required. Budgets bound the
mutation cascade so that a cyclic set of computations fails fast with a
SchedulerError instead of looping.

    INTERAQT_MAX_CASCADE_DEPTH          nested batches per cascade (64)
    INTERAQT_MAX_CASCADE_STEPS          computation runs per cascade (100000)
    INTERAQT_MAX_REVISITS               runs per (computation, record) per cascade (1000)
    INTERAQT_LOG_LEVEL                  level used by configure_logging (WARNING)
    INTERAQT_IGNORE_GUARD               skip interaction guards (0)
    INTERAQT_FORCE_THROW_DISPATCH_ERROR re-raise instead of returning errors (0)
    INTERAQT_WARN_DEPENDENCY_ORDER      log producer/consumer order problems (1)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _int_env(name: str, default: str, *, min_val: int = 0, max_val: Optional[int] = None) -> int:
    """Parse an integer from an env var with validation."""
    raw = os.environ.get(name, default)
    try:
        val = int(raw)
    except ValueError:
        raise ValueError(f"Invalid integer for {name}: {raw!r}.") from None
    if val < min_val:
        raise ValueError(f"{name}={val} is below minimum {min_val}.")
    if max_val is not None and val > max_val:
        raise ValueError(f"{name}={val} exceeds maximum {max_val}.")
    return val


def _bool_env(name: str, default: str) -> bool:
    """Parse a boolean flag from an env var."""
    raw = os.environ.get(name, default).strip().lower()
    if raw in _TRUE:
        return True
    if raw in _FALSE:
        return False
    raise ValueError(f"Invalid boolean for {name}: {raw!r}. Expected one of 1/0/true/false.")


@dataclass
class EngineConfig:
    """Scheduler budgets and controller behaviour."""

    max_cascade_depth: int = field(
        default_factory=lambda: _int_env("INTERAQT_MAX_CASCADE_DEPTH", "64", min_val=1)
    )
    max_cascade_steps: int = field(
        default_factory=lambda: _int_env("INTERAQT_MAX_CASCADE_STEPS", "100000", min_val=1)
    )
    max_revisits: int = field(
        default_factory=lambda: _int_env("INTERAQT_MAX_REVISITS", "1000", min_val=1)
    )
    log_level: str = field(
        default_factory=lambda: os.environ.get("INTERAQT_LOG_LEVEL", "WARNING").upper()
    )
    ignore_guard: bool = field(
        default_factory=lambda: _bool_env("INTERAQT_IGNORE_GUARD", "0")
    )
    force_throw_dispatch_error: bool = field(
        default_factory=lambda: _bool_env("INTERAQT_FORCE_THROW_DISPATCH_ERROR", "0")
    )
    warn_dependency_order: bool = field(
        default_factory=lambda: _bool_env("INTERAQT_WARN_DEPENDENCY_ORDER", "1")
    )

    def __post_init__(self) -> None:
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Unknown log level: {self.log_level!r}")


def configure_logging(config: Optional[EngineConfig] = None) -> None:
    """Apply the configured level to the root logger (for applications, not on import)."""
    config = config or EngineConfig()
    logging.basicConfig(level=config.log_level)
    logging.getLogger().setLevel(config.log_level)


__all__ = ["EngineConfig", "configure_logging"]
