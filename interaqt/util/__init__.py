"""
interaqt Utilities
==================

- values: numpy-aware equality, finite-number coercion, deep partial matching,
  calling callbacks that may be coroutine functions
- cycle_detector: producer/consumer graph used for dependency diagnostics
"""

from .cycle_detector import DependencyGraph
from .values import call_maybe_async, deep_partial_match, finite_number, values_equal

__all__ = [
    "DependencyGraph",
    "call_maybe_async",
    "deep_partial_match",
    "finite_number",
    "values_equal",
]
