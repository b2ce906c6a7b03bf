"""
Value helpers shared by storage, source maps and strategies.

``values_equal`` decides whether an attribute really changed. Records may hold
numpy arrays and numpy scalars, for which ``==`` is elementwise or ambiguous,
so they are compared with ``np.array_equal``.
"""

import inspect
import math
from typing import Any, Awaitable, Callable, Mapping, Union

import numpy as np


def values_equal(a: Any, b: Any) -> bool:
    try:
        if isinstance(a, np.ndarray) or isinstance(b, np.ndarray):
            if type(a) != type(b):
                return False
            return bool(np.array_equal(a, b))
        if isinstance(a, Mapping) and isinstance(b, Mapping):
            if a.keys() != b.keys():
                return False
            return all(values_equal(a[k], b[k]) for k in a)
        if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
            return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
        return bool(a == b)
    except (ValueError, TypeError):
        return False


def finite_number(value: Any) -> float:
    """Coerce a field value to a summable number; missing, NaN and inf count as 0."""
    if value is None or isinstance(value, bool):
        return int(value or 0)
    if isinstance(value, np.generic):
        value = value.item()
    if not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return value


def deep_partial_match(value: Any, pattern: Any) -> bool:
    """
    True if every key of ``pattern`` is present in ``value`` with a matching value.

    Nested mappings match recursively; any other pattern value must be equal.
    Attribute access is used for objects that are not mappings, so a pattern can
    be matched against a MutationEvent directly.
    """
    if isinstance(pattern, Mapping):
        for key, expected in pattern.items():
            if isinstance(value, Mapping):
                if key not in value:
                    return False
                actual = value[key]
            elif hasattr(value, key):
                actual = getattr(value, key)
            else:
                return False
            if not deep_partial_match(actual, expected):
                return False
        return True
    return values_equal(value, pattern)


async def call_maybe_async(fn: Callable[..., Union[Any, Awaitable[Any]]], *args: Any) -> Any:
    """Call a user callback that may be a plain function or a coroutine function."""
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


__all__ = ["values_equal", "finite_number", "deep_partial_match", "call_maybe_async"]
