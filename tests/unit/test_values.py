"""Unit tests for value helpers."""

import asyncio
import math

import numpy as np
import pytest

from interaqt.events import MutationEvent
from interaqt.util import call_maybe_async, deep_partial_match, finite_number, values_equal


@pytest.mark.unit
@pytest.mark.computations
class TestValuesEqual:
    """values_equal compares plain values, containers and numpy arrays."""

    def test_plain_values(self):
        """Scalars and strings compare with ==."""
        assert values_equal(1, 1)
        assert values_equal("a", "a")
        assert not values_equal(1, 2)
        assert values_equal(None, None)

    def test_numpy_arrays(self):
        """Arrays compare elementwise as a whole."""
        assert values_equal(np.array([1, 2]), np.array([1, 2]))
        assert not values_equal(np.array([1, 2]), np.array([1, 3]))
        assert not values_equal(np.array([1, 2]), [1, 2])

    def test_nested_containers(self):
        """Mappings and sequences compare recursively, including arrays inside."""
        assert values_equal({"a": [1, {"b": np.array([1.0])}]}, {"a": [1, {"b": np.array([1.0])}]})
        assert not values_equal({"a": 1}, {"a": 1, "b": 2})
        assert not values_equal([1, 2], [1, 2, 3])


@pytest.mark.unit
@pytest.mark.computations
class TestFiniteNumber:
    """finite_number makes a field value summable."""

    def test_numbers_pass_through(self):
        """Ints and floats are returned unchanged."""
        assert finite_number(3) == 3
        assert finite_number(2.5) == 2.5

    def test_missing_and_invalid_values_count_as_zero(self):
        """None, NaN, inf and non-numbers become 0."""
        assert finite_number(None) == 0
        assert finite_number(math.nan) == 0
        assert finite_number(math.inf) == 0
        assert finite_number("12") == 0

    def test_booleans_and_numpy_scalars(self):
        """Booleans count as 0/1 and numpy scalars are unwrapped."""
        assert finite_number(True) == 1
        assert finite_number(np.int64(4)) == 4
        assert finite_number(np.float64(np.nan)) == 0


@pytest.mark.unit
@pytest.mark.computations
class TestDeepPartialMatch:
    """deep_partial_match checks that a pattern is contained in a value."""

    def test_nested_mapping(self):
        """Only keys of the pattern are compared."""
        value = {"record": {"status": "ok", "id": 1}, "type": "create"}
        assert deep_partial_match(value, {"record": {"status": "ok"}})
        assert not deep_partial_match(value, {"record": {"status": "bad"}})
        assert not deep_partial_match(value, {"missing": 1})

    def test_matches_object_attributes(self):
        """Objects are matched through their attributes."""
        event = MutationEvent("Review", "create", record={"id": 1, "verdict": "ok"})
        assert deep_partial_match(event, {"record_name": "Review", "record": {"verdict": "ok"}})
        assert not deep_partial_match(event, {"record_name": "Post"})


@pytest.mark.unit
@pytest.mark.computations
def test_call_maybe_async_handles_both_kinds():
    """call_maybe_async awaits coroutine functions and calls plain ones"""

    async def double_async(x):
        return x * 2

    async def scenario():
        assert await call_maybe_async(lambda x: x + 1, 1) == 2
        assert await call_maybe_async(double_async, 4) == 8

    asyncio.run(scenario())
