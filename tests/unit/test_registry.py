"""Unit tests for the computation dispatch table."""

import pytest

from interaqt import (
    BUILTIN_HANDLES,
    ComputationRegistry,
    DataBasedComputation,
    DataContextType,
    SchedulerError,
)
from interaqt.computations.count import GlobalCountHandle, PropertyCountHandle
from interaqt.computations.transform import RecordsTransformHandle


@pytest.mark.unit
@pytest.mark.computations
class TestComputationRegistry:
    """Lookup by (kind, context type)."""

    def test_builtin_lookup(self):
        """Every builtin kind resolves for its context types"""
        registry = ComputationRegistry(BUILTIN_HANDLES)

        assert registry.lookup("Count", DataContextType.GLOBAL) is GlobalCountHandle
        assert registry.lookup("Count", "property") is PropertyCountHandle
        assert registry.lookup("Transform", DataContextType.RELATION) is RecordsTransformHandle
        assert ("Custom", "entity") in registry

    def test_missing_handle_is_a_scheduler_error(self):
        """An unsupported combination fails with a handle-lookup error"""
        registry = ComputationRegistry(BUILTIN_HANDLES)

        with pytest.raises(SchedulerError) as exc_info:
            registry.lookup("Transform", DataContextType.GLOBAL)

        assert exc_info.value.scheduling_phase == "handle-lookup"
        assert exc_info.value.context["kind"] == "Transform"

    def test_later_registration_wins(self):
        """Applications can replace a builtin for one context type"""

        class FixedCount(DataBasedComputation):
            kind = "Count"
            context_types = (DataContextType.GLOBAL,)

            async def compute(self, data_deps, record=None):
                return 42

        registry = ComputationRegistry([*BUILTIN_HANDLES, FixedCount])

        assert registry.lookup("Count", DataContextType.GLOBAL) is FixedCount
        assert registry.lookup("Count", DataContextType.PROPERTY) is PropertyCountHandle

    def test_handles_must_declare_kind_and_contexts(self):
        """Handles without a kind or context types are rejected"""

        class Incomplete(DataBasedComputation):
            async def compute(self, data_deps, record=None):
                return None

        with pytest.raises(ValueError, match="must declare kind"):
            ComputationRegistry([Incomplete])

    def test_kinds(self):
        """kinds lists every registered key"""
        registry = ComputationRegistry([GlobalCountHandle])
        assert registry.kinds() == [("Count", DataContextType.GLOBAL)]
        assert len(registry) == 1
