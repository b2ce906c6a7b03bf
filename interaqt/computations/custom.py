"""
Custom: a computation assembled from user callbacks.

Every callback receives the handle first, so it can reach ``handle.state``,
``handle.storage`` and ``handle.data_context``:

    compute(handle, data_deps, record)
    incremental_compute(handle, last_value, event, record, data_deps)
    incremental_patch_compute(handle, last_value, event, record, data_deps)
    create_state(handle) -> {name: GlobalBoundState | RecordBoundState}
    get_default_value(handle)
    async_return(handle, result, args)

Hooks the declaration leaves out stay absent, so the scheduler falls back
exactly as it does for builtin computations.
"""

from ..util.values import call_maybe_async
from .base import ComputationResult, DataBasedComputation, DataContextType


class CustomHandle(DataBasedComputation):
    kind = "Custom"
    context_types = (
        DataContextType.GLOBAL,
        DataContextType.ENTITY,
        DataContextType.RELATION,
        DataContextType.PROPERTY,
    )

    def __init__(self, controller, args, data_context):
        super().__init__(controller, args, data_context)
        self.use_last_value = args.use_last_value
        self.data_deps.update(args.data_deps or {})
        if args.incremental_compute is not None:
            self.incremental_compute = self._incremental_compute
        if args.incremental_patch_compute is not None:
            self.incremental_patch_compute = self._incremental_patch_compute
        if args.async_return is not None:
            self.async_return = self._async_return

    def create_state(self):
        if self.args.create_state is None:
            return {}
        return self.args.create_state(self)

    def get_default_value(self):
        if self.args.get_default_value is None:
            return None
        return self.args.get_default_value(self)

    async def compute(self, data_deps, record=None):
        if self.args.compute is None:
            return ComputationResult.skip()
        return await call_maybe_async(self.args.compute, self, data_deps, record)

    async def _incremental_compute(self, last_value, event, record, data_deps):
        return await call_maybe_async(self.args.incremental_compute, self, last_value, event, record, data_deps)

    async def _incremental_patch_compute(self, last_value, event, record, data_deps):
        return await call_maybe_async(self.args.incremental_patch_compute, self, last_value, event, record, data_deps)

    async def _async_return(self, result, args):
        return await call_maybe_async(self.args.async_return, self, result, args)


__all__ = ["CustomHandle"]
