"""
MapRecordMutation: fold mutation events straight into a value.

``map(event, last_value, batch)`` is called for every event on the listened
records (``records``, or every entity and relation except the context's own
record when empty) with the whole batch the event arrived in.
Returning None leaves the value unchanged.

In entity/relation contexts the returned mapping (or list of mappings) is
record data: data carrying an ``id`` updates that record, data without one is
inserted.
"""

from typing import Any, List

from ..util.values import call_maybe_async
from .aggregate import as_list, record_ref_name
from .base import ComputationResult, DataContextType, EventBasedComputation, ResultPatch


class _MapRecordMutationHandle(EventBasedComputation):
    kind = "MapRecordMutation"
    use_last_value = True

    def event_sources(self):
        names = [record_ref_name(record) for record in self.args.records]
        if not names:
            # Internal records and the context's own record are left out so its writes do not feed back.
            names = [
                record.name
                for record in self.controller.schema.records()
                if not record.name.startswith("_") and record.name != self.data_context.record_name
            ]
        return [(name, type_) for name in names for type_ in ("create", "update", "delete")]

    async def mapped(self, event, last_value) -> Any:
        batch = self.controller.scheduler.current_batch
        return await call_maybe_async(self.args.map, event, last_value, batch)


class GlobalMapRecordMutationHandle(_MapRecordMutationHandle):
    context_types = (DataContextType.GLOBAL,)

    async def incremental_compute(self, last_value, event, record, data_deps):
        value = await self.mapped(event, last_value)
        return ComputationResult.skip() if value is None else value


class PropertyMapRecordMutationHandle(_MapRecordMutationHandle):
    context_types = (DataContextType.PROPERTY,)

    async def compute_dirty_records(self, event) -> List[Any]:
        if self.args.compute_target is not None:
            return [t for t in as_list(await call_maybe_async(self.args.compute_target, event)) if t]
        if event.record_name == self.data_context.host.name and not event.is_deletion:
            return [event.record]
        return []

    async def incremental_compute(self, last_value, event, record, data_deps):
        value = await self.mapped(event, last_value)
        return ComputationResult.skip() if value is None else value


class RecordMapRecordMutationHandle(_MapRecordMutationHandle):
    context_types = (DataContextType.ENTITY, DataContextType.RELATION)
    use_last_value = False

    async def incremental_patch_compute(self, last_value, event, record, data_deps):
        produced = await self.mapped(event, None)
        if produced is None:
            return ComputationResult.skip()
        patches = []
        for data in as_list(produced):
            if data.get("id") is not None:
                values = {key: value for key, value in data.items() if key != "id"}
                patches.append(ResultPatch("update", values, affected_id=data["id"]))
            else:
                patches.append(ResultPatch("insert", data))
        return patches


__all__ = [
    "GlobalMapRecordMutationHandle",
    "PropertyMapRecordMutationHandle",
    "RecordMapRecordMutationHandle",
]
