"""
Transform: maintain a derived record set.

Each source record is passed to ``callback``; the returned data (a mapping, a
list of mappings, or None for "no derived record") becomes records of the
context entity or relation. Every derived record remembers the id of its
source in a record-bound state, so updates and deletes of the source patch
exactly the records derived from it.

Derived relation records are never relinked in place: when the callback moves
``source`` or ``target``, the old link is deleted and a new one inserted.
"""

from typing import Any, Dict, List, Optional

from ..match import MatchExp
from ..util.values import call_maybe_async
from .aggregate import record_ref_name
from .base import DataBasedComputation, DataContextType, RecordBoundState, RecordsDataDep, ResultPatch


def _end_id(value: Any) -> Any:
    return value.get("id") if isinstance(value, dict) else value


class RecordsTransformHandle(DataBasedComputation):
    kind = "Transform"
    context_types = (DataContextType.ENTITY, DataContextType.RELATION)
    use_last_value = False

    def __init__(self, controller, args, data_context):
        super().__init__(controller, args, data_context)
        self.source_name = record_ref_name(args.record)
        self.data_deps["main"] = RecordsDataDep(self.source_name, list(args.attribute_query or ["*"]))

    def create_state(self):
        return {"source_record_id": RecordBoundState(None, self.data_context.id.name)}

    def get_default_value(self):
        return []

    @property
    def _source_key(self) -> str:
        return self.state["source_record_id"].key

    async def _transform(self, source: Dict[str, Any]) -> List[Dict[str, Any]]:
        produced = await call_maybe_async(self.args.callback, source)
        if produced is None:
            return []
        items = produced if isinstance(produced, list) else [produced]
        return [{**item, self._source_key: source["id"]} for item in items if item]

    async def compute(self, data_deps, record=None):
        result = []
        for source in data_deps.get("main") or []:
            result.extend(await self._transform(source))
        return result

    async def _fetch_source(self, source_id: Any) -> Optional[Dict[str, Any]]:
        dep = self.data_deps["main"]
        return await self.storage.find_one(
            self.source_name, MatchExp.atom("id", "=", source_id), attribute_query=dep.attribute_query
        )

    @property
    def _is_relation(self) -> bool:
        return self.data_context.type is DataContextType.RELATION

    async def _mapped_records(self, source_id: Any) -> List[Dict[str, Any]]:
        return await self.storage.find(
            self.data_context.id.name,
            MatchExp.atom(self._source_key, "=", source_id),
            attribute_query=["*"] if self._is_relation else ["id"],
        )

    def _update_patches(self, existing: Dict[str, Any], data: Dict[str, Any]) -> List[ResultPatch]:
        if not self._is_relation:
            return [ResultPatch("update", data, affected_id=existing["id"])]
        # Relation ends are fixed once linked: relinking is a delete plus an insert.
        if any(_end_id(data.get(end)) != _end_id(existing.get(end)) for end in ("source", "target")):
            return [ResultPatch("delete", affected_id=existing["id"]), ResultPatch("insert", data)]
        values = {k: v for k, v in data.items() if k not in ("source", "target")}
        return [ResultPatch("update", values, affected_id=existing["id"])]

    async def incremental_patch_compute(self, last_value, event, record, data_deps):
        if event.is_creation:
            source = await self._fetch_source(event.record["id"])
            if source is None:
                return []
            return [ResultPatch("insert", data) for data in await self._transform(source)]

        source_id = event.record_id
        mapped = await self._mapped_records(source_id)

        if event.is_deletion:
            return [ResultPatch("delete", affected_id=existing["id"]) for existing in mapped]

        source = await self._fetch_source(source_id)
        produced = await self._transform(source) if source is not None else []
        patches = []
        # Pair derived records with the existing ones in order; extras are inserted or deleted.
        for index, data in enumerate(produced):
            if index < len(mapped):
                patches.extend(self._update_patches(mapped[index], data))
            else:
                patches.append(ResultPatch("insert", data))
        for existing in mapped[len(produced):]:
            patches.append(ResultPatch("delete", affected_id=existing["id"]))
        return patches


__all__ = ["RecordsTransformHandle"]
