"""
interaqt Aggregates - Shared Incremental Machinery
==================================================

Count, Summation, Average, WeightedSummation, Every and Any all reduce a set of
*items* to a value:

    result = finalize(total, size)      total = sum(item_value(item)), size = len(items)

Global contexts aggregate every record of one or more source records. Property
contexts aggregate the records related to the host through one relation; each
item is the related record with the linking relation record under ``"&"``.

Each item's contribution is stored in a :class:`RecordBoundState` on the item
itself (global) or on the relation record (property), so a delete can subtract
what was added without recomputing, and an update applies ``new - old``. Items
whose contribution is constant (Count without a match) need no item state.

Aggregates whose result *is* the total (Count, Summation, WeightedSummation)
keep it as the computation's own value; the others keep ``total`` and ``size``
counters in bound state next to the value.

Kind-specific behaviour is provided by mixins placed before the handle class:

    class GlobalCountHandle(CountMixin, GlobalAggregateHandle): ...
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..errors import ComputationDataDepError
from ..match import MatchExp
from ..schema import Relation
from ..storage import LINK
from ..util.values import call_maybe_async, finite_number
from .base import (
    ComputationResult,
    DataBasedComputation,
    DataContextType,
    GlobalBoundState,
    PropertyDataDep,
    RecordBoundState,
    RecordsDataDep,
)

ITEM_STATE = "item_value"


def record_ref_name(ref: Any) -> Optional[str]:
    if ref is None:
        return None
    return ref if isinstance(ref, str) else ref.name


def main_dep_name(index: int) -> str:
    return "main" if index == 0 else f"main_{index}"


def item_state_name(index: int) -> str:
    return ITEM_STATE if index == 0 else f"{ITEM_STATE}_{index}"


def query_path(attribute_query: Sequence[Any]) -> List[str]:
    """
    Path addressed by the first entry of a (nested) attribute query.

    ``["amount"]`` -> ``["amount"]``;
    ``[["product", {"attribute_query": ["price"]}]]`` -> ``["product", "price"]``.
    """
    path: List[str] = []
    query = list(attribute_query)
    while query:
        first = query[0]
        if isinstance(first, str):
            path.append(first)
            break
        path.append(first[0])
        query = list((first[1] if len(first) > 1 else {}).get("attribute_query", []))
    return path


def read_path(record: Optional[Dict[str, Any]], path: Sequence[str]) -> Any:
    value: Any = record
    for part in path:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def split_link_query(attribute_query: Sequence[Any]) -> Tuple[List[Any], List[Any]]:
    """Separate ``["&", {...}]`` entries (relation record) from related record entries."""
    related: List[Any] = []
    link: List[Any] = []
    for item in attribute_query:
        if isinstance(item, (list, tuple)) and item and item[0] == LINK:
            link.extend((item[1] if len(item) > 1 else {}).get("attribute_query", []))
        elif item != LINK:
            related.append(item)
    return related, link


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    return list(value) if isinstance(value, list) else [value]


class AggregateHandle(DataBasedComputation):
    """Common configuration of every aggregate handle."""

    use_last_value = True
    result_is_total = True
    total_state_name = "total"
    size_state_name = "size"

    def __init__(self, controller, args, data_context):
        super().__init__(controller, args, data_context)
        self.constant_item_value: Optional[float] = None
        self.configure()

    # -- kind hooks -------------------------------------------------------

    def configure(self) -> None:
        """Set per-instance options before dependencies are declared."""

    def default_item_query(self) -> List[Any]:
        return list(getattr(self.args, "attribute_query", None) or ["*"])

    async def item_value(self, item: Dict[str, Any], data_deps: Dict[str, Any]) -> float:
        raise NotImplementedError

    def finalize(self, total: float, size: int) -> Any:
        return total

    def get_default_value(self) -> Any:
        return self.finalize(0, 0)

    # -- helpers ----------------------------------------------------------

    async def matches(self, item: Dict[str, Any], data_deps: Dict[str, Any]) -> bool:
        """Run the user's match callback (with auxiliary deps when declared)."""
        if getattr(self.args, "data_deps", None):
            aux = {name: data_deps.get(name) for name in self.auxiliary_dep_names}
            return bool(await call_maybe_async(self.args.match, item, aux))
        return bool(await call_maybe_async(self.args.match, item))

    def stored_item_value(self, item_state: Optional[RecordBoundState], record: Optional[Dict[str, Any]]) -> Optional[float]:
        if item_state is None:
            return self.constant_item_value
        if record is None:
            return None
        return record.get(item_state.key)

    def counter_states(self) -> Dict[str, Any]:
        return {}

    async def _read_counter(self, name: str, host: Optional[Dict[str, Any]]) -> float:
        state = self.state[name]
        if isinstance(state, GlobalBoundState):
            return await state.get()
        return await state.get(host) or 0

    async def _write_counter(self, name: str, host: Optional[Dict[str, Any]], value: float) -> None:
        state = self.state[name]
        if isinstance(state, GlobalBoundState):
            await state.set(value)
        else:
            await state.set(host, value)

    async def store_counters(self, host: Optional[Dict[str, Any]], total: float, size: int) -> None:
        if not self.result_is_total:
            await self._write_counter(self.total_state_name, host, total)
            await self._write_counter(self.size_state_name, host, size)

    async def accumulate(self, last_value: Any, delta_total: float, delta_size: int, host: Optional[Dict[str, Any]] = None):
        if delta_total == 0 and delta_size == 0:
            return ComputationResult.skip()
        if self.result_is_total:
            return (last_value or 0) + delta_total
        total = await self._read_counter(self.total_state_name, host) + delta_total
        size = await self._read_counter(self.size_state_name, host) + delta_size
        await self.store_counters(host, total, size)
        return self.finalize(total, size)


# ============================================================================
# GLOBAL CONTEXT
# ============================================================================


class GlobalAggregateHandle(AggregateHandle):
    """Aggregate over every record of the source record(s)."""

    context_types = (DataContextType.GLOBAL,)

    def __init__(self, controller, args, data_context):
        super().__init__(controller, args, data_context)
        self.sources = self.source_names()
        self.item_query = self.default_item_query()
        for index, source in enumerate(self.sources):
            self.data_deps[main_dep_name(index)] = RecordsDataDep(source, self.item_query)
        self.data_deps.update(getattr(args, "data_deps", None) or {})

    def source_names(self) -> List[str]:
        name = record_ref_name(getattr(self.args, "record", None))
        if name is None:
            raise ComputationDataDepError(
                f"{self.handle_name} in a global context needs a record",
                dep_name="main",
                dep_type="records",
                computation_name=self.name,
            )
        return [name]

    def create_state(self):
        states: Dict[str, Any] = {}
        if self.constant_item_value is None:
            for index, source in enumerate(self.sources):
                states[item_state_name(index)] = RecordBoundState(None, source)
        if not self.result_is_total:
            states[self.total_state_name] = GlobalBoundState(0)
            states[self.size_state_name] = GlobalBoundState(0)
        return states

    def _item_state(self, index: int) -> Optional[RecordBoundState]:
        return self.state.get(item_state_name(index))

    async def compute(self, data_deps, record=None):
        total, size = 0, 0
        for index, _ in enumerate(self.sources):
            item_state = self._item_state(index)
            for item in data_deps.get(main_dep_name(index)) or []:
                value = await self.item_value(item, data_deps)
                if item_state is not None:
                    await item_state.set(item, value)
                total += value
                size += 1
        await self.store_counters(None, total, size)
        return self.finalize(total, size)

    async def _fetch(self, source: str, record_id: Any) -> Optional[Dict[str, Any]]:
        return await self.storage.find_one(
            source, MatchExp.atom("id", "=", record_id), attribute_query=self.item_query
        )

    async def incremental_compute(self, last_value, event, record, data_deps):
        # Changes reached through relations, and auxiliary deps, are not tracked per item.
        if event.record_name not in self.sources or event.related_attribute:
            return ComputationResult.full_recompute(
                f"{event.record_name} is not a direct source of {self.name}"
            )
        index = self.sources.index(event.record_name)
        item_state = self._item_state(index)

        if event.is_creation:
            item = await self._fetch(event.record_name, event.record["id"])
            if item is None:
                return ComputationResult.skip()
            value = await self.item_value(item, data_deps)
            if item_state is not None:
                await item_state.set(item, value)
            return await self.accumulate(last_value, value, 1)

        if event.is_deletion:
            old = self.stored_item_value(item_state, event.record)
            if old is None:
                return ComputationResult.full_recompute(f"{event!r} carries no item state")
            return await self.accumulate(last_value, -old, -1)

        if item_state is None:
            return ComputationResult.skip()
        old = self.stored_item_value(item_state, event.old_record)
        if old is None:
            return ComputationResult.full_recompute(f"{event!r} carries no item state")
        item = await self._fetch(event.record_name, event.record["id"])
        if item is None:
            return ComputationResult.skip()
        new = await self.item_value(item, data_deps)
        await item_state.set(item, new)
        return await self.accumulate(last_value, new - old, 0)


# ============================================================================
# PROPERTY CONTEXT
# ============================================================================


class PropertyAggregateHandle(AggregateHandle):
    """Aggregate over the records related to the host through one relation."""

    context_types = (DataContextType.PROPERTY,)

    def __init__(self, controller, args, data_context):
        super().__init__(controller, args, data_context)
        self.host_name = data_context.host.name
        self.relation, self.is_source = self.resolve_relation()
        if self.is_source:
            self.relation_attr = self.relation.source_property
            self.own_side, self.other_side = "source", "target"
            self.related_record_name = self.relation.target
        else:
            self.relation_attr = self.relation.target_property
            self.own_side, self.other_side = "target", "source"
            self.related_record_name = self.relation.source

        related_query, link_query = split_link_query(self.default_item_query())
        self.related_query = ["id", *related_query]
        self.link_query = ["id", *link_query]
        self.data_deps["_current"] = PropertyDataDep(
            [[self.relation_attr, {"attribute_query": [*self.related_query, [LINK, {"attribute_query": self.link_query}]]}]]
        )
        self.data_deps.update(getattr(args, "data_deps", None) or {})

    def relation_ref(self) -> Any:
        return getattr(self.args, "record", None)

    def resolve_relation(self) -> Tuple[Relation, bool]:
        schema = self.controller.schema
        ref = self.relation_ref()
        if ref is not None:
            relation = ref if isinstance(ref, Relation) else schema.get_relation(record_ref_name(ref))
            if relation is None:
                raise ComputationDataDepError(
                    f"{record_ref_name(ref)!r} is not a relation; {self.name} needs one",
                    dep_name="_current",
                    dep_type="property",
                    computation_name=self.name,
                )
            direction = getattr(self.args, "direction", None)
            if direction in ("source", "target"):
                is_source = direction == "source"
            else:
                is_source = relation.source == self.host_name
            expected = relation.source if is_source else relation.target
            if expected != self.host_name:
                raise ComputationDataDepError(
                    f"{self.host_name} is not the {'source' if is_source else 'target'} of {relation.name}",
                    dep_name="_current",
                    dep_type="property",
                    computation_name=self.name,
                )
            return relation, is_source

        attribute = getattr(self.args, "property", None)
        found = schema.relation_for(self.host_name, attribute) if attribute else None
        if found is None:
            raise ComputationDataDepError(
                f"{self.host_name}.{attribute} is not a relation attribute",
                dep_name="_current",
                dep_type="property",
                computation_name=self.name,
            )
        return found

    def create_state(self):
        states: Dict[str, Any] = {}
        if self.constant_item_value is None:
            states[ITEM_STATE] = RecordBoundState(None, self.relation.name)
        if not self.result_is_total:
            states[self.total_state_name] = RecordBoundState(0, self.host_name)
            states[self.size_state_name] = RecordBoundState(0, self.host_name)
        return states

    async def compute(self, data_deps, record=None):
        current = data_deps.get("_current") or {}
        item_state = self.state.get(ITEM_STATE)
        total, size = 0, 0
        for item in as_list(current.get(self.relation_attr)):
            value = await self.item_value(item, data_deps)
            if item_state is not None and item.get(LINK):
                await item_state.set(item[LINK], value)
            total += value
            size += 1
        if record is not None:
            await self.store_counters(record, total, size)
        return self.finalize(total, size)

    async def _fetch_item(self, relation_id: Any) -> Optional[Dict[str, Any]]:
        row = await self.storage.find_one(
            self.relation.name,
            MatchExp.atom("id", "=", relation_id),
            attribute_query=[*self.link_query, [self.other_side, {"attribute_query": self.related_query}]],
        )
        if row is None or row.get(self.other_side) is None:
            return None
        item = dict(row[self.other_side])
        item[LINK] = {key: value for key, value in row.items() if key != self.other_side}
        return item

    def _accepts(self, event) -> bool:
        path = event.related_attribute
        return (
            event.record_name == self.host_name
            and event.related_mutation_event is not None
            and 0 < len(path) <= 3
            and path[0] == self.relation_attr
            and (len(path) < 2 or path[1] == LINK)
            and (len(path) < 3 or path[2] == self.other_side)
        )

    async def incremental_compute(self, last_value, event, record, data_deps):
        if not self._accepts(event):
            return ComputationResult.full_recompute(
                f"{event!r} is not a change of {self.host_name}.{self.relation_attr}"
            )
        related = event.related_mutation_event
        item_state = self.state.get(ITEM_STATE)
        is_link_event = related.record_name == self.relation.name

        if is_link_event and related.is_creation:
            if item_state is None:
                return await self.accumulate(last_value, self.constant_item_value, 1, record)
            item = await self._fetch_item(related.record["id"])
            if item is None:
                return ComputationResult.skip()
            value = await self.item_value(item, data_deps)
            await item_state.set(item[LINK], value)
            return await self.accumulate(last_value, value, 1, record)

        if is_link_event and related.is_deletion:
            old = self.stored_item_value(item_state, related.record)
            if old is None:
                return ComputationResult.full_recompute(f"{related!r} carries no item state")
            return await self.accumulate(last_value, -old, -1, record)

        if not related.is_update or item_state is None:
            return ComputationResult.skip()

        if is_link_event:
            relation_id = related.record["id"]
            old_link = related.old_record
        else:
            old_link = await self.storage.find_one(
                self.relation.name,
                MatchExp.atom(f"{self.other_side}.id", "=", related.record["id"])
                & MatchExp.atom(f"{self.own_side}.id", "=", record["id"]),
                attribute_query=["id", item_state.key],
            )
            if old_link is None:
                return ComputationResult.skip()
            relation_id = old_link["id"]

        old = self.stored_item_value(item_state, old_link)
        if old is None:
            return ComputationResult.full_recompute(f"relation {relation_id} carries no item state")
        item = await self._fetch_item(relation_id)
        if item is None:
            return ComputationResult.skip()
        new = await self.item_value(item, data_deps)
        await item_state.set(item[LINK], new)
        logging.debug(f"{self.name}: item {relation_id} changed {old} -> {new}")
        return await self.accumulate(last_value, new - old, 0, record)


__all__ = [
    "AggregateHandle",
    "GlobalAggregateHandle",
    "PropertyAggregateHandle",
    "query_path",
    "read_path",
    "split_link_query",
    "record_ref_name",
    "as_list",
]
