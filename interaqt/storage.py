"""
interaqt Storage - Interface and In-Memory Implementation
=========================================================

The engine only talks to storage through :class:`Storage`. Every write emits
the :class:`~interaqt.events.MutationEvent` objects it caused as one batch,
after the write succeeded, to every registered listener.

:class:`MemoryStorage` keeps entity and relation rows in dictionaries keyed by
integer ids. It understands:

- nested creates: ``create("User", {"name": "a", "posts": [{"title": "x"}]})``
  creates the post and the relation record in the same batch; an item with an
  ``id`` links an existing record and an optional ``"&"`` item supplies the
  relation record's own properties
- relation cardinality: linking a ``1`` side replaces (and deletes) the old link
- attribute queries: ``["name", ["posts", {"attribute_query": ["title", ["&", {...}]]}]]``
- dotted match keys across relations (``"owner.id"``, ``"posts.&.role"``)
- transactions as snapshot stacks

Relation rows hold ``{"id", "source": {"id"}, "target": {"id"}, ...props}``.
"""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from cachetools import LRUCache

from .errors import StorageError
from .events import MutationEvent, MutationType, record_effects
from .match import MatchExp
from .schema import DICTIONARY_RECORD, Entity, Relation
from .util.values import call_maybe_async

Listener = Callable[[List[MutationEvent]], Union[None, Awaitable[None]]]
AttributeQuery = Sequence[Any]
Path = Union[str, Sequence[str]]

LINK = "&"


def _split_path(path: Path) -> List[str]:
    if isinstance(path, str):
        return [part for part in path.split(".") if part]
    return list(path)


class Storage(ABC):
    """Storage interface consumed by the engine."""

    @abstractmethod
    async def find(
        self,
        record_name: str,
        match: Optional[MatchExp] = None,
        modifier: Optional[Mapping[str, Any]] = None,
        attribute_query: Optional[AttributeQuery] = None,
    ) -> List[Dict[str, Any]]: ...

    async def find_one(
        self,
        record_name: str,
        match: Optional[MatchExp] = None,
        modifier: Optional[Mapping[str, Any]] = None,
        attribute_query: Optional[AttributeQuery] = None,
    ) -> Optional[Dict[str, Any]]:
        modifier = {**(modifier or {}), "limit": 1}
        records = await self.find(record_name, match, modifier, attribute_query)
        return records[0] if records else None

    @abstractmethod
    async def create(self, record_name: str, data: Mapping[str, Any]) -> Dict[str, Any]: ...

    @abstractmethod
    async def update(self, record_name: str, match: Optional[MatchExp], data: Mapping[str, Any]) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def delete(self, record_name: str, match: Optional[MatchExp]) -> List[Dict[str, Any]]: ...

    @abstractmethod
    async def get(self, concept: str, key: str, default: Any = None) -> Any: ...

    @abstractmethod
    async def set(self, concept: str, key: str, value: Any) -> None: ...

    @abstractmethod
    def listen(self, callback: Listener) -> None: ...

    @abstractmethod
    async def begin_transaction(self, name: Optional[str] = None) -> None: ...

    @abstractmethod
    async def commit_transaction(self, name: Optional[str] = None) -> None: ...

    @abstractmethod
    async def rollback_transaction(self, name: Optional[str] = None) -> None: ...

    @abstractmethod
    async def setup(
        self,
        entities: Iterable[Entity],
        relations: Iterable[Relation],
        states: Optional[Mapping[str, Any]] = None,
        install: bool = False,
    ) -> None: ...

    @abstractmethod
    def get_relation_name(self, record_name: str, path: Path) -> str: ...

    @abstractmethod
    def get_entity_name(self, record_name: str, path: Path) -> str: ...


class MemoryStorage(Storage):
    """
    Dictionary-backed storage.

    Every public write collects its events and dispatches them as one batch
    once the write is complete. Listeners run to completion (including any
    cascade of writes they trigger) before the call returns.
    """

    def __init__(self, path_cache_size: int = 1024):
        self._records: Dict[str, Union[Entity, Relation]] = {}
        self._relation_attrs: Dict[Tuple[str, str], Tuple[Relation, bool]] = {}
        self._tables: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._next_ids: Dict[str, int] = {}
        self._state: Dict[str, Dict[str, Any]] = {}
        self._listeners: List[Listener] = []
        self._transactions: List[Tuple[Optional[str], Any]] = []
        self._path_cache: LRUCache = LRUCache(maxsize=path_cache_size)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def setup(self, entities, relations, states=None, install=False) -> None:
        if install:
            self._tables.clear()
            self._next_ids.clear()
            self._state.clear()
        self._path_cache.clear()
        for entity in entities:
            self._register_record(entity)
        for relation in relations:
            self._register_record(relation)
            self._relation_attrs[(relation.source, relation.source_property)] = (relation, True)
            self._relation_attrs[(relation.target, relation.target_property)] = (relation, False)
        state = self._state.setdefault("state", {})
        for key, value in (states or {}).items():
            if install or key not in state:
                state[key] = copy.deepcopy(value)

    def _register_record(self, record: Union[Entity, Relation]) -> None:
        self._records[record.name] = record
        self._tables.setdefault(record.name, {})
        self._next_ids.setdefault(record.name, 1)

    def listen(self, callback: Listener) -> None:
        self._listeners.append(callback)

    async def _dispatch(self, events: List[MutationEvent]) -> None:
        if not events:
            return
        record_effects(events)
        for listener in list(self._listeners):
            await call_maybe_async(listener, events)

    # ------------------------------------------------------------------
    # Schema helpers
    # ------------------------------------------------------------------

    def _record(self, record_name: str) -> Union[Entity, Relation]:
        record = self._records.get(record_name)
        if record is None:
            raise StorageError(f"Unknown record '{record_name}'", context={"record_name": record_name})
        return record

    def _relation_info(self, record_name: str, attr: str) -> Optional[Tuple[Relation, bool]]:
        return self._relation_attrs.get((record_name, attr))

    def _is_reference(self, record_name: str, attr: str) -> bool:
        if attr == LINK:
            return True
        if isinstance(self._records.get(record_name), Relation) and attr in ("source", "target"):
            return True
        return (record_name, attr) in self._relation_attrs

    def _path_info(self, record_name: str, path: Path) -> Tuple[str, Optional[str]]:
        """Return ``(record name at end of path, last relation name on path)``."""
        parts = tuple(_split_path(path))
        key = (record_name, parts)
        cached = self._path_cache.get(key)
        if cached is not None:
            return cached

        current = record_name
        relation_name: Optional[str] = None
        previous_relation: Optional[str] = None
        for part in parts:
            record = self._record(current)
            if part == LINK:
                if previous_relation is None:
                    raise StorageError(f"'&' must follow a relation attribute in path {parts!r}")
                current = previous_relation
                relation_name = previous_relation
                previous_relation = None
                continue
            if isinstance(record, Relation) and part in ("source", "target"):
                relation_name = record.name
                current = record.source if part == "source" else record.target
                previous_relation = None
                continue
            info = self._relation_info(current, part)
            if info is None:
                raise StorageError(
                    f"'{part}' is not a relation attribute of '{current}'",
                    context={"record_name": record_name, "path": ".".join(parts)},
                )
            relation, is_source = info
            relation_name = relation.name
            previous_relation = relation.name
            current = relation.target if is_source else relation.source

        result = (current, relation_name)
        self._path_cache[key] = result
        return result

    def get_relation_name(self, record_name: str, path: Path) -> str:
        relation_name = self._path_info(record_name, path)[1]
        if relation_name is None:
            raise StorageError(f"Path {path!r} of '{record_name}' does not cross a relation")
        return relation_name

    def get_entity_name(self, record_name: str, path: Path) -> str:
        return self._path_info(record_name, path)[0]

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _step(
        self,
        record_name: str,
        row: Dict[str, Any],
        attr: str,
        link: Optional[Tuple[str, Dict[str, Any]]],
    ) -> List[Tuple[str, Dict[str, Any], Optional[Tuple[str, Dict[str, Any]]]]]:
        """Follow one reference attribute; yields ``(record_name, row, link)`` triples."""
        if attr == LINK:
            if link is None:
                return []
            return [(link[0], link[1], None)]

        record = self._record(record_name)
        if isinstance(record, Relation) and attr in ("source", "target"):
            ref = row.get(attr) or {}
            name = record.source if attr == "source" else record.target
            target = self._tables[name].get(ref.get("id"))
            return [(name, target, None)] if target is not None else []

        info = self._relation_info(record_name, attr)
        if info is None:
            return []
        relation, is_source = info
        own_side, other_side = ("source", "target") if is_source else ("target", "source")
        other_name = relation.target if is_source else relation.source
        result = []
        for relation_row in self._tables[relation.name].values():
            if relation_row[own_side]["id"] != row["id"]:
                continue
            other = self._tables[other_name].get(relation_row[other_side]["id"])
            if other is not None:
                result.append((other_name, other, (relation.name, relation_row)))
        return result

    def _values_at(self, record_name: str, row: Dict[str, Any], path: List[str]) -> List[Any]:
        nodes = [(record_name, row, None)]
        for part in path[:-1]:
            next_nodes = []
            for name, current, link in nodes:
                next_nodes.extend(self._step(name, current, part, link))
            nodes = next_nodes
        last = path[-1]
        values = []
        for name, current, link in nodes:
            if self._is_reference(name, last):
                values.extend(target for _, target, _ in self._step(name, current, last, link))
            else:
                values.append(current.get(last))
        return values

    def _matches(self, record_name: str, row: Dict[str, Any], match: Optional[MatchExp]) -> bool:
        if match is None:
            return True
        return match.evaluate(lambda key: self._values_at(record_name, row, _split_path(key)))

    def _project(
        self,
        record_name: str,
        row: Dict[str, Any],
        attribute_query: AttributeQuery,
        link: Optional[Tuple[str, Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        record = self._record(record_name)
        result: Dict[str, Any] = {"id": row["id"]}
        for item in attribute_query:
            if item == "*":
                for prop in record.properties:
                    result[prop.name] = copy.deepcopy(row.get(prop.name))
                if isinstance(record, Relation):
                    result["source"] = copy.deepcopy(row["source"])
                    result["target"] = copy.deepcopy(row["target"])
                continue
            if isinstance(item, str):
                if self._is_reference(record_name, item):
                    item = [item, {"attribute_query": ["id"]}]
                else:
                    result[item] = copy.deepcopy(row.get(item))
                    continue
            attr, options = item[0], item[1] if len(item) > 1 else {}
            sub_query = options.get("attribute_query", ["id"])
            related = [
                self._project(name, target, sub_query, next_link)
                for name, target, next_link in self._step(record_name, row, attr, link)
            ]
            if self._is_collection(record_name, attr):
                result[attr] = related
            else:
                result[attr] = related[0] if related else None
        return result

    def _is_collection(self, record_name: str, attr: str) -> bool:
        info = self._relation_info(record_name, attr)
        if info is None:
            return False
        relation, is_source = info
        return relation.source_is_collection if is_source else relation.target_is_collection

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def find(self, record_name, match=None, modifier=None, attribute_query=None):
        self._record(record_name)
        rows = [row for row in self._tables[record_name].values() if self._matches(record_name, row, match)]
        modifier = modifier or {}
        for field_name, direction in reversed(list((modifier.get("order_by") or {}).items())):
            rows.sort(
                key=lambda row: (row.get(field_name) is None, row.get(field_name)),
                reverse=str(direction).upper() == "DESC",
            )
        offset = modifier.get("offset") or 0
        limit = modifier.get("limit")
        rows = rows[offset:] if limit is None else rows[offset: offset + limit]
        query = attribute_query if attribute_query is not None else ["*"]
        return [self._project(record_name, row, query) for row in rows]

    async def get(self, concept, key, default=None):
        values = self._state.get(concept, {})
        if key not in values:
            return default
        return copy.deepcopy(values[key])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, record_name, data):
        events: List[MutationEvent] = []
        row = self._create(record_name, data, events)
        await self._dispatch(events)
        return copy.deepcopy(row)

    async def update(self, record_name, match, data):
        events: List[MutationEvent] = []
        rows = self._update(record_name, match, data, events)
        await self._dispatch(events)
        return copy.deepcopy(rows)

    async def delete(self, record_name, match):
        events: List[MutationEvent] = []
        rows = [row for row in list(self._tables[self._record(record_name).name].values())
                if self._matches(record_name, row, match)]
        deleted = []
        for row in rows:
            if row["id"] in self._tables[record_name]:
                deleted.append(self._delete_row(record_name, row["id"], events))
        await self._dispatch(events)
        return deleted

    async def set(self, concept, key, value):
        values = self._state.setdefault(concept, {})
        exists = key in values
        old = values.get(key)
        values[key] = copy.deepcopy(value)
        if concept != "state":
            return
        record = {"id": key, "key": key, "value": copy.deepcopy(value)}
        if exists:
            event = MutationEvent(
                DICTIONARY_RECORD,
                MutationType.UPDATE,
                record=record,
                old_record={"id": key, "key": key, "value": old},
                keys=("value",),
            )
        else:
            event = MutationEvent(DICTIONARY_RECORD, MutationType.CREATE, record=record)
        await self._dispatch([event])

    def _insert(self, record_name: str, values: Dict[str, Any]) -> Dict[str, Any]:
        record = self._record(record_name)
        row: Dict[str, Any] = {}
        for prop in record.properties:
            if prop.name in values:
                row[prop.name] = copy.deepcopy(values[prop.name])
            elif prop.default_value is not None:
                row[prop.name] = prop.get_default()
        for name, value in values.items():
            if name not in row:
                row[name] = copy.deepcopy(value)
        row["id"] = self._next_ids[record_name]
        self._next_ids[record_name] += 1
        self._tables[record_name][row["id"]] = row
        return row

    def _resolve_ref(self, record_name: str, ref: Any, events: List[MutationEvent]) -> int:
        if not isinstance(ref, Mapping):
            raise StorageError(f"Reference to '{record_name}' must be a mapping, got {ref!r}")
        ref_id = ref.get("id")
        if ref_id is not None:
            if ref_id not in self._tables[record_name]:
                raise StorageError(
                    f"'{record_name}' #{ref_id} does not exist",
                    context={"record_name": record_name, "id": ref_id},
                )
            return ref_id
        return self._create(record_name, ref, events)["id"]

    def _create(self, record_name: str, data: Mapping[str, Any], events: List[MutationEvent]) -> Dict[str, Any]:
        record = self._record(record_name)

        if isinstance(record, Relation):
            values = {k: v for k, v in data.items() if k not in ("source", "target", "id")}
            if "source" not in data or "target" not in data:
                raise StorageError(f"Relation '{record_name}' requires source and target")
            source_id = self._resolve_ref(record.source, data["source"], events)
            target_id = self._resolve_ref(record.target, data["target"], events)
            return self._link(record, source_id, target_id, values, events)

        plain = {}
        references = []
        for key, value in data.items():
            if key == "id":
                continue
            if (record_name, key) in self._relation_attrs:
                references.append((key, value))
            else:
                plain[key] = value

        row = self._insert(record_name, plain)
        events.append(MutationEvent(record_name, MutationType.CREATE, record=copy.deepcopy(row)))
        for attr, value in references:
            self._link_attribute(record_name, row["id"], attr, value, events)
        return row

    def _link_attribute(self, record_name: str, row_id: int, attr: str, value: Any, events: List[MutationEvent]) -> None:
        relation, is_source = self._relation_attrs[(record_name, attr)]
        other_name = relation.target if is_source else relation.source
        items = value if isinstance(value, (list, tuple)) else [value]
        for item in items:
            if item is None:
                continue
            link_values = dict(item.get(LINK) or {})
            ref = {k: v for k, v in item.items() if k != LINK}
            other_id = self._resolve_ref(other_name, ref, events)
            if is_source:
                self._link(relation, row_id, other_id, link_values, events)
            else:
                self._link(relation, other_id, row_id, link_values, events)

    def _link(
        self,
        relation: Relation,
        source_id: int,
        target_id: int,
        values: Mapping[str, Any],
        events: List[MutationEvent],
    ) -> Dict[str, Any]:
        table = self._tables[relation.name]
        for relation_row in list(table.values()):
            replaced = (
                (not relation.source_is_collection and relation_row["source"]["id"] == source_id)
                or (not relation.target_is_collection and relation_row["target"]["id"] == target_id)
            )
            if replaced:
                self._delete_row(relation.name, relation_row["id"], events)

        row = self._insert(relation.name, dict(values))
        row["source"] = {"id": source_id}
        row["target"] = {"id": target_id}
        events.append(MutationEvent(relation.name, MutationType.CREATE, record=copy.deepcopy(row)))
        return row

    def _update(self, record_name: str, match: Optional[MatchExp], data: Mapping[str, Any], events: List[MutationEvent]) -> List[Dict[str, Any]]:
        record = self._record(record_name)
        if isinstance(record, Relation) and ("source" in data or "target" in data):
            raise StorageError(f"Cannot move the ends of relation '{record_name}'; delete and create instead")

        plain = {k: v for k, v in data.items() if k != "id" and (record_name, k) not in self._relation_attrs}
        references = [(k, v) for k, v in data.items() if (record_name, k) in self._relation_attrs]
        rows = [row for row in self._tables[record_name].values() if self._matches(record_name, row, match)]

        for row in rows:
            if plain:
                old = copy.deepcopy(row)
                for key, value in plain.items():
                    row[key] = copy.deepcopy(value)
                events.append(
                    MutationEvent(
                        record_name,
                        MutationType.UPDATE,
                        record=copy.deepcopy(row),
                        old_record=old,
                        keys=tuple(plain),
                    )
                )
            for attr, value in references:
                self._link_attribute(record_name, row["id"], attr, value, events)
        return rows

    def _delete_row(self, record_name: str, row_id: int, events: List[MutationEvent]) -> Dict[str, Any]:
        for relation in list(self._records.values()):
            if not isinstance(relation, Relation):
                continue
            for end in ("source", "target"):
                if getattr(relation, end) != record_name:
                    continue
                for relation_row in list(self._tables[relation.name].values()):
                    if relation_row[end]["id"] == row_id and relation_row["id"] in self._tables[relation.name]:
                        self._delete_row(relation.name, relation_row["id"], events)

        row = self._tables[record_name].pop(row_id)
        events.append(MutationEvent(record_name, MutationType.DELETE, record=copy.deepcopy(row)))
        return row

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _snapshot(self) -> Any:
        return copy.deepcopy((self._tables, self._next_ids, self._state))

    async def begin_transaction(self, name=None):
        self._transactions.append((name, self._snapshot()))
        logging.debug(f"Transaction started: {name} (depth={len(self._transactions)})")

    async def commit_transaction(self, name=None):
        if not self._transactions:
            raise StorageError("commit without an open transaction", context={"transaction": name})
        self._transactions.pop()

    async def rollback_transaction(self, name=None):
        if not self._transactions:
            raise StorageError("rollback without an open transaction", context={"transaction": name})
        _, (tables, next_ids, state) = self._transactions.pop()
        self._tables, self._next_ids, self._state = tables, next_ids, state
        logging.debug(f"Transaction rolled back: {name}")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def count(self, record_name: str) -> int:
        return len(self._tables[self._record(record_name).name])

    def __repr__(self) -> str:
        sizes = ", ".join(f"{name}={len(rows)}" for name, rows in self._tables.items())
        return f"MemoryStorage({sizes})"


__all__ = ["Storage", "MemoryStorage", "LINK"]
