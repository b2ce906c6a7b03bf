"""
interaqt Data Dependency Index
==============================

Translates every computation's declared data dependencies into *source maps*:
"an event of type T on record R may change this computation". The index is a
two-level tree ``record_name -> event type -> [SourceMap]`` kept in
declaration order.

Translation rules:

    RecordsDataDep(source=R, attribute_query=Q)
        create/delete on R, update on R for primitive attributes of Q,
        and for each relation attribute ``[attr, {attribute_query: Q'}]``
        create/delete on the relation plus updates on the related record,
        recursively, with ``target_path`` leading back to R

    PropertyDataDep(attribute_query=Q) on host H
        as above starting from H; primitive attributes of H also listen to
        creation of H

    GlobalDataDep(source=D)
        create/update on the dictionary record filtered by D's key

    Event-based computations
        whatever ``event_sources()`` returns

``'*'`` expands to the declared properties of the record at that point.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from .computations.base import Computation, GlobalDataDep, PropertyDataDep, RecordsDataDep
from .errors import ComputationDataDepError
from .events import MutationEvent
from .schema import DICTIONARY_RECORD, SchemaRegistry
from .storage import LINK, Storage


@dataclass(eq=False)
class SourceMap:
    data_dep: Any
    type: str
    record_name: str
    source_record_name: Optional[str]
    computation: Computation
    target_path: Tuple[str, ...] = ()
    attributes: Tuple[str, ...] = ()
    is_relation: bool = False
    dictionary_key: Optional[str] = None

    def __repr__(self) -> str:
        path = ".".join(self.target_path) or "-"
        return f"SourceMap({self.type} {self.record_name} via {path} -> {self.computation.name})"


class SourceMapIndex:
    """Lookup from mutation events to the computations they may affect."""

    def __init__(self, schema: SchemaRegistry, storage: Storage):
        self.schema = schema
        self.storage = storage
        self.source_maps: List[SourceMap] = []
        self._tree: Dict[str, Dict[str, List[SourceMap]]] = {}

    def initialize(self, computations: Iterable[Computation]) -> None:
        self.clear()
        for computation in computations:
            if computation.event_based:
                for record_name, event_type in computation.event_sources():
                    self.add(SourceMap(None, event_type, record_name, record_name, computation))
                continue
            for dep_name, dep in computation.data_deps.items():
                for source_map in self.convert_data_dep(dep_name, dep, computation):
                    self.add(source_map)

    def add(self, source_map: SourceMap) -> None:
        self.source_maps.append(source_map)
        self._tree.setdefault(source_map.record_name, {}).setdefault(source_map.type, []).append(source_map)

    def clear(self) -> None:
        self.source_maps = []
        self._tree = {}

    def find(self, event: MutationEvent) -> List[SourceMap]:
        return list(self._tree.get(event.record_name, {}).get(event.type.value, ()))

    def for_computation(self, computation: Computation) -> List[SourceMap]:
        return [source for source in self.source_maps if source.computation is computation]

    @staticmethod
    def should_trigger(source: SourceMap, event: MutationEvent) -> bool:
        if source.dictionary_key is not None:
            if (event.record or {}).get("key") != source.dictionary_key:
                return False
        if source.type != "update":
            return True
        return any(event.changed(attr) for attr in source.attributes if attr != "id")

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def convert_data_dep(self, dep_name: str, dep: Any, computation: Computation) -> List[SourceMap]:
        if isinstance(dep, RecordsDataDep):
            if self.schema.get_record(dep.source) is None:
                raise ComputationDataDepError(
                    f"{computation.name} depends on unknown record '{dep.source}'",
                    dep_name=dep_name,
                    dep_type=dep.type,
                    computation_name=computation.name,
                )
            maps = [
                SourceMap(dep, "create", dep.source, dep.source, computation),
                SourceMap(dep, "delete", dep.source, dep.source, computation),
            ]
            if dep.attribute_query:
                maps.extend(self._convert_attributes(dep, dep.source, dep.attribute_query, (), computation))
            return maps

        if isinstance(dep, PropertyDataDep):
            host = computation.data_context.host
            if host is None:
                raise ComputationDataDepError(
                    f"{computation.name} declares a property dependency outside a property context",
                    dep_name=dep_name,
                    dep_type=dep.type,
                    computation_name=computation.name,
                )
            # A property never listens to its own writes.
            own = (computation.data_context.id.name,)
            return self._convert_attributes(
                dep, host.name, dep.attribute_query, (), computation, include_create=True, exclude=own
            )

        if isinstance(dep, GlobalDataDep):
            key = dep.source.name
            return [
                SourceMap(dep, "create", DICTIONARY_RECORD, None, computation, attributes=("value",), dictionary_key=key),
                SourceMap(dep, "update", DICTIONARY_RECORD, None, computation, attributes=("value",), dictionary_key=key),
            ]

        raise ComputationDataDepError(
            f"{computation.name} declares an unsupported dependency {dep!r}",
            dep_name=dep_name,
            dep_type=getattr(dep, "type", type(dep).__name__),
            computation_name=computation.name,
        )

    def _declared_properties(self, record_name: str) -> List[str]:
        record = self.schema.get_record(record_name)
        return [prop.name for prop in record.properties] if record is not None else []

    def _is_relation_attribute(self, record_name: str, attr: str) -> bool:
        if attr == LINK:
            return True
        if attr in ("source", "target") and self.schema.get_relation(record_name) is not None:
            return True
        return self.schema.relation_for(record_name, attr) is not None

    def _convert_attributes(
        self,
        dep: Any,
        base: str,
        attributes: Sequence[Any],
        context: Tuple[str, ...],
        computation: Computation,
        include_create: bool = False,
        exclude: Tuple[str, ...] = (),
    ) -> List[SourceMap]:
        maps: List[SourceMap] = []
        record_name = self.storage.get_entity_name(base, context) if context else base

        primitive: List[str] = []
        related: List[Tuple[str, Dict[str, Any]]] = []
        for attr in attributes:
            if attr == "*":
                primitive.extend(p for p in self._declared_properties(record_name) if p not in primitive)
            elif isinstance(attr, str):
                if self._is_relation_attribute(record_name, attr):
                    related.append((attr, {"attribute_query": ["id"]}))
                elif attr not in primitive:
                    primitive.append(attr)
            elif isinstance(attr, (list, tuple)) and attr:
                related.append((attr[0], attr[1] if len(attr) > 1 else {}))
            else:
                raise ComputationDataDepError(
                    f"Unknown attribute query entry {attr!r}",
                    dep_type=dep.type,
                    computation_name=computation.name,
                )

        primitive = [attr for attr in primitive if attr not in exclude]
        if primitive:
            if include_create:
                maps.append(SourceMap(dep, "create", record_name, base, computation, target_path=context))
            maps.append(
                SourceMap(dep, "update", record_name, base, computation, target_path=context, attributes=tuple(primitive))
            )

        for attr, options in related:
            maps.extend(
                self._convert_relation_attribute(
                    dep, base, options.get("attribute_query", []), context + (attr,), computation
                )
            )
        return maps

    def _convert_relation_attribute(
        self,
        dep: Any,
        base: str,
        sub_attributes: Sequence[Any],
        context: Tuple[str, ...],
        computation: Computation,
    ) -> List[SourceMap]:
        maps: List[SourceMap] = []
        parent = self.storage.get_entity_name(base, context[:-1]) if len(context) > 1 else base
        # The ends of a relation record cannot be relinked, only the record itself created or deleted.
        is_relation_end = self.schema.get_relation(parent) is not None and context[-1] in ("source", "target")
        if context[-1] != LINK and not is_relation_end:
            relation_name = self.storage.get_relation_name(base, context)
            for event_type in ("create", "delete"):
                maps.append(
                    SourceMap(dep, event_type, relation_name, base, computation, target_path=context, is_relation=True)
                )
        if sub_attributes:
            maps.extend(self._convert_attributes(dep, base, sub_attributes, context, computation))
        return maps

    def __len__(self) -> int:
        return len(self.source_maps)


__all__ = ["SourceMap", "SourceMapIndex"]
