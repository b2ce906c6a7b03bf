"""
interaqt Scheduler - From Mutation Batches to Computation Runs
==============================================================

The scheduler owns every computation handle of a controller. It

1. builds the handles from the schema in declaration order, through the
   ``(kind, context type)`` dispatch table,
2. binds their states and installs default values,
3. indexes their data dependencies as source maps, and
4. listens to storage: for every event of a batch it finds the affected
   computations, works out which records are dirty and runs the computation
   for each of them.

A computation's result is written back through the controller, which is itself
a storage write and therefore a new batch. Batches nest, so one interaction
produces a *cascade* that ends when no computation is affected any more. The
:class:`CascadeGuard` bounds that cascade.

Dirty records for data-based computations:

    no target path          the mutated record itself
    update of a related     hosts whose ``target_path.id`` is the record
    relation create         hosts whose ``target_path.&.id`` is the relation record
    relation delete         hosts whose ``target_path[:-1].id`` is the relation's
                            end on the host side

Each host receives a derived ``update`` event whose ``related_attribute`` is the
target path and whose ``related_mutation_event`` is the original change.
"""

import copy
import logging
from collections import Counter
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Dict, Iterator, List, Optional, Set, Tuple

from .computations.base import (
    Computation,
    ComputationResultAsync,
    ComputationResultFullRecompute,
    ComputationResultResolved,
    ComputationResultSkip,
    DataContext,
    DataContextType,
    GlobalBoundState,
    GlobalDataDep,
    PropertyDataDep,
    RecordBoundState,
    RecordsDataDep,
)
from .computations.registry import ComputationRegistry
from .config import EngineConfig
from .errors import ComputationError, FrameworkError, SchedulerError
from .events import MutationEvent, MutationType
from .match import MatchExp
from .schema import DICTIONARY_RECORD, SchemaRegistry
from .source_map import SourceMap, SourceMapIndex
from .storage import LINK
from .util.cycle_detector import DependencyGraph

if TYPE_CHECKING:
    from .controller import Controller


# ============================================================================
# CASCADE GUARD
# ============================================================================


class CascadeGuard:
    """
    Budget for one mutation cascade.

    A cascade starts with the outermost batch and ends when it has been fully
    processed. Within it the guard counts nested batches (depth), computation
    runs (steps) and runs per ``(computation, record)`` key. A key that is
    re-entered by its own output while it is still running is a cycle.
    """

    def __init__(self, config: EngineConfig):
        self.config = config
        self.depth = 0
        self.steps = 0
        self.visits: Counter = Counter()
        self.active: Set[Tuple[int, Any]] = set()

    def enter_batch(self) -> None:
        self.depth += 1
        if self.depth > self.config.max_cascade_depth:
            depth = self.depth
            self.depth -= 1
            raise SchedulerError(
                f"Mutation cascade exceeded {self.config.max_cascade_depth} nested batches",
                scheduling_phase="cascade-depth",
                context={"depth": depth},
            )

    def exit_batch(self) -> None:
        self.depth -= 1
        if self.depth == 0:
            self.reset()

    def reset(self) -> None:
        self.depth = 0
        self.steps = 0
        self.visits.clear()
        self.active.clear()

    @contextmanager
    def visit(self, computation: Computation, record_id: Any, own_output: bool = False) -> Iterator[None]:
        key = (id(computation), record_id)
        if key in self.active and own_output:
            raise SchedulerError(
                f"{computation.name} is triggered by its own output for record {record_id!r}",
                scheduling_phase="cycle",
                computation_name=computation.name,
                context={"record_id": record_id},
            )
        self.steps += 1
        if self.steps > self.config.max_cascade_steps:
            raise SchedulerError(
                f"Mutation cascade exceeded {self.config.max_cascade_steps} computation runs",
                scheduling_phase="cascade-steps",
                computation_name=computation.name,
            )
        self.visits[key] += 1
        if self.visits[key] > self.config.max_revisits:
            raise SchedulerError(
                f"{computation.name} ran more than {self.config.max_revisits} times "
                f"for record {record_id!r} in one cascade",
                scheduling_phase="revisit-budget",
                computation_name=computation.name,
                context={"record_id": record_id},
            )

        reentered = key in self.active
        self.active.add(key)
        try:
            yield
        finally:
            if not reentered:
                self.active.discard(key)


# ============================================================================
# SCHEDULER
# ============================================================================


class Scheduler:
    """Runs computations in response to storage mutation batches."""

    def __init__(
        self,
        controller: "Controller",
        schema: SchemaRegistry,
        registry: ComputationRegistry,
        config: Optional[EngineConfig] = None,
    ):
        self.controller = controller
        self.schema = schema
        self.registry = registry
        self.config = config or EngineConfig()
        self.computations: List[Computation] = []
        self.source_maps = SourceMapIndex(schema, controller.storage)
        self.guard = CascadeGuard(self.config)
        self.counters: Counter = Counter()
        self._batches: List[List[MutationEvent]] = []
        self._by_name: Dict[str, Computation] = {}

        for data_context, args in list(self._declared_computations()):
            computation = registry.create(controller, args, data_context)
            self.computations.append(computation)
            self._by_name[computation.name] = computation
            if computation.is_async:
                controller.async_tasks.register(computation)

    def _declared_computations(self) -> Iterator[Tuple[DataContext, Any]]:
        """Every declared computation with its data context, in declaration order."""
        for entity in self.schema.entities:
            if entity.computation is not None:
                yield DataContext(DataContextType.ENTITY, entity), entity.computation
            for prop in entity.properties:
                if prop.computation is not None:
                    yield DataContext(DataContextType.PROPERTY, prop, entity), prop.computation
        for relation in self.schema.relations:
            if relation.computation is not None:
                yield DataContext(DataContextType.RELATION, relation), relation.computation
            for prop in relation.properties:
                if prop.computation is not None:
                    yield DataContext(DataContextType.PROPERTY, prop, relation), prop.computation
        for dictionary in self.schema.dictionaries:
            if dictionary.computation is not None:
                yield DataContext(DataContextType.GLOBAL, dictionary), dictionary.computation

    @property
    def current_batch(self) -> List[MutationEvent]:
        """The batch being processed (innermost when batches nest)."""
        return self._batches[-1] if self._batches else []

    def get_computation(self, name: str) -> Optional[Computation]:
        return self._by_name.get(name)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def create_states(self) -> Dict[str, Any]:
        """Instantiate and bind every computation's states; return global state defaults."""
        defaults: Dict[str, Any] = {}
        for computation in self.computations:
            computation.state = computation.create_state() or {}
            for state_name, state in computation.state.items():
                if isinstance(state, GlobalBoundState):
                    state.bind(self.controller, f"{computation.name}_{state_name}")
                    defaults[state.key] = state.default
                elif isinstance(state, RecordBoundState):
                    if state.record_name is None:
                        state.record_name = computation.data_context.record_name
                    state.bind(self.controller, f"_{computation.name}_bound_{state_name}")
                else:
                    raise SchedulerError(
                        f"{computation.name}: state '{state_name}' is not a bound state",
                        scheduling_phase="create-states",
                        computation_name=computation.name,
                    )
        return defaults

    async def setup(self, install: bool = False) -> None:
        await self.setup_default_values(install)
        await self.setup_state_default_values(install)
        self.source_maps.initialize(self.computations)
        self.controller.storage.listen(self.on_batch)
        if self.config.warn_dependency_order:
            self.dependency_report()
        logging.debug(
            f"Scheduler ready: {len(self.computations)} computations, {len(self.source_maps)} source maps"
        )

    async def setup_default_values(self, install: bool = False) -> None:
        for computation in self.computations:
            data_context = computation.data_context
            if data_context.type is DataContextType.PROPERTY:
                prop = data_context.id
                default = computation.get_default_value()
                if prop.default_value is None and default is not None:
                    prop.default_value = lambda value=default: copy.deepcopy(value)
                continue
            if not install:
                continue
            default = computation.get_default_value()
            if data_context.type is DataContextType.GLOBAL:
                await self.controller.storage.set("state", data_context.id.name, default)
            elif default is not None:
                await self.controller.apply_result(data_context, default)

    async def setup_state_default_values(self, install: bool = False) -> None:
        for computation in self.computations:
            for state in computation.state.values():
                if not isinstance(state, GlobalBoundState):
                    continue
                missing = object()
                if install or await self.controller.storage.get("state", state.key, missing) is missing:
                    await self.controller.storage.set("state", state.key, state.default)

    # ------------------------------------------------------------------
    # Batch processing
    # ------------------------------------------------------------------

    async def on_batch(self, events: List[MutationEvent]) -> None:
        self.guard.enter_batch()
        self._batches.append(events)
        self.counters["batches"] += 1
        try:
            for event in events:
                for source in self.source_maps.find(event):
                    if not SourceMapIndex.should_trigger(source, event):
                        continue
                    await self.run_dirty_records_computation(source, event)
        finally:
            self._batches.pop()
            self.guard.exit_batch()

    async def run_dirty_records_computation(self, source: SourceMap, event: MutationEvent) -> None:
        computation = source.computation
        if computation.event_based:
            dirty = await self.compute_event_based_dirty_records(source, event)
        else:
            dirty = await self.compute_data_based_dirty_records(source, event)

        own_output = self._is_own_output(computation, event)
        is_global = computation.data_context.type is DataContextType.GLOBAL
        for record, dirty_event in dirty:
            # A global value is one key whatever record triggered it.
            record_id = record.get("id") if isinstance(record, dict) and not is_global else None
            with self.guard.visit(computation, record_id, own_output):
                await self.run_computation(computation, dirty_event, record)

    async def compute_event_based_dirty_records(
        self, source: SourceMap, event: MutationEvent
    ) -> List[Tuple[Optional[Dict[str, Any]], MutationEvent]]:
        computation = source.computation
        if computation.compute_dirty_records is None:
            return [(None, event)]
        records = await computation.compute_dirty_records(event) or []
        if not isinstance(records, list):
            records = [records]
        return [(record, event) for record in records]

    async def compute_data_based_dirty_records(
        self, source: SourceMap, event: MutationEvent
    ) -> List[Tuple[Optional[Dict[str, Any]], MutationEvent]]:
        if not source.target_path:
            if source.computation.data_context.type is DataContextType.PROPERTY and event.is_deletion:
                # The host is gone; nothing left to maintain.
                return []
            return [(event.record, event.derive(data_dep=source.data_dep))]

        hosts = await self.compute_dirty_records(source, event)
        return [
            (
                host,
                MutationEvent(
                    source.source_record_name,
                    MutationType.UPDATE,
                    record=host,
                    old_record=self.compute_old_record(host, source, event),
                    related_mutation_event=event,
                    related_attribute=tuple(source.target_path),
                    data_dep=source.data_dep,
                ),
            )
            for host in hosts
        ]

    async def compute_dirty_records(self, source: SourceMap, event: MutationEvent) -> List[Dict[str, Any]]:
        """Records of ``source.source_record_name`` reaching the mutated record through ``target_path``."""
        path = list(source.target_path)
        if not source.is_relation:
            if not event.is_update:
                return []
            match = MatchExp.atom(".".join(path + ["id"]), "=", event.record_id)
        elif event.is_creation:
            match = MatchExp.atom(".".join(path + [LINK, "id"]), "=", event.record["id"])
        elif event.is_deletion:
            _, is_source = self._relation_at(source)
            host_end = event.record["source" if is_source else "target"]
            match = MatchExp.atom(".".join(path[:-1] + ["id"]), "=", host_end["id"])
        else:
            return []

        return await self.controller.storage.find(
            source.source_record_name, match, attribute_query=self._host_query(source)
        )

    def _relation_at(self, source: SourceMap):
        path = source.target_path
        parent = (
            self.controller.storage.get_entity_name(source.source_record_name, path[:-1])
            if len(path) > 1
            else source.source_record_name
        )
        found = self.schema.relation_for(parent, path[-1])
        if found is None:
            raise SchedulerError(
                f"{parent}.{path[-1]} is not a relation attribute",
                scheduling_phase="dirty-records",
                computation_name=source.computation.name,
            )
        return found

    @staticmethod
    def _host_query(source: SourceMap) -> List[Any]:
        query = getattr(source.data_dep, "attribute_query", None) or []
        return ["*", *[item for item in query if item != "*"]]

    def compute_old_record(self, host: Dict[str, Any], source: SourceMap, event: MutationEvent) -> Dict[str, Any]:
        """
        The host as it was before ``event``: the related value at the end of
        ``target_path`` is rewound (creation removed, deletion restored, update
        reverted). Only the records along the path are copied.
        """
        if not source.target_path:
            return event.old_record
        item_end = None
        if source.is_relation:
            _, is_source = self._relation_at(source)
            item_end = "target" if is_source else "source"
        return self._rewind(dict(host), list(source.target_path), source, event, item_end)

    def _rewind(self, node, path, source, event, item_end):
        attr, rest = path[0], path[1:]
        value = node.get(attr)
        if rest:
            if isinstance(value, list):
                node[attr] = [self._rewind(dict(item), rest, source, event, item_end) for item in value]
            elif isinstance(value, dict):
                node[attr] = self._rewind(dict(value), rest, source, event, item_end)
            return node

        if source.is_relation:
            node[attr] = self._rewind_link(node, attr, value, event, item_end)
        elif isinstance(value, list):
            node[attr] = [
                {**item, **event.old_record} if item.get("id") == event.record_id else item for item in value
            ]
        elif isinstance(value, dict) and value.get("id") == event.record_id:
            node[attr] = {**value, **event.old_record}
        return node

    @staticmethod
    def _rewind_link(node, attr, value, event, item_end):
        relation_record = event.record
        item_id = relation_record[item_end]["id"]
        host_end = "source" if item_end == "target" else "target"

        def is_linked(item):
            link = item.get(LINK)
            if isinstance(link, dict) and link.get("id") is not None:
                return link["id"] == relation_record["id"]
            return item.get("id") == item_id

        if event.is_creation:
            if isinstance(value, list):
                return [item for item in value if not is_linked(item)]
            return None if isinstance(value, dict) and is_linked(value) else value

        restored = {"id": item_id, LINK: relation_record}
        if node.get("id") != relation_record[host_end]["id"]:
            return value
        if isinstance(value, list):
            return value + [restored]
        return restored if value is None else value

    def _is_own_output(self, computation: Computation, event: MutationEvent) -> bool:
        """True if ``event`` is the write of ``computation``'s own result."""
        data_context = computation.data_context
        if event.related_attribute:
            return False
        if data_context.type is DataContextType.PROPERTY:
            return (
                event.record_name == data_context.host.name
                and event.is_update
                and data_context.id.name in event.keys
            )
        if data_context.type is DataContextType.GLOBAL:
            return event.record_name == DICTIONARY_RECORD and (event.record or {}).get("key") == data_context.id.name
        return event.record_name == data_context.id.name

    # ------------------------------------------------------------------
    # Running computations
    # ------------------------------------------------------------------

    async def resolve_data_deps(
        self,
        computation: Computation,
        record: Optional[Dict[str, Any]] = None,
        names: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        storage = self.controller.storage
        values: Dict[str, Any] = {}
        for dep_name in names if names is not None else list(computation.data_deps):
            dep = computation.data_deps[dep_name]
            if isinstance(dep, RecordsDataDep):
                values[dep_name] = await storage.find(dep.source, dep.match, attribute_query=dep.attribute_query)
            elif isinstance(dep, PropertyDataDep):
                if record is None or record.get("id") is None:
                    values[dep_name] = None
                else:
                    values[dep_name] = await storage.find_one(
                        computation.data_context.host.name,
                        MatchExp.atom("id", "=", record["id"]),
                        attribute_query=["id", *dep.attribute_query],
                    )
            elif isinstance(dep, GlobalDataDep):
                values[dep_name] = await storage.get("state", dep.source.name)
            else:
                raise SchedulerError(
                    f"{computation.name}: cannot resolve dependency '{dep_name}' ({dep!r})",
                    scheduling_phase="resolve-data-deps",
                    computation_name=computation.name,
                )
        return values

    async def run_computation(
        self,
        computation: Computation,
        event: Optional[MutationEvent],
        record: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.counters["runs"] += 1
        phase = "compute"
        as_patch = False
        try:
            if computation.incremental_compute is not None:
                phase = "incremental-compute"
                last_value = await self._last_value(computation, record)
                aux = await self.resolve_data_deps(computation, record, computation.auxiliary_dep_names)
                result = await computation.incremental_compute(last_value, event, record, aux)
            elif computation.incremental_patch_compute is not None:
                phase = "incremental-patch-compute"
                as_patch = True
                last_value = await self._last_value(computation, record)
                aux = await self.resolve_data_deps(computation, record, computation.auxiliary_dep_names)
                result = await computation.incremental_patch_compute(last_value, event, record, aux)
            else:
                result = await computation.compute(await self.resolve_data_deps(computation, record), record)

            if isinstance(result, ComputationResultFullRecompute):
                self.counters["full_recomputes"] += 1
                logging.debug(f"{computation.name}: full recompute ({result.reason})")
                phase = "compute"
                as_patch = False
                result = await computation.compute(await self.resolve_data_deps(computation, record), record)

            if isinstance(result, ComputationResultSkip):
                self.counters["skips"] += 1
                return
            if isinstance(result, ComputationResultAsync):
                self.counters["async_tasks"] += 1
                await self.controller.async_tasks.create_task(computation, result.args, record)
                return
            if isinstance(result, ComputationResultResolved):
                phase = "async-return"
                result = await computation.async_return(result.result, result.args)

            phase = "apply-result"
            if as_patch:
                await self.controller.apply_result_patch(computation.data_context, result, record)
            else:
                await self.controller.apply_result(computation.data_context, result, record)
        except FrameworkError:
            raise
        except Exception as e:
            raise ComputationError(
                f"{computation.name} failed during {phase}: {e}",
                handle_name=computation.handle_name,
                computation_name=computation.name,
                data_context=computation.data_context.name,
                computation_phase=phase,
                caused_by=e,
            ) from e

    async def recompute_due(self) -> int:
        """
        Run every time-dependent computation whose next recompute time has
        passed, once per due record. Returns the number of runs.
        """
        runs = 0
        self.guard.enter_batch()
        try:
            for computation in self.computations:
                due_records = getattr(computation, "due_records", None)
                if due_records is None:
                    continue
                for record in await due_records():
                    record_id = record["id"] if record is not None else None
                    with self.guard.visit(computation, record_id):
                        await self.run_computation(computation, None, record)
                    runs += 1
        finally:
            self.guard.exit_batch()
        if runs:
            logging.debug(f"Recomputed {runs} time-dependent value(s)")
        return runs

    async def _last_value(self, computation: Computation, record: Optional[Dict[str, Any]]) -> Any:
        if not computation.use_last_value:
            return None
        return await self.controller.retrieve_last_value(computation.data_context, record)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, int]:
        return {
            "computations": len(self.computations),
            "source_maps": len(self.source_maps),
            "batches": self.counters["batches"],
            "runs": self.counters["runs"],
            "full_recomputes": self.counters["full_recomputes"],
            "skips": self.counters["skips"],
            "async_tasks": self.counters["async_tasks"],
        }

    def _writes(self, computation: Computation, source: SourceMap) -> bool:
        """True if ``source`` listens to what ``computation`` writes."""
        data_context = computation.data_context
        if data_context.type is DataContextType.GLOBAL:
            return source.dictionary_key == data_context.id.name
        if data_context.type is DataContextType.PROPERTY:
            return (
                source.record_name == data_context.host.name
                and source.type == "update"
                and data_context.id.name in source.attributes
            )
        return source.record_name == data_context.id.name

    def dependency_report(self) -> DependencyGraph:
        """
        Producer -> consumer graph over computations. Cycles and consumers
        declared before their producers are logged as warnings.
        """
        graph: DependencyGraph = DependencyGraph()
        for computation in self.computations:
            graph.add_node(computation.name)
        for producer in self.computations:
            for source in self.source_maps.source_maps:
                consumer = source.computation
                if consumer is producer or not self._writes(producer, source):
                    continue
                graph.add_edge(producer.name, consumer.name)

        for cycle in graph.cycles:
            logging.warning(f"Computation cycle: {' -> '.join(cycle)}")
        declared = [computation.name for computation in self.computations]
        for producer, consumer in graph.order_violations(declared):
            logging.warning(f"{consumer} is declared before {producer}, which it depends on")
        return graph

    def __repr__(self) -> str:
        return f"Scheduler(computations={len(self.computations)}, source_maps={len(self.source_maps)})"


__all__ = ["Scheduler", "CascadeGuard"]
