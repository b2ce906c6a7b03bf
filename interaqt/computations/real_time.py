"""
RealTime: values that change with the clock.

A RealTime computation is recomputed like any data-based computation when its
dependencies change, and also whenever its next recompute time has passed.
Each run records ``last_recompute_time`` and ``next_recompute_time`` in bound
states; :meth:`Scheduler.recompute_due` reruns the contexts that are due.
"""

from typing import Any, Dict, List, Optional, Tuple

from ..errors import ComputationError
from ..match import MatchExp
from ..util.values import call_maybe_async
from .base import DataBasedComputation, DataContextType, GlobalBoundState, PropertyDataDep, RecordBoundState
from .expressions import Equation, Expression, Inequality

NOW = "now"


def _is_due(last_time: Optional[float], next_time: Optional[float], now: float) -> bool:
    if last_time is None:
        return True
    if next_time is None:
        return False
    return next_time <= now


class _RealTimeHandle(DataBasedComputation):
    kind = "RealTime"
    use_last_value = False

    def __init__(self, controller, args, data_context):
        super().__init__(controller, args, data_context)
        self.data_deps.update(args.data_deps or {})

    def now(self) -> float:
        return self.args.clock()

    async def evaluate(self, data_deps: Dict[str, Any]) -> Tuple[Any, float, Optional[float]]:
        """``(value, now, next recompute time)`` for the current clock."""
        result = await call_maybe_async(self.args.callback, Expression.variable(NOW), data_deps)
        now = self.now()

        if isinstance(result, Expression):
            if self.args.next_recompute_time is None:
                raise ComputationError(
                    f"{self.name}: an expression result needs next_recompute_time",
                    handle_name=self.handle_name,
                    computation_name=self.name,
                    data_context=self.data_context.name,
                    computation_phase="compute",
                )
            interval = await call_maybe_async(self.args.next_recompute_time, now, data_deps)
            return result.evaluate({NOW: now}), now, now + interval

        if isinstance(result, (Inequality, Equation)):
            # A boundary already behind the clock cannot flip the value again.
            boundary = result.solve()
            next_time = boundary if boundary is not None and boundary > now else None
            return result.evaluate({NOW: now}), now, next_time

        raise ComputationError(
            f"{self.name}: callback returned {type(result).__name__}, expected an Expression, Inequality or Equation",
            handle_name=self.handle_name,
            computation_name=self.name,
            data_context=self.data_context.name,
            computation_phase="compute",
        )


class GlobalRealTimeHandle(_RealTimeHandle):
    context_types = (DataContextType.GLOBAL,)

    def create_state(self):
        return {
            "last_recompute_time": GlobalBoundState(None),
            "next_recompute_time": GlobalBoundState(None),
        }

    async def compute(self, data_deps, record=None):
        value, now, next_time = await self.evaluate(data_deps)
        await self.state["last_recompute_time"].set(now)
        await self.state["next_recompute_time"].set(next_time)
        return value

    async def due_records(self) -> List[Optional[Dict[str, Any]]]:
        last_time = await self.state["last_recompute_time"].get()
        next_time = await self.state["next_recompute_time"].get()
        return [None] if _is_due(last_time, next_time, self.now()) else []


class PropertyRealTimeHandle(_RealTimeHandle):
    context_types = (DataContextType.PROPERTY,)

    def __init__(self, controller, args, data_context):
        super().__init__(controller, args, data_context)
        self.data_deps = {"_current": PropertyDataDep(list(args.attribute_query)), **self.data_deps}

    def create_state(self):
        return {
            "last_recompute_time": RecordBoundState(None),
            "next_recompute_time": RecordBoundState(None),
        }

    def get_default_value(self):
        return 0 if self.data_context.id.type == "number" else None

    async def compute(self, data_deps, record=None):
        value, now, next_time = await self.evaluate(data_deps)
        await self.state["last_recompute_time"].set(record, now)
        await self.state["next_recompute_time"].set(record, next_time)
        return value

    async def due_records(self) -> List[Optional[Dict[str, Any]]]:
        last_key = self.state["last_recompute_time"].key
        next_key = self.state["next_recompute_time"].key
        hosts = await self.storage.find(
            self.data_context.host.name,
            MatchExp.atom("id", "not", None),
            attribute_query=["id", last_key, next_key],
        )
        now = self.now()
        return [{"id": host["id"]} for host in hosts if _is_due(host.get(last_key), host.get(next_key), now)]


__all__ = ["GlobalRealTimeHandle", "PropertyRealTimeHandle"]
