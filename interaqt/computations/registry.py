"""
Dispatch table from ``(computation kind, context type)`` to handle class.

The table is built from a static list of builtin handles plus any handles the
application passes to the controller. Later registrations take precedence, so
an application can replace a builtin for one context type.
"""

from enum import Enum
from typing import Dict, Iterable, List, Tuple, Type, Union

from ..errors import SchedulerError
from .base import Computation, DataContext, DataContextType

Key = Tuple[str, DataContextType]


def _kind_key(kind: Union[str, Enum]) -> str:
    return kind.value if isinstance(kind, Enum) else str(kind)


class ComputationRegistry:
    """Central registry for computation handle classes."""

    def __init__(self, handles: Iterable[Type[Computation]] = ()):
        self._handles: Dict[Key, Type[Computation]] = {}
        for handle in handles:
            self.register(handle)

    def register(self, handle: Type[Computation]) -> None:
        """
        Register ``handle`` for its ``kind`` and every type in ``context_types``.

        Example:
            class TimedCount(DataBasedComputation):
                kind = "Count"
                context_types = (DataContextType.GLOBAL,)
                ...

            registry.register(TimedCount)
        """
        if not handle.kind or not handle.context_types:
            raise ValueError(f"{handle.__name__} must declare kind and context_types")
        for context_type in handle.context_types:
            self._handles[(_kind_key(handle.kind), DataContextType(context_type))] = handle

    def lookup(self, kind: Union[str, Enum], context_type: DataContextType) -> Type[Computation]:
        key = (_kind_key(kind), DataContextType(context_type))
        handle = self._handles.get(key)
        if handle is None:
            raise SchedulerError(
                f"No computation handle for {key[0]} in a {key[1].value} context",
                scheduling_phase="handle-lookup",
                context={"kind": key[0], "context_type": key[1].value},
            )
        return handle

    def create(self, controller, args, data_context: DataContext) -> Computation:
        handle = self.lookup(args.kind, data_context.type)
        return handle(controller, args, data_context)

    def kinds(self) -> List[Key]:
        return list(self._handles)

    def __contains__(self, key: Key) -> bool:
        kind, context_type = key
        return (_kind_key(kind), DataContextType(context_type)) in self._handles

    def __len__(self) -> int:
        return len(self._handles)


__all__ = ["ComputationRegistry"]
