"""
Match expressions for storage queries.

A :class:`MatchExp` is a small boolean tree over attribute atoms:

    exp = MatchExp.atom("status", "=", "approved") & MatchExp.atom("score", ">=", 3)
    exp = exp | MatchExp.atom("owner.id", "=", 7)      # dotted keys traverse relations

Evaluation is storage-specific only in how a key is resolved: the caller passes
a getter that returns every candidate value reachable through the key (several
for an ``n``-side relation). An atom holds if any candidate satisfies it.
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from .util.values import values_equal

OPERATORS = ("=", "!=", "<", "<=", ">", ">=", "in", "not", "like")


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "=":
        return values_equal(actual, expected)
    if op == "!=":
        return not values_equal(actual, expected)
    if op == "in":
        return any(values_equal(actual, candidate) for candidate in expected)
    if op == "not":
        # ["not", None] means "is not null"
        if expected is None:
            return actual is not None
        return not values_equal(actual, expected)
    if op == "like":
        if not isinstance(actual, str):
            return False
        expected = str(expected)
        needle = expected.strip("%")
        if expected.startswith("%") and expected.endswith("%"):
            return needle in actual
        if expected.startswith("%"):
            return actual.endswith(needle)
        if expected.endswith("%"):
            return actual.startswith(needle)
        return actual == needle
    if actual is None:
        return False
    try:
        if op == "<":
            return actual < expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        if op == ">=":
            return actual >= expected
    except TypeError:
        return False
    raise ValueError(f"Unknown match operator: {op!r}")


@dataclass(frozen=True)
class MatchAtom:
    key: str
    op: str
    value: Any

    def evaluate(self, getter: Callable[[str], List[Any]]) -> bool:
        candidates = getter(self.key)
        if not candidates:
            candidates = [None]
        return any(_compare(self.op, actual, self.value) for actual in candidates)

    def keys(self) -> List[str]:
        return [self.key]


class MatchExp:
    """Boolean combination of :class:`MatchAtom` values."""

    __slots__ = ("operator", "children")

    def __init__(self, operator: str, children: Sequence[Union["MatchExp", MatchAtom]]):
        if operator not in ("and", "or", "atom"):
            raise ValueError(f"Unknown match combinator: {operator!r}")
        self.operator = operator
        self.children: Tuple[Union["MatchExp", MatchAtom], ...] = tuple(children)

    @classmethod
    def atom(cls, key: str, op: str, value: Any = None) -> "MatchExp":
        if op not in OPERATORS:
            raise ValueError(f"Unknown match operator: {op!r}")
        if op == "in" and not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("'in' expects a collection of values")
        return cls("atom", [MatchAtom(key, op, value)])

    @classmethod
    def from_object(cls, values: dict) -> "MatchExp":
        """Equality match on every key of ``values``."""
        exp: Optional[MatchExp] = None
        for key, value in values.items():
            part = cls.atom(key, "=", value)
            exp = part if exp is None else exp & part
        if exp is None:
            raise ValueError("Cannot build a match expression from an empty mapping")
        return exp

    def __and__(self, other: Optional["MatchExp"]) -> "MatchExp":
        if other is None:
            return self
        return MatchExp("and", [self, other])

    def __or__(self, other: Optional["MatchExp"]) -> "MatchExp":
        if other is None:
            return self
        return MatchExp("or", [self, other])

    def evaluate(self, getter: Callable[[str], List[Any]]) -> bool:
        if self.operator == "atom":
            return self.children[0].evaluate(getter)
        if self.operator == "and":
            return all(child.evaluate(getter) for child in self.children)
        return any(child.evaluate(getter) for child in self.children)

    def keys(self) -> List[str]:
        """Every attribute key referenced by the expression."""
        result: List[str] = []
        for child in self.children:
            for key in child.keys():
                if key not in result:
                    result.append(key)
        return result

    def __repr__(self) -> str:
        if self.operator == "atom":
            atom = self.children[0]
            return f"({atom.key} {atom.op} {atom.value!r})"
        joiner = f" {self.operator} "
        return "(" + joiner.join(repr(child) for child in self.children) + ")"


__all__ = ["MatchExp", "MatchAtom", "OPERATORS"]
