"""
Symbolic arithmetic for time-dependent values.

RealTime callbacks receive ``now`` as a variable and build an expression with
ordinary operators:

    now = Expression.variable("now")
    age_days = (now - created_at) / 86_400_000      # Expression
    expired = now.gt(deadline)                      # Inequality
    on_the_hour = (now - start).eq(3_600_000)       # Equation

Expressions evaluate against a mapping of variable values. Inequalities and
equations in one variable can also be solved: ``solve()`` returns the value of
the variable where both sides meet, or None when there is no real solution.
Solving supports forms reducible to ``a * x**n + b``.
"""

import math
from typing import Dict, List, NamedTuple, Optional, Tuple, Union

Number = Union[int, float]

EQUALITY_TOLERANCE = 1e-10


class LinearTerm(NamedTuple):
    """``coefficient * x**power + constant`` for one variable ``x``."""

    coefficient: float
    power: int
    constant: float


class Expression:
    """Immutable expression tree over numbers and named variables."""

    __slots__ = ("op", "operands")

    def __init__(self, op: str, operands: Tuple):
        self.op = op
        self.operands = operands

    @classmethod
    def number(cls, value: Number) -> "Expression":
        return cls("number", (value,))

    @classmethod
    def variable(cls, name: str) -> "Expression":
        return cls("variable", (name,))

    @staticmethod
    def wrap(value: Union["Expression", Number]) -> "Expression":
        if isinstance(value, Expression):
            return value
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"Cannot use {value!r} in an expression")
        return Expression.number(value)

    def _binary(self, op: str, other, reflected: bool = False) -> "Expression":
        other = Expression.wrap(other)
        return Expression(op, (other, self) if reflected else (self, other))

    def __add__(self, other):
        return self._binary("+", other)

    def __radd__(self, other):
        return self._binary("+", other, reflected=True)

    def __sub__(self, other):
        return self._binary("-", other)

    def __rsub__(self, other):
        return self._binary("-", other, reflected=True)

    def __mul__(self, other):
        return self._binary("*", other)

    def __rmul__(self, other):
        return self._binary("*", other, reflected=True)

    def __truediv__(self, other):
        return self._binary("/", other)

    def __rtruediv__(self, other):
        return self._binary("/", other, reflected=True)

    def __pow__(self, other):
        return self._binary("^", other)

    def sqrt(self) -> "Expression":
        return Expression("sqrt", (self,))

    def gt(self, other: Union["Expression", Number]) -> "Inequality":
        return Inequality(self, ">", other)

    def lt(self, other: Union["Expression", Number]) -> "Inequality":
        return Inequality(self, "<", other)

    def eq(self, other: Union["Expression", Number]) -> "Equation":
        return Equation(self, other)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, variables: Optional[Dict[str, Number]] = None) -> float:
        variables = variables or {}
        if self.op == "number":
            return self.operands[0]
        if self.op == "variable":
            name = self.operands[0]
            if name not in variables:
                raise ValueError(f"Variable {name!r} has no value")
            return variables[name]
        if self.op == "sqrt":
            return math.sqrt(self.operands[0].evaluate(variables))

        left = self.operands[0].evaluate(variables)
        right = self.operands[1].evaluate(variables)
        if self.op == "+":
            return left + right
        if self.op == "-":
            return left - right
        if self.op == "*":
            return left * right
        if self.op == "/":
            if right == 0:
                raise ZeroDivisionError("Division by zero in expression")
            return left / right
        if self.op == "^":
            return math.pow(left, right)
        raise ValueError(f"Unknown operation {self.op!r}")

    def variables(self) -> List[str]:
        """Variable names in order of first appearance."""
        if self.op == "variable":
            return [self.operands[0]]
        if self.op == "number":
            return []
        names: List[str] = []
        for operand in self.operands:
            for name in operand.variables():
                if name not in names:
                    names.append(name)
        return names

    def linear_form(self, variable: str) -> LinearTerm:
        """
        Reduce the expression to ``a * variable**n + b``.

        Raises:
            ValueError: The expression has no such form (a product of two
                variable terms, a variable divisor or exponent, ...).
        """
        if self.op == "number":
            return LinearTerm(0, 0, self.operands[0])
        if self.op == "variable":
            if self.operands[0] == variable:
                return LinearTerm(1, 1, 0)
            return LinearTerm(0, 0, 0)

        left = self.operands[0].linear_form(variable)
        if self.op == "sqrt":
            if left.coefficient == 0:
                return LinearTerm(0, 0, math.sqrt(left.constant))
            if left.power != 2:
                raise ValueError("Cannot solve the square root of a non-quadratic term")
            return LinearTerm(left.coefficient, 1, math.sqrt(left.constant))

        right = self.operands[1].linear_form(variable)
        if self.op in ("+", "-"):
            sign = 1 if self.op == "+" else -1
            return LinearTerm(
                left.coefficient + sign * right.coefficient,
                max(left.power, right.power),
                left.constant + sign * right.constant,
            )
        if self.op == "*":
            if left.coefficient == 0:
                return LinearTerm(left.constant * right.coefficient, right.power, left.constant * right.constant)
            if right.coefficient == 0:
                return LinearTerm(right.constant * left.coefficient, left.power, left.constant * right.constant)
            raise ValueError("Cannot solve a product of two variable terms")
        if self.op == "/":
            if right.coefficient == 0 and right.constant != 0:
                return LinearTerm(left.coefficient / right.constant, left.power, left.constant / right.constant)
            raise ValueError("Cannot solve a division by a variable term")
        if self.op == "^":
            if left.coefficient == 0 or right.coefficient != 0:
                raise ValueError("Cannot solve a variable exponent")
            power = right.constant
            if power != int(power) or power <= 0:
                raise ValueError("Only positive integer powers can be solved")
            power = int(power)
            return LinearTerm(
                left.coefficient ** power,
                left.power * power,
                0 if left.constant == 0 else left.constant ** power,
            )
        raise ValueError(f"Unknown operation {self.op!r}")

    def __repr__(self) -> str:
        if self.op in ("number", "variable"):
            return str(self.operands[0])
        if self.op == "sqrt":
            return f"sqrt({self.operands[0]!r})"
        return f"({self.operands[0]!r} {self.op} {self.operands[1]!r})"


def _root(term: LinearTerm) -> Optional[float]:
    """Positive real root of ``a * x**n + b = 0`` (None when there is none)."""
    base = -term.constant / term.coefficient
    if term.power == 1:
        return base
    if term.power % 2 == 0 and base < 0:
        return None
    magnitude = math.pow(abs(base), 1 / term.power)
    return -magnitude if base < 0 else magnitude


class _Relation:
    def __init__(self, left: Expression, right: Union[Expression, Number]):
        self.left = left
        self.right = Expression.wrap(right)

    def _single_variable(self) -> str:
        names = self.left.variables()
        names += [name for name in self.right.variables() if name not in names]
        if len(names) != 1:
            raise ValueError(f"Can only solve for exactly one variable, found {names}")
        return names[0]

    def _linear_form(self) -> Optional[LinearTerm]:
        try:
            return (self.left - self.right).linear_form(self._single_variable())
        except ValueError:
            return None


class Inequality(_Relation):
    def __init__(self, left: Expression, operator: str, right: Union[Expression, Number]):
        if operator not in (">", "<"):
            raise ValueError(f"Unknown inequality operator {operator!r}")
        super().__init__(left, right)
        self.operator = operator

    def evaluate(self, variables: Optional[Dict[str, Number]] = None) -> bool:
        left = self.left.evaluate(variables)
        right = self.right.evaluate(variables)
        return left > right if self.operator == ">" else left < right

    def solve(self) -> Optional[float]:
        """The boundary value of the variable, where the inequality can flip."""
        term = self._linear_form()
        if term is None or term.coefficient == 0:
            return None
        return _root(term)

    def __repr__(self) -> str:
        return f"{self.left!r} {self.operator} {self.right!r}"


class Equation(_Relation):
    def evaluate(self, variables: Optional[Dict[str, Number]] = None) -> bool:
        return abs(self.left.evaluate(variables) - self.right.evaluate(variables)) < EQUALITY_TOLERANCE

    def solve(self) -> Optional[float]:
        term = self._linear_form()
        if term is None:
            return None
        if term.coefficient == 0:
            # Identity: any value solves it
            return 0 if abs(term.constant) < EQUALITY_TOLERANCE else None
        return _root(term)

    def __repr__(self) -> str:
        return f"{self.left!r} = {self.right!r}"


__all__ = ["Expression", "Inequality", "Equation", "LinearTerm"]
