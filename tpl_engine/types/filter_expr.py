"""
Normalized boolean filter trees.

A FilterExpr is a leaf (Predicate or MemberFilter) or a combinator. Parenthesized
groups from the source survive as nested combinators; nothing here re-derives
grouping from operator precedence.
"""
from dataclasses import dataclass
from typing import Any, Tuple, Optional, Union, Iterable

COMPARISON_OPS = ("=", "!=", ">", "<", ">=", "<=")
NULL_OPS = ("is-null", "is-not-null")
ORDERING_OPS = (">", "<", ">=", "<=")

AND = "and"
OR = "or"
NOT = "not"


def _literal_key(value: Any) -> str:
    # repr keeps 1 and "1" apart
    return repr(value)


@dataclass(frozen=True)
class Predicate:
    field: str
    operator: str
    value: Any = None

    def key(self) -> str:
        if self.operator in NULL_OPS:
            return f"{self.field} {self.operator}"
        return f"{self.field} {self.operator} {_literal_key(self.value)}"

    def fields(self) -> Tuple[str, ...]:
        return (self.field,)


@dataclass(frozen=True)
class MemberFilter:
    """``field IN values``; only produced by the planner to pin resolved members."""
    field: str
    values: Tuple[Any, ...]

    def key(self) -> str:
        members = ",".join(sorted(_literal_key(v) for v in self.values))
        return f"{self.field} in ({members})"

    def fields(self) -> Tuple[str, ...]:
        return (self.field,)


@dataclass(frozen=True)
class Combinator:
    op: str
    operands: Tuple["FilterExpr", ...]

    def key(self) -> str:
        if self.op == NOT:
            return f"not({self.operands[0].key()})"
        return f"{self.op}(" + ", ".join(o.key() for o in self.operands) + ")"

    def fields(self) -> Tuple[str, ...]:
        seen = []
        for operand in self.operands:
            for f in operand.fields():
                if f not in seen:
                    seen.append(f)
        return tuple(seen)


FilterExpr = Union[Predicate, MemberFilter, Combinator]


def filter_key(expr: Optional[FilterExpr]) -> str:
    return expr.key() if expr is not None else ""


def conjoin(base: Optional[FilterExpr], extra: Iterable[FilterExpr]) -> Optional[FilterExpr]:
    """AND ``extra`` onto ``base``, keeping ``base`` as one grouped operand."""
    operands = [base] if base is not None else []
    operands.extend(extra)
    if not operands:
        return None
    if len(operands) == 1:
        return operands[0]
    return Combinator(AND, tuple(operands))


def top_level_conjuncts(expr: Optional[FilterExpr]) -> Tuple[FilterExpr, ...]:
    """Leaves and groups that must all hold, looking through nested ANDs only."""
    if expr is None:
        return ()
    if isinstance(expr, Combinator) and expr.op == AND:
        out = []
        for operand in expr.operands:
            out.extend(top_level_conjuncts(operand))
        return tuple(out)
    return (expr,)
