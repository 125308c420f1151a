"""
Shared builders for TPL test statements and an in-memory executor.
"""
import asyncio
from statistics import mean
from typing import List, Dict, Any, Optional

from tpl_engine.types.ast import (
    AxisExpression, GroupExpression, DimensionRef, AllRef, MeasureBinding, AggregationSpec,
    LimitSpec, OrderRef, TPLStatement, TableOptions, Comparison, FilterChain,
)
from tpl_engine.types.filter_expr import Predicate, MemberFilter, Combinator, AND, NOT
from tpl_engine.types.query_plan import GroupingQuery
from tpl_engine.types.schema import Schema

CENSUS_SCHEMA = Schema.from_dict({
    "occupation": "string",
    "education": "string",
    "gender": "string",
    "income": "numeric",
    "age": "numeric",
})

CENSUS_ROWS = [
    {"occupation": "Engineer", "education": "BA", "gender": "M", "income": 1000, "age": 30},
    {"occupation": "Engineer", "education": "MS", "gender": "F", "income": 1500, "age": 41},
    {"occupation": "Teacher", "education": "BA", "gender": "F", "income": 600, "age": 25},
    {"occupation": "Teacher", "education": "MS", "gender": "M", "income": 700, "age": 38},
    {"occupation": "Teacher", "education": "MS", "gender": "F", "income": 800, "age": 52},
    {"occupation": "Nurse", "education": "BA", "gender": "F", "income": 900, "age": 33},
    {"occupation": "Doctor", "education": "PhD", "gender": "M", "income": 3000, "age": 47},
    {"occupation": "Artist", "education": None, "gender": "F", "income": 300, "age": 29},
]


# ==================== AST shorthands ====================

def dim(name, limit=None, by=None, agg=None, order=None, label=None) -> DimensionRef:
    order_ref = OrderRef(by, agg) if by is not None else None
    return DimensionRef(
        name=name,
        label=label,
        limit=LimitSpec(limit, order_ref) if limit is not None else None,
        order=order,
        order_by=order_ref if limit is None else None,
    )


def all_(label=None) -> AllRef:
    return AllRef(label=label)


def measure(field, *aggs, fmt=None, across=None, label=None) -> MeasureBinding:
    return MeasureBinding(
        measure=field,
        aggregations=[AggregationSpec(a) if isinstance(a, str) else a for a in (aggs or ("sum",))],
        format=fmt,
        across=across,
        label=label,
    )


def nest(*items) -> AxisExpression:
    """``a * b * c``"""
    return AxisExpression(groups=[GroupExpression(items=list(items))])


def cat(*items) -> AxisExpression:
    """``a | b | c``"""
    return AxisExpression(groups=[GroupExpression(items=[i]) for i in items])


def statement(rows, cols=None, where=None, include_nulls=False) -> TPLStatement:
    return TPLStatement(rows=rows, cols=cols, where=where, options=TableOptions(include_nulls=include_nulls))


def eq(field, value) -> Comparison:
    return Comparison(field, "=", value)


def chain(*parts) -> FilterChain:
    """``chain(a, "AND", b, "OR", c)``"""
    return FilterChain(terms=list(parts[0::2]), operators=list(parts[1::2]))


# ==================== In-memory executor ====================

def _matches(expr, row: Dict[str, Any]) -> bool:
    if expr is None:
        return True
    if isinstance(expr, Predicate):
        value = row.get(expr.field)
        if expr.operator == "is-null":
            return value is None
        if expr.operator == "is-not-null":
            return value is not None
        if value is None:
            return False
        return {
            "=": value == expr.value,
            "!=": value != expr.value,
            ">": value > expr.value,
            "<": value < expr.value,
            ">=": value >= expr.value,
            "<=": value <= expr.value,
        }[expr.operator]
    if isinstance(expr, MemberFilter):
        return row.get(expr.field) in expr.values
    if isinstance(expr, Combinator):
        if expr.op == NOT:
            return not _matches(expr.operands[0], row)
        results = [_matches(o, row) for o in expr.operands]
        return all(results) if expr.op == AND else any(results)
    raise TypeError(expr)


def _aggregate(aggregate: str, field: Optional[str], rows: List[Dict[str, Any]]):
    if field is None:
        return len(rows)
    values = [r[field] for r in rows if r.get(field) is not None]
    if aggregate == "count":
        return len(set(values))
    if not values:
        return None
    if aggregate == "sum":
        return sum(values)
    if aggregate == "mean":
        return mean(values)
    if aggregate == "min":
        return min(values)
    if aggregate == "max":
        return max(values)
    raise ValueError(aggregate)


class FakeExecutor:
    """Evaluates GroupingQuery over a list of dicts and records every query."""

    def __init__(self, rows: List[Dict[str, Any]]):
        self.rows = rows
        self.executed: List[GroupingQuery] = []

    def schema(self) -> Schema:
        return CENSUS_SCHEMA

    def execute(self, query: GroupingQuery) -> List[Dict[str, Any]]:
        self.executed.append(query)
        fields = query.sorted_fields
        groups: Dict[tuple, List[Dict[str, Any]]] = {}
        for row in self.rows:
            if _matches(query.filter, row):
                groups.setdefault(tuple(row.get(f) for f in fields), []).append(row)
        if not fields and not groups:
            groups[()] = []

        out = []
        for values, members in groups.items():
            record = dict(zip(fields, values))
            for ref in query.aggregates:
                record[ref.alias] = _aggregate(ref.aggregate, ref.field, members)
            out.append(record)
        return out


class SlowExecutor(FakeExecutor):
    """Async executor that sleeps before answering."""

    def __init__(self, rows: List[Dict[str, Any]], delay: float):
        super().__init__(rows)
        self.delay = delay
        self.cancelled = 0

    async def execute_async(self, query: GroupingQuery) -> List[Dict[str, Any]]:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        return self.execute(query)


class FailingExecutor(FakeExecutor):

    def execute(self, query: GroupingQuery) -> List[Dict[str, Any]]:
        raise RuntimeError("source unreachable")
