"""
TableSpecBuilder - AST -> TableSpec, and TableSpec + discovery results ->
ResolvedTableSpec.

This is the one place that enforces field/measure existence and type
compatibility. It never talks to an executor: discovery queries come from the
QueryPlanGenerator and their rows are handed back to ``resolve``.
"""
import logging
import re
from typing import List, Dict, Any, Optional, Tuple, Sequence

from tpl_engine.errors import CompileError, PlanError
from tpl_engine.planner.axis_builder import AxisBuilder, collect_bindings
from tpl_engine.planner.filter_normalizer import FilterNormalizer
from tpl_engine.types.ast import TPLStatement, MeasureBinding
from tpl_engine.types.query_plan import DiscoveryPlan, ResultRows
from tpl_engine.types.schema import Schema
from tpl_engine.types.table_spec import (
    TableSpec, ResolvedTableSpec, MeasureSpec, MemberSelection, AxisTree, Ordering,
    aggregate_alias, ACROSS_NONE, ACROSS_ROWS, ACROSS_COLS, DESC,
)

logger = logging.getLogger(__name__)

BASE_AGGREGATES = ("sum", "mean", "count", "min", "max", "median", "stdev")
_PERCENTILE_RE = re.compile(r"^p(\d{1,2})$")
_FORMAT_RE = re.compile(r"^(currency|percent|integer|none|(decimal|comma)\.\d+)$")


def is_valid_aggregate(name: str) -> bool:
    if name in BASE_AGGREGATES:
        return True
    m = _PERCENTILE_RE.match(name)
    return bool(m) and 0 < int(m.group(1)) < 100


def rank_members(candidates: Sequence[Tuple[Any, Any]], ordering: Ordering) -> Tuple[Any, ...]:
    """Order and limit ``(member, sort_key)`` candidates.

    The chosen order is the explicit direction, else ascending, except that an
    unlimited by-value ordering (``occupation@income.sum``) defaults to
    descending. ``limit > 0`` keeps the first N in that order; ``limit < 0``
    keeps the last |N|, presented reversed. Ties keep the members' string
    order; a ``None`` key always sorts last.
    """
    limit = ordering.limit
    if ordering.direction is None:
        descending = ordering.is_by_value and limit is None
    else:
        descending = ordering.direction == DESC
    if limit is not None and limit < 0:
        descending = not descending

    ordered = sorted(candidates, key=lambda c: str(c[0]))
    present = [c for c in ordered if c[1] is not None]
    missing = [c for c in ordered if c[1] is None]
    # sort is stable in both directions, so ties stay in string order
    present.sort(key=lambda c: c[1], reverse=descending)

    ranked = present + missing
    if limit is not None:
        ranked = ranked[:abs(limit)]
    return tuple(c[0] for c in ranked)


class TableSpecBuilder:
    """
    Builds TableSpecs for one schema.

    Usage:
        builder = TableSpecBuilder(schema)
        spec = builder.build(statement)
        discovery = QueryPlanGenerator().discovery(spec)
        resolved = builder.resolve(spec, discovery, results)
    """

    def __init__(self, schema: Schema, include_nulls: bool = False):
        self.schema = schema
        self.include_nulls = include_nulls
        self.filter_normalizer = FilterNormalizer(schema)

    def build(self, statement: TPLStatement) -> TableSpec:
        where = self.filter_normalizer.normalize(statement.where)

        bindings = collect_bindings(statement.rows) + collect_bindings(statement.cols)
        measures, bound = self._bind_measures(bindings)

        axis_builder = AxisBuilder(self.schema, measures, bound)
        row_axis = axis_builder.build(statement.rows)
        col_axis = axis_builder.build(statement.cols)

        spec = TableSpec(
            row_axis=row_axis,
            col_axis=col_axis,
            measures=tuple(measures),
            filter=where,
            include_nulls=statement.options.include_nulls or self.include_nulls,
        )
        logger.info(
            "Built table spec: %d row branches, %d col branches, %d measures, %d pending orderings",
            len(row_axis.branches()), len(col_axis.branches()), len(measures),
            len(row_axis.pending_nodes()) + len(col_axis.pending_nodes()),
        )
        return spec

    # ---- measures ----

    def _bind_measures(
        self, bindings: List[MeasureBinding]
    ) -> Tuple[List[MeasureSpec], Dict[int, Tuple[str, ...]]]:
        """MeasureSpecs for every occurrence, plus the names each binding produced."""
        measures: List[MeasureSpec] = []
        seen: Dict[Tuple[Any, ...], str] = {}
        names = set()
        bound: Dict[int, Tuple[str, ...]] = {}

        for binding in bindings:
            if not binding.aggregations:
                raise CompileError(f"Measure '{binding.measure}' needs an aggregation, e.g. {binding.measure}.sum")
            across = self._across(binding.across)
            produced: List[str] = []
            for agg in binding.aggregations:
                method = agg.method.lower()
                self._check_aggregate(binding.measure, method)
                fmt = agg.format or binding.format
                if fmt is not None and not _FORMAT_RE.match(fmt):
                    raise CompileError(f"Unknown format '{fmt}'")
                if fmt is None and across != ACROSS_NONE:
                    fmt = "percent"
                label = agg.label if agg.label is not None else binding.label

                identity = (binding.measure, method, across, fmt, label)
                if identity in seen:
                    produced.append(seen[identity])
                    continue

                name = aggregate_alias(binding.measure, method)
                if across != ACROSS_NONE:
                    name = f"{name}_pct_{across}"
                base_name, n = name, 2
                while name in names:
                    name = f"{base_name}_{n}"
                    n += 1
                names.add(name)
                seen[identity] = name
                produced.append(name)

                measures.append(MeasureSpec(
                    name=name,
                    field=binding.measure,
                    aggregate=method,
                    format=fmt,
                    across=across,
                    label=label,
                ))
            bound[id(binding)] = tuple(produced)

        if not measures:
            measures.append(MeasureSpec(name="count", field=None, aggregate="count"))
        return measures, bound

    def _check_aggregate(self, field_name: Optional[str], method: str):
        if not is_valid_aggregate(method):
            raise CompileError(f"Unknown aggregation '{method}'")
        if field_name is None:
            if method != "count":
                raise CompileError(f"Aggregation '{method}' needs a measure field")
            return
        if not self.schema.has_field(field_name):
            raise CompileError(f"Unknown measure '{field_name}'")
        if method != "count" and not self.schema.is_numeric(field_name):
            raise CompileError(f"Aggregation '{method}' requires a numeric field, '{field_name}' is not numeric")

    @staticmethod
    def _across(value: Optional[str]) -> str:
        if value is None:
            return ACROSS_NONE
        v = value.lower()
        if v not in (ACROSS_ROWS, ACROSS_COLS):
            raise CompileError(f"ACROSS must name ROWS or COLS, got '{value}'")
        return v

    # ---- second pass: by-value orderings ----

    def resolve(
        self,
        spec: TableSpec,
        discovery: DiscoveryPlan,
        results: Dict[str, ResultRows],
    ) -> ResolvedTableSpec:
        """Fix the members of every pending node from discovery rows."""
        selections: Dict[str, Dict[int, MemberSelection]] = {"rows": {}, "cols": {}}

        for axis_name in ("rows", "cols"):
            tree = spec.axis(axis_name)
            for node in tree.pending_nodes():
                key = discovery.node_queries.get((axis_name, node.id))
                if key is None or key not in results:
                    raise PlanError(f"No discovery result for ordering of '{node.field}'")
                selections[axis_name][node.id] = self._select(tree, node.id, results[key])

        logger.info(
            "Resolved %d by-value orderings",
            len(selections["rows"]) + len(selections["cols"]),
        )
        return ResolvedTableSpec(
            spec=spec,
            row_members=selections["rows"],
            col_members=selections["cols"],
            discovery_queries=discovery.queries,
        )

    @staticmethod
    def _select(tree: AxisTree, node_id: int, rows: ResultRows) -> MemberSelection:
        node = tree.node(node_id)
        ancestor_fields = tree.ancestor_fields(node_id)
        alias = node.ordering.order_by.alias

        candidates: Dict[Tuple[Any, ...], List[Tuple[Any, Any]]] = {}
        for row in rows:
            parent_values = tuple(row.get(f) for f in ancestor_fields)
            candidates.setdefault(parent_values, []).append((row.get(node.field), row.get(alias)))

        by_parent = {
            parent_values: rank_members(members, node.ordering)
            for parent_values, members in candidates.items()
        }
        return MemberSelection(node_id=node_id, field=node.field, by_parent=by_parent)
