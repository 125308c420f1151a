"""
QueryPlanGenerator - derives the grouping queries that fill every cell.

Two entry points mirror the two execution waves:

- ``discovery(spec: TableSpec) -> DiscoveryPlan``: one query per pending
  (by-value) axis node, grouped by the node's field and its dimension ancestors.
- ``plan(resolved: ResolvedTableSpec) -> QueryPlan``: every row branch x column
  branch grouping, plus ACROSS denominators, deduplicated by grouping + filter
  with aggregate requests merged.

An ALL node contributes no field, so totals and subtotals fall out as coarser
groupings of the same crossing; the empty grouping is the grand total.
"""
import logging
from typing import List, Dict, Optional, Tuple, FrozenSet, Iterable

from tpl_engine.errors import PlanError
from tpl_engine.types.filter_expr import (
    FilterExpr, Predicate, MemberFilter, conjoin, top_level_conjuncts,
)
from tpl_engine.types.query_plan import (
    GroupingQuery, DiscoveryPlan, QueryPlan, CellSource, DISCOVERY, MAIN,
)
from tpl_engine.types.table_spec import (
    TableSpec, ResolvedTableSpec, AxisTree, MeasureRef, MemberSelection, ACROSS_ROWS, ACROSS_COLS,
)

logger = logging.getLogger(__name__)


class _QuerySet:
    """Ordered key -> query map that merges aggregates of equal groupings."""

    def __init__(self, purpose: str):
        self.purpose = purpose
        self._fields: Dict[str, FrozenSet[str]] = {}
        self._filters: Dict[str, Optional[FilterExpr]] = {}
        self._aggregates: Dict[str, set] = {}

    def add(self, group_fields: Iterable[str], aggregates: Iterable[MeasureRef], filter_expr: Optional[FilterExpr]) -> str:
        candidate = GroupingQuery(frozenset(group_fields), frozenset(), filter_expr, self.purpose)
        key = candidate.key
        if key not in self._fields:
            self._fields[key] = candidate.group_fields
            self._filters[key] = filter_expr
            self._aggregates[key] = set()
        self._aggregates[key].update(aggregates)
        return key

    def queries(self) -> Tuple[GroupingQuery, ...]:
        return tuple(
            GroupingQuery(self._fields[k], frozenset(self._aggregates[k]), self._filters[k], self.purpose)
            for k in self._fields
        )


class QueryPlanGenerator:

    def discovery(self, spec: TableSpec) -> DiscoveryPlan:
        """Queries that rank the members of every by-value ordering."""
        self._validate(spec)
        query_set = _QuerySet(DISCOVERY)
        node_queries: Dict[Tuple[str, int], str] = {}

        for axis_name in ("rows", "cols"):
            tree = spec.axis(axis_name)
            for node in tree.pending_nodes():
                fields = tree.ancestor_fields(node.id) + (node.field,)
                key = query_set.add(fields, [node.ordering.order_by], self._filter(spec, []))
                node_queries[(axis_name, node.id)] = key

        plan = DiscoveryPlan(queries=query_set.queries(), node_queries=node_queries)
        logger.info("Discovery plan: %d queries for %d pending orderings", len(plan.queries), len(node_queries))
        return plan

    def plan(self, resolved: ResolvedTableSpec) -> QueryPlan:
        spec = resolved.spec
        self._validate(spec)
        self._check_resolved(resolved)

        row_tree, col_tree = spec.row_axis, spec.col_axis
        row_branches = row_tree.branches()
        col_branches = col_tree.branches()

        query_set = _QuerySet(MAIN)
        cells: Dict[Tuple[int, int], CellSource] = {}

        for ri, row_branch in enumerate(row_branches):
            row_fields = row_tree.branch_fields(row_branch)
            row_narrow = self._member_filters(row_tree, row_branch, resolved.row_members)
            for ci, col_branch in enumerate(col_branches):
                col_fields = col_tree.branch_fields(col_branch)
                col_narrow = self._member_filters(col_tree, col_branch, resolved.col_members)
                measures = spec.cell_measures(row_branch, col_branch)

                key = query_set.add(
                    row_fields + col_fields,
                    dict.fromkeys(m.base for m in measures),
                    self._filter(spec, row_narrow + col_narrow),
                )

                # Denominators: drop the varying axis down to its grand total.
                denominators = {}
                for m in measures:
                    if m.across == ACROSS_COLS:
                        denominators[m.name] = query_set.add(row_fields, [m.base], self._filter(spec, row_narrow))
                    elif m.across == ACROSS_ROWS:
                        denominators[m.name] = query_set.add(col_fields, [m.base], self._filter(spec, col_narrow))

                cells[(ri, ci)] = CellSource(
                    query_key=key,
                    measures=tuple(m.name for m in measures),
                    denominators=denominators,
                )

        plan = QueryPlan(
            discovery_queries=tuple(resolved.discovery_queries),
            main_queries=query_set.queries(),
            cells=cells,
        )
        logger.info(
            "Query plan: %d discovery, %d main queries for %d cells",
            len(plan.discovery_queries), len(plan.main_queries), len(cells),
        )
        for line in plan.describe():
            logger.debug("  %s", line)
        return plan

    # ---- helpers ----

    @staticmethod
    def _filter(spec: TableSpec, narrow: List[FilterExpr]) -> Optional[FilterExpr]:
        guards: List[FilterExpr] = []
        if not spec.include_nulls:
            guards = [Predicate(f, "is-not-null") for f in spec.dimension_fields()]
        return conjoin(spec.filter, guards + narrow)

    @staticmethod
    def _member_filters(
        tree: AxisTree, branch: Tuple[int, ...], selections: Dict[int, MemberSelection]
    ) -> List[FilterExpr]:
        out: List[FilterExpr] = []
        for node_id in branch:
            selection = selections.get(node_id)
            if selection is not None:
                out.append(MemberFilter(selection.field, selection.all_members()))
        return out

    @staticmethod
    def _validate(spec: TableSpec):
        for axis_name in ("rows", "cols"):
            tree = spec.axis(axis_name)
            for branch in tree.branches():
                fields = tree.branch_fields(branch)
                if len(set(fields)) != len(fields):
                    raise PlanError(f"Field repeated along one {axis_name} branch: {' * '.join(fields)}")

        row_fields = set(spec.row_axis.fields())
        shared = row_fields.intersection(spec.col_axis.fields())
        if shared:
            raise PlanError(f"Fields used on both ROWS and COLS: {', '.join(sorted(shared))}")

        forced_null = {
            c.field for c in top_level_conjuncts(spec.filter)
            if isinstance(c, Predicate) and c.operator == "is-null"
        }
        for axis_name in ("rows", "cols"):
            for node in spec.axis(axis_name).pending_nodes():
                ref = node.ordering.order_by
                if ref.field in forced_null and ref.aggregate != "count":
                    raise PlanError(
                        f"Ordering of '{node.field}' by {ref.alias} cannot be computed: "
                        f"the filter forces '{ref.field}' to NULL"
                    )

    @staticmethod
    def _check_resolved(resolved: ResolvedTableSpec):
        for axis_name in ("rows", "cols"):
            selections = resolved.members(axis_name)
            for node in resolved.spec.axis(axis_name).pending_nodes():
                if node.id not in selections:
                    raise PlanError(
                        f"Ordering of '{node.field}' is still pending; run discovery and resolve first"
                    )
