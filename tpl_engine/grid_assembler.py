"""
GridAssembler - joins executed query rows back onto the axis trees.

Header members come from the result rows themselves: alphabetical nodes take the
distinct values present under their parent, by-value nodes take the members fixed
during resolution. Each (row leaf, col leaf) cell reads the query its branches
map to in the QueryPlan; an absent combination is a null cell, never an error.
"""
import logging
import math
from typing import List, Dict, Any, Optional, Tuple

from tpl_engine.config import TPLConfig, get_config
from tpl_engine.errors import PlanError
from tpl_engine.planner.table_spec_builder import rank_members
from tpl_engine.types.grid import Grid, HeaderNode, CellValue
from tpl_engine.types.query_plan import QueryPlan, ResultRows
from tpl_engine.types.table_spec import (
    ResolvedTableSpec, AxisTree, MeasureSpec, MemberSelection, Path, ALL_FIELD, ACROSS_NONE,
)
from tpl_engine.util.cell_description import describe_cell
from tpl_engine.util.formatting import format_value

logger = logging.getLogger(__name__)


class _Leaf:
    __slots__ = ("path", "branch", "values")

    def __init__(self, path: Path, branch: Tuple[int, ...], values: Dict[str, Any]):
        self.path = path
        self.branch = branch
        self.values = values


class _AxisExpander:
    """Expands one AxisTree into HeaderNodes and ordered leaves."""

    def __init__(
        self,
        tree: AxisTree,
        selections: Dict[int, MemberSelection],
        node_rows: Dict[int, List[Dict[str, Any]]],
        config: TPLConfig,
    ):
        self.tree = tree
        self.selections = selections
        self.node_rows = node_rows
        self.config = config
        self.leaves: List[_Leaf] = []

    def expand(self) -> Tuple[HeaderNode, ...]:
        if self.tree.is_empty:
            self.leaves.append(_Leaf((), (), {}))
            return ()
        return tuple(self._expand(self.tree.roots, (), (), {}))

    def _expand(
        self,
        node_ids: Tuple[int, ...],
        path: Path,
        branch: Tuple[int, ...],
        values: Dict[str, Any],
    ) -> List[HeaderNode]:
        headers: List[HeaderNode] = []
        for node_id in node_ids:
            node = self.tree.node(node_id)
            chain = branch + (node_id,)

            if node.is_all:
                child_path = path + ((ALL_FIELD, None),)
                children = self._descend(node.children, child_path, chain, values)
                if children is None:
                    continue
                label = node.label if node.label is not None else self.config.total_label
                headers.append(HeaderNode(
                    node_id=node_id, field=None, value=None, label=label,
                    path=child_path, is_total=True, children=tuple(children),
                ))
                continue

            for member in self._members(node_id, values):
                child_path = path + ((node.field, member),)
                child_values = dict(values)
                child_values[node.field] = member
                children = self._descend(node.children, child_path, chain, child_values)
                if children is None:
                    continue
                headers.append(HeaderNode(
                    node_id=node_id, field=node.field, value=member,
                    label=self.member_label(member), path=child_path, children=tuple(children),
                ))
        return headers

    def _descend(self, children: Tuple[int, ...], path: Path, chain: Tuple[int, ...], values: Dict[str, Any]):
        """Child headers, or None when a non-leaf member has nothing beneath it."""
        if not children:
            self.leaves.append(_Leaf(path, chain, values))
            return []
        expanded = self._expand(children, path, chain, values)
        return expanded or None

    def _members(self, node_id: int, values: Dict[str, Any]) -> Tuple[Any, ...]:
        node = self.tree.node(node_id)
        ancestor_fields = self.tree.ancestor_fields(node_id)

        selection = self.selections.get(node_id)
        if selection is not None:
            return selection.members_for(tuple(values[f] for f in ancestor_fields))

        distinct: Dict[Any, None] = {}
        for row in self.node_rows.get(node_id, ()):
            if any(row.get(f) != values[f] for f in ancestor_fields):
                continue
            distinct[row.get(node.field)] = None
        candidates = [(m, str(m) if m is not None else None) for m in distinct]
        return rank_members(candidates, node.ordering)

    def member_label(self, member: Any) -> str:
        return self.config.null_label if member is None else str(member)


class GridAssembler:

    def __init__(self, config: Optional[TPLConfig] = None):
        self.config = config or get_config()

    def assemble(self, resolved: ResolvedTableSpec, plan: QueryPlan, results: Dict[str, ResultRows]) -> Grid:
        spec = resolved.spec
        missing = [q.key for q in plan.main_queries if q.key not in results]
        if missing:
            raise PlanError(f"No result for {len(missing)} planned queries, e.g. '{missing[0]}'")

        row_branches = spec.row_axis.branches()
        col_branches = spec.col_axis.branches()
        row_index = {b: i for i, b in enumerate(row_branches)}
        col_index = {b: i for i, b in enumerate(col_branches)}

        # query keys per node, each once, in first-use order
        row_node_keys: Dict[int, Dict[str, None]] = {}
        col_node_keys: Dict[int, Dict[str, None]] = {}
        for (ri, ci), source in plan.cells.items():
            for node_id in row_branches[ri]:
                row_node_keys.setdefault(node_id, {})[source.query_key] = None
            for node_id in col_branches[ci]:
                col_node_keys.setdefault(node_id, {})[source.query_key] = None

        row_expander = _AxisExpander(
            spec.row_axis, resolved.row_members, _node_rows(row_node_keys, results), self.config
        )
        col_expander = _AxisExpander(
            spec.col_axis, resolved.col_members, _node_rows(col_node_keys, results), self.config
        )
        row_headers = row_expander.expand()
        col_headers = col_expander.expand()

        lookup = _RowLookup(plan, results)
        measures_by_name = {m.name: m for m in spec.measures}
        cells: Dict[Tuple[Path, Path], Tuple[CellValue, ...]] = {}
        for row_leaf in row_expander.leaves:
            for col_leaf in col_expander.leaves:
                source = plan.cells[(row_index[row_leaf.branch], col_index[col_leaf.branch])]
                values = dict(row_leaf.values)
                values.update(col_leaf.values)
                row = lookup.find(source.query_key, values)
                pairs = self._pairs(row_leaf.path) + self._pairs(col_leaf.path)

                cell_values = []
                for m in (measures_by_name[name] for name in source.measures):
                    raw = _number(row.get(m.base.alias)) if row is not None else None
                    if m.across != ACROSS_NONE and raw is not None:
                        raw = self._ratio(raw, lookup, source.denominators[m.name], values, m)
                    cell_values.append(CellValue(
                        measure=m.name,
                        raw=raw,
                        formatted=format_value(raw, m.format, self.config.percent_decimals),
                        description=describe_cell(pairs, m.display_label),
                    ))
                cells[(row_leaf.path, col_leaf.path)] = tuple(cell_values)

        grid = Grid(
            row_headers=row_headers,
            col_headers=col_headers,
            row_leaves=tuple(leaf.path for leaf in row_expander.leaves),
            col_leaves=tuple(leaf.path for leaf in col_expander.leaves),
            measures=spec.measures,
            cells=cells,
        )
        logger.info("Assembled grid %dx%d with %d measures", grid.shape[0], grid.shape[1], len(spec.measures))
        return grid

    @staticmethod
    def _ratio(raw: float, lookup: "_RowLookup", key: str, values: Dict[str, Any], measure: MeasureSpec) -> Optional[float]:
        row = lookup.find(key, values)
        denominator = _number(row.get(measure.base.alias)) if row is not None else None
        if not denominator:
            return None
        return raw / denominator

    def _pairs(self, path: Path) -> List[Tuple[str, str]]:
        return [
            (f, self.config.null_label if v is None else str(v))
            for f, v in path if f != ALL_FIELD
        ]


class _RowLookup:
    """Per-query index of result rows by their grouped values."""

    def __init__(self, plan: QueryPlan, results: Dict[str, ResultRows]):
        self.plan = plan
        self.results = results
        self._index: Dict[str, Tuple[Tuple[str, ...], Dict[Tuple[Any, ...], Dict[str, Any]]]] = {}

    def find(self, key: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if key not in self._index:
            fields = self.plan.query(key).sorted_fields
            rows = {tuple(r.get(f) for f in fields): r for r in self.results[key]}
            self._index[key] = (fields, rows)
        fields, rows = self._index[key]
        return rows.get(tuple(values.get(f) for f in fields))


def _node_rows(node_keys: Dict[int, Dict[str, None]], results: Dict[str, ResultRows]) -> Dict[int, List[Dict[str, Any]]]:
    out: Dict[int, List[Dict[str, Any]]] = {}
    for node_id, keys in node_keys.items():
        rows: List[Dict[str, Any]] = []
        for key in keys:
            rows.extend(results[key])
        out[node_id] = rows
    return out


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, float) and math.isnan(value):
        return None
    return value
