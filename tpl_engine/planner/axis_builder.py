"""
AxisBuilder - normalizes a ROWS or COLS clause into an AxisTree.

- ``|`` (concatenation) produces siblings at the current level.
- ``*`` (nesting) attaches a fresh copy of the right operand under every leaf of
  the left operand, ALL leaves included, so subtotals nest like any other member.
- Measure bindings are not axis nodes. The TableSpecBuilder turns them into
  MeasureSpecs (``collect_bindings``); here their names are attached to the
  leaves of the group they are nested in, or to the enclosing node when the
  group holds nothing else.
"""
import logging
from typing import List, Dict, Any, Optional, Sequence, Tuple

from tpl_engine.errors import CompileError
from tpl_engine.types.ast import (
    AxisExpression, DimensionRef, AllRef, MeasureBinding, ItemExpression, OrderRef,
)
from tpl_engine.types.schema import Schema
from tpl_engine.types.table_spec import (
    AxisNode, AxisTree, Ordering, MeasureRef, MeasureSpec, ALPHABETICAL, BY_VALUE, ASC, DESC,
)

logger = logging.getLogger(__name__)


def collect_bindings(axis: Optional[AxisExpression]) -> List[MeasureBinding]:
    """All measure bindings of a clause, in source order."""
    found: List[MeasureBinding] = []
    if axis is None:
        return found

    def walk(expr: AxisExpression):
        for group in expr.groups:
            for item in group.items:
                if isinstance(item, MeasureBinding):
                    found.append(item)
                elif isinstance(item, AxisExpression):
                    walk(item)

    walk(axis)
    return found


class AxisBuilder:
    """
    Builds one AxisTree. ``measures`` is the statement's full measure list; ``@``
    orderings must reference one of them. ``bound`` maps ``id(binding)`` to the
    measure names that binding produced.
    """

    def __init__(
        self,
        schema: Schema,
        measures: Sequence[MeasureSpec],
        bound: Optional[Dict[int, Tuple[str, ...]]] = None,
    ):
        self.schema = schema
        self.measures = list(measures)
        self.bound = bound or {}
        self._nodes: List[Dict[str, Any]] = []
        self._root_measures: List[str] = []

    def build(self, axis: Optional[AxisExpression]) -> AxisTree:
        self._nodes = []
        self._root_measures = []
        roots = self._build_axis(axis, None) if axis is not None else []
        tree = AxisTree(
            nodes=tuple(
                AxisNode(
                    id=i,
                    field=n["field"],
                    is_all=n["is_all"],
                    label=n["label"],
                    ordering=n["ordering"],
                    children=tuple(n["children"]),
                    parent=n["parent"],
                    depth=n["depth"],
                    measures=tuple(n["measures"]),
                )
                for i, n in enumerate(self._nodes)
            ),
            roots=tuple(roots),
            root_measures=tuple(self._root_measures),
        )
        logger.debug("Built axis tree with %d nodes, %d branches", len(tree.nodes), len(tree.branches()))
        return tree

    # ---- recursive construction ----

    def _build_axis(self, axis: AxisExpression, parent: Optional[int]) -> List[int]:
        heads: List[int] = []
        for group in axis.groups:
            heads.extend(self._build_group(list(group.items), parent))
        return heads

    def _build_group(self, items: List[ItemExpression], parent: Optional[int]) -> List[int]:
        bindings = [i for i in items if isinstance(i, MeasureBinding)]
        heads = self._nest([i for i in items if not isinstance(i, MeasureBinding)], parent)

        names: List[str] = []
        for binding in bindings:
            names.extend(self.bound.get(id(binding), ()))
        if names:
            for target in (self._leaves(heads) if heads else [parent]):
                self._bind(target, names)
        return heads

    def _nest(self, items: List[ItemExpression], parent: Optional[int]) -> List[int]:
        if not items:
            return []

        first, rest = items[0], items[1:]
        heads = self._build_item(first, parent)
        if not heads:
            return self._nest(rest, parent)

        if rest:
            for leaf in self._leaves(heads):
                children = self._nest(rest, leaf)
                self._nodes[leaf]["children"].extend(children)
        return heads

    def _bind(self, node_id: Optional[int], names: List[str]):
        target = self._root_measures if node_id is None else self._nodes[node_id]["measures"]
        for name in names:
            if name not in target:
                target.append(name)

    def _build_item(self, item: ItemExpression, parent: Optional[int]) -> List[int]:
        if isinstance(item, DimensionRef):
            return [self._dimension(item, parent)]
        if isinstance(item, AllRef):
            return [self._all(item, parent)]
        if isinstance(item, AxisExpression):
            return self._build_axis(item, parent)
        raise CompileError(f"Unsupported axis item: {item!r}")

    def _leaves(self, heads: List[int]) -> List[int]:
        leaves = []
        stack = list(reversed(heads))
        while stack:
            node_id = stack.pop()
            children = self._nodes[node_id]["children"]
            if children:
                stack.extend(reversed(children))
            else:
                leaves.append(node_id)
        return leaves

    def _new_node(self, parent: Optional[int], **attrs) -> int:
        depth = 0 if parent is None else self._nodes[parent]["depth"] + 1
        node = {
            "field": None,
            "is_all": False,
            "label": None,
            "ordering": Ordering(),
            "children": [],
            "parent": parent,
            "depth": depth,
            "measures": [],
        }
        node.update(attrs)
        self._nodes.append(node)
        return len(self._nodes) - 1

    # ---- node kinds ----

    def _dimension(self, dim: DimensionRef, parent: Optional[int]) -> int:
        if not self.schema.has_field(dim.name):
            raise CompileError(f"Unknown field '{dim.name}'")
        return self._new_node(parent, field=dim.name, label=dim.label, ordering=self._ordering(dim))

    def _all(self, ref: AllRef, parent: Optional[int]) -> int:
        if ref.limit is not None or ref.order is not None:
            raise CompileError("ALL cannot carry an ordering or a limit")
        return self._new_node(parent, is_all=True, label=ref.label)

    def _ordering(self, dim: DimensionRef) -> Ordering:
        direction = None
        if dim.order is not None:
            direction = dim.order.lower()
            if direction not in (ASC, DESC):
                raise CompileError(f"Unknown ordering '{dim.order}' on '{dim.name}'")

        limit = None
        order_ref = dim.order_by
        if dim.limit is not None:
            if dim.limit.count == 0:
                raise CompileError(f"Limit on '{dim.name}' must be non-zero")
            limit = dim.limit.count
            order_ref = dim.limit.order_by or order_ref

        if order_ref is None:
            return Ordering(mode=ALPHABETICAL, direction=direction, limit=limit)
        return Ordering(
            mode=BY_VALUE,
            direction=direction,
            limit=limit,
            order_by=self._resolve_order_ref(order_ref, dim.name),
        )

    def _resolve_order_ref(self, ref: OrderRef, dim_name: str) -> MeasureRef:
        for m in self.measures:
            if m.field == ref.field and (ref.aggregate is None or m.aggregate == ref.aggregate):
                return m.base
        target = ref.field if ref.aggregate is None else f"{ref.field}.{ref.aggregate}"
        raise CompileError(
            f"Ordering of '{dim_name}' references '@{target}', which is not a measure of this table"
        )
