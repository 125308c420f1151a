"""
TPL statement AST.

These dataclasses are the boundary with the (external) grammar. Each node has a
``from_dict`` constructor so statements can also be supplied in JSON form, e.g.::

    {"rows": {"groups": [{"items": [{"type": "dimension", "name": "occupation"}]}]},
     "cols": {"groups": [{"items": [{"type": "dimension", "name": "education"},
                                    {"type": "binding", "measure": "income",
                                     "aggregations": [{"method": "sum"}]}]}]}}

An axis is a list of groups joined by ``|``; a group is a list of items joined by
``*``; an item is a dimension, ``ALL``, a measure binding or a parenthesized axis.
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Union


# ==================== Axis clause ====================

@dataclass
class OrderRef:
    """Target of an ``@`` ordering, e.g. ``@income.sum`` or ``@income``."""
    field: str
    aggregate: Optional[str] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "OrderRef":
        return OrderRef(field=d["field"], aggregate=d.get("aggregate"))


@dataclass
class LimitSpec:
    """``[N]``, ``[-N]`` or ``[N@measure]``; ``count`` keeps its sign."""
    count: int
    order_by: Optional[OrderRef] = None

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "LimitSpec":
        order_by = d.get("order_by")
        return LimitSpec(
            count=int(d["count"]),
            order_by=OrderRef.from_dict(order_by) if isinstance(order_by, dict) else order_by,
        )


@dataclass
class DimensionRef:
    name: str
    label: Optional[str] = None
    limit: Optional[LimitSpec] = None
    order: Optional[str] = None  # "asc" | "desc"
    order_by: Optional[OrderRef] = None  # ordering without a limit, e.g. occupation@income.sum DESC
    type: str = "dimension"


@dataclass
class AllRef:
    label: Optional[str] = None
    # The grammar accepts these so that misuse can be reported, ALL never takes them.
    limit: Optional[LimitSpec] = None
    order: Optional[str] = None
    type: str = "all"


@dataclass
class AggregationSpec:
    method: str
    format: Optional[str] = None
    label: Optional[str] = None

    @staticmethod
    def from_dict(d: Union[str, Dict[str, Any]]) -> "AggregationSpec":
        if isinstance(d, str):
            return AggregationSpec(method=d)
        return AggregationSpec(method=d["method"], format=d.get("format"), label=d.get("label"))


@dataclass
class MeasureBinding:
    """``income.sum``, ``income.(sum | mean):currency``, ``income.sum ACROSS COLS``.

    ``measure`` is None for a bare ``count``.
    """
    measure: Optional[str]
    aggregations: List[AggregationSpec] = field(default_factory=list)
    format: Optional[str] = None
    label: Optional[str] = None
    across: Optional[str] = None  # "rows" | "cols"
    type: str = "binding"


@dataclass
class GroupExpression:
    items: List["ItemExpression"] = field(default_factory=list)


@dataclass
class AxisExpression:
    groups: List[GroupExpression] = field(default_factory=list)
    type: str = "axis"


ItemExpression = Union[DimensionRef, AllRef, MeasureBinding, AxisExpression]


# ==================== WHERE clause ====================

@dataclass
class Comparison:
    field: str
    op: str
    value: Any
    type: str = "comparison"


@dataclass
class NullCheck:
    field: str
    negated: bool = False  # IS NOT NULL
    type: str = "null_check"


@dataclass
class NotExpression:
    operand: "FilterTerm"
    type: str = "not"


@dataclass
class FilterChain:
    """``term (AND|OR term)*``; a parenthesized group is a nested chain.

    ``operators[i]`` joins ``terms[i]`` and ``terms[i + 1]``.
    """
    terms: List["FilterTerm"] = field(default_factory=list)
    operators: List[str] = field(default_factory=list)
    type: str = "chain"


FilterTerm = Union[Comparison, NullCheck, NotExpression, FilterChain]


# ==================== Statement ====================

@dataclass
class TableOptions:
    include_nulls: bool = False


@dataclass
class TPLStatement:
    rows: AxisExpression
    cols: Optional[AxisExpression] = None
    where: Optional[FilterTerm] = None
    options: TableOptions = field(default_factory=TableOptions)

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "TPLStatement":
        cols = d.get("cols")
        where = d.get("where")
        return TPLStatement(
            rows=axis_from_dict(d.get("rows") or {}),
            cols=axis_from_dict(cols) if cols is not None else None,
            where=filter_from_dict(where) if where is not None else None,
            options=TableOptions(**(d.get("options") or {})),
        )


def axis_from_dict(d: Dict[str, Any]) -> AxisExpression:
    return AxisExpression(groups=[
        GroupExpression(items=[item_from_dict(i) for i in g.get("items", [])])
        for g in d.get("groups", [])
    ])


def item_from_dict(d: Dict[str, Any]) -> ItemExpression:
    item_type = d.get("type")
    if item_type == "dimension":
        limit = d.get("limit")
        order_by = d.get("order_by")
        return DimensionRef(
            name=d["name"],
            label=d.get("label"),
            limit=LimitSpec.from_dict(limit) if limit is not None else None,
            order=d.get("order"),
            order_by=OrderRef.from_dict(order_by) if order_by is not None else None,
        )
    if item_type == "all":
        limit = d.get("limit")
        return AllRef(
            label=d.get("label"),
            limit=LimitSpec.from_dict(limit) if limit is not None else None,
            order=d.get("order"),
        )
    if item_type == "binding":
        return MeasureBinding(
            measure=d.get("measure"),
            aggregations=[AggregationSpec.from_dict(a) for a in d.get("aggregations", [])],
            format=d.get("format"),
            label=d.get("label"),
            across=d.get("across"),
        )
    if item_type == "axis":
        return axis_from_dict(d)
    raise ValueError(f"Unknown axis item type: {item_type}")


def filter_from_dict(d: Dict[str, Any]) -> FilterTerm:
    term_type = d.get("type")
    if term_type == "comparison":
        return Comparison(field=d["field"], op=d["op"], value=d.get("value"))
    if term_type == "null_check":
        return NullCheck(field=d["field"], negated=bool(d.get("negated", False)))
    if term_type == "not":
        return NotExpression(operand=filter_from_dict(d["operand"]))
    if term_type == "chain":
        return FilterChain(
            terms=[filter_from_dict(t) for t in d.get("terms", [])],
            operators=[op.upper() for op in d.get("operators", [])],
        )
    raise ValueError(f"Unknown filter term type: {term_type}")
