"""
Grouping queries and query plans.
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, Tuple, FrozenSet, List

from .filter_expr import FilterExpr, filter_key
from .table_spec import MeasureRef

DISCOVERY = "discovery"
MAIN = "main"


@dataclass(frozen=True)
class GroupingQuery:
    """One grouped aggregation against the source.

    ``group_fields`` is order independent; the empty set is the grand total.
    """
    group_fields: FrozenSet[str]
    aggregates: FrozenSet[MeasureRef]
    filter: Optional[FilterExpr] = None
    purpose: str = MAIN

    @property
    def key(self) -> str:
        """Identity used for deduplication: grouping plus filter."""
        return "|".join(sorted(self.group_fields)) + "#" + filter_key(self.filter)

    @property
    def sorted_fields(self) -> Tuple[str, ...]:
        return tuple(sorted(self.group_fields))

    @property
    def sorted_aggregates(self) -> Tuple[MeasureRef, ...]:
        return tuple(sorted(self.aggregates, key=lambda a: a.alias))

    def describe(self) -> str:
        fields = ", ".join(self.sorted_fields) or "()"
        aggs = ", ".join(a.alias for a in self.sorted_aggregates)
        where = filter_key(self.filter)
        return f"[{self.purpose}] group_by({fields}) aggregate({aggs})" + (f" where {where}" if where else "")


@dataclass(frozen=True)
class DiscoveryPlan:
    """Discovery wave: one query per distinct pending-node grouping.

    ``node_queries`` maps ``(axis_name, node_id)`` to the key of the query whose
    rows rank that node's members.
    """
    queries: Tuple[GroupingQuery, ...] = ()
    node_queries: Dict[Tuple[str, int], str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.queries


@dataclass(frozen=True)
class CellSource:
    """Where a (row branch, col branch) cell reads its numbers."""
    query_key: str
    measures: Tuple[str, ...] = ()  # names of the measures this cell shows, in display order
    denominators: Dict[str, str] = field(default_factory=dict)  # measure name -> query key


@dataclass(frozen=True)
class QueryPlan:
    discovery_queries: Tuple[GroupingQuery, ...] = ()
    main_queries: Tuple[GroupingQuery, ...] = ()
    cells: Dict[Tuple[int, int], CellSource] = field(default_factory=dict)  # (row branch idx, col branch idx)

    def query(self, key: str) -> GroupingQuery:
        for q in self.main_queries:
            if q.key == key:
                return q
        raise KeyError(key)

    def describe(self) -> List[str]:
        return [q.describe() for q in self.discovery_queries + self.main_queries]


# Executor rows: grouped field -> value, aggregate alias -> number or None
ResultRows = List[Dict[str, Any]]
