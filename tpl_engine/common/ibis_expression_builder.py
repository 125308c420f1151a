"""
Ibis expression builder: GroupingQuery pieces -> Ibis expressions.
"""
from typing import Iterable, Optional, Sequence

import ibis
from ibis.expr.api import Table as IbisTable, Expr as IbisExpr

from tpl_engine.types.filter_expr import FilterExpr, Predicate, MemberFilter, Combinator, AND, OR, NOT
from tpl_engine.types.query_plan import GroupingQuery
from tpl_engine.types.table_spec import MeasureRef
from tpl_engine.planner.table_spec_builder import is_valid_aggregate


class IbisExpressionBuilder:
    """
    Builds filter, aggregation and grouped-table expressions against one Ibis table.
    """

    def build_filter_expression(self, table: IbisTable, expr: Optional[FilterExpr]) -> Optional[IbisExpr]:
        """Converts a normalized filter tree into an Ibis boolean expression."""
        if expr is None:
            return None

        if isinstance(expr, Predicate):
            return self._predicate(table, expr)

        if isinstance(expr, MemberFilter):
            col = table[expr.field]
            values = [v for v in expr.values if v is not None]
            condition = col.isin(values) if values else ibis.literal(False)
            if len(values) != len(expr.values):
                condition |= col.isnull()
            return condition

        if isinstance(expr, Combinator):
            operands = [self.build_filter_expression(table, o) for o in expr.operands]
            if expr.op == NOT:
                return ~operands[0]
            combined = operands[0]
            for operand in operands[1:]:
                if expr.op == AND:
                    combined &= operand
                elif expr.op == OR:
                    combined |= operand
                else:
                    raise ValueError(f"Unsupported filter combinator: {expr.op}")
            return combined

        raise ValueError(f"Unsupported filter expression: {expr!r}")

    @staticmethod
    def _predicate(table: IbisTable, p: Predicate) -> IbisExpr:
        col = table[p.field]
        op = p.operator

        if op == "is-null":
            return col.isnull()
        if op == "is-not-null":
            return col.notnull()
        if op == "=":
            return col == p.value
        if op == "!=":
            return col != p.value
        if op == "<":
            return col < p.value
        if op == "<=":
            return col <= p.value
        if op == ">":
            return col > p.value
        if op == ">=":
            return col >= p.value
        raise ValueError(f"Unsupported operator: {op}")

    def build_measure_aggregation(self, table: IbisTable, measure: MeasureRef) -> ibis.Scalar:
        """Converts a base aggregate into a named Ibis reduction."""
        agg_type = measure.aggregate.strip().lower()
        if not is_valid_aggregate(agg_type):
            raise ValueError(f"Unsupported aggregation type: {agg_type}")

        if measure.field is None:
            if agg_type != "count":
                raise ValueError(f"Aggregation '{agg_type}' needs a field")
            return table.count().name(measure.alias)

        col = table[measure.field]
        if agg_type == 'sum':
            return col.sum().name(measure.alias)
        elif agg_type == 'mean':
            return col.mean().name(measure.alias)
        elif agg_type == 'count':
            # field.count counts distinct values; bare count (above) counts rows
            return col.nunique().name(measure.alias)
        elif agg_type == 'min':
            return col.min().name(measure.alias)
        elif agg_type == 'max':
            return col.max().name(measure.alias)
        elif agg_type == 'median':
            return col.median().name(measure.alias)
        elif agg_type == 'stdev':
            return col.std().name(measure.alias)
        # pNN
        return col.quantile(int(agg_type[1:]) / 100.0).name(measure.alias)

    def build_aggregated_table(self, table: IbisTable, group_cols: Sequence[str], aggregates: Iterable[MeasureRef]) -> IbisTable:
        aggregations = [self.build_measure_aggregation(table, m) for m in aggregates]
        if group_cols:
            return table.group_by(list(group_cols)).aggregate(aggregations)
        return table.aggregate(aggregations)

    def build_query(self, table: IbisTable, query: GroupingQuery) -> IbisTable:
        """Filter, group and aggregate ``table`` for one GroupingQuery."""
        filtered = table
        condition = self.build_filter_expression(table, query.filter)
        if condition is not None:
            filtered = filtered.filter(condition)
        return self.build_aggregated_table(filtered, query.sorted_fields, query.sorted_aggregates)
