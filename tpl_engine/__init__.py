"""
tpl_engine package - compiler core for TPL crosstab tables

AST -> TableSpec -> QueryPlan -> (executor) -> Grid
"""
from .controller import TPLController
from .errors import TPLError, CompileError, PlanError, ExecutionError
from .grid_assembler import GridAssembler
from .planner.query_plan_generator import QueryPlanGenerator
from .planner.table_spec_builder import TableSpecBuilder
from .types.ast import TPLStatement
from .types.schema import Schema
from .util.cell_description import parse_cell_description

__all__ = [
    "TPLController",
    "TPLError",
    "CompileError",
    "PlanError",
    "ExecutionError",
    "GridAssembler",
    "QueryPlanGenerator",
    "TableSpecBuilder",
    "TPLStatement",
    "Schema",
    "parse_cell_description",
]
