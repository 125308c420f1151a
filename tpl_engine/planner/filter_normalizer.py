"""
FilterNormalizer - WHERE clause AST -> normalized FilterExpr tree.

Within one unparenthesized chain AND binds tighter than OR, so
``a OR b AND c`` becomes ``or(a, and(b, c))``. A parenthesized group arrives as a
nested FilterChain and stays a nested operand.
"""
from typing import List, Optional

from tpl_engine.errors import CompileError
from tpl_engine.types.ast import FilterTerm, Comparison, NullCheck, NotExpression, FilterChain
from tpl_engine.types.filter_expr import (
    FilterExpr, Predicate, Combinator, AND, OR, NOT, COMPARISON_OPS, ORDERING_OPS,
)
from tpl_engine.types.schema import Schema

_OP_ALIASES = {"==": "=", "<>": "!="}


class FilterNormalizer:

    def __init__(self, schema: Schema):
        self.schema = schema

    def normalize(self, term: Optional[FilterTerm]) -> Optional[FilterExpr]:
        if term is None:
            return None
        return self._convert(term)

    def _convert(self, term: FilterTerm) -> FilterExpr:
        if isinstance(term, Comparison):
            return self._comparison(term)
        if isinstance(term, NullCheck):
            self._check_field(term.field)
            return Predicate(term.field, "is-not-null" if term.negated else "is-null")
        if isinstance(term, NotExpression):
            return Combinator(NOT, (self._convert(term.operand),))
        if isinstance(term, FilterChain):
            return self._chain(term)
        raise CompileError(f"Unsupported filter term: {term!r}")

    def _comparison(self, term: Comparison) -> Predicate:
        self._check_field(term.field)
        op = _OP_ALIASES.get(term.op.strip(), term.op.strip())
        if op not in COMPARISON_OPS:
            raise CompileError(f"Unsupported comparison operator '{term.op}' on '{term.field}'")
        if term.value is None:
            raise CompileError(f"Comparison '{term.field} {op}' needs a literal; use IS NULL for nulls")
        if op in ORDERING_OPS and not self.schema.is_numeric(term.field):
            raise CompileError(f"Operator '{op}' requires a numeric field, '{term.field}' is not numeric")
        if self.schema.is_numeric(term.field) and isinstance(term.value, str):
            raise CompileError(f"Cannot compare numeric field '{term.field}' with string literal {term.value!r}")
        return Predicate(term.field, op, term.value)

    def _chain(self, chain: FilterChain) -> FilterExpr:
        if not chain.terms:
            raise CompileError("Empty filter group")
        if len(chain.operators) != len(chain.terms) - 1:
            raise CompileError("Malformed filter: operators and terms do not alternate")

        # Split on OR into runs of AND-joined terms
        runs: List[List[FilterExpr]] = [[self._convert(chain.terms[0])]]
        for op, term in zip(chain.operators, chain.terms[1:]):
            op = op.upper()
            if op == "AND":
                runs[-1].append(self._convert(term))
            elif op == "OR":
                runs.append([self._convert(term)])
            else:
                raise CompileError(f"Unknown boolean operator '{op}'")

        disjuncts = [run[0] if len(run) == 1 else Combinator(AND, tuple(run)) for run in runs]
        if len(disjuncts) == 1:
            return disjuncts[0]
        return Combinator(OR, tuple(disjuncts))

    def _check_field(self, name: str):
        if not self.schema.has_field(name):
            raise CompileError(f"Unknown field '{name}' in WHERE clause")
