"""
Tests for FilterNormalizer
"""
import pytest

from tpl_engine.errors import CompileError
from tpl_engine.planner.filter_normalizer import FilterNormalizer
from tpl_engine.types.ast import Comparison, NullCheck, NotExpression
from tpl_engine.types.filter_expr import Predicate, Combinator, AND, OR, NOT, filter_key, conjoin, top_level_conjuncts

from tpl_helpers import CENSUS_SCHEMA, eq, chain


@pytest.fixture
def normalizer() -> FilterNormalizer:
    return FilterNormalizer(CENSUS_SCHEMA)


def test_no_filter(normalizer):
    assert normalizer.normalize(None) is None


def test_comparison_becomes_predicate(normalizer):
    assert normalizer.normalize(eq("gender", "F")) == Predicate("gender", "=", "F")


def test_operator_aliases(normalizer):
    assert normalizer.normalize(Comparison("age", "==", 30)).operator == "="
    assert normalizer.normalize(Comparison("gender", "<>", "M")).operator == "!="


def test_null_checks(normalizer):
    assert normalizer.normalize(NullCheck("education")) == Predicate("education", "is-null")
    assert normalizer.normalize(NullCheck("education", negated=True)) == Predicate("education", "is-not-null")


def test_and_binds_tighter_than_or(normalizer):
    expr = normalizer.normalize(chain(eq("gender", "F"), "OR", eq("occupation", "Nurse"), "AND", Comparison("age", ">", 30)))

    assert isinstance(expr, Combinator) and expr.op == OR
    assert expr.operands[0] == Predicate("gender", "=", "F")
    assert expr.operands[1] == Combinator(AND, (
        Predicate("occupation", "=", "Nurse"),
        Predicate("age", ">", 30),
    ))


def test_parenthesized_group_is_kept(normalizer):
    group = chain(eq("gender", "F"), "OR", eq("gender", "M"))
    expr = normalizer.normalize(chain(group, "AND", Comparison("age", ">=", 40)))

    assert expr.op == AND
    assert expr.operands[0].op == OR
    assert filter_key(expr) == "and(or(gender = 'F', gender = 'M'), age >= 40)"


def test_not(normalizer):
    expr = normalizer.normalize(NotExpression(eq("gender", "F")))

    assert expr == Combinator(NOT, (Predicate("gender", "=", "F"),))


def test_single_term_chain_is_bare(normalizer):
    assert normalizer.normalize(chain(eq("gender", "F"))) == Predicate("gender", "=", "F")


def test_filter_key_keeps_literal_types_apart():
    assert Predicate("age", "=", 1).key() != Predicate("age", "=", "1").key()


def test_conjoin_and_top_level_conjuncts():
    base = Combinator(AND, (Predicate("age", ">", 30), Predicate("gender", "=", "F")))
    expr = conjoin(base, [Predicate("education", "is-not-null")])

    assert expr.operands[0] == base
    assert len(top_level_conjuncts(expr)) == 3
    assert conjoin(None, []) is None


class TestErrors:

    def test_unknown_field(self, normalizer):
        with pytest.raises(CompileError, match="Unknown field 'salary'"):
            normalizer.normalize(eq("salary", 10))

    def test_ordering_operator_on_string(self, normalizer):
        with pytest.raises(CompileError, match="requires a numeric field"):
            normalizer.normalize(Comparison("gender", ">", "F"))

    def test_numeric_field_with_string_literal(self, normalizer):
        with pytest.raises(CompileError, match="string literal"):
            normalizer.normalize(eq("age", "thirty"))

    def test_unknown_operator(self, normalizer):
        with pytest.raises(CompileError, match="Unsupported comparison operator"):
            normalizer.normalize(Comparison("age", "~", 3))

    def test_null_literal(self, normalizer):
        with pytest.raises(CompileError, match="IS NULL"):
            normalizer.normalize(eq("gender", None))

    def test_malformed_chain(self, normalizer):
        with pytest.raises(CompileError, match="Malformed"):
            normalizer.normalize(chain(eq("gender", "F"), "AND"))
