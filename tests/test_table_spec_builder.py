"""
Tests for TableSpecBuilder: measure binding, type checks, ranking and resolution
"""
import pytest

from tpl_engine.errors import CompileError, PlanError
from tpl_engine.planner.query_plan_generator import QueryPlanGenerator
from tpl_engine.planner.table_spec_builder import TableSpecBuilder, rank_members, is_valid_aggregate
from tpl_engine.types.ast import AggregationSpec, MeasureBinding
from tpl_engine.types.table_spec import Ordering, BY_VALUE, ASC, DESC, ACROSS_COLS

from tpl_helpers import (
    CENSUS_SCHEMA, CENSUS_ROWS, FakeExecutor, dim, all_, measure, nest, cat, statement, eq,
)


@pytest.fixture
def builder() -> TableSpecBuilder:
    return TableSpecBuilder(CENSUS_SCHEMA)


def _by_value(limit=None, direction=None) -> Ordering:
    return Ordering(mode=BY_VALUE, direction=direction, limit=limit)


class TestRankMembers:
    """Sign convention for [N] / [-N] and ASC / DESC"""

    CANDIDATES = [("a", 5), ("b", 1), ("c", 4), ("d", 2), ("e", 3)]

    def test_positive_limit_keeps_smallest_ascending(self):
        assert rank_members(self.CANDIDATES, _by_value(2)) == ("b", "d")

    def test_negative_limit_keeps_largest_descending(self):
        assert rank_members(self.CANDIDATES, _by_value(-2)) == ("a", "c")

    def test_desc_keyword_with_positive_limit(self):
        assert rank_members(self.CANDIDATES, _by_value(2, DESC)) == ("a", "c")

    def test_desc_keyword_with_negative_limit(self):
        assert rank_members(self.CANDIDATES, _by_value(-2, DESC)) == ("b", "d")

    def test_no_limit_orders_everything(self):
        assert rank_members(self.CANDIDATES, _by_value(direction=ASC)) == ("b", "d", "e", "c", "a")
        assert rank_members(self.CANDIDATES, _by_value(direction=DESC)) == ("a", "c", "e", "d", "b")

    def test_no_limit_no_keyword_is_descending(self):
        assert rank_members(self.CANDIDATES, _by_value()) == ("a", "c", "e", "d", "b")

    def test_alphabetical_without_keyword_stays_ascending(self):
        names = [(n, n) for n in ["b", "c", "a"]]
        assert rank_members(names, Ordering()) == ("a", "b", "c")

    def test_ties_break_by_member_string(self):
        tied = [("z", 1), ("m", 1), ("a", 1)]
        assert rank_members(tied, _by_value()) == ("a", "m", "z")
        assert rank_members(tied, _by_value(-2)) == ("a", "m")

    def test_null_keys_sort_last(self):
        with_null = [("a", None), ("b", 2), ("c", 1)]
        assert rank_members(with_null, _by_value(direction=ASC)) == ("c", "b", "a")
        assert rank_members(with_null, _by_value()) == ("b", "c", "a")
        assert rank_members(with_null, _by_value(-1)) == ("b",)

    def test_top_and_bottom_are_complements(self):
        candidates = [(f"m{i}", v) for i, v in enumerate([7, 3, 9, 1, 8, 2, 6, 4, 10, 5])]

        top = rank_members(candidates, _by_value(-5))
        bottom = rank_members(candidates, _by_value(5))

        assert set(top).isdisjoint(bottom)
        assert set(top) | set(bottom) == {m for m, _ in candidates}

    def test_limit_larger_than_candidates(self):
        assert rank_members(self.CANDIDATES, _by_value(-10)) == ("a", "c", "e", "d", "b")

    def test_alphabetical_keys(self):
        names = [(n, n) for n in ["Teacher", "Artist", "Nurse"]]
        assert rank_members(names, Ordering()) == ("Artist", "Nurse", "Teacher")
        assert rank_members(names, Ordering(direction=DESC, limit=1)) == ("Teacher",)


class TestMeasureBinding:
    """Measure occurrences become MeasureSpecs"""

    def test_default_count(self, builder):
        spec = builder.build(statement(cat(dim("occupation"))))

        assert len(spec.measures) == 1
        assert spec.measures[0].name == "count"
        assert spec.measures[0].field is None

    def test_bundle_expands_per_aggregation(self, builder):
        binding = MeasureBinding(
            measure="income",
            aggregations=[AggregationSpec("sum"), AggregationSpec("mean", format="decimal.1")],
            format="currency",
        )
        spec = builder.build(statement(cat(dim("occupation")), nest(dim("education"), binding)))

        assert [m.name for m in spec.measures] == ["sum_income", "mean_income"]
        assert spec.measures[0].format == "currency"
        assert spec.measures[1].format == "decimal.1"

    def test_across_defaults_to_percent(self, builder):
        spec = builder.build(statement(cat(dim("occupation")), nest(dim("education"), measure("income", across="COLS"))))

        m = spec.measures[0]
        assert m.across == ACROSS_COLS
        assert m.format == "percent"
        assert m.name == "sum_income_pct_cols"

    def test_same_aggregate_with_and_without_across(self, builder):
        cols = nest(dim("education"), cat(measure("income"), measure("income", across="cols")))
        spec = builder.build(statement(cat(dim("occupation")), cols))

        assert [m.name for m in spec.measures] == ["sum_income", "sum_income_pct_cols"]
        assert spec.measures[0].base == spec.measures[1].base

    def test_duplicate_occurrence_is_bound_once(self, builder):
        cols = cat(nest(dim("education"), measure("income")), nest(all_(), measure("income")))
        spec = builder.build(statement(cat(dim("occupation")), cols))

        assert [m.name for m in spec.measures] == ["sum_income"]

    def test_bindings_attach_to_their_own_branch(self, builder):
        cols = cat(nest(dim("education"), measure("income", "sum")), nest(dim("gender"), measure("income", "mean")))
        spec = builder.build(statement(cat(dim("occupation")), cols))

        education, gender = spec.col_axis.branches()
        assert spec.col_axis.branch_measures(education) == ("sum_income",)
        assert spec.col_axis.branch_measures(gender) == ("mean_income",)
        assert [m.name for m in spec.cell_measures((0,), gender)] == ["mean_income"]

    def test_top_level_binding_covers_every_branch(self, builder):
        spec = builder.build(statement(cat(dim("occupation"), all_()), cat(measure("income", "sum", "mean"))))

        assert spec.col_axis.root_measures == ("sum_income", "mean_income")
        for branch in spec.row_axis.branches():
            assert [m.name for m in spec.cell_measures(branch, ())] == ["sum_income", "mean_income"]

    def test_repeated_occurrence_reuses_its_name(self, builder):
        cols = cat(nest(dim("education"), measure("income")), nest(dim("gender"), measure("income")))
        spec = builder.build(statement(cat(dim("occupation")), cols))

        assert [m.name for m in spec.measures] == ["sum_income"]
        assert [spec.col_axis.branch_measures(b) for b in spec.col_axis.branches()] == [("sum_income",)] * 2

    def test_percentile_aggregate(self, builder):
        spec = builder.build(statement(cat(dim("occupation")), nest(dim("education"), measure("income", "p90"))))

        assert spec.measures[0].aggregate == "p90"
        assert is_valid_aggregate("p50")
        assert not is_valid_aggregate("p0")
        assert not is_valid_aggregate("p100")

    def test_include_nulls_option(self):
        spec = TableSpecBuilder(CENSUS_SCHEMA).build(statement(cat(dim("occupation")), include_nulls=True))
        assert spec.include_nulls

        spec = TableSpecBuilder(CENSUS_SCHEMA, include_nulls=True).build(statement(cat(dim("occupation"))))
        assert spec.include_nulls


class TestCompileErrors:

    def test_unknown_measure(self, builder):
        with pytest.raises(CompileError, match="Unknown measure 'salary'"):
            builder.build(statement(cat(dim("occupation")), nest(dim("education"), measure("salary"))))

    def test_numeric_aggregate_on_string(self, builder):
        with pytest.raises(CompileError, match="requires a numeric field"):
            builder.build(statement(cat(dim("occupation")), nest(dim("education"), measure("gender", "sum"))))

    def test_count_on_string_is_allowed(self, builder):
        spec = builder.build(statement(cat(dim("occupation")), nest(dim("education"), measure("gender", "count"))))
        assert spec.measures[0].name == "count_gender"

    def test_unknown_aggregate(self, builder):
        with pytest.raises(CompileError, match="Unknown aggregation"):
            builder.build(statement(cat(dim("occupation")), nest(dim("education"), measure("income", "mode"))))

    def test_unknown_format(self, builder):
        with pytest.raises(CompileError, match="Unknown format"):
            builder.build(statement(cat(dim("occupation")), nest(dim("education"), measure("income", fmt="roman"))))

    def test_bad_across(self, builder):
        with pytest.raises(CompileError, match="ACROSS"):
            builder.build(statement(cat(dim("occupation")), nest(dim("education"), measure("income", across="diagonal"))))

    def test_bad_where(self, builder):
        with pytest.raises(CompileError):
            builder.build(statement(cat(dim("occupation")), where=eq("salary", 3)))


class TestResolve:
    """Second pass: fixing by-value members from discovery rows"""

    def test_top_three_by_income(self, builder):
        spec = builder.build(statement(
            cat(dim("occupation", limit=-3, by="income", agg="sum")),
            nest(dim("education"), measure("income")),
        ))
        discovery = QueryPlanGenerator().discovery(spec)
        executor = FakeExecutor(CENSUS_ROWS)
        results = {q.key: executor.execute(q) for q in discovery.queries}

        resolved = builder.resolve(spec, discovery, results)

        selection = resolved.row_members[0]
        # Artist has no education and is guarded out
        assert selection.members_for(()) == ("Doctor", "Engineer", "Teacher")

    def test_per_parent_limits(self, builder):
        spec = builder.build(statement(
            nest(dim("education"), dim("occupation", limit=-1, by="income", agg="sum")),
            cat(measure("income")),
        ))
        discovery = QueryPlanGenerator().discovery(spec)
        executor = FakeExecutor(CENSUS_ROWS)
        results = {q.key: executor.execute(q) for q in discovery.queries}

        resolved = builder.resolve(spec, discovery, results)

        selection = resolved.row_members[1]
        assert selection.members_for(("BA",)) == ("Engineer",)
        assert selection.members_for(("MS",)) == ("Engineer",)
        assert selection.members_for(("PhD",)) == ("Doctor",)
        assert selection.all_members() == ("Engineer", "Doctor")

    def test_missing_discovery_results(self, builder):
        spec = builder.build(statement(
            cat(dim("occupation", limit=3, by="income", agg="sum")),
            nest(dim("education"), measure("income")),
        ))
        discovery = QueryPlanGenerator().discovery(spec)

        with pytest.raises(PlanError, match="No discovery result"):
            builder.resolve(spec, discovery, {})

    def test_ascending_direction(self, builder):
        spec = builder.build(statement(
            cat(dim("occupation", limit=2, by="income", agg="sum", order=ASC)),
            cat(measure("income")),
        ))
        discovery = QueryPlanGenerator().discovery(spec)
        executor = FakeExecutor(CENSUS_ROWS)
        results = {q.key: executor.execute(q) for q in discovery.queries}

        resolved = builder.resolve(spec, discovery, results)

        assert resolved.row_members[0].members_for(()) == ("Artist", "Nurse")

    def test_order_by_value_without_limit_puts_largest_first(self, builder):
        spec = builder.build(statement(
            cat(dim("occupation", by="income", agg="sum")),
            cat(measure("income")),
        ))
        discovery = QueryPlanGenerator().discovery(spec)
        executor = FakeExecutor(CENSUS_ROWS)
        results = {q.key: executor.execute(q) for q in discovery.queries}

        resolved = builder.resolve(spec, discovery, results)

        assert resolved.row_members[0].members_for(()) == ("Doctor", "Engineer", "Teacher", "Nurse", "Artist")
