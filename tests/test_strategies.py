"""Tests for the declarative test-strategy generator."""

from __future__ import annotations

from hypothesis import given, settings, strategies as st
from reverse_judge.constraints import parse_constraints
from reverse_judge.extraction import normalize_input
from reverse_judge.models import ParsedConstraints, StructuralHint, TestCategory, VariableBound
from reverse_judge.strategies import (
    dedupe_cases,
    element_variable,
    external_case,
    generate_test_cases,
    generate_test_suite,
    input_shape,
    is_well_formed,
    materialize,
    merge_test_cases,
    within_bounds,
)
import pytest

_ARRAY = ParsedConstraints(
    variables=(VariableBound(name="n", min=1, max=100000),),
    structural_hints=frozenset({StructuralHint.ARRAY}),
)


@pytest.mark.unit
class TestShapes:
    """Shape selection and materialization."""

    def test_no_hints_is_array_shaped(self) -> None:
        """Problems without hints default to arrays."""
        assert input_shape(ParsedConstraints(variables=(VariableBound(name="n"),))) is StructuralHint.ARRAY

    def test_materialize_array(self) -> None:
        """Array inputs start with the length."""
        assert materialize(3, _ARRAY) == "3\n1 2 3\n"

    def test_materialize_scalar_without_hints(self) -> None:
        """Without hints the bare value is emitted."""
        bare = ParsedConstraints(variables=(VariableBound(name="n"),))
        assert materialize(7, bare) == "7\n"

    def test_materialize_string(self) -> None:
        """String problems get a string of the requested length."""
        strings = ParsedConstraints(
            variables=(VariableBound(name="n"),),
            structural_hints=frozenset({StructuralHint.STRING}),
        )
        assert materialize(3, strings) == "abc\n"

    def test_materialize_graph(self) -> None:
        """Graphs are paths with n-1 edges."""
        graph = ParsedConstraints(
            variables=(VariableBound(name="n"),),
            structural_hints=frozenset({StructuralHint.GRAPH}),
        )
        assert materialize(3, graph) == "3 2\n1 2\n2 3\n"


@pytest.mark.unit
class TestWellFormed:
    """Shape and bound filters."""

    def test_blank_is_rejected(self) -> None:
        assert is_well_formed("   \n", _ARRAY) is False

    def test_count_must_match(self) -> None:
        """A count disagreeing with the element list is malformed."""
        assert is_well_formed("3\n1 2\n", _ARRAY) is False
        assert is_well_formed("2\n1 2\n", _ARRAY) is True

    def test_non_array_shapes_pass(self) -> None:
        """Graph inputs are not count-checked."""
        graph = ParsedConstraints(
            variables=(VariableBound(name="n"),),
            structural_hints=frozenset({StructuralHint.GRAPH}),
        )
        assert is_well_formed("3 1\n1 2\n", graph) is True

    def test_element_bounds(self) -> None:
        """Elements outside the declared range are rejected."""
        parsed = parse_constraints("n integers", "1 <= n <= 10, -100 <= a_i <= 100")
        assert within_bounds("2\n5 -7\n", parsed) is True
        assert within_bounds("2\n1000 1\n", parsed) is False
        assert within_bounds("11\n1 1 1 1 1 1 1 1 1 1 1\n", parsed) is False

    def test_element_bound_prefers_subscripted_name(self) -> None:
        """A bounded parameter listed first does not stand in for the elements."""
        parsed = parse_constraints("n integers", "1 <= n <= 10^5, 1 <= k <= 100, 1 <= a_i <= 10^9")
        element = element_variable(parsed)
        assert element is not None
        assert element.name == "a_i"
        assert within_bounds("3\n500 600 700\n", parsed) is True
        assert within_bounds("2\n0 1\n", parsed) is False

    def test_element_bound_falls_back_to_first_bounded(self) -> None:
        parsed = ParsedConstraints(
            variables=(VariableBound(name="n", min=1, max=10), VariableBound(name="k", min=1, max=5)),
            structural_hints=frozenset({StructuralHint.ARRAY}),
        )
        element = element_variable(parsed)
        assert element is not None
        assert element.name == "k"
        assert within_bounds("2\n6 1\n", parsed) is False


@pytest.mark.unit
class TestGenerateTestCases:
    """Batch generation over all strategies."""

    def test_array_batch(self) -> None:
        """Array problems get array strategies and no string cases."""
        cases = generate_test_cases(_ARRAY, 25)
        categories = {case.category for case in cases}
        assert len(cases) == 25
        assert TestCategory.BOUNDARY in categories
        assert TestCategory.STRING_PATTERNS not in categories

    def test_sorted_by_priority(self) -> None:
        """Cases come out in descending priority."""
        priorities = [case.priority for case in generate_test_cases(_ARRAY, 40)]
        assert priorities == sorted(priorities, reverse=True)

    def test_string_batch_has_no_arrays(self) -> None:
        """String problems only get string and boundary cases."""
        cases = generate_test_suite("A string s of lowercase characters.", "1 <= n <= 100")
        assert cases
        assert {case.category for case in cases} <= {TestCategory.STRING_PATTERNS, TestCategory.BOUNDARY}

    def test_graph_batch(self) -> None:
        """Graph problems get canonical graph structures."""
        cases = generate_test_suite("A graph with n nodes and m edges.", "1 <= n <= 10")
        assert any(case.category is TestCategory.STRUCTURE for case in cases)

    def test_bounds_filter_large_values(self) -> None:
        """Element bounds exclude overflow probes."""
        parsed = parse_constraints("n integers", "1 <= n <= 10, -100 <= a_i <= 100")
        cases = generate_test_cases(parsed, 50)
        assert all(case.category is not TestCategory.LARGE_VALUES for case in cases)

    def test_all_inputs_end_with_newline(self) -> None:
        assert all(case.input.endswith("\n") for case in generate_test_cases(_ARRAY, 50))

    @given(target=st.integers(min_value=1, max_value=60))
    @settings(max_examples=30)
    def test_inputs_are_unique_and_capped(self, target: int) -> None:
        """No two cases share a normalized input and the cap holds."""
        cases = generate_test_cases(_ARRAY, target)
        keys = [normalize_input(case.input) for case in cases]
        assert len(cases) <= target
        assert len(keys) == len(set(keys))


@pytest.mark.unit
class TestMerging:
    """External cases and batch merging."""

    def test_external_case_unescapes_newlines(self) -> None:
        """Literal backslash-n sequences become newlines."""
        case = external_case("2\\n1 2", "from service")
        assert case.input == "2\n1 2\n"
        assert case.category is TestCategory.EXTERNAL

    def test_merge_keeps_first_and_limits(self) -> None:
        """Earlier batches win duplicates and the limit applies."""
        first = [external_case("1\n5", "a", 9)]
        second = [external_case("1\n5 ", "dup"), external_case("1\n6", "b"), external_case("1\n7", "c")]
        merged = merge_test_cases(first, second, limit=2)
        assert [case.rationale for case in merged] == ["a", "b"]

    def test_dedupe_respects_seen(self) -> None:
        """Already-seen inputs are skipped."""
        seen = {normalize_input("1\n5\n")}
        assert dedupe_cases([external_case("1\n5", "x")], seen=seen) == []
