"""Tests for the hypothesis engine and its candidate library."""

from __future__ import annotations

from hypothesis import HealthCheck, given, settings, strategies as st
from reverse_judge.hypotheses import (
    LIBRARY,
    Prediction,
    get_candidate,
    hypotheses_by_category,
    is_prime,
    lis_length,
    max_subarray_sum,
    predict_with,
    score_candidate,
    top_hypotheses,
    validate_hypotheses,
)
from reverse_judge.models import HypothesisCategory, Observation
import pytest

from tests.conftest import make_observations

_SUM_PAIRS = [
    ("3\n1 2 3\n", "6"),
    ("5\n1 2 3 4 5\n", "15"),
    ("4\n-1 -2 -3 -4\n", "-10"),
    ("2\n0 0\n", "0"),
]

_FIBONACCI_PAIRS = [("1\n", "1"), ("2\n", "1"), ("5\n", "5"), ("10\n", "55")]


@pytest.mark.unit
class TestLibrary:
    """The closed candidate library."""

    def test_ids_are_unique(self) -> None:
        ids = [candidate.id for candidate in LIBRARY]
        assert len(ids) == len(set(ids))

    def test_every_family_is_represented(self) -> None:
        """Each hypothesis category has at least one candidate."""
        assert {candidate.category for candidate in LIBRARY} == set(HypothesisCategory)

    def test_unknown_id(self) -> None:
        assert get_candidate("quantum_sort") is None
        assert predict_with("quantum_sort", "1\n1\n") is None

    def test_outside_domain_is_none(self) -> None:
        """max of an empty operand list is not applicable."""
        assert predict_with("max", "") is None
        assert predict_with("factorial_n", "-3\n") is None

    def test_helpers(self) -> None:
        assert max_subarray_sum([-2, 1, -3, 4, -1, 2]) == 5
        assert lis_length([2, 3, 1, 5, 4, 6]) == 4
        assert is_prime(97) is True
        assert is_prime(1) is False


@pytest.mark.unit
class TestPrediction:
    """Output comparison rules."""

    def test_whitespace_insensitive(self) -> None:
        assert Prediction(expected="1 2 3").matches("1\n2  3\n") is True

    def test_boolean_alternatives(self) -> None:
        """YES accepts yes/1/true."""
        prediction = predict_with("is_prime", "7\n")
        assert prediction is not None
        assert prediction.matches("YES")
        assert prediction.matches("true")
        assert not prediction.matches("NO")

    def test_numeric_tolerance(self) -> None:
        """Averages match within the numeric epsilon and formatted spellings."""
        prediction = predict_with("average", "3\n1 2 2\n")
        assert prediction is not None
        assert prediction.matches("1.6667")
        assert prediction.matches("1.67")
        assert prediction.matches("1")


@pytest.mark.unit
class TestValidation:
    """Scoring and ranking against observations."""

    def test_array_sum_scenario(self) -> None:
        """Array-sum observations put Array Sum on top at full confidence."""
        top = top_hypotheses(make_observations(_SUM_PAIRS))
        assert top[0].name == "Array Sum"
        assert top[0].confidence == 1.0
        assert all(h.confidence == 1.0 for h in top)

    def test_fibonacci_scenario(self) -> None:
        """Scalar observations of F(n) put Nth Fibonacci on top."""
        top = top_hypotheses(make_observations(_FIBONACCI_PAIRS))
        assert top[0].name == "Nth Fibonacci"
        assert top[0].confidence == 1.0

    def test_empty_observations(self) -> None:
        assert validate_hypotheses([]) == []
        assert top_hypotheses([]) == []

    def test_below_half_is_dropped(self) -> None:
        """Hypotheses under 0.5 confidence do not survive."""
        ranked = validate_hypotheses(make_observations(_SUM_PAIRS))
        assert all(h.confidence >= 0.5 for h in ranked)
        assert "product" not in {h.id for h in ranked}

    def test_perfect_matches_rank_first(self) -> None:
        """Full-confidence hypotheses precede partial ones."""
        ranked = validate_hypotheses(
            make_observations([("3\n1 2 3\n", "3"), ("3\n4 5 9\n", "9"), ("2\n7 1\n", "7")])
        )
        confidences = [h.confidence for h in ranked]
        assert confidences == sorted(confidences, reverse=True)
        assert ranked[0].id == "max"

    def test_top_limit_without_perfect_match(self) -> None:
        """With no perfect match the best ``limit`` are returned."""
        observations = make_observations([*_SUM_PAIRS[:3], ("2\n0 0\n", "99")])
        top = top_hypotheses(observations, limit=2)
        assert len(top) <= 2
        assert top[0].id == "sum"
        assert top[0].confidence == pytest.approx(0.75)

    def test_size_prefix_misreads_plain_pair(self) -> None:
        """A program summing every operand of ``2\\n5 7`` is read as a prefixed pair.

        The leading 2 is taken as a length header, so ``sum`` predicts 12
        while the program printed 14 and the hypothesis misses.
        """
        observation = Observation(input="2\n5 7\n", output="14")
        sum_candidate = get_candidate("sum")
        assert sum_candidate is not None
        scored = score_candidate(sum_candidate, [observation])
        assert scored.match_count == 0
        assert scored.mismatch_count == 1

    def test_grouped_by_category(self) -> None:
        grouped = hypotheses_by_category(make_observations(_SUM_PAIRS))
        assert grouped[HypothesisCategory.AGGREGATION][0].id == "sum"

    def test_repeated_calls_are_identical(self) -> None:
        """Scoring recomputes from scratch and is deterministic."""
        observations = make_observations(_SUM_PAIRS)
        assert validate_hypotheses(observations) == validate_hypotheses(observations)

    @given(
        pairs=st.lists(
            st.tuples(
                st.lists(st.integers(min_value=-50, max_value=50), min_size=1, max_size=6),
                st.integers(min_value=-500, max_value=500),
            ),
            min_size=1,
            max_size=8,
        )
    )
    @settings(max_examples=60, suppress_health_check=[HealthCheck.too_slow])
    def test_counts_cover_every_observation(self, pairs: list[tuple[list[int], int]]) -> None:
        """match_count + mismatch_count equals the observation count."""
        observations = [
            Observation(input=f"{len(values)}\n{' '.join(map(str, values))}\n", output=str(output))
            for values, output in pairs
        ]
        for candidate in LIBRARY:
            scored = score_candidate(candidate, observations)
            assert scored.match_count + scored.mismatch_count == len(observations)
            assert scored.confidence == pytest.approx(scored.match_count / len(observations))
