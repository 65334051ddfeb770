"""Adaptive test orchestrator: pick inputs that reduce ambiguity.

Two complementary sources of follow-up tests:

* Discriminating tests, when the top two hypotheses are within the ambiguity
  threshold of each other. Known hypothesis pairs map to hand-picked
  separating inputs; unknown pairs are separated by searching a probe pool
  for an input on which the two library predictions differ.
* Coverage-gap tests, for input categories the observations never touched
  (negative values, large magnitudes, single elements, zeros, sorted input,
  duplicates).

Suggestions are deduplicated against the existing observations and capped.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
import logging
import re

from reverse_judge.extraction import extract_numbers, normalize_input
from reverse_judge.hypotheses import predict_with
from reverse_judge.models import Hypothesis, Observation, TestCase, TestCategory
from reverse_judge.strategies import dedupe_cases

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.2
DEFAULT_CAP = 10

# A hypothesis joins the discriminating pool when it is above this and close to the top.
_CLOSE_FLOOR = 0.5
_CLOSE_WINDOW = 0.3
_MAX_PAIR_TESTS = 5
_MAX_GAP_CATEGORIES = 3

_GENERIC_PROBE = "6\n3 -1 4 1 -5 9\n"

DISCRIMINATING_TESTS: dict[frozenset[str], str] = {
    frozenset({"sum", "max"}): "3\n1 1 5\n",
    frozenset({"sum", "count"}): "3\n2 3 4\n",
    frozenset({"max", "min"}): "3\n1 5 3\n",
    frozenset({"median", "average"}): "5\n1 2 3 4 100\n",
    frozenset({"average", "sum"}): "3\n3 6 9\n",
    frozenset({"product", "sum"}): "3\n2 2 2\n",
    frozenset({"gcd", "min"}): "3\n6 9 12\n",
    frozenset({"lcm", "max"}): "3\n2 3 4\n",
    frozenset({"range", "max"}): "4\n-5 0 5 10\n",
    frozenset({"first", "last"}): "4\n7 8 9 10\n",
    frozenset({"count_positive", "count"}): "5\n-1 -2 3 4 5\n",
    frozenset({"sum", "max_subarray_sum"}): "4\n2 -5 3 1\n",
    frozenset({"sorted_output", "reverse_output"}): "4\n3 1 4 2\n",
    frozenset({"lis_length", "unique_count"}): "5\n5 1 4 2 3\n",
    frozenset({"max", "second_max"}): "4\n9 2 7 4\n",
}
"""Separating inputs keyed by normalized hypothesis-name pairs."""

_NAME_ALIASES: dict[str, str] = {
    "array_sum": "sum",
    "array_product": "product",
    "element_count": "count",
    "maximum_element": "max",
    "maximum": "max",
    "minimum_element": "min",
    "minimum": "min",
    "first_element": "first",
    "last_element": "last",
    "mean": "average",
    "range_max_min": "range",
    "gcd_of_all": "gcd",
    "lcm_of_all": "lcm",
}

PROBE_POOL: tuple[str, ...] = (
    "3\n1 1 5\n",
    "3\n2 3 4\n",
    "3\n6 9 12\n",
    "4\n-5 0 5 10\n",
    "4\n7 8 9 10\n",
    "5\n1 2 3 4 100\n",
    "5\n5 1 4 2 3\n",
    "4\n2 -5 3 1\n",
    "6\n2 2 3 3 3 8\n",
    "1\n7\n",
    "2\n-4 6\n",
    "7\n",
    "12\n",
    "17\n",
    "16\n",
    "25\n",
)

COVERAGE_GAP_TESTS: dict[TestCategory, tuple[tuple[str, str], ...]] = {
    TestCategory.NEGATIVE_VALUES: (
        ("5\n-1 -2 -3 -4 -5\n", "All negative values"),
        ("6\n-3 -1 0 1 2 3\n", "Negative, zero and positive values"),
    ),
    TestCategory.LARGE_VALUES: (
        ("3\n1000000000 1000000000 1000000000\n", "Values near 1e9"),
        ("2\n-2000000000 2000000000\n", "Values beyond 32-bit range"),
    ),
    TestCategory.MINIMAL_CASES: (
        ("1\n42\n", "Single element"),
        ("2\n1 2\n", "Two elements"),
    ),
    TestCategory.ZERO_CASES: (
        ("5\n0 0 0 0 0\n", "All zeros"),
        ("3\n0 1 0\n", "Zeros around a value"),
    ),
    TestCategory.SORTED_INPUTS: (
        ("5\n1 2 3 4 5\n", "Sorted ascending"),
        ("5\n5 4 3 2 1\n", "Sorted descending"),
    ),
    TestCategory.DUPLICATE_ELEMENTS: (
        ("5\n7 7 7 7 7\n", "All duplicates"),
        ("6\n1 1 2 2 3 3\n", "Paired duplicates"),
    ),
}

_LARGE_VALUE_RE = re.compile(r"\d{7,}")


def normalize_hypothesis_name(name: str) -> str:
    """Map a hypothesis id or display name onto a lookup-table key.

    Lowercases, replaces non-alphanumerics with ``_`` and resolves display
    names such as ``"Maximum Element"`` to library ids (``"max"``).
    """
    key = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return _NAME_ALIASES.get(key, key)


def _hypothesis_key(hypothesis: Hypothesis) -> str:
    return normalize_hypothesis_name(hypothesis.id or hypothesis.name)


def is_ambiguous(hypotheses: Sequence[Hypothesis], threshold: float = DEFAULT_THRESHOLD) -> bool:
    """Whether the top two hypotheses are closer than *threshold*."""
    if len(hypotheses) < 2:
        return False
    ranked = sorted(hypotheses, key=lambda h: h.confidence, reverse=True)
    return ranked[0].confidence - ranked[1].confidence < threshold


def _separating_probe(first: str, second: str) -> str | None:
    """Find a probe on which the two library predictions disagree."""
    for probe in PROBE_POOL:
        a = predict_with(first, probe)
        b = predict_with(second, probe)
        if a is None and b is None:
            continue
        if a is None or b is None or not a.matches(b.expected):
            return probe
    return None


def discriminating_tests(
    hypotheses: Sequence[Hypothesis],
    threshold: float = DEFAULT_THRESHOLD,
) -> list[TestCase]:
    """Inputs that separate the close-running hypotheses.

    Args:
        hypotheses: Current hypotheses.
        threshold: Top-two gap below which the ranking is ambiguous.

    Returns:
        Up to five discriminating cases, or none when the ranking is clear.
    """
    if not is_ambiguous(hypotheses, threshold):
        return []
    ranked = sorted(hypotheses, key=lambda h: h.confidence, reverse=True)
    top = ranked[0].confidence
    close = [h for h in ranked if h.confidence > _CLOSE_FLOOR and top - h.confidence < _CLOSE_WINDOW]
    if len(close) < 2:
        close = ranked[:2]

    cases: list[TestCase] = []
    for i, first in enumerate(close):
        for second in close[i + 1 :]:
            a, b = _hypothesis_key(first), _hypothesis_key(second)
            text = DISCRIMINATING_TESTS.get(frozenset({a, b})) or _separating_probe(a, b) or _GENERIC_PROBE
            cases.append(
                TestCase(
                    input=text,
                    rationale=f"Distinguish {first.name} from {second.name}",
                    category=TestCategory.DISCRIMINATING,
                    priority=10,
                )
            )
    unique = dedupe_cases(cases)[:_MAX_PAIR_TESTS]
    logger.debug("Generated %d discriminating test(s) for %d close hypotheses", len(unique), len(close))
    return unique


def _is_sorted(numbers: Sequence[int]) -> bool:
    if len(numbers) < 2:
        return False
    pairs = list(zip(numbers, numbers[1:], strict=False))
    return all(a <= b for a, b in pairs) or all(a >= b for a, b in pairs)


def suggest_gap_categories(observations: Sequence[Observation]) -> list[TestCategory]:
    """Input categories that no observation has exercised yet, in fixed order."""
    inputs = [obs.input for obs in observations]
    operand_lists = [extract_numbers(text) for text in inputs]
    gaps: list[TestCategory] = []
    if not any("-" in text for text in inputs):
        gaps.append(TestCategory.NEGATIVE_VALUES)
    if not any(_LARGE_VALUE_RE.search(text) for text in inputs):
        gaps.append(TestCategory.LARGE_VALUES)
    if not any(text.lstrip().startswith("1\n") for text in inputs):
        gaps.append(TestCategory.MINIMAL_CASES)
    if not any(0 in numbers for numbers in operand_lists):
        gaps.append(TestCategory.ZERO_CASES)
    if not any(_is_sorted(numbers) for numbers in operand_lists):
        gaps.append(TestCategory.SORTED_INPUTS)
    if not any(len(set(numbers)) < len(numbers) for numbers in operand_lists):
        gaps.append(TestCategory.DUPLICATE_ELEMENTS)
    return gaps


def category_tests(category: TestCategory) -> list[TestCase]:
    """Canned cases covering one gap category."""
    return [
        TestCase(input=text, rationale=rationale, category=category, priority=7)
        for text, rationale in COVERAGE_GAP_TESTS.get(category, ())
    ]


def coverage_gap_tests(observations: Sequence[Observation]) -> list[TestCase]:
    """Cases for the first few untested categories."""
    cases: list[TestCase] = []
    for category in suggest_gap_categories(observations)[:_MAX_GAP_CATEGORIES]:
        cases.extend(category_tests(category))
    return cases


def suggest_next_tests(
    observations: Sequence[Observation],
    hypotheses: Sequence[Hypothesis],
    *,
    threshold: float = DEFAULT_THRESHOLD,
    cap: int = DEFAULT_CAP,
    extra_seen: Iterable[str] = (),
) -> list[TestCase]:
    """Suggest follow-up tests for an ambiguous or under-covered run.

    Args:
        observations: Successful observations so far.
        hypotheses: Current validated hypotheses.
        threshold: Top-two confidence gap that counts as ambiguous.
        cap: Maximum number of suggestions.
        extra_seen: Further inputs already executed (e.g. failed attempts)
            that must not be suggested again.

    Returns:
        Discriminating cases first, then coverage-gap cases, with no input
        repeating an existing observation.
    """
    seen = {normalize_input(obs.input) for obs in observations}
    seen.update(normalize_input(text) for text in extra_seen)
    candidates = discriminating_tests(hypotheses, threshold) + coverage_gap_tests(observations)
    suggestions = dedupe_cases(candidates, seen=seen)[:cap]
    logger.debug("Adaptive round suggests %d test(s)", len(suggestions))
    return suggestions
