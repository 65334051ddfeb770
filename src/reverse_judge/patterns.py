"""Pattern detector: classify observation sets into algorithmic families.

Unlike the hypothesis engine's exact scoring, each classifier here applies a
statistical threshold ("more than 80% of observations agree with a sum") so
it stays informative when some observations are noisy. Every classifier is an
ordered list of rules; the first rule whose agreement ratio clears its
threshold produces that classifier's pattern.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import logging
import math

from pydantic import BaseModel, ConfigDict

from reverse_judge.extraction import (
    extract_first_number,
    extract_numbers,
    is_boolean_output,
    parse_boolean,
    parse_number,
)
from reverse_judge.hypotheses import is_prime, lis_length, max_subarray_sum
from reverse_judge.models import DetectedPattern, Observation, PatternType

logger = logging.getLogger(__name__)

Check = Callable[[Observation], bool]


class PatternRule(BaseModel):
    """One thresholded check inside a classifier.

    Attributes:
        label: Short description used in the evidence trail.
        check: Predicate over a single observation.
        threshold: Agreement ratio that must be strictly exceeded.
        pattern_type: Family reported when the rule fires.
        confidence: Fixed confidence, or ``None`` to report the ratio itself.
        suggested_algorithm: Algorithm reported when the rule fires.
    """

    model_config = ConfigDict(frozen=True)

    label: str
    check: Check
    threshold: float
    pattern_type: PatternType
    confidence: float | None
    suggested_algorithm: str


# ---------------------------------------------------------------------------
# Observation checks
# ---------------------------------------------------------------------------


def _numeric_check(fn: Callable[[list[int]], float | None]) -> Check:
    """Compare a numeric output with ``fn`` applied to the input operands."""

    def _check(obs: Observation) -> bool:
        numbers = extract_numbers(obs.input)
        if not numbers:
            return False
        output = parse_number(obs.output)
        if output is None:
            return False
        expected = fn(numbers)
        return expected is not None and expected == output

    return _check


def _first_number_check(fn: Callable[[int], int | None]) -> Check:
    """Compare the output text with ``fn`` of the first input integer."""

    def _check(obs: Observation) -> bool:
        n = extract_first_number(obs.input)
        if n is None:
            return False
        expected = fn(n)
        return expected is not None and str(expected) == obs.output.strip()

    return _check


def _text_check(fn: Callable[[list[int]], int]) -> Check:
    """Compare the output text with ``fn`` of the non-empty operand list."""

    def _check(obs: Observation) -> bool:
        numbers = extract_numbers(obs.input)
        if not numbers:
            return False
        return str(fn(numbers)) == obs.output.strip()

    return _check


def _boolean_check(predicate: Callable[[str], bool | None]) -> Check:
    """Compare a boolean-like output with ``predicate`` of the input."""

    def _check(obs: Observation) -> bool:
        expected = predicate(obs.input)
        actual = parse_boolean(obs.output)
        return expected is not None and actual is not None and expected == actual

    return _check


def _sorted_output(obs: Observation) -> bool:
    expected = sorted(extract_numbers(obs.input))
    tokens = obs.output.split()
    try:
        actual = [int(tok) for tok in tokens]
    except ValueError:
        return False
    return actual == expected


def _factorial(n: int) -> int | None:
    return math.factorial(n) if 0 <= n <= 20 else None


def _fibonacci(n: int) -> int | None:
    if not 1 <= n <= 45:
        return None
    a, b = 1, 1
    for _ in range(n - 2):
        a, b = b, a + b
    return b


def _digit_sum(n: int) -> int:
    return sum(int(d) for d in str(abs(n)))


def _first_is_prime(text: str) -> bool | None:
    n = extract_first_number(text)
    return None if n is None else is_prime(n)


def _is_sorted(text: str) -> bool:
    numbers = extract_numbers(text)
    return all(a <= b for a, b in zip(numbers, numbers[1:], strict=False))


# ---------------------------------------------------------------------------
# Classifiers
# ---------------------------------------------------------------------------

_LINEAR = PatternType.LINEAR_AGGREGATION
_SORTING = PatternType.SORTING_BASED
_MATH = PatternType.MATHEMATICAL_TRANSFORM
_DP = PatternType.DP_OPTIMAL

LINEAR_AGGREGATION_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        label="sum",
        check=_numeric_check(sum),
        threshold=0.8,
        pattern_type=_LINEAR,
        confidence=0.95,
        suggested_algorithm="Array Sum - Linear scan",
    ),
    PatternRule(
        label="product",
        check=_numeric_check(math.prod),
        threshold=0.8,
        pattern_type=_LINEAR,
        confidence=0.9,
        suggested_algorithm="Array Product - Linear scan",
    ),
    PatternRule(
        label="count",
        check=_numeric_check(len),
        threshold=0.8,
        pattern_type=_LINEAR,
        confidence=0.85,
        suggested_algorithm="Element Count",
    ),
)

SORTING_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        label="sorted input",
        check=_sorted_output,
        threshold=0.8,
        pattern_type=_SORTING,
        confidence=None,
        suggested_algorithm="Sort Array - O(n log n)",
    ),
    PatternRule(
        label="max/min",
        check=lambda obs: _numeric_check(max)(obs) or _numeric_check(min)(obs),
        threshold=0.7,
        pattern_type=_SORTING,
        confidence=None,
        suggested_algorithm="Selection (Max/Min) - Linear scan",
    ),
)

MATHEMATICAL_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        label="factorial",
        check=_first_number_check(_factorial),
        threshold=0.8,
        pattern_type=_MATH,
        confidence=0.95,
        suggested_algorithm="Factorial computation - O(n)",
    ),
    PatternRule(
        label="Fibonacci",
        check=_first_number_check(_fibonacci),
        threshold=0.8,
        pattern_type=_MATH,
        confidence=0.95,
        suggested_algorithm="Fibonacci number computation - O(n)",
    ),
    PatternRule(
        label="GCD",
        check=_text_check(lambda ns: math.gcd(*ns)),
        threshold=0.7,
        pattern_type=_MATH,
        confidence=0.9,
        suggested_algorithm="GCD computation - Euclidean algorithm",
    ),
    PatternRule(
        label="digit sum",
        check=_first_number_check(_digit_sum),
        threshold=0.8,
        pattern_type=_MATH,
        confidence=0.9,
        suggested_algorithm="Digit Sum computation",
    ),
)

DP_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        label="maximum subarray sum",
        check=_text_check(max_subarray_sum),
        threshold=0.8,
        pattern_type=_DP,
        confidence=0.9,
        suggested_algorithm="Kadane's Algorithm (Maximum Subarray Sum) - O(n)",
    ),
    PatternRule(
        label="LIS length",
        check=_text_check(lis_length),
        threshold=0.7,
        pattern_type=_DP,
        confidence=0.85,
        suggested_algorithm="Longest Increasing Subsequence - O(n log n)",
    ),
)

BOOLEAN_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        label="prime check",
        check=_boolean_check(_first_is_prime),
        threshold=0.8,
        pattern_type=_MATH,
        confidence=0.9,
        suggested_algorithm="Prime number detection - O(sqrt(n))",
    ),
    PatternRule(
        label="sorted check",
        check=_boolean_check(_is_sorted),
        threshold=0.8,
        pattern_type=_SORTING,
        confidence=0.85,
        suggested_algorithm="Check if array is sorted - O(n)",
    ),
)

SELECTION_RULES: tuple[PatternRule, ...] = (
    PatternRule(
        label="maximum",
        check=_numeric_check(max),
        threshold=0.9,
        pattern_type=_LINEAR,
        confidence=0.95,
        suggested_algorithm="Find Maximum - O(n)",
    ),
    PatternRule(
        label="minimum",
        check=_numeric_check(min),
        threshold=0.9,
        pattern_type=_LINEAR,
        confidence=0.95,
        suggested_algorithm="Find Minimum - O(n)",
    ),
    PatternRule(
        label="range (max-min)",
        check=_numeric_check(lambda ns: max(ns) - min(ns)),
        threshold=0.85,
        pattern_type=_LINEAR,
        confidence=0.9,
        suggested_algorithm="Find Range (Max - Min) - O(n)",
    ),
)


def _apply_rules(
    rules: Sequence[PatternRule],
    observations: Sequence[Observation],
    population: int,
) -> DetectedPattern | None:
    """Return the pattern of the first rule whose ratio beats its threshold.

    Args:
        rules: Ordered rules of one classifier.
        observations: Observations the checks run over.
        population: Denominator of the agreement ratio.
    """
    if population == 0:
        return None
    for rule in rules:
        agreeing = sum(1 for obs in observations if _safe_check(rule, obs))
        ratio = agreeing / population
        if ratio > rule.threshold:
            return DetectedPattern(
                type=rule.pattern_type,
                confidence=rule.confidence if rule.confidence is not None else ratio,
                evidence=(f"{agreeing}/{population} observations match {rule.label}",),
                suggested_algorithm=rule.suggested_algorithm,
            )
    return None


def _safe_check(rule: PatternRule, obs: Observation) -> bool:
    try:
        return rule.check(obs)
    except (ArithmeticError, ValueError) as exc:
        logger.debug("Rule %s raised on %r: %s", rule.label, obs.input[:40], exc)
        return False


def detect_linear_aggregation(observations: Sequence[Observation]) -> DetectedPattern | None:
    """Sum, product or count relationships over numeric outputs."""
    numeric = [obs for obs in observations if parse_number(obs.output) is not None]
    return _apply_rules(LINEAR_AGGREGATION_RULES, numeric, len(numeric))


def detect_sorting_behavior(observations: Sequence[Observation]) -> DetectedPattern | None:
    """Sorted-output or extreme-selection behavior."""
    return _apply_rules(SORTING_RULES, observations, len(observations))


def detect_mathematical_transform(observations: Sequence[Observation]) -> DetectedPattern | None:
    """Factorial, Fibonacci, GCD or digit-sum transforms."""
    return _apply_rules(MATHEMATICAL_RULES, observations, len(observations))


def detect_dp_structure(observations: Sequence[Observation]) -> DetectedPattern | None:
    """Kadane or LIS optimal-substructure answers."""
    return _apply_rules(DP_RULES, observations, len(observations))


def detect_boolean_output(observations: Sequence[Observation]) -> DetectedPattern | None:
    """Classification problems whose every output is boolean-like."""
    if not all(is_boolean_output(obs.output) for obs in observations):
        return None
    return _apply_rules(BOOLEAN_RULES, observations, len(observations))


def detect_selection_pattern(observations: Sequence[Observation]) -> DetectedPattern | None:
    """Maximum, minimum or range selection."""
    return _apply_rules(SELECTION_RULES, observations, len(observations))


CLASSIFIERS: tuple[Callable[[Sequence[Observation]], DetectedPattern | None], ...] = (
    detect_linear_aggregation,
    detect_sorting_behavior,
    detect_mathematical_transform,
    detect_dp_structure,
    detect_boolean_output,
    detect_selection_pattern,
)


def detect_patterns(observations: Sequence[Observation]) -> list[DetectedPattern]:
    """Run every classifier and return their patterns, most confident first.

    Args:
        observations: The run's successful observations.

    Returns:
        Detected patterns sorted by descending confidence (stable), or an
        empty list when there are no observations.
    """
    if not observations:
        return []
    patterns = [p for p in (classifier(observations) for classifier in CLASSIFIERS) if p is not None]
    patterns.sort(key=lambda p: p.confidence, reverse=True)
    return patterns


def pattern_summary(patterns: Sequence[DetectedPattern]) -> str:
    """Render patterns as prompt-ready text."""
    if not patterns:
        return "No clear algorithmic patterns detected."
    lines = ["Detected Algorithmic Patterns:"]
    for index, pattern in enumerate(patterns, start=1):
        lines.append(f"{index}. {pattern.suggested_algorithm} ({pattern.confidence * 100:.0f}% confidence)")
        lines.append(f"   Type: {pattern.type}")
        lines.extend(f"   Evidence: {item}" for item in pattern.evidence)
    return "\n".join(lines)
