"""Hypothesis engine: score a closed library of candidate algorithms.

Every candidate is a :class:`CandidateAlgorithm` record holding a single pure
``predict`` function. ``predict`` returns a :class:`Prediction` describing the
output the algorithm would produce for an input, or ``None`` when the input
is outside the algorithm's domain (an empty array for ``max``, a negative
index for ``factorial_n``). A ``None`` prediction counts as a mismatch, so
every hypothesis is scored over the full observation set.

Confidence is recomputed from scratch on each call; nothing is cached
between calls.
"""

from __future__ import annotations

from bisect import bisect_left
from collections import Counter
from collections.abc import Callable, Sequence
import logging
import math

from pydantic import BaseModel, ConfigDict

from reverse_judge.extraction import (
    BOOLEAN_FALSE,
    BOOLEAN_TRUE,
    extract_first_number,
    extract_numbers,
    format_number,
    normalize_output,
    parse_number,
)
from reverse_judge.models import Hypothesis, HypothesisCategory, Observation

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.5
NUMERIC_EPSILON = 1e-3

# Integers beyond this lose precision as floats, so they are compared as text only.
_FLOAT_SAFE = 2**53

# Trial division stays fast up to here.
_PRIME_CHECK_LIMIT = 10**12


class Prediction(BaseModel):
    """Expected output of a candidate algorithm for one input.

    Attributes:
        expected: Canonical expected output.
        alternatives: Other accepted spellings (compared case-insensitively).
        numeric: Value for tolerance-based comparison, if numeric.
    """

    model_config = ConfigDict(frozen=True)

    expected: str
    alternatives: tuple[str, ...] = ()
    numeric: float | None = None

    def matches(self, output: str) -> bool:
        """Return whether *output* agrees with this prediction."""
        actual = normalize_output(output)
        if actual == normalize_output(self.expected):
            return True
        lowered = actual.lower()
        if any(lowered == normalize_output(alt).lower() for alt in self.alternatives):
            return True
        if self.numeric is not None:
            value = parse_number(actual)
            if value is not None and abs(value - self.numeric) <= NUMERIC_EPSILON:
                return True
        return False


Predictor = Callable[[str], Prediction | None]


class CandidateAlgorithm(BaseModel):
    """A library entry: identity, family and a pure predictor."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    category: HypothesisCategory
    predict: Predictor


# ---------------------------------------------------------------------------
# Prediction builders
# ---------------------------------------------------------------------------


def _integer(value: int) -> Prediction:
    numeric = float(value) if abs(value) < _FLOAT_SAFE else None
    return Prediction(expected=str(value), numeric=numeric)


def _real(value: float) -> Prediction:
    """A possibly fractional result; floor and 2/6-decimal spellings accepted."""
    return Prediction(
        expected=format_number(value),
        alternatives=(str(math.floor(value)), f"{value:.2f}", f"{value:.6f}"),
        numeric=value,
    )


def _boolean(flag: bool) -> Prediction:
    spellings = BOOLEAN_TRUE if flag else BOOLEAN_FALSE
    return Prediction(expected="YES" if flag else "NO", alternatives=tuple(sorted(spellings)))


def _sequence(values: Sequence[int]) -> Prediction:
    return Prediction(expected=" ".join(str(v) for v in values))


def _on_numbers(fn: Callable[[list[int]], Prediction | None], *, allow_empty: bool = False) -> Predictor:
    """Lift a function over the extracted operand list into a predictor."""

    def _predict(text: str) -> Prediction | None:
        numbers = extract_numbers(text)
        if not numbers and not allow_empty:
            return None
        return fn(numbers)

    return _predict


def _on_first(fn: Callable[[int], Prediction | None]) -> Predictor:
    """Lift a function over the first integer of the input into a predictor."""

    def _predict(text: str) -> Prediction | None:
        first = extract_first_number(text)
        if first is None:
            return None
        return fn(first)

    return _predict


# ---------------------------------------------------------------------------
# Algorithms
# ---------------------------------------------------------------------------


def _median(numbers: list[int]) -> float:
    ordered = sorted(numbers)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return float(ordered[mid])
    return (ordered[mid - 1] + ordered[mid]) / 2


def _mode(numbers: list[int]) -> int:
    """Most frequent value; ties go to the value seen first."""
    return Counter(numbers).most_common(1)[0][0]


def _lcm(numbers: list[int]) -> Prediction | None:
    if any(n <= 0 for n in numbers):
        return None
    return _integer(math.lcm(*numbers))


def _factorial(n: int) -> Prediction | None:
    if not 0 <= n <= 20:
        return None
    return _integer(math.factorial(n))


def _fibonacci(n: int) -> Prediction | None:
    if not 1 <= n <= 90:
        return None
    a, b = 0, 1
    for _ in range(n):
        a, b = b, a + b
    return _integer(a)


def is_prime(n: int) -> bool:
    """Deterministic trial-division primality test."""
    if n < 2:
        return False
    if n < 4:
        return True
    if n % 2 == 0:
        return False
    limit = math.isqrt(n)
    divisor = 3
    while divisor <= limit:
        if n % divisor == 0:
            return False
        divisor += 2
    return True


def _prime_check(n: int) -> Prediction | None:
    if n > _PRIME_CHECK_LIMIT:
        return None
    return _boolean(is_prime(n))


def _digit_sum(n: int) -> Prediction:
    return _integer(sum(int(d) for d in str(abs(n))))


def max_subarray_sum(numbers: Sequence[int]) -> int:
    """Kadane's algorithm over a non-empty sequence."""
    best = current = numbers[0]
    for value in numbers[1:]:
        current = max(value, current + value)
        best = max(best, current)
    return best


def lis_length(numbers: Sequence[int]) -> int:
    """Length of the longest strictly increasing subsequence."""
    tails: list[int] = []
    for value in numbers:
        idx = bisect_left(tails, value)
        if idx == len(tails):
            tails.append(value)
        else:
            tails[idx] = value
    return len(tails)


def _is_sorted(numbers: Sequence[int], *, descending: bool = False) -> bool:
    pairs = zip(numbers, numbers[1:], strict=False)
    if descending:
        return all(a >= b for a, b in pairs)
    return all(a <= b for a, b in pairs)


def _candidate(
    id_: str, name: str, description: str, category: HypothesisCategory, predict: Predictor
) -> CandidateAlgorithm:
    return CandidateAlgorithm(id=id_, name=name, description=description, category=category, predict=predict)


_AGG = HypothesisCategory.AGGREGATION
_SEL = HypothesisCategory.SELECTION
_SORT = HypothesisCategory.SORTING
_MATH = HypothesisCategory.MATHEMATICAL
_DP = HypothesisCategory.DP

LIBRARY: tuple[CandidateAlgorithm, ...] = (
    # Aggregation
    _candidate("sum", "Array Sum", "Sum of all elements", _AGG, _on_numbers(lambda ns: _integer(sum(ns)))),
    _candidate(
        "product", "Array Product", "Product of all elements", _AGG, _on_numbers(lambda ns: _integer(math.prod(ns)))
    ),
    _candidate(
        "count",
        "Element Count",
        "Number of elements",
        _AGG,
        _on_numbers(lambda ns: _integer(len(ns)), allow_empty=True),
    ),
    _candidate(
        "count_positive",
        "Count Positive",
        "Number of positive elements",
        _AGG,
        _on_numbers(lambda ns: _integer(sum(1 for n in ns if n > 0)), allow_empty=True),
    ),
    _candidate(
        "count_negative",
        "Count Negative",
        "Number of negative elements",
        _AGG,
        _on_numbers(lambda ns: _integer(sum(1 for n in ns if n < 0)), allow_empty=True),
    ),
    _candidate(
        "count_zero",
        "Count Zeros",
        "Number of zero elements",
        _AGG,
        _on_numbers(lambda ns: _integer(ns.count(0)), allow_empty=True),
    ),
    _candidate(
        "count_even",
        "Count Even",
        "Number of even elements",
        _AGG,
        _on_numbers(lambda ns: _integer(sum(1 for n in ns if n % 2 == 0)), allow_empty=True),
    ),
    _candidate(
        "count_odd",
        "Count Odd",
        "Number of odd elements",
        _AGG,
        _on_numbers(lambda ns: _integer(sum(1 for n in ns if n % 2)), allow_empty=True),
    ),
    _candidate(
        "sum_positive",
        "Sum Positive",
        "Sum of the positive elements",
        _AGG,
        _on_numbers(lambda ns: _integer(sum(n for n in ns if n > 0)), allow_empty=True),
    ),
    _candidate("average", "Average", "Arithmetic mean", _AGG, _on_numbers(lambda ns: _real(sum(ns) / len(ns)))),
    # Selection
    _candidate("max", "Maximum Element", "Largest element", _SEL, _on_numbers(lambda ns: _integer(max(ns)))),
    _candidate("min", "Minimum Element", "Smallest element", _SEL, _on_numbers(lambda ns: _integer(min(ns)))),
    _candidate("first", "First Element", "First element", _SEL, _on_numbers(lambda ns: _integer(ns[0]))),
    _candidate("last", "Last Element", "Last element", _SEL, _on_numbers(lambda ns: _integer(ns[-1]))),
    _candidate(
        "second_max",
        "Second Maximum",
        "Second element in descending order",
        _SEL,
        _on_numbers(lambda ns: _integer(sorted(ns, reverse=True)[1]) if len(ns) >= 2 else None),
    ),
    _candidate(
        "median",
        "Median",
        "Middle element of the sorted array",
        _SEL,
        _on_numbers(lambda ns: _real(_median(ns))),
    ),
    _candidate(
        "range",
        "Range (Max - Min)",
        "Difference of extremes",
        _SEL,
        _on_numbers(lambda ns: _integer(max(ns) - min(ns))),
    ),
    _candidate(
        "mode",
        "Mode (Most Frequent)",
        "Most frequent element",
        _SEL,
        _on_numbers(lambda ns: _integer(_mode(ns))),
    ),
    # Mathematical
    _candidate("gcd", "GCD of All", "Greatest common divisor", _MATH, _on_numbers(lambda ns: _integer(math.gcd(*ns)))),
    _candidate("lcm", "LCM of All", "Least common multiple", _MATH, _on_numbers(_lcm)),
    _candidate("factorial_n", "Factorial of N", "n! for the first number", _MATH, _on_first(_factorial)),
    _candidate("fibonacci_n", "Nth Fibonacci", "F(n) with F(1) = F(2) = 1", _MATH, _on_first(_fibonacci)),
    _candidate("is_prime", "Prime Check", "Whether the first number is prime", _MATH, _on_first(_prime_check)),
    _candidate(
        "power_of_two",
        "Power of Two Check",
        "Whether the first number is a power of two",
        _MATH,
        _on_first(lambda n: _boolean(n > 0 and n & (n - 1) == 0)),
    ),
    _candidate(
        "perfect_square",
        "Perfect Square Check",
        "Whether the first number is a perfect square",
        _MATH,
        _on_first(lambda n: _boolean(n >= 0 and math.isqrt(n) ** 2 == n)),
    ),
    _candidate("digit_sum", "Digit Sum", "Sum of the digits of the first number", _MATH, _on_first(_digit_sum)),
    # Sorting
    _candidate(
        "is_sorted_asc",
        "Check Sorted Ascending",
        "Whether the array is non-decreasing",
        _SORT,
        _on_numbers(lambda ns: _boolean(_is_sorted(ns))),
    ),
    _candidate(
        "is_sorted_desc",
        "Check Sorted Descending",
        "Whether the array is non-increasing",
        _SORT,
        _on_numbers(lambda ns: _boolean(_is_sorted(ns, descending=True))),
    ),
    _candidate(
        "sorted_output",
        "Sort and Output",
        "Elements in ascending order",
        _SORT,
        _on_numbers(lambda ns: _sequence(sorted(ns))),
    ),
    _candidate(
        "sorted_desc_output",
        "Sort Descending and Output",
        "Elements in descending order",
        _SORT,
        _on_numbers(lambda ns: _sequence(sorted(ns, reverse=True))),
    ),
    _candidate(
        "reverse_output",
        "Reverse Array",
        "Elements in reverse order",
        _SORT,
        _on_numbers(lambda ns: _sequence(ns[::-1])),
    ),
    _candidate(
        "unique_count",
        "Count Unique",
        "Number of distinct elements",
        _AGG,
        _on_numbers(lambda ns: _integer(len(set(ns))), allow_empty=True),
    ),
    # Dynamic programming
    _candidate(
        "max_subarray_sum",
        "Max Subarray Sum (Kadane)",
        "Largest sum of a contiguous subarray",
        _DP,
        _on_numbers(lambda ns: _integer(max_subarray_sum(ns))),
    ),
    _candidate(
        "lis_length",
        "LIS Length",
        "Length of the longest strictly increasing subsequence",
        _DP,
        _on_numbers(lambda ns: _integer(lis_length(ns))),
    ),
    _candidate(
        "lds_length",
        "LDS Length",
        "Length of the longest strictly decreasing subsequence",
        _DP,
        _on_numbers(lambda ns: _integer(lis_length([-n for n in ns]))),
    ),
)

_BY_ID: dict[str, CandidateAlgorithm] = {candidate.id: candidate for candidate in LIBRARY}


def get_candidate(hypothesis_id: str) -> CandidateAlgorithm | None:
    """Look up a library entry by id."""
    return _BY_ID.get(hypothesis_id)


def predict_with(hypothesis_id: str, text: str) -> Prediction | None:
    """Return the prediction of library entry *hypothesis_id* for *text*.

    Unknown ids and inputs outside the algorithm's domain yield ``None``.
    """
    candidate = _BY_ID.get(hypothesis_id)
    if candidate is None:
        return None
    return _safe_predict(candidate, text)


def _safe_predict(candidate: CandidateAlgorithm, text: str) -> Prediction | None:
    try:
        return candidate.predict(text)
    except (ArithmeticError, ValueError, IndexError) as exc:
        logger.debug("Hypothesis %s not applicable to %r: %s", candidate.id, text[:40], exc)
        return None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def score_candidate(candidate: CandidateAlgorithm, observations: Sequence[Observation]) -> Hypothesis:
    """Score one candidate against every observation."""
    matches = 0
    for obs in observations:
        prediction = _safe_predict(candidate, obs.input)
        if prediction is not None and prediction.matches(obs.output):
            matches += 1
    total = len(observations)
    return Hypothesis(
        id=candidate.id,
        name=candidate.name,
        description=candidate.description,
        category=candidate.category,
        confidence=matches / total if total else 0.0,
        match_count=matches,
        mismatch_count=total - matches,
    )


def validate_hypotheses(
    observations: Sequence[Observation],
    library: Sequence[CandidateAlgorithm] = LIBRARY,
) -> list[Hypothesis]:
    """Score the library against *observations* and rank the survivors.

    Args:
        observations: Every successful observation of the run so far.
        library: Candidate algorithms to score.

    Returns:
        Hypotheses with confidence >= 0.5, perfect matches first, then by
        descending confidence; ties keep library order.
    """
    if not observations:
        return []
    scored = [score_candidate(candidate, observations) for candidate in library]
    survivors = [h for h in scored if h.confidence >= MIN_CONFIDENCE]
    survivors.sort(key=lambda h: (h.confidence < 1.0, -h.confidence))
    logger.debug(
        "Validated %d hypotheses over %d observations; %d survive",
        len(scored),
        len(observations),
        len(survivors),
    )
    return survivors


def top_hypotheses(observations: Sequence[Observation], limit: int = 5) -> list[Hypothesis]:
    """Return perfect matches if any exist, otherwise the best *limit*."""
    ranked = validate_hypotheses(observations)
    perfect = [h for h in ranked if h.confidence == 1.0]
    return (perfect or ranked)[:limit]


def hypotheses_by_category(observations: Sequence[Observation]) -> dict[HypothesisCategory, list[Hypothesis]]:
    """Group the validated hypotheses by algorithm family."""
    grouped: dict[HypothesisCategory, list[Hypothesis]] = {}
    for hypothesis in validate_hypotheses(observations):
        grouped.setdefault(hypothesis.category, []).append(hypothesis)
    return grouped
