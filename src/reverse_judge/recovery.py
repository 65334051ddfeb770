"""Error recovery layer: failure taxonomy, retry policy and fallbacks.

Failures are classified into a closed set of :class:`ErrorKind` values by
inspecting the exception message (exceptions carrying an explicit ``kind``
are trusted). Each kind has a :class:`RecoveryPolicy`; :func:`with_recovery`
retries an operation with exponential backoff under the policy of the kind
the caller declared. When a failure turns out to be of a different kind whose
policy allows no retries, the retry loop aborts at once.

When reasoning retries are exhausted, :func:`build_fallback_inference`
produces a deterministic, clearly labelled low-confidence inference from
the local observations alone.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from enum import StrEnum
import logging
import math
from typing import TypeVar

from pydantic import BaseModel, ConfigDict

from reverse_judge.extraction import extract_first_number, is_boolean_output, parse_number
from reverse_judge.models import (
    AnalysisRequest,
    Hypothesis,
    InferenceSource,
    InferredProblem,
    Observation,
    SampleTestCase,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(StrEnum):
    """Closed taxonomy of pipeline failures."""

    REASONING_TIMEOUT = "reasoning_timeout"
    REASONING_RATE_LIMITED = "reasoning_rate_limited"
    MALFORMED_RESPONSE = "malformed_response"
    SANDBOX_TIMEOUT = "sandbox_timeout"
    SANDBOX_RESOURCE_EXCEEDED = "sandbox_resource_exceeded"
    SANDBOX_INFRASTRUCTURE_ERROR = "sandbox_infrastructure_error"
    EXECUTION_FAILED = "execution_failed"
    PARSE_ERROR = "parse_error"
    UNKNOWN = "unknown"


class RecoveryPolicy(BaseModel):
    """Retry budget and base backoff for one error kind."""

    model_config = ConfigDict(frozen=True)

    max_retries: int
    backoff_ms: int


DEFAULT_POLICIES: dict[ErrorKind, RecoveryPolicy] = {
    ErrorKind.REASONING_TIMEOUT: RecoveryPolicy(max_retries=3, backoff_ms=2000),
    ErrorKind.REASONING_RATE_LIMITED: RecoveryPolicy(max_retries=3, backoff_ms=5000),
    ErrorKind.MALFORMED_RESPONSE: RecoveryPolicy(max_retries=2, backoff_ms=1000),
    ErrorKind.SANDBOX_TIMEOUT: RecoveryPolicy(max_retries=1, backoff_ms=0),
    ErrorKind.SANDBOX_RESOURCE_EXCEEDED: RecoveryPolicy(max_retries=0, backoff_ms=0),
    ErrorKind.SANDBOX_INFRASTRUCTURE_ERROR: RecoveryPolicy(max_retries=0, backoff_ms=0),
    ErrorKind.EXECUTION_FAILED: RecoveryPolicy(max_retries=2, backoff_ms=500),
    ErrorKind.PARSE_ERROR: RecoveryPolicy(max_retries=2, backoff_ms=500),
    ErrorKind.UNKNOWN: RecoveryPolicy(max_retries=1, backoff_ms=1000),
}


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ReverseJudgeError(Exception):
    """Base class for reverse_judge failures.

    Attributes:
        kind: Explicit classification, or ``None`` to classify by message.
    """

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        """Initialize with a message and optional explicit kind.

        Args:
            message: Human-readable error description.
            kind: Classification that overrides message inspection.
        """
        super().__init__(message)
        self.kind = kind


class SandboxError(ReverseJudgeError):
    """The isolation layer itself failed to start, run or stop."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.SANDBOX_INFRASTRUCTURE_ERROR)


class ReasoningTimeoutError(ReverseJudgeError):
    """The reasoning service did not answer before its deadline."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.REASONING_TIMEOUT)


class MalformedResponseError(ReverseJudgeError):
    """The reasoning service answered with no usable JSON payload."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.MALFORMED_RESPONSE)


class RecoveryError(ReverseJudgeError):
    """Retries were exhausted or aborted.

    Attributes:
        attempts: Number of attempts made.
        user_message: Classification-specific message safe to show users.
    """

    def __init__(self, message: str, *, kind: ErrorKind, attempts: int, user_message: str) -> None:
        """Initialize with the final classification and attempt count."""
        super().__init__(message, kind=kind)
        self.attempts = attempts
        self.user_message = user_message


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _mentions(message: str, *needles: str) -> bool:
    return any(needle in message for needle in needles)


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify *exc* into the closed error taxonomy.

    Exceptions with an explicit ``kind`` attribute are trusted; otherwise the
    lowercased message is matched against keyword rules in a fixed order.
    """
    kind = getattr(exc, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind

    message = str(exc).lower()
    timed_out = _mentions(message, "timeout", "timed out") or isinstance(exc, TimeoutError)
    if timed_out and _mentions(message, "reasoning", "llm", "claude", "model"):
        return ErrorKind.REASONING_TIMEOUT
    if _mentions(message, "rate limit", "rate-limit", "429", "quota", "overloaded"):
        return ErrorKind.REASONING_RATE_LIMITED
    if _mentions(message, "invalid", "malformed") and _mentions(message, "json", "response"):
        return ErrorKind.MALFORMED_RESPONSE
    if timed_out and _mentions(message, "sandbox", "docker", "container"):
        return ErrorKind.SANDBOX_TIMEOUT
    if _mentions(message, "memory", "oom"):
        return ErrorKind.SANDBOX_RESOURCE_EXCEEDED
    if _mentions(message, "network", "connection", "docker daemon", "infrastructure"):
        return ErrorKind.SANDBOX_INFRASTRUCTURE_ERROR
    if _mentions(message, "execution", "exit code"):
        return ErrorKind.EXECUTION_FAILED
    if _mentions(message, "parse"):
        return ErrorKind.PARSE_ERROR
    return ErrorKind.UNKNOWN


_USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.REASONING_TIMEOUT: "The reasoning service is taking too long. Please try again later.",
    ErrorKind.REASONING_RATE_LIMITED: "The reasoning service is rate limited. Please try again in a few minutes.",
    ErrorKind.MALFORMED_RESPONSE: "The reasoning service returned a response that could not be understood.",
    ErrorKind.SANDBOX_TIMEOUT: "The executable took too long to run. It may contain an infinite loop.",
    ErrorKind.SANDBOX_RESOURCE_EXCEEDED: "The executable exceeded its memory or process limits.",
    ErrorKind.SANDBOX_INFRASTRUCTURE_ERROR: (
        "The sandbox could not be started. Please check that the container runtime is available."
    ),
    ErrorKind.EXECUTION_FAILED: "The executable failed to run. It may be corrupted or incompatible.",
    ErrorKind.PARSE_ERROR: "A response could not be parsed. Please try again.",
}


def user_message(kind: ErrorKind, exc: BaseException | None = None) -> str:
    """Return a human-readable, classification-specific failure message."""
    if kind in _USER_MESSAGES:
        return _USER_MESSAGES[kind]
    if exc is not None and str(exc):
        return f"An unexpected error occurred: {exc}"
    return "An unexpected error occurred."


def is_recoverable(exc: BaseException, policies: Mapping[ErrorKind, RecoveryPolicy] | None = None) -> bool:
    """Whether the policy for *exc*'s kind allows at least one retry."""
    policies = DEFAULT_POLICIES if policies is None else policies
    policy = policies.get(classify_error(exc))
    return policy is not None and policy.max_retries > 0


# ---------------------------------------------------------------------------
# Retry and timeout wrappers
# ---------------------------------------------------------------------------


async def with_recovery(
    operation: Callable[[], Awaitable[T]],
    declared_kind: ErrorKind,
    *,
    policies: Mapping[ErrorKind, RecoveryPolicy] | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Run *operation* with classified retries and exponential backoff.

    Delays between attempts are ``backoff_ms * 2^(attempt - 1)``.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        declared_kind: The failure kind the caller expects; selects the
            retry budget.
        policies: Per-kind policies, defaults to ``DEFAULT_POLICIES``.
        sleep: Awaitable sleep used for backoff.

    Returns:
        The first successful result of *operation*.

    Raises:
        RecoveryError: When retries are exhausted, or a failure of another
            kind with no retry budget occurs. Chained from the last failure.
    """
    policies = DEFAULT_POLICIES if policies is None else policies
    policy = (
        policies.get(declared_kind)
        or policies.get(ErrorKind.UNKNOWN)
        or RecoveryPolicy(max_retries=1, backoff_ms=1000)
    )

    last_error: Exception | None = None
    last_kind = declared_kind
    attempts = 0
    for attempt in range(policy.max_retries + 1):
        if attempt > 0:
            delay_ms = policy.backoff_ms * 2 ** (attempt - 1)
            logger.info("Retry attempt %d/%d after %dms", attempt, policy.max_retries, delay_ms)
            await sleep(delay_ms / 1000)
        attempts += 1
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            last_kind = classify_error(exc)
            logger.warning("Operation failed (%s): %s", last_kind, exc)
            if last_kind != declared_kind:
                actual_policy = policies.get(last_kind)
                if actual_policy is None or actual_policy.max_retries == 0:
                    logger.warning("Aborting retries: %s is not retryable", last_kind)
                    break

    msg = f"{last_kind} after {attempts} attempt(s): {last_error}"
    raise RecoveryError(
        msg,
        kind=last_kind,
        attempts=attempts,
        user_message=user_message(last_kind, last_error),
    ) from last_error


async def with_timeout(awaitable: Awaitable[T], timeout_ms: int, kind: ErrorKind) -> T:
    """Await *awaitable* with a deadline, raising a classified error on expiry.

    Raises:
        ReverseJudgeError: With ``kind`` set, when the deadline passes.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except TimeoutError as exc:
        msg = f"Operation timed out after {timeout_ms}ms ({kind})"
        raise ReverseJudgeError(msg, kind=kind) from exc


# ---------------------------------------------------------------------------
# Fallback inference
# ---------------------------------------------------------------------------

HYPOTHESIS_FALLBACK_THRESHOLD = 0.8
HYPOTHESIS_FALLBACK_CONFIDENCE = 0.5
STATISTICAL_FALLBACK_CONFIDENCE = 0.3

_ARRAY_SOLUTION = """import math
import sys


def main():
    data = sys.stdin.read().split()
    n = int(data[0])
    values = [int(x) for x in data[1:1 + n]]
    print({expression})


main()
"""

_SCALAR_SOLUTION = """import sys


def main():
    n = int(sys.stdin.read().split()[0])
    print({expression})


main()
"""

_ARRAY_EXPRESSIONS: dict[str, str] = {
    "sum": "sum(values)",
    "product": "math.prod(values)",
    "count": "len(values)",
    "count_positive": "sum(1 for v in values if v > 0)",
    "count_negative": "sum(1 for v in values if v < 0)",
    "count_zero": "values.count(0)",
    "count_even": "sum(1 for v in values if v % 2 == 0)",
    "count_odd": "sum(1 for v in values if v % 2)",
    "sum_positive": "sum(v for v in values if v > 0)",
    "max": "max(values)",
    "min": "min(values)",
    "first": "values[0]",
    "last": "values[-1]",
    "range": "max(values) - min(values)",
    "gcd": "math.gcd(*values)",
    "lcm": "math.lcm(*values)",
    "unique_count": "len(set(values))",
    "sorted_output": "' '.join(map(str, sorted(values)))",
    "sorted_desc_output": "' '.join(map(str, sorted(values, reverse=True)))",
    "reverse_output": "' '.join(map(str, reversed(values)))",
}

_SCALAR_EXPRESSIONS: dict[str, str] = {
    "factorial_n": "__import__('math').factorial(n)",
    "digit_sum": "sum(int(d) for d in str(abs(n)))",
    "power_of_two": "'YES' if n > 0 and n & (n - 1) == 0 else 'NO'",
}

_MANUAL_SOLUTION = """# Solution could not be generated automatically.
# Based on {count} test observations; review the patterns and implement manually.
"""


def _solution_for(hypothesis: Hypothesis) -> str:
    if hypothesis.id in _ARRAY_EXPRESSIONS:
        return _ARRAY_SOLUTION.format(expression=_ARRAY_EXPRESSIONS[hypothesis.id])
    if hypothesis.id in _SCALAR_EXPRESSIONS:
        return _SCALAR_SOLUTION.format(expression=_SCALAR_EXPRESSIONS[hypothesis.id])
    return f"# {hypothesis.name}: {hypothesis.description}\n"


def _samples(observations: Sequence[Observation], limit: int = 3) -> list[SampleTestCase]:
    return [
        SampleTestCase(input=obs.input, output=obs.output, explanation="Observed from test execution")
        for obs in observations[:limit]
    ]


def basic_output_patterns(observations: Sequence[Observation]) -> list[str]:
    """Describe output shape and value range using local statistics only."""
    patterns: list[str] = []
    outputs = [obs.output.strip() for obs in observations]
    values = [v for v in (parse_number(out) for out in outputs) if v is not None]

    if outputs and len(values) == len(outputs):
        patterns.append("- Output is always a single numeric value")
    if outputs and all(is_boolean_output(out) for out in outputs):
        patterns.append("- Output is binary (Yes/No or 0/1)")
    if values:
        patterns.append(f"- Output range: {min(values):g} to {max(values):g}")
    if any(" " in out for out in outputs):
        patterns.append("- Some outputs contain multiple values (array/list format)")

    correlated = 0
    for obs in observations:
        first = extract_first_number(obs.input)
        value = parse_number(obs.output)
        if first is not None and value is not None and math.isclose(first, value):
            correlated += 1
    if correlated > len(observations) * 0.5:
        patterns.append("- Output may correlate with input size or first number")

    if not patterns:
        patterns.append("- No obvious patterns detected")
    return patterns


def build_statistical_fallback(observations: Sequence[Observation], request: AnalysisRequest) -> InferredProblem:
    """Fallback inference built from output shape and value statistics."""
    sample_io = "\n\n".join(
        f"### Test {i}\n**Input:**\n```\n{obs.input}```\n**Output:** `{obs.output}`"
        for i, obs in enumerate(observations[:5], start=1)
    )
    statement = (
        "# Analysis Result (Fallback Mode)\n\n"
        "## Observations\n"
        f"The program was tested with {len(observations)} test cases.\n\n"
        "## Detected Patterns\n"
        + "\n".join(basic_output_patterns(observations))
        + "\n\n## Note\n"
        "Full analysis could not be completed. This is a low-confidence result; manual review recommended.\n\n"
        "## Sample I/O Data\n"
        + sample_io
    )
    return InferredProblem(
        problem_title="Analysis Result (Partial)",
        problem_statement=statement,
        input_format=request.input_format,
        output_format="See problem statement",
        constraints=request.constraints or "Unknown",
        sample_test_cases=_samples(observations),
        solution_code=_MANUAL_SOLUTION.format(count=len(observations)),
        algorithm_explanation="Unknown - Requires manual analysis",
        confidence=STATISTICAL_FALLBACK_CONFIDENCE,
        source=InferenceSource.STATISTICAL_FALLBACK,
    )


def build_hypothesis_fallback(
    observations: Sequence[Observation],
    request: AnalysisRequest,
    hypothesis: Hypothesis,
) -> InferredProblem:
    """Fallback inference built around a strongly supported hypothesis."""
    statement = (
        f"{hypothesis.description}.\n\n"
        f"Inferred without the reasoning service: the behavior matched the "
        f"'{hypothesis.name}' hypothesis on {hypothesis.match_count} of "
        f"{hypothesis.match_count + hypothesis.mismatch_count} observations. "
        "This is a low-confidence fallback result."
    )
    return InferredProblem(
        problem_title=f"{hypothesis.name} (Fallback)",
        problem_statement=statement,
        input_format=request.input_format,
        output_format="A single line containing the answer.",
        constraints=request.constraints or "Unknown",
        sample_test_cases=_samples(observations),
        solution_code=_solution_for(hypothesis),
        algorithm_explanation=f"{hypothesis.name}: {hypothesis.description}",
        confidence=min(HYPOTHESIS_FALLBACK_CONFIDENCE, hypothesis.confidence),
        source=InferenceSource.HYPOTHESIS_FALLBACK,
    )


def build_fallback_inference(
    observations: Sequence[Observation],
    request: AnalysisRequest,
    hypotheses: Sequence[Hypothesis],
) -> InferredProblem:
    """Pick the hypothesis fallback when the leader is strong, else statistics.

    Args:
        observations: Successful observations of the run.
        request: The original analysis request.
        hypotheses: Ranked hypotheses, best first.

    Returns:
        A fallback inference whose confidence never exceeds 0.5.
    """
    if hypotheses and hypotheses[0].confidence > HYPOTHESIS_FALLBACK_THRESHOLD:
        logger.info("Building fallback from hypothesis %s", hypotheses[0].name)
        return build_hypothesis_fallback(observations, request, hypotheses[0])
    logger.info("Building statistical fallback from %d observations", len(observations))
    return build_statistical_fallback(observations, request)
