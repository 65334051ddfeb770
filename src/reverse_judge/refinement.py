"""Static verification, refinement and quality scoring of an inference.

Verification does not compile or run the proposed solution. It estimates
accuracy from the shape of the solution code, whether an algorithm was named
and how complete the statement is, and cross-checks the inference's sample
cases against what the program was actually observed to print.
"""

from __future__ import annotations

from collections.abc import Sequence
import logging
import re

from reverse_judge.extraction import normalize_input, normalize_output
from reverse_judge.models import (
    AnalysisRequest,
    InferredProblem,
    Observation,
    QualityReport,
    VerificationMismatch,
    VerificationResult,
)

logger = logging.getLogger(__name__)

VERIFIED_THRESHOLD = 0.8
REFINE_THRESHOLD = 0.7
MISMATCH_PENALTY = 0.1
MIN_STATEMENT_LENGTH = 100
MIN_SOLUTION_LENGTH = 50
MIN_OBSERVATIONS = 3

_MAIN_RE = re.compile(r"int\s+main|void\s+main|def\s+main|function\s+main|fn\s+main|public\s+static\s+void\s+main")
_INPUT_RE = re.compile(r"cin|scanf|input\(|readline|stdin|Scanner")
_OUTPUT_RE = re.compile(r"cout|printf|print\(|console\.log|println|stdout")
_PLACEHOLDERS = ("TODO", "...")


def _described(text: str) -> bool:
    stripped = text.strip()
    return len(stripped) > 3 and stripped.lower() not in {"unknown", "unknown - requires manual analysis"}


def _mentions(inference: InferredProblem, word: str, field: str) -> bool:
    return word in inference.problem_statement.lower() or bool(field.strip())


def code_completeness(solution_code: str) -> float:
    """Score 0..1: main function 0.4, input handling 0.3, output handling 0.3."""
    score = 0.0
    if _MAIN_RE.search(solution_code):
        score += 0.4
    if _INPUT_RE.search(solution_code):
        score += 0.3
    if _OUTPUT_RE.search(solution_code):
        score += 0.3
    return score


def statement_completeness(inference: InferredProblem) -> float:
    """Score 0..0.2 for describing input, output and constraints."""
    parts = (
        _mentions(inference, "input", inference.input_format),
        _mentions(inference, "output", inference.output_format),
        _mentions(inference, "constraint", inference.constraints),
    )
    return sum(parts) / 3 * 0.2


def sample_mismatches(inference: InferredProblem, observations: Sequence[Observation]) -> list[VerificationMismatch]:
    """Sample cases whose input was observed but whose output disagrees."""
    observed = {normalize_input(obs.input): obs.output for obs in observations}
    mismatches: list[VerificationMismatch] = []
    for sample in inference.sample_test_cases:
        actual = observed.get(normalize_input(sample.input.replace("\\n", "\n")))
        if actual is not None and normalize_output(actual) != normalize_output(sample.output):
            mismatches.append(VerificationMismatch(input=sample.input, expected=sample.output, actual=actual))
    return mismatches


def verify_inference(inference: InferredProblem, observations: Sequence[Observation]) -> VerificationResult:
    """Estimate how trustworthy *inference* is.

    Args:
        inference: The inferred problem to check.
        observations: Observed input/output pairs of the run.

    Returns:
        Accuracy in ``[0, 1]`` with sample mismatches; verified only above 0.8
        with no mismatch.
    """
    completeness = code_completeness(inference.solution_code)
    algorithm = 0.2 if _described(inference.algorithm_explanation) else 0.0
    statement = statement_completeness(inference)
    mismatches = sample_mismatches(inference, observations)
    accuracy = min(1.0, completeness * 0.6 + algorithm + statement)
    accuracy = max(0.0, accuracy - MISMATCH_PENALTY * len(mismatches))
    logger.debug(
        "Verification: code %.2f, algorithm %.1f, statement %.2f, mismatches %d, total %.2f",
        completeness,
        algorithm,
        statement,
        len(mismatches),
        accuracy,
    )
    return VerificationResult(
        verified=accuracy > VERIFIED_THRESHOLD and not mismatches,
        accuracy=accuracy,
        mismatches=tuple(mismatches),
    )


def _sample_section(observations: Sequence[Observation]) -> str:
    blocks = [
        f"### Sample {i}\n**Input:**\n```\n{obs.input.strip()}\n```\n**Output:**\n```\n{obs.output.strip()}\n```"
        for i, obs in enumerate(observations, start=1)
    ]
    return "## Sample Test Cases\n" + "\n\n".join(blocks)


def refine_inference(
    inference: InferredProblem,
    verification: VerificationResult,
    request: AnalysisRequest,
    observations: Sequence[Observation],
) -> InferredProblem:
    """Append missing statement sections when accuracy is 0.7 or lower."""
    if verification.accuracy > REFINE_THRESHOLD:
        return inference

    logger.info("Refining inference (accuracy %.2f)", verification.accuracy)
    statement = inference.problem_statement
    if "## Input Format" not in statement:
        statement += f"\n\n## Input Format\n{request.input_format}"
    if "## Constraints" not in statement and request.constraints:
        statement += f"\n\n## Constraints\n{request.constraints}"
    if "## Sample" not in statement and observations:
        statement += "\n\n" + _sample_section(observations[:3])
    return inference.model_copy(update={"problem_statement": statement})


def analyze_quality(inference: InferredProblem, observations: Sequence[Observation]) -> QualityReport:
    """Score an inference out of 100 and list what would improve it."""
    issues: list[str] = []
    suggestions: list[str] = []
    score = 100

    def deduct(points: int, issue: str, suggestion: str) -> None:
        nonlocal score
        score -= points
        issues.append(issue)
        suggestions.append(suggestion)

    statement = inference.problem_statement
    if len(statement) < MIN_STATEMENT_LENGTH:
        deduct(20, "Problem statement is too short", "Generate a more detailed problem description")
    if not _mentions(inference, "input", inference.input_format):
        deduct(10, "Missing input format description", "Add a clear input format specification")
    if not _mentions(inference, "output", inference.output_format):
        deduct(10, "Missing output format description", "Add a clear output format specification")
    if len(inference.solution_code.strip()) < MIN_SOLUTION_LENGTH:
        deduct(30, "Solution code is missing or too short", "Generate complete solution code")
    if any(marker in inference.solution_code for marker in _PLACEHOLDERS):
        deduct(15, "Solution code contains placeholders", "Complete all placeholder code sections")
    if not _described(inference.algorithm_explanation):
        deduct(15, "Algorithm not identified", "Determine and describe the algorithm used")
    if len(observations) < MIN_OBSERVATIONS:
        deduct(10, "Too few test observations", "Run more test cases for better analysis")
    if inference.is_fallback:
        deduct(10, "Inference came from the fallback path", "Retry once the reasoning service is available")

    return QualityReport(score=max(0, score), issues=tuple(issues), suggestions=tuple(suggestions))
