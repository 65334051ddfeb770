"""Shared fixtures for the reverse_judge test suite."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

from reverse_judge.extraction import extract_numbers
from reverse_judge.models import (
    AnalysisRequest,
    ExecutionResult,
    Hypothesis,
    HypothesisCategory,
    InferredProblem,
    Observation,
    PipelineConfig,
    SampleTestCase,
)
from reverse_judge.sandbox import MockRunner
import pytest
import yaml

# ---------------------------------------------------------------------------
# Factory functions (plain functions, importable from conftest)
# ---------------------------------------------------------------------------


def make_observation(input_text: str = "3\n1 2 3\n", output: str = "6") -> Observation:
    """Build an Observation; defaults to an array-sum pair."""
    return Observation(input=input_text, output=output)


def make_observations(pairs: Sequence[tuple[str, str]]) -> list[Observation]:
    """Build Observations from ``(input, output)`` pairs."""
    return [Observation(input=i, output=o) for i, o in pairs]


def make_hypothesis(**overrides: Any) -> Hypothesis:
    """Build a valid Hypothesis with sensible defaults.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed Hypothesis instance.
    """
    defaults: dict[str, Any] = {
        "id": "sum",
        "name": "Array Sum",
        "description": "Sum of all elements",
        "category": HypothesisCategory.AGGREGATION,
        "confidence": 1.0,
        "match_count": 4,
        "mismatch_count": 0,
    }
    defaults.update(overrides)
    return Hypothesis(**defaults)


def make_config(**overrides: Any) -> PipelineConfig:
    """Build a PipelineConfig suited to fast in-memory pipeline tests.

    Args:
        **overrides: Field values to override.

    Returns:
        A fully constructed PipelineConfig instance.
    """
    defaults: dict[str, Any] = {
        "sandbox_backend": "mock",
        "reasoning_min_interval_ms": 0,
        "timeout_ms": 2000,
        "grace_ms": 100,
        "watchdog_margin_ms": 500,
    }
    defaults.update(overrides)
    return PipelineConfig(**defaults)


def make_request(**overrides: Any) -> AnalysisRequest:
    """Build an AnalysisRequest for an array-shaped problem."""
    defaults: dict[str, Any] = {
        "executable_path": "/opt/programs/solution",
        "input_format": "The first line contains n. The second line contains n integers.",
        "constraints": "1 <= n <= 10, -100 <= a_i <= 100",
    }
    defaults.update(overrides)
    return AnalysisRequest(**defaults)


def make_inference(**overrides: Any) -> InferredProblem:
    """Build a complete, well-described InferredProblem."""
    defaults: dict[str, Any] = {
        "problem_title": "Array Sum",
        "problem_statement": (
            "Given an array of n integers, print the sum of all elements. "
            "The input gives n and then the elements; the output is a single integer. "
            "Constraints keep the sum within 64-bit range."
        ),
        "input_format": "n, then n integers",
        "output_format": "A single integer",
        "constraints": "1 <= n <= 10",
        "sample_test_cases": [SampleTestCase(input="3\n1 2 3\n", output="6", explanation="1+2+3")],
        "solution_code": (
            "import sys\n\n\ndef main():\n    data = sys.stdin.read().split()\n"
            "    n = int(data[0])\n    print(sum(map(int, data[1:1 + n])))\n\n\nmain()\n"
        ),
        "algorithm_explanation": "Linear scan accumulating the sum",
        "time_complexity": "O(n)",
        "space_complexity": "O(1)",
        "confidence": 0.95,
    }
    defaults.update(overrides)
    return InferredProblem(**defaults)


def sum_program(text: str) -> str:
    """Behavior of an array-sum executable."""
    return str(sum(extract_numbers(text)))


def failing_program(text: str) -> ExecutionResult:
    """Behavior of an executable that always exits nonzero."""
    return ExecutionResult(stdout="", stderr="segfault", exit_status=139, elapsed_ms=1.0)


INFERENCE_JSON = """{
  "problemTitle": "Array Sum",
  "problemStatement": "Given n integers, output their sum. The input has n then the values; the output is one integer.",
  "inputFormat": "n then n integers",
  "outputFormat": "The sum",
  "constraints": "1 <= n <= 10",
  "sampleTestCases": [{"input": "3\\n1 2 3\\n", "output": "6", "explanation": "1+2+3"}],
  "solutionCode": "import sys\\n\\ndef main():\\n    data = sys.stdin.read().split()\\n    print(sum(map(int, data[1:])))\\n\\nmain()\\n",
  "algorithmExplanation": "Linear summation",
  "timeComplexity": "O(n)",
  "spaceComplexity": "O(1)",
  "confidence": 0.93
}"""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sum_runner() -> MockRunner:
    """Return a MockRunner behaving like an array-sum program."""
    return MockRunner(sum_program)


@pytest.fixture()
def runner_factory() -> Callable[..., MockRunner]:
    """Return a factory building MockRunners from a behavior callable."""
    return MockRunner


@pytest.fixture()
def mock_reasoning() -> AsyncMock:
    """Return an AsyncMock reasoning client answering every prompt with INFERENCE_JSON."""
    client = AsyncMock()
    client.generate = AsyncMock(return_value=INFERENCE_JSON)
    return client


@pytest.fixture()
def mock_registry() -> MagicMock:
    """Return a stub PromptRegistry whose templates render ``"rendered prompt"``."""
    registry = MagicMock()
    mock_template = MagicMock()
    mock_template.render = MagicMock(return_value="rendered prompt")
    registry.get = MagicMock(return_value=mock_template)
    return registry


@pytest.fixture()
def workspace_root(tmp_path: Path) -> Path:
    """Provide an empty directory to hold run workspaces."""
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture(scope="session")
def prompts_dir() -> Path:
    """Return the path to the prompts package directory."""
    import importlib.resources

    return Path(str(importlib.resources.files("reverse_judge.prompts")))


@pytest.fixture(scope="session")
def loaded_templates(prompts_dir: Path) -> dict[str, Any]:
    """Load and return all YAML templates keyed by filename stem."""
    templates: dict[str, Any] = {}
    for yaml_file in sorted(prompts_dir.glob("*.yaml")):
        with yaml_file.open("r", encoding="utf-8") as f:
            templates[yaml_file.stem] = yaml.safe_load(f)
    return templates
