"""Core data models for the reverse_judge pipeline.

Defines the shared Pydantic models, enums, and configuration types used by
every stage of the behavioral-inference pipeline: generated test cases,
sandbox execution results, observations, hypotheses, detected patterns, the
inferred problem, progress events and the final analysis result.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class TestCategory(StrEnum):
    """Origin of a generated test case, used for coverage-gap analysis."""

    __test__ = False

    BOUNDARY = "boundary"
    IDENTITY = "identity"
    SIGNS = "signs"
    ORDERING = "ordering"
    DUPLICATES = "duplicates"
    SEQUENCES = "sequences"
    LARGE_VALUES = "large_values"
    DP_PATTERNS = "dp_patterns"
    STRING_PATTERNS = "string_patterns"
    STRUCTURE = "structure"
    DISCRIMINATING = "discriminating"
    NEGATIVE_VALUES = "negative_values"
    MINIMAL_CASES = "minimal_cases"
    ZERO_CASES = "zero_cases"
    SORTED_INPUTS = "sorted_inputs"
    DUPLICATE_ELEMENTS = "duplicate_elements"
    EXTERNAL = "external"


class StructuralHint(StrEnum):
    """Input shape inferred from keywords in the format description."""

    ARRAY = "array"
    MATRIX = "matrix"
    GRAPH = "graph"
    TREE = "tree"
    STRING = "string"


class HypothesisCategory(StrEnum):
    """Family a candidate algorithm belongs to."""

    AGGREGATION = "aggregation"
    SELECTION = "selection"
    SORTING = "sorting"
    SEARCHING = "searching"
    MATHEMATICAL = "mathematical"
    DP = "dp"
    STRING = "string"
    OTHER = "other"


class PatternType(StrEnum):
    """Coarse algorithmic family reported by the pattern detector."""

    LINEAR_AGGREGATION = "linear_aggregation"
    QUADRATIC_COMPARISON = "quadratic_comparison"
    LOGARITHMIC_SEARCH = "logarithmic_search"
    SORTING_BASED = "sorting_based"
    DP_OPTIMAL = "dp_optimal"
    GREEDY_LOCAL = "greedy_local"
    MATHEMATICAL_TRANSFORM = "mathematical_transform"
    STRING_MANIPULATION = "string_manipulation"
    UNKNOWN = "unknown"


class FailureReason(StrEnum):
    """Why a sandbox execution did not produce a usable observation."""

    TIMED_OUT = "timed_out"
    RESOURCE_EXCEEDED = "resource_exceeded"
    PROCESS_ERROR = "process_error"
    INFRASTRUCTURE_ERROR = "infrastructure_error"


class InferenceSource(StrEnum):
    """Where an inferred problem came from."""

    REASONING = "reasoning"
    HYPOTHESIS_FALLBACK = "hypothesis_fallback"
    STATISTICAL_FALLBACK = "statistical_fallback"


class PipelineStage(StrEnum):
    """Stage of the inference pipeline state machine."""

    GENERATING = "generating"
    EXECUTING = "executing"
    VALIDATING = "validating"
    REASONING = "reasoning"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    ERROR = "error"


class EventKind(StrEnum):
    """Kind of progress event pushed to subscribers."""

    STAGE = "stage"
    TEST = "test"
    HYPOTHESIS = "hypothesis"
    PATTERN = "pattern"
    LOG = "log"
    COMPLETE = "complete"
    ERROR = "error"


class PromptKind(StrEnum):
    """Prompt templates sent to the reasoning service."""

    TEST_GENERATION = "test_generation"
    INFERENCE = "inference"


# ---------------------------------------------------------------------------
# Test cases and observations
# ---------------------------------------------------------------------------


class TestCase(BaseModel):
    """A single input to feed to the black-box executable.

    Attributes:
        input: Full stdin text, newline-terminated.
        rationale: Why this input is interesting.
        category: Strategy or gap that produced the case.
        priority: Higher values are kept first when trimming a batch.
    """

    __test__ = False

    model_config = ConfigDict(frozen=True)

    input: str
    rationale: str
    category: TestCategory
    priority: int = 5


class Observation(BaseModel):
    """An input/output pair from a successful execution."""

    model_config = ConfigDict(frozen=True)

    input: str
    output: str


class VariableBound(BaseModel):
    """Numeric bounds parsed for one named variable.

    Attributes:
        name: Variable name as written in the constraints (``n``, ``a_i``).
        type: ``"int"`` or ``"float"``.
        min: Inclusive lower bound, or ``None`` when unknown.
        max: Inclusive upper bound, or ``None`` when unknown.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    type: Literal["int", "float"] = "int"
    min: int | float | None = None
    max: int | float | None = None


class ParsedConstraints(BaseModel):
    """Variables and structural hints derived once per run."""

    model_config = ConfigDict(frozen=True)

    variables: tuple[VariableBound, ...]
    structural_hints: frozenset[StructuralHint] = frozenset()

    def has_hint(self, hint: StructuralHint) -> bool:
        """Return whether *hint* was detected."""
        return hint in self.structural_hints

    def variable(self, name: str) -> VariableBound | None:
        """Return the first bound recorded for *name*, if any."""
        for var in self.variables:
            if var.name == name:
                return var
        return None


class Hypothesis(BaseModel):
    """A candidate algorithm scored against the observation set.

    Attributes:
        id: Stable library identifier (``"sum"``, ``"max"``).
        name: Display name (``"Array Sum"``).
        description: One-line description of the behavior.
        category: Algorithm family.
        confidence: ``match_count / (match_count + mismatch_count)``.
        match_count: Observations the prediction agreed with.
        mismatch_count: Observations it disagreed with or could not handle.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    category: HypothesisCategory
    confidence: float = Field(ge=0.0, le=1.0)
    match_count: int = Field(default=0, ge=0)
    mismatch_count: int = Field(default=0, ge=0)


class DetectedPattern(BaseModel):
    """An algorithmic family suggested by statistical evidence."""

    model_config = ConfigDict(frozen=True)

    type: PatternType
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: tuple[str, ...] = ()
    suggested_algorithm: str


# ---------------------------------------------------------------------------
# Sandbox execution
# ---------------------------------------------------------------------------


class ExecutionLimits(BaseModel):
    """Resource ceiling applied to one sandboxed execution."""

    model_config = ConfigDict(frozen=True)

    timeout_ms: int = 30000
    memory_bytes: int = 268435456
    max_processes: int = 50

    @field_validator("timeout_ms", "memory_bytes", "max_processes")
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        """Validate that every limit is >= 1."""
        if v < 1:
            msg = "Value must be >= 1"
            raise ValueError(msg)
        return v


class ExecutionResult(BaseModel):
    """Outcome of a single sandboxed execution.

    Attributes:
        stdout: Captured standard output.
        stderr: Captured standard error.
        exit_status: Process exit status, or ``None`` when it never ran.
        timed_out: Whether the run was killed at its deadline.
        resource_exceeded: Whether a memory or process ceiling was hit.
        elapsed_ms: Wall-clock duration in milliseconds.
        failure_reason: Classification of the failure, ``None`` on success.
    """

    model_config = ConfigDict(frozen=True)

    stdout: str = ""
    stderr: str = ""
    exit_status: int | None = None
    timed_out: bool = False
    resource_exceeded: bool = False
    elapsed_ms: float = 0.0
    failure_reason: FailureReason | None = None

    @model_validator(mode="after")
    def _derive_failure_reason(self) -> ExecutionResult:
        """Fill in a failure reason the runner did not set explicitly."""
        if self.failure_reason is not None:
            return self
        reason: FailureReason | None = None
        if self.timed_out:
            reason = FailureReason.TIMED_OUT
        elif self.resource_exceeded:
            reason = FailureReason.RESOURCE_EXCEEDED
        elif self.exit_status is None:
            reason = FailureReason.INFRASTRUCTURE_ERROR
        elif self.exit_status != 0:
            reason = FailureReason.PROCESS_ERROR
        if reason is not None:
            object.__setattr__(self, "failure_reason", reason)
        return self

    @property
    def succeeded(self) -> bool:
        """True only for a clean exit 0 that did not time out."""
        return self.failure_reason is None and self.exit_status == 0 and not self.timed_out


class FailedAttempt(BaseModel):
    """Record of an execution that did not yield an observation."""

    model_config = ConfigDict(frozen=True)

    input: str
    failure_reason: FailureReason
    exit_status: int | None = None
    detail: str = ""


class ExecutionStats(BaseModel):
    """Aggregate statistics over every execution of a run."""

    model_config = ConfigDict(frozen=True)

    total_tests: int = 0
    successful_tests: int = 0
    failed_tests: int = 0
    average_execution_ms: float = 0.0
    failures_by_reason: dict[str, int] = {}


# ---------------------------------------------------------------------------
# Inference results
# ---------------------------------------------------------------------------


class SampleTestCase(BaseModel):
    """A worked example included in the inferred problem statement."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    input: str
    output: str
    explanation: str = ""


class InferredProblem(BaseModel):
    """Problem statement and solution synthesized for the executable.

    Accepts the camelCase keys the reasoning service produces
    (``problemTitle``, ``solutionCode``) as well as the snake_case names.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    problem_title: str
    problem_statement: str
    input_format: str = ""
    output_format: str = ""
    constraints: str = ""
    sample_test_cases: list[SampleTestCase] = []
    solution_code: str = ""
    algorithm_explanation: str = ""
    time_complexity: str = "Unknown"
    space_complexity: str = "Unknown"
    confidence: float = 0.5
    source: InferenceSource = InferenceSource.REASONING

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        """Coerce percentages and clamp into ``[0, 1]``."""
        value = float(v)
        if 1.0 < value <= 100.0:
            value /= 100.0
        return min(1.0, max(0.0, value))

    @property
    def is_fallback(self) -> bool:
        """Whether this inference was produced without the reasoning service."""
        return self.source is not InferenceSource.REASONING


class VerificationMismatch(BaseModel):
    """A sample in the inference that contradicts an observed run."""

    model_config = ConfigDict(frozen=True)

    input: str
    expected: str
    actual: str


class VerificationResult(BaseModel):
    """Heuristic check of an inference against the observations."""

    model_config = ConfigDict(frozen=True)

    verified: bool
    accuracy: float = Field(ge=0.0, le=1.0)
    mismatches: tuple[VerificationMismatch, ...] = ()


class QualityReport(BaseModel):
    """Quality score (0-100) with the deductions that produced it."""

    model_config = ConfigDict(frozen=True)

    score: int = Field(ge=0, le=100)
    issues: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Requests, progress and results
# ---------------------------------------------------------------------------


class AnalysisRequest(BaseModel):
    """Input handed in by the transport layer for one analysis run."""

    model_config = ConfigDict(frozen=True)

    executable_path: str
    input_format: str
    constraints: str = ""

    @field_validator("executable_path")
    @classmethod
    def _path_not_blank(cls, v: str) -> str:
        """Reject an empty executable path."""
        if not v.strip():
            msg = "executable_path must not be empty"
            raise ValueError(msg)
        return v


class ProgressEvent(BaseModel):
    """A progress update pushed to subscribers of a run."""

    model_config = ConfigDict(frozen=True)

    stage: PipelineStage
    progress_percent: int = Field(ge=0, le=100)
    message: str
    details: dict[str, Any] | None = None
    kind: EventKind = EventKind.STAGE
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AnalysisResult(BaseModel):
    """Final (or partial) outcome of an analysis run.

    On failure ``success`` is false, ``error`` holds a human-readable message,
    and the observations and failed attempts gathered so far are retained.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    success: bool
    stage: PipelineStage
    inferred_problem: InferredProblem | None = None
    observations: tuple[Observation, ...] = ()
    failed_attempts: tuple[FailedAttempt, ...] = ()
    test_cases: tuple[TestCase, ...] = ()
    execution_stats: ExecutionStats | None = None
    hypotheses: tuple[Hypothesis, ...] = ()
    patterns: tuple[DetectedPattern, ...] = ()
    verification: VerificationResult | None = None
    quality: QualityReport | None = None
    fallback_used: bool = False
    error: str | None = None
    error_kind: str | None = None
    duration_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class PipelineConfig(BaseModel):
    """Pipeline limits, concurrency and sandbox configuration.

    Attributes:
        timeout_ms: Per-execution wall-clock limit.
        memory_bytes: Per-execution memory ceiling.
        max_processes: Per-execution process-count ceiling.
        grace_ms: Time between the soft and the forced kill.
        watchdog_margin_ms: Extra slack before the orchestrator-level
            watchdog abandons an execution.
        cleanup_timeout_ms: Deadline for one docker housekeeping command
            (``inspect``, ``rm``); a hung command is killed.
        max_concurrent_executions: Size of the sandbox execution pool.
        strategy_test_count: Cases taken from the strategy generator.
        max_test_cases: Cap on the merged initial test batch.
        adaptive_test_cap: Cap on cases added by the adaptive round.
        ambiguity_threshold: Top-two confidence gap that triggers the
            adaptive round.
        top_hypotheses_limit: Hypotheses included in the reasoning prompt.
        reasoning_min_interval_ms: Minimum spacing between reasoning calls.
        reasoning_timeout_seconds: Deadline for one reasoning call.
        model: Model identifier passed to the reasoning client.
        use_external_test_generation: Ask the reasoning service for extra
            test cases during generation.
        sandbox_backend: ``"docker"``, ``"local"`` or ``"mock"``.
        sandbox_image: Container image for the Docker backend.
        sandbox_entrypoint: Command prefix for the executable inside the
            sandbox (e.g. ``["wine"]`` for PE binaries).
        workspace_root: Parent directory for run workspaces, system temp
            directory when ``None``.
        job_ttl_seconds: How long finished run snapshots are retained.
        orphan_sweep_interval_seconds: Period of the orphan sweeper.
        orphan_max_age_seconds: Age after which an unowned workspace is
            reclaimed.
        log_level: Logging level string.
        log_file: Optional log file path.
    """

    model_config = ConfigDict(frozen=True)

    # Sandbox limits
    timeout_ms: int = 30000
    memory_bytes: int = 268435456
    max_processes: int = 50
    grace_ms: int = 2000
    watchdog_margin_ms: int = 1000
    cleanup_timeout_ms: int = 10000

    # Test generation and execution
    max_concurrent_executions: int = 4
    strategy_test_count: int = 15
    max_test_cases: int = 25
    adaptive_test_cap: int = 10
    ambiguity_threshold: float = 0.2
    top_hypotheses_limit: int = 5

    # Reasoning service
    reasoning_min_interval_ms: int = 1000
    reasoning_timeout_seconds: int = 180
    model: str = "sonnet"
    use_external_test_generation: bool = True

    # Sandbox backend
    sandbox_backend: Literal["docker", "local", "mock"] = "docker"
    sandbox_image: str = "sandbox:latest"
    sandbox_entrypoint: list[str] = []
    workspace_root: str | None = None

    # Housekeeping
    job_ttl_seconds: int = 3600
    orphan_sweep_interval_seconds: int = 300
    orphan_max_age_seconds: int = 1800

    log_level: str = "INFO"
    log_file: str | None = None

    @field_validator(
        "timeout_ms",
        "cleanup_timeout_ms",
        "memory_bytes",
        "max_processes",
        "max_concurrent_executions",
        "strategy_test_count",
        "max_test_cases",
        "adaptive_test_cap",
        "top_hypotheses_limit",
        "reasoning_timeout_seconds",
        "job_ttl_seconds",
        "orphan_sweep_interval_seconds",
        "orphan_max_age_seconds",
    )
    @classmethod
    def _must_be_positive(cls, v: int) -> int:
        """Validate that counts and limits are >= 1."""
        if v < 1:
            msg = "Value must be >= 1"
            raise ValueError(msg)
        return v

    @field_validator("grace_ms", "watchdog_margin_ms", "reasoning_min_interval_ms")
    @classmethod
    def _must_be_non_negative(cls, v: int) -> int:
        """Validate that delays are >= 0."""
        if v < 0:
            msg = "Value must be >= 0"
            raise ValueError(msg)
        return v

    @field_validator("ambiguity_threshold")
    @classmethod
    def _threshold_in_unit_interval(cls, v: float) -> float:
        """Validate that the ambiguity threshold lies in ``(0, 1]``."""
        if not 0.0 < v <= 1.0:
            msg = "ambiguity_threshold must be in (0, 1]"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def _strategy_count_within_cap(self) -> PipelineConfig:
        """Ensure the strategy batch fits within the merged test cap."""
        if self.strategy_test_count > self.max_test_cases:
            msg = (
                f"strategy_test_count ({self.strategy_test_count}) must not "
                f"exceed max_test_cases ({self.max_test_cases})"
            )
            raise ValueError(msg)
        return self

    @property
    def limits(self) -> ExecutionLimits:
        """Per-execution limits derived from this configuration."""
        return ExecutionLimits(
            timeout_ms=self.timeout_ms,
            memory_bytes=self.memory_bytes,
            max_processes=self.max_processes,
        )


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


class PromptTemplate(BaseModel):
    """A reasoning-service prompt loaded from YAML.

    Attributes:
        kind: Which request this template builds.
        template: ``str.format`` template text; literal braces are doubled.
        variables: Names of the placeholders the template expects.
    """

    model_config = ConfigDict(frozen=True)

    kind: PromptKind
    template: str
    variables: list[str]

    def render(self, **kwargs: Any) -> str:
        """Fill the template placeholders.

        Raises:
            KeyError: If a placeholder has no matching keyword argument.
        """
        return self.template.format(**kwargs)
