"""Pipeline orchestrator: drives one analysis run through its stages.

A run moves through ``generating -> executing -> validating ->
[executing -> validating] -> reasoning -> verifying -> complete``; ``error``
is reachable from every non-terminal stage. The bracketed adaptive round runs
at most once. :class:`AnalysisRun` owns the mutable state of one run and
enforces the transition table; :class:`InferencePipeline` schedules runs,
owns the reasoning queue and the orphan sweeper, and supports cancellation.

Also provides logging setup, ``REVERSE_JUDGE_*`` environment overrides and
the module-level entry points :func:`run_analysis` and
:func:`run_analysis_sync`.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Mapping, MutableMapping, Sequence
import logging
import os
from pathlib import Path
import time
from typing import Any
import uuid

from reverse_judge.adaptive import is_ambiguous, suggest_next_tests
from reverse_judge.constraints import parse_constraints
from reverse_judge.hypotheses import top_hypotheses
from reverse_judge.models import (
    AnalysisRequest,
    AnalysisResult,
    DetectedPattern,
    EventKind,
    ExecutionResult,
    ExecutionStats,
    FailedAttempt,
    FailureReason,
    Hypothesis,
    InferredProblem,
    Observation,
    ParsedConstraints,
    PipelineConfig,
    PipelineStage,
    ProgressEvent,
    QualityReport,
    TestCase,
    VerificationResult,
)
from reverse_judge.patterns import detect_patterns
from reverse_judge.progress import JobSnapshot, JobStore, ProgressChannel
from reverse_judge.reasoning import ReasoningClient, ReasoningQueue, generate_external_tests, infer_problem
from reverse_judge.recovery import (
    ErrorKind,
    RecoveryError,
    RecoveryPolicy,
    ReverseJudgeError,
    build_fallback_inference,
    classify_error,
    user_message,
    with_recovery,
    with_timeout,
)
from reverse_judge.refinement import analyze_quality, refine_inference, verify_inference
from reverse_judge.sandbox import (
    DockerRunner,
    IsolatedRunner,
    LocalProcessRunner,
    MockBehavior,
    MockRunner,
    OrphanSweeper,
    RunWorkspace,
    execute,
    run_workspace,
)
from reverse_judge.strategies import generate_test_cases, is_well_formed, merge_test_cases

logger = logging.getLogger(__name__)

CANCELLED_KIND = "cancelled"

# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class InvalidTransitionError(ReverseJudgeError):
    """A run attempted a stage transition the state machine forbids."""


class PipelineError(ReverseJudgeError):
    """Pipeline failure with diagnostic context.

    Raised when a run cannot continue. The ``diagnostics`` dict carries
    structured context (counts, elapsed time, last stage) for debugging.

    Attributes:
        diagnostics: Structured diagnostic information about the failure.
    """

    def __init__(self, message: str, *, diagnostics: dict[str, Any], kind: ErrorKind | None = None) -> None:
        """Initialize with a message and structured diagnostics.

        Args:
            message: Human-readable error description.
            diagnostics: Structured context (counts, elapsed time, etc.).
            kind: Optional error classification.
        """
        super().__init__(message, kind=kind)
        self.diagnostics = diagnostics


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

ALLOWED_TRANSITIONS: dict[PipelineStage, frozenset[PipelineStage]] = {
    PipelineStage.GENERATING: frozenset({PipelineStage.EXECUTING, PipelineStage.ERROR}),
    PipelineStage.EXECUTING: frozenset({PipelineStage.VALIDATING, PipelineStage.ERROR}),
    PipelineStage.VALIDATING: frozenset({PipelineStage.EXECUTING, PipelineStage.REASONING, PipelineStage.ERROR}),
    PipelineStage.REASONING: frozenset({PipelineStage.VERIFYING, PipelineStage.ERROR}),
    PipelineStage.VERIFYING: frozenset({PipelineStage.COMPLETE, PipelineStage.ERROR}),
    PipelineStage.COMPLETE: frozenset(),
    PipelineStage.ERROR: frozenset(),
}
"""Legal successor stages of each pipeline stage."""

TERMINAL_STAGES = frozenset({PipelineStage.COMPLETE, PipelineStage.ERROR})


class RunLoggerAdapter(logging.LoggerAdapter):  # type: ignore[type-arg]
    """Prefix log messages with the first eight characters of the run id."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        run_id = str((self.extra or {}).get("run_id", ""))
        return f"[{run_id[:8]}] {msg}", kwargs


class AnalysisRun:
    """Mutable aggregate root of one analysis run.

    Owns the parsed constraints, the append-only observation list, failed
    attempts, current hypotheses and patterns, the pipeline stage and the
    run workspace. Stage changes go through :meth:`transition`.

    Attributes:
        run_id: Unique id of the run.
        request: The analysis request being served.
        stage: Current pipeline stage.
        progress_percent: Last reported progress.
    """

    def __init__(
        self,
        run_id: str,
        request: AnalysisRequest,
        *,
        channel: ProgressChannel | None = None,
        jobs: JobStore | None = None,
    ) -> None:
        self.run_id = run_id
        self.request = request
        self.stage = PipelineStage.GENERATING
        self.progress_percent = 0
        self.constraints: ParsedConstraints | None = None
        self.test_cases: list[TestCase] = []
        self.observations: list[Observation] = []
        self.failed_attempts: list[FailedAttempt] = []
        self.hypotheses: list[Hypothesis] = []
        self.patterns: list[DetectedPattern] = []
        self.adaptive_rounds = 0
        self.workspace: RunWorkspace | None = None
        self.task: asyncio.Task[AnalysisResult] | None = None
        self.cancel_requested = False
        self.log = RunLoggerAdapter(logger, {"run_id": run_id})
        self._channel = channel
        self._jobs = jobs
        self._elapsed_ms: list[float] = []
        self._started = time.monotonic()

    # -- state machine -----------------------------------------------------

    def transition(self, stage: PipelineStage) -> None:
        """Move to *stage*.

        Raises:
            InvalidTransitionError: If the move is not in the transition
                table, or would start a second adaptive round.
        """
        allowed = ALLOWED_TRANSITIONS[self.stage]
        if stage not in allowed:
            msg = f"Illegal transition {self.stage} -> {stage}"
            raise InvalidTransitionError(msg)
        if self.stage == PipelineStage.VALIDATING and stage == PipelineStage.EXECUTING:
            if self.adaptive_rounds >= 1:
                msg = "Adaptive execution round already used"
                raise InvalidTransitionError(msg)
            self.adaptive_rounds += 1
        self.log.debug("Stage %s -> %s", self.stage, stage)
        self.stage = stage

    @property
    def done(self) -> bool:
        return self.stage in TERMINAL_STAGES

    # -- observations ------------------------------------------------------

    def record(self, case: TestCase, result: ExecutionResult) -> Observation | None:
        """Record one execution; only clean exits become observations."""
        self._elapsed_ms.append(result.elapsed_ms)
        if result.succeeded:
            observation = Observation(input=case.input, output=result.stdout.strip())
            self.observations.append(observation)
            return observation
        reason = result.failure_reason or FailureReason.PROCESS_ERROR
        self.failed_attempts.append(
            FailedAttempt(
                input=case.input,
                failure_reason=reason,
                exit_status=result.exit_status,
                detail=result.stderr[:500],
            )
        )
        self.log.warning(
            "Execution failed (%s, exit %s) for input %r",
            reason,
            result.exit_status,
            case.input[:40],
        )
        return None

    def execution_stats(self) -> ExecutionStats:
        total = len(self.observations) + len(self.failed_attempts)
        reasons = Counter(str(attempt.failure_reason) for attempt in self.failed_attempts)
        return ExecutionStats(
            total_tests=total,
            successful_tests=len(self.observations),
            failed_tests=len(self.failed_attempts),
            average_execution_ms=sum(self._elapsed_ms) / len(self._elapsed_ms) if self._elapsed_ms else 0.0,
            failures_by_reason=dict(reasons),
        )

    # -- progress ----------------------------------------------------------

    def emit(
        self,
        message: str,
        percent: int | None = None,
        *,
        kind: EventKind = EventKind.STAGE,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Publish a progress event and refresh the job snapshot."""
        if percent is not None:
            self.progress_percent = max(0, min(100, percent))
        event = ProgressEvent(
            stage=self.stage,
            progress_percent=self.progress_percent,
            message=message,
            details=details,
            kind=kind,
        )
        if self._channel is not None:
            self._channel.emit(self.run_id, event)
        if self._jobs is not None:
            self._jobs.put(
                JobSnapshot(
                    run_id=self.run_id,
                    stage=self.stage,
                    progress_percent=self.progress_percent,
                    message=message,
                )
            )

    # -- results -----------------------------------------------------------

    def result(
        self,
        *,
        success: bool,
        inferred_problem: InferredProblem | None = None,
        verification: VerificationResult | None = None,
        quality: QualityReport | None = None,
        fallback_used: bool = False,
        error: str | None = None,
        error_kind: str | None = None,
    ) -> AnalysisResult:
        """Snapshot the run, including partial data, as an :class:`AnalysisResult`."""
        outcome = AnalysisResult(
            run_id=self.run_id,
            success=success,
            stage=self.stage,
            inferred_problem=inferred_problem,
            observations=tuple(self.observations),
            failed_attempts=tuple(self.failed_attempts),
            test_cases=tuple(self.test_cases),
            execution_stats=self.execution_stats(),
            hypotheses=tuple(self.hypotheses),
            patterns=tuple(self.patterns),
            verification=verification,
            quality=quality,
            fallback_used=fallback_used,
            error=error,
            error_kind=error_kind,
            duration_seconds=time.monotonic() - self._started,
        )
        if self._jobs is not None:
            self._jobs.put(
                JobSnapshot(
                    run_id=self.run_id,
                    stage=self.stage,
                    progress_percent=self.progress_percent,
                    message=error or "Analysis complete",
                    result=outcome,
                )
            )
        return outcome

    def fail(self, message: str, kind: str) -> AnalysisResult:
        """Move to ``error`` and return the partial result."""
        if not self.done:
            self.transition(PipelineStage.ERROR)
        self.emit(message, kind=EventKind.ERROR, details={"error_kind": kind})
        return self.result(success=False, error=message, error_kind=kind)

    # -- task control ------------------------------------------------------

    def cancel(self) -> bool:
        """Request cancellation; in-flight executions are torn down first."""
        if self.task is None or self.task.done():
            return False
        self.cancel_requested = True
        self.log.info("Cancellation requested")
        return self.task.cancel()

    async def wait(self) -> AnalysisResult:
        """Wait for the run to finish and return its result."""
        if self.task is None:
            msg = f"Run {self.run_id} was never started"
            raise PipelineError(msg, diagnostics={"run_id": self.run_id})
        return await self.task


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class InferencePipeline:
    """Schedules and drives analysis runs.

    Use as an async context manager so that the reasoning queue and the
    orphan sweeper are started and stopped with the pipeline.

    Args:
        runner: Isolation backend for executions.
        reasoning: Reasoning client, or ``None`` to always use the fallback
            inference.
        config: Pipeline configuration.
        channel: Optional progress channel.
        jobs: Optional job store receiving status snapshots.
        policies: Retry policies per error kind.
        sleep: Awaitable sleep used for retry backoff.
    """

    def __init__(
        self,
        runner: IsolatedRunner,
        reasoning: ReasoningClient | None = None,
        config: PipelineConfig | None = None,
        *,
        channel: ProgressChannel | None = None,
        jobs: JobStore | None = None,
        policies: Mapping[ErrorKind, RecoveryPolicy] | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        self.runner = runner
        self.config = config if config is not None else PipelineConfig()
        self.channel = channel
        self.jobs = jobs if jobs is not None else JobStore(self.config.job_ttl_seconds)
        self.policies = policies
        self._sleep = sleep
        self.queue: ReasoningQueue | None = None
        if reasoning is not None:
            self.queue = ReasoningQueue(reasoning, min_interval_ms=self.config.reasoning_min_interval_ms)
        self.sweeper = OrphanSweeper(
            runner,
            self.config.workspace_root,
            self.active_run_ids,
            interval_seconds=self.config.orphan_sweep_interval_seconds,
            max_age_seconds=self.config.orphan_max_age_seconds,
            on_sweep=self.jobs.sweep,
        )
        self._runs: dict[str, AnalysisRun] = {}

    async def __aenter__(self) -> InferencePipeline:
        if self.queue is not None:
            self.queue.start()
        self.sweeper.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Cancel in-flight runs, then stop the sweeper and the queue."""
        pending = [run for run in self._runs.values() if run.task is not None and not run.task.done()]
        for run in pending:
            run.cancel()
        if pending:
            await asyncio.gather(*(run.task for run in pending if run.task is not None), return_exceptions=True)
        await self.sweeper.stop()
        if self.queue is not None:
            await self.queue.close()
        self.jobs.sweep()

    def active_run_ids(self) -> set[str]:
        """Ids of runs whose task has not finished."""
        return {run_id for run_id, run in self._runs.items() if run.task is not None and not run.task.done()}

    def get_run(self, run_id: str) -> AnalysisRun | None:
        """Return the in-flight run; finished runs are only kept in :attr:`jobs`."""
        return self._runs.get(run_id)

    def start(self, request: AnalysisRequest, *, run_id: str | None = None) -> AnalysisRun:
        """Create a run and schedule it as a task on the running loop."""
        run = AnalysisRun(run_id or uuid.uuid4().hex, request, channel=self.channel, jobs=self.jobs)
        self._runs[run.run_id] = run
        run.task = asyncio.create_task(self._execute_run(run))
        return run

    async def run(self, request: AnalysisRequest) -> AnalysisResult:
        """Start a run and wait for its result."""
        return await self.start(request).wait()

    def cancel(self, run_id: str) -> bool:
        """Cancel the run with *run_id*; returns ``False`` if it is not running."""
        run = self._runs.get(run_id)
        return run.cancel() if run is not None else False

    # -- run driver ----------------------------------------------------------

    async def _execute_run(self, run: AnalysisRun) -> AnalysisResult:
        request = run.request
        run.log.info("=" * 60)
        run.log.info("Analysis started: executable=%s", request.executable_path)
        run.log.info("Input format: %s", request.input_format[:80])
        run.log.info("=" * 60)
        executable = request.executable_path if self.runner.requires_executable else None
        try:
            with run_workspace(self.config.workspace_root, run.run_id, executable) as workspace:
                run.workspace = workspace
                return await self._drive(run, workspace)
        except asyncio.CancelledError:
            if not run.cancel_requested:
                raise
            run.log.info("Analysis cancelled at stage %s", run.stage)
            return run.fail("Analysis cancelled", CANCELLED_KIND)
        except PipelineError as exc:
            run.log.error("Pipeline error: %s (diagnostics: %s)", exc, exc.diagnostics)
            return run.fail(str(exc), str(classify_error(exc)))
        except Exception as exc:
            kind = classify_error(exc)
            run.log.exception("Analysis failed (%s)", kind)
            return run.fail(user_message(kind, exc), str(kind))
        finally:
            run.workspace = None
            # The job store keeps the result; the live run is no longer needed.
            self._runs.pop(run.run_id, None)

    async def _drive(self, run: AnalysisRun, workspace: RunWorkspace) -> AnalysisResult:
        cases = await self._generate(run)
        run.transition(PipelineStage.EXECUTING)
        await self._execute_batch(run, workspace, cases, start=20, end=50)
        if not run.observations:
            msg = f"Insufficient successful executions: 0 of {len(run.failed_attempts)} tests produced output"
            raise PipelineError(
                msg,
                diagnostics={
                    "failed_attempts": len(run.failed_attempts),
                    "failures_by_reason": run.execution_stats().failures_by_reason,
                },
                kind=ErrorKind.EXECUTION_FAILED,
            )

        run.transition(PipelineStage.VALIDATING)
        self._validate(run)
        await self._adaptive_round(run, workspace)

        run.transition(PipelineStage.REASONING)
        inference, fallback_error = await self._reason(run)

        run.transition(PipelineStage.VERIFYING)
        run.emit("Verifying inference", 90)
        verification = verify_inference(inference, run.observations)
        refined = refine_inference(inference, verification, run.request, run.observations)
        quality = analyze_quality(refined, run.observations)
        run.log.info(
            "Verification accuracy %.2f (verified=%s), quality %d/100",
            verification.accuracy,
            verification.verified,
            quality.score,
        )

        run.transition(PipelineStage.COMPLETE)
        run.emit(
            "Analysis complete",
            100,
            kind=EventKind.COMPLETE,
            details={"title": refined.problem_title, "confidence": refined.confidence},
        )
        return run.result(
            success=True,
            inferred_problem=refined,
            verification=verification,
            quality=quality,
            fallback_used=refined.is_fallback,
            error=fallback_error.user_message if fallback_error else None,
            error_kind=str(fallback_error.kind) if fallback_error else None,
        )

    async def _generate(self, run: AnalysisRun) -> list[TestCase]:
        run.emit("Parsing constraints", 0)
        constraints = parse_constraints(run.request.input_format, run.request.constraints)
        run.constraints = constraints
        strategy_cases = generate_test_cases(constraints, self.config.strategy_test_count)
        run.emit(
            f"Generated {len(strategy_cases)} strategy test cases",
            10,
            details={"hints": sorted(str(h) for h in constraints.structural_hints)},
        )

        external: list[TestCase] = []
        external_count = self.config.max_test_cases - self.config.strategy_test_count
        if self.queue is not None and self.config.use_external_test_generation and external_count > 0:
            queue = self.queue
            try:
                proposed = await with_recovery(
                    lambda: generate_external_tests(queue, run.request, external_count),
                    ErrorKind.MALFORMED_RESPONSE,
                    policies=self.policies,
                    sleep=self._sleep,
                )
            except RecoveryError as exc:
                run.log.warning("External test generation unavailable: %s", exc.user_message)
            else:
                external = [case for case in proposed if is_well_formed(case.input, constraints)]

        run.test_cases = merge_test_cases(strategy_cases, external, limit=self.config.max_test_cases)
        run.log.info(
            "Generated %d test cases (%d strategy, %d external)",
            len(run.test_cases),
            len(strategy_cases),
            len(external),
        )
        run.emit(f"Generated {len(run.test_cases)} test cases", 20)
        return list(run.test_cases)

    async def _execute_batch(
        self,
        run: AnalysisRun,
        workspace: RunWorkspace,
        cases: Sequence[TestCase],
        *,
        start: int,
        end: int,
    ) -> None:
        """Execute *cases* through the bounded pool, reporting progress."""
        total = len(cases)
        run.emit(f"Executing {total} tests", start)
        sem = asyncio.Semaphore(self.config.max_concurrent_executions)
        limits = self.config.limits
        completed = 0

        async def _limited(case: TestCase) -> None:
            nonlocal completed
            async with sem:
                result = await execute(
                    self.runner,
                    workspace.executable,
                    case.input,
                    limits,
                    workdir_root=workspace.path,
                    grace_ms=self.config.grace_ms,
                    watchdog_margin_ms=self.config.watchdog_margin_ms,
                    label=run.run_id,
                )
            observation = run.record(case, result)
            completed += 1
            run.emit(
                f"Test {completed}/{total} {'succeeded' if observation else 'failed'}",
                start + (end - start) * completed // max(total, 1),
                kind=EventKind.TEST,
                details={
                    "input": case.input,
                    "output": observation.output if observation else None,
                    "failure_reason": str(result.failure_reason) if result.failure_reason else None,
                    "category": str(case.category),
                },
            )

        outcomes = await asyncio.gather(*(_limited(case) for case in cases), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        run.log.info(
            "Executed %d tests: %d observations, %d failed attempts so far",
            total,
            len(run.observations),
            len(run.failed_attempts),
        )

    def _validate(self, run: AnalysisRun, *, start: int = 50, end: int = 60) -> None:
        run.emit("Validating hypotheses", start)
        run.hypotheses = top_hypotheses(run.observations, self.config.top_hypotheses_limit)
        run.patterns = detect_patterns(run.observations)
        for hypothesis in run.hypotheses[:3]:
            run.emit(
                f"Hypothesis {hypothesis.name}: {hypothesis.confidence:.0%}",
                kind=EventKind.HYPOTHESIS,
                details={"id": hypothesis.id, "confidence": hypothesis.confidence},
            )
        for pattern in run.patterns:
            run.emit(
                f"Pattern {pattern.suggested_algorithm}: {pattern.confidence:.0%}",
                kind=EventKind.PATTERN,
                details={"type": str(pattern.type), "confidence": pattern.confidence},
            )
        best = run.hypotheses[0].name if run.hypotheses else "none"
        run.log.info("Validated %d hypotheses (best: %s), %d patterns", len(run.hypotheses), best, len(run.patterns))
        run.emit("Validation complete", end)

    async def _adaptive_round(self, run: AnalysisRun, workspace: RunWorkspace) -> None:
        """Run one round of discriminating and coverage-gap tests when needed."""
        if run.adaptive_rounds >= 1:
            return
        if run.hypotheses and not is_ambiguous(run.hypotheses, self.config.ambiguity_threshold):
            return
        suggestions = suggest_next_tests(
            run.observations,
            run.hypotheses,
            threshold=self.config.ambiguity_threshold,
            cap=self.config.adaptive_test_cap,
            extra_seen=[attempt.input for attempt in run.failed_attempts],
        )
        if run.constraints is not None:
            suggestions = [case for case in suggestions if is_well_formed(case.input, run.constraints)]
        if not suggestions:
            run.log.info("No adaptive tests to run")
            return

        run.log.info("Adaptive round: %d additional tests", len(suggestions))
        run.transition(PipelineStage.EXECUTING)
        run.test_cases.extend(suggestions)
        await self._execute_batch(run, workspace, suggestions, start=60, end=70)
        run.transition(PipelineStage.VALIDATING)
        self._validate(run, start=70, end=70)
        run.emit("Adaptive round complete", 70)

    async def _reason(self, run: AnalysisRun) -> tuple[InferredProblem, RecoveryError | None]:
        run.emit("Inferring problem", 70)
        if self.queue is None:
            run.log.info("Reasoning disabled; building fallback inference")
            inference = build_fallback_inference(run.observations, run.request, run.hypotheses)
            run.emit("Fallback inference built", 90)
            return inference, None

        queue = self.queue
        timeout_ms = self.config.reasoning_timeout_seconds * 1000
        try:
            inference = await with_recovery(
                lambda: with_timeout(
                    infer_problem(queue, run.request, run.observations, run.hypotheses, run.patterns),
                    timeout_ms,
                    ErrorKind.REASONING_TIMEOUT,
                ),
                ErrorKind.REASONING_TIMEOUT,
                policies=self.policies,
                sleep=self._sleep,
            )
        except RecoveryError as exc:
            run.log.warning("Reasoning failed after %d attempt(s) (%s); using fallback", exc.attempts, exc.kind)
            inference = build_fallback_inference(run.observations, run.request, run.hypotheses)
            run.emit(
                exc.user_message,
                90,
                kind=EventKind.LOG,
                details={"fallback": True, "error_kind": str(exc.kind)},
            )
            return inference, exc
        run.emit(f"Inferred: {inference.problem_title}", 90)
        return inference, None


# ---------------------------------------------------------------------------
# Environment variable support
# ---------------------------------------------------------------------------

_ENV_FIELD_MAP: dict[str, str] = {
    "REVERSE_JUDGE_MODEL": "model",
    "REVERSE_JUDGE_LOG_LEVEL": "log_level",
    "REVERSE_JUDGE_TIMEOUT_MS": "timeout_ms",
    "REVERSE_JUDGE_SANDBOX_BACKEND": "sandbox_backend",
    "REVERSE_JUDGE_SANDBOX_IMAGE": "sandbox_image",
}
"""Maps environment variable names to PipelineConfig field names."""

_BACKENDS = ("docker", "local", "mock")


def apply_env_overrides(config: PipelineConfig) -> PipelineConfig:
    """Apply ``REVERSE_JUDGE_*`` env var overrides to a config.

    Environment variables override **default** field values but do **not**
    override values explicitly set in the ``PipelineConfig`` constructor.
    A field is considered explicitly set when its value differs from the
    ``PipelineConfig`` default for that field. Invalid values are ignored.

    Args:
        config: The pipeline configuration to apply overrides to.

    Returns:
        A new ``PipelineConfig`` with env var overrides applied.
    """
    defaults = PipelineConfig()
    overrides: dict[str, Any] = {}

    for env_var, field_name in _ENV_FIELD_MAP.items():
        env_value = os.environ.get(env_var)
        if env_value is None:
            continue

        if getattr(config, field_name) != getattr(defaults, field_name):
            continue

        parsed = _parse_env_value(field_name, env_value)
        if parsed is not None:
            overrides[field_name] = parsed

    if not overrides:
        return config

    return config.model_copy(update=overrides)


def _parse_env_value(field_name: str, raw: str) -> Any:
    """Parse a raw env var string for *field_name*, ``None`` if invalid."""
    if field_name in ("model", "log_level", "sandbox_image"):
        return raw or None

    if field_name == "sandbox_backend":
        return raw if raw in _BACKENDS else None

    if field_name == "timeout_ms":
        try:
            value = int(raw)
        except ValueError:
            return None
        if value < 1:
            return None
        return value

    return None


# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s — %(message)s"


def configure_logging(config: PipelineConfig) -> None:
    """Configure Python logging for the pipeline.

    Sets up the ``"reverse_judge"`` logger with a console handler and an
    optional file handler. Idempotent; repeated calls do not duplicate
    handlers.

    Args:
        config: Pipeline configuration providing ``log_level`` and
            optional ``log_file``.
    """
    package_logger = logging.getLogger("reverse_judge")
    package_logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    if not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in package_logger.handlers
    ):
        console = logging.StreamHandler()
        console.setFormatter(logging.Formatter(_LOG_FORMAT))
        package_logger.addHandler(console)

    if config.log_file is not None:
        has_file = any(
            isinstance(h, logging.FileHandler)
            and getattr(h, "baseFilename", None) == str(Path(config.log_file).resolve())
            for h in package_logger.handlers
        )
        if not has_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
            package_logger.addHandler(file_handler)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def _echo(text: str) -> str:
    return text.strip()


def build_runner(config: PipelineConfig, *, mock_behavior: MockBehavior | None = None) -> IsolatedRunner:
    """Select the isolation backend named by ``config.sandbox_backend``.

    The mock backend echoes its input unless *mock_behavior* is given.
    """
    if config.sandbox_backend == "docker":
        return DockerRunner(
            config.sandbox_image,
            entrypoint=config.sandbox_entrypoint,
            cleanup_timeout_seconds=config.cleanup_timeout_ms / 1000,
        )
    if config.sandbox_backend == "local":
        logger.warning("Local process backend is not a security boundary; use only with trusted binaries")
        return LocalProcessRunner(entrypoint=config.sandbox_entrypoint)
    return MockRunner(mock_behavior or _echo)


async def run_analysis(
    request: AnalysisRequest,
    config: PipelineConfig | None = None,
    *,
    reasoning: ReasoningClient | None = None,
    runner: IsolatedRunner | None = None,
    channel: ProgressChannel | None = None,
) -> AnalysisResult:
    """Run one analysis end to end.

    Args:
        request: Executable path, input format and constraints.
        config: Pipeline configuration; defaults plus env overrides when
            ``None``.
        reasoning: Reasoning client; ``None`` skips the reasoning service and
            returns a fallback inference.
        runner: Isolation backend; built from *config* when ``None``.
        channel: Optional progress channel.

    Returns:
        The final (or partial, on failure) analysis result.
    """
    resolved = apply_env_overrides(config if config is not None else PipelineConfig())
    async with InferencePipeline(
        runner if runner is not None else build_runner(resolved),
        reasoning,
        resolved,
        channel=channel,
    ) as pipeline:
        return await pipeline.run(request)


def run_analysis_sync(
    request: AnalysisRequest,
    config: PipelineConfig | None = None,
    *,
    reasoning: ReasoningClient | None = None,
    runner: IsolatedRunner | None = None,
    channel: ProgressChannel | None = None,
) -> AnalysisResult:
    """Synchronous wrapper for :func:`run_analysis` via ``asyncio.run()``."""
    return asyncio.run(run_analysis(request, config, reasoning=reasoning, runner=runner, channel=channel))
