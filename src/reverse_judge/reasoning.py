"""Reasoning-service access: client, request queue, prompts and lenient parsing.

The reasoning service is a black box that turns a prompt into text. The
default :class:`ClaudeCodeClient` shells out to ``claude -p``. All calls
go through a :class:`ReasoningQueue`, a single worker that enforces a
minimum spacing between requests and serves lower priority numbers first.

Responses are parsed with :func:`parse_lenient`, which tolerates markdown
fences, surrounding prose and truncated arrays.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator, Sequence
import contextlib
import itertools
import json
import logging
import os
import re
import time
from typing import Any, Protocol, TypeVar, get_args, get_origin

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

from reverse_judge.models import (
    AnalysisRequest,
    DetectedPattern,
    Hypothesis,
    InferredProblem,
    Observation,
    PromptKind,
    TestCase,
)
from reverse_judge.patterns import pattern_summary
from reverse_judge.prompts import PromptRegistry, get_registry
from reverse_judge.recovery import MalformedResponseError, ReasoningTimeoutError
from reverse_judge.strategies import external_case

logger = logging.getLogger(__name__)

T = TypeVar("T")

INFERENCE_PRIORITY = 0
TEST_GENERATION_PRIORITY = 5

_MAX_PROMPT_OBSERVATIONS = 30
_DEFAULT_CONSTRAINTS = "Standard competitive programming constraints"


class ReasoningClient(Protocol):
    """Anything that turns a prompt into a text completion."""

    async def generate(self, prompt: str) -> str:
        """Return the service's text response to *prompt*."""
        ...


async def _kill(proc: asyncio.subprocess.Process) -> None:
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    await proc.wait()


class ClaudeCodeClient:
    """Subprocess-based client for Claude Code headless mode.

    Wraps ``claude -p`` invocations as async subprocess calls. Each
    ``generate()`` call spawns a new subprocess.

    Attributes:
        model: Claude model identifier.
        timeout_seconds: Deadline for a single invocation.
        executable: Name or path of the ``claude`` CLI.
    """

    def __init__(self, *, model: str = "sonnet", timeout_seconds: float = 180, executable: str = "claude") -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.executable = executable

    def _build_command(self, prompt: str) -> list[str]:
        return [self.executable, "-p", prompt, "--output-format", "text", "--model", self.model]

    async def generate(self, prompt: str) -> str:
        """Send *prompt* via ``claude -p``.

        Raises:
            ReasoningTimeoutError: If the CLI does not answer in time.
            RuntimeError: If the subprocess exits with non-zero status.
        """
        cmd = self._build_command(prompt)

        # Remove CLAUDECODE env var to allow nested Claude CLI invocations
        env = {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            await _kill(proc)
            msg = f"claude -p timed out after {self.timeout_seconds:g}s (reasoning model {self.model})"
            raise ReasoningTimeoutError(msg) from exc
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        if proc.returncode != 0:
            error_text = stderr.decode("utf-8", errors="replace")
            msg = f"claude -p failed (exit {proc.returncode}): {error_text[:500]}"
            raise RuntimeError(msg)

        return stdout.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Request queue
# ---------------------------------------------------------------------------

_QueueItem = tuple[int, int, str, "asyncio.Future[str]"]


class ReasoningQueue:
    """Serialize reasoning calls with a minimum spacing between requests.

    Requests are served lowest priority number first, FIFO within a
    priority. The worker starts lazily on the first submission.

    Args:
        client: The reasoning client that performs each call.
        min_interval_ms: Minimum time between the starts of two calls.
        clock: Monotonic clock in seconds.
        sleep: Awaitable sleep used to wait for the next slot.
    """

    def __init__(
        self,
        client: ReasoningClient,
        *,
        min_interval_ms: int = 1000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.min_interval_ms = min_interval_ms
        self._clock = clock
        self._sleep = sleep
        self._queue: asyncio.PriorityQueue[_QueueItem] | None = None
        self._worker: asyncio.Task[None] | None = None
        self._counter = itertools.count()
        self._last_started: float | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _ensure_queue(self) -> asyncio.PriorityQueue[_QueueItem]:
        if self._queue is None:
            self._queue = asyncio.PriorityQueue()
        return self._queue

    def start(self) -> None:
        """Start the worker task (idempotent)."""
        if self.running:
            return
        self._ensure_queue()
        self._worker = asyncio.create_task(self._run())

    async def submit(self, prompt: str, *, priority: int = TEST_GENERATION_PRIORITY) -> str:
        """Queue *prompt* and wait for its response.

        Cancelling the caller also cancels the client call if it has started.

        Raises:
            Exception: Whatever the client raised for this prompt.
        """
        self.start()
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        await self._ensure_queue().put((priority, next(self._counter), prompt, future))
        return await future

    async def _wait_for_slot(self) -> None:
        if self._last_started is not None:
            remaining = self.min_interval_ms / 1000 - (self._clock() - self._last_started)
            if remaining > 0:
                await self._sleep(remaining)
        self._last_started = self._clock()

    async def _serve(self, prompt: str, future: asyncio.Future[str]) -> None:
        call = asyncio.ensure_future(self.client.generate(prompt))
        future.add_done_callback(lambda _: call.cancel())
        try:
            await asyncio.wait({call})
        except asyncio.CancelledError:
            call.cancel()
            future.cancel()
            raise
        if call.cancelled():
            logger.debug("Reasoning call abandoned by its caller")
            return
        if future.done():
            return
        exc = call.exception()
        if exc is not None:
            future.set_exception(exc)
        else:
            future.set_result(call.result())

    async def _run(self) -> None:
        queue = self._ensure_queue()
        while True:
            _, _, prompt, future = await queue.get()
            try:
                if future.cancelled():
                    continue
                await self._wait_for_slot()
                if not future.cancelled():
                    await self._serve(prompt, future)
            finally:
                queue.task_done()

    async def close(self) -> None:
        """Stop the worker and cancel requests still waiting in the queue."""
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        if self._queue is not None:
            while not self._queue.empty():
                _, _, _, future = self._queue.get_nowait()
                future.cancel()

    async def __aenter__(self) -> ReasoningQueue:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Lenient JSON parsing
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)(?:```|$)", re.DOTALL)
_OPENERS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    """Return the body of the first markdown code block, or *text* unchanged."""
    match = _FENCE_RE.search(text)
    return match.group(1) if match else text


def extract_json_payload(text: str) -> str | None:
    """Return the outermost balanced JSON object or array in *text*.

    String literals are honored, so braces inside strings do not count.
    Returns ``None`` when no opener exists or the payload is truncated.
    """
    start = next((i for i, ch in enumerate(text) if ch in _OPENERS), None)
    if start is None:
        return None
    stack: list[str] = []
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        ch = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif stack and ch == stack[-1]:
            stack.pop()
            if not stack:
                return text[start : index + 1]
    return None


def iter_json_objects(text: str) -> Iterator[Any]:
    """Yield every well-formed JSON object in *text*, enclosing objects before nested ones."""
    decoder = json.JSONDecoder(strict=False)
    index = text.find("{")
    while index != -1:
        try:
            obj, _ = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            logger.debug("No JSON object at offset %d", index)
        else:
            yield obj
        index = text.find("{", index + 1)


class LenientParser:
    """Tolerant JSON contract for reasoning-service responses.

    First attempts a strict parse of the extracted payload; on failure,
    recovers every object fragment that validates against the target (or its
    item type when the target is a list).

    Args:
        target: Pydantic-compatible type, e.g. ``InferredProblem`` or
            ``list[GeneratedCase]``.
    """

    def __init__(self, target: Any) -> None:
        self.target = target
        self._adapter: TypeAdapter[Any] = TypeAdapter(target)
        self._item_adapter: TypeAdapter[Any] | None = None
        if get_origin(target) in (list, tuple):
            self._item_adapter = TypeAdapter(get_args(target)[0])

    def _strict(self, text: str) -> Any | None:
        payload = extract_json_payload(text)
        if payload is None:
            return None
        try:
            return self._adapter.validate_python(json.loads(payload, strict=False))
        except (json.JSONDecodeError, ValidationError) as exc:
            logger.debug("Strict parse failed, recovering fragments: %s", exc)
            return None

    def _recover(self, text: str) -> Any | None:
        if self._item_adapter is not None:
            items = []
            for obj in iter_json_objects(text):
                with contextlib.suppress(ValidationError):
                    items.append(self._item_adapter.validate_python(obj))
            return items or None
        for obj in iter_json_objects(text):
            with contextlib.suppress(ValidationError):
                return self._adapter.validate_python(obj)
        return None

    def parse(self, text: str) -> Any:
        """Parse *text* into the target type.

        Raises:
            MalformedResponseError: If neither pass yields a valid value.
        """
        cleaned = strip_code_fences(text)
        result = self._strict(cleaned)
        if result is None:
            result = self._recover(cleaned)
        if result is None:
            msg = f"Invalid JSON response: no valid {self.target!r} payload in {len(text)} chars"
            raise MalformedResponseError(msg)
        return result


def parse_lenient(text: str, target: type[T]) -> T:
    """Parse a reasoning-service response into *target*, tolerating noise."""
    return LenientParser(target).parse(text)


# ---------------------------------------------------------------------------
# Prompts and response handling
# ---------------------------------------------------------------------------


class GeneratedCase(BaseModel):
    """A test case proposed by the reasoning service."""

    model_config = ConfigDict(frozen=True)

    input: str
    rationale: str = ""


def format_observations(observations: Sequence[Observation], limit: int = _MAX_PROMPT_OBSERVATIONS) -> str:
    return "\n\n".join(
        f"Test {i}:\n  Input: {obs.input.strip()}\n  Output: {obs.output}"
        for i, obs in enumerate(observations[:limit], start=1)
    )


def format_analysis(hypotheses: Sequence[Hypothesis], patterns: Sequence[DetectedPattern]) -> str:
    """Render local pre-analysis as prompt context, empty when there is none."""
    if not hypotheses and not patterns:
        return ""
    lines = ["", "PRE-ANALYSIS (validated locally against every observation):"]
    if hypotheses:
        lines.append("Top hypotheses:")
        lines.extend(
            f"- {h.name} ({h.confidence * 100:.0f}% confidence, "
            f"{h.match_count}/{h.match_count + h.mismatch_count} matched): {h.description}"
            for h in hypotheses
        )
    if patterns:
        lines.append(pattern_summary(patterns))
    return "\n".join(lines)


def build_inference_prompt(
    request: AnalysisRequest,
    observations: Sequence[Observation],
    hypotheses: Sequence[Hypothesis] = (),
    patterns: Sequence[DetectedPattern] = (),
    *,
    registry: PromptRegistry | None = None,
) -> str:
    """Render the inference prompt for a run's observations and pre-analysis."""
    template = (registry or get_registry()).get(PromptKind.INFERENCE)
    return template.render(
        input_format=request.input_format,
        constraints=request.constraints or _DEFAULT_CONSTRAINTS,
        analysis=format_analysis(hypotheses, patterns),
        observations=format_observations(observations),
        observation_count=len(observations),
    )


def build_test_generation_prompt(
    request: AnalysisRequest,
    count: int = 10,
    *,
    registry: PromptRegistry | None = None,
) -> str:
    """Render the test-generation prompt for *request*."""
    template = (registry or get_registry()).get(PromptKind.TEST_GENERATION)
    return template.render(
        input_format=request.input_format,
        constraints=request.constraints or _DEFAULT_CONSTRAINTS,
        count=count,
    )


def parse_generated_tests(text: str) -> list[TestCase]:
    """Convert a test-generation response into external test cases.

    Raises:
        MalformedResponseError: If no case can be recovered.
    """
    generated = parse_lenient(text, list[GeneratedCase])
    return [
        external_case(case.input, case.rationale or "Generated by reasoning service")
        for case in generated
        if case.input.strip()
    ]


def parse_inference(text: str) -> InferredProblem:
    """Convert an inference response into an :class:`InferredProblem`.

    Raises:
        MalformedResponseError: If no valid payload can be recovered.
    """
    return parse_lenient(text, InferredProblem)


async def generate_external_tests(
    queue: ReasoningQueue,
    request: AnalysisRequest,
    count: int = 10,
) -> list[TestCase]:
    """Ask the reasoning service for additional test cases."""
    prompt = build_test_generation_prompt(request, count)
    response = await queue.submit(prompt, priority=TEST_GENERATION_PRIORITY)
    cases = parse_generated_tests(response)
    logger.info("Reasoning service proposed %d test case(s)", len(cases))
    return cases


async def infer_problem(
    queue: ReasoningQueue,
    request: AnalysisRequest,
    observations: Sequence[Observation],
    hypotheses: Sequence[Hypothesis] = (),
    patterns: Sequence[DetectedPattern] = (),
) -> InferredProblem:
    """Ask the reasoning service to synthesize the problem from observations."""
    prompt = build_inference_prompt(request, observations, hypotheses, patterns)
    response = await queue.submit(prompt, priority=INFERENCE_PRIORITY)
    inference = parse_inference(response)
    logger.info("Inferred '%s' (confidence %.2f)", inference.problem_title, inference.confidence)
    return inference
