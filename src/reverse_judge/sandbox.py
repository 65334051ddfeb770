"""Sandbox executor: isolated execution of the target program.

Every execution runs behind the :class:`IsolatedRunner` protocol:

* :class:`DockerRunner` drives the ``docker`` CLI with no network, capped
  memory and process counts, dropped capabilities and a read-only root. The
  container is force-removed on every exit path.
* :class:`LocalProcessRunner` runs the executable directly under ``resource``
  rlimits in its own session. It is not a security boundary and is meant for
  trusted binaries and development.
* :class:`MockRunner` answers from a Python callable.

:func:`execute` adds a per-execution directory and an outer watchdog racing
the runner against ``timeout + grace + margin``. :func:`run_workspace` owns
the per-run directory, and :class:`OrphanSweeper` reclaims whatever a crashed
process left behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Collection, Iterator, Sequence
import contextlib
import logging
import math
import os
from pathlib import Path
import shlex
import shutil
import signal
import stat
import tempfile
import time
from typing import Protocol
import uuid

from pydantic import BaseModel, ConfigDict

from reverse_judge.models import ExecutionLimits, ExecutionResult, FailureReason
from reverse_judge.recovery import SandboxError

logger = logging.getLogger(__name__)

WORKSPACE_PREFIX = "rj-"
EXEC_PREFIX = "exec-"
INPUT_FILENAME = "input.txt"
RUN_LABEL = "reverse_judge.run"

_TIMEOUT_EXIT = 124
_KILLED_EXIT = 137
_DOCKER_FAILURE_EXITS = frozenset({125, 126, 127})
_HELPER_KILL_GRACE_SECONDS = 0.5
_MEMORY_MARKERS = ("bad_alloc", "MemoryError", "out of memory", "Cannot allocate memory")


class IsolatedRunner(Protocol):
    """Isolation backend able to run one executable against one input file."""

    requires_executable: bool

    async def run(
        self,
        executable: Path | None,
        input_path: Path,
        workdir: Path,
        limits: ExecutionLimits,
        *,
        grace_ms: int,
        label: str,
    ) -> ExecutionResult:
        """Run *executable* with stdin from *input_path* inside *workdir*."""
        ...

    async def reclaim_orphans(self, active_labels: Collection[str]) -> int:
        """Remove leftover resources whose label is not in *active_labels*."""
        ...


# ---------------------------------------------------------------------------
# Subprocess helpers
# ---------------------------------------------------------------------------


async def _kill_process_group(proc: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """Send SIGTERM to the process group, escalating to SIGKILL after the grace period."""
    pid = proc.pid
    if pid is None:
        return

    try:
        pgid = os.getpgid(pid)
    except (OSError, ProcessLookupError):
        return

    try:
        os.killpg(pgid, signal.SIGTERM)
    except (OSError, ProcessLookupError):
        return

    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
    except TimeoutError:
        with contextlib.suppress(OSError, ProcessLookupError):
            os.killpg(pgid, signal.SIGKILL)
        with contextlib.suppress(ProcessLookupError):
            await proc.wait()


async def _communicate(
    proc: asyncio.subprocess.Process,
    timeout_seconds: float,
    grace_seconds: float,
) -> tuple[str, str, bool]:
    """Collect output, killing the process group on deadline or cancellation.

    Returns:
        ``(stdout, stderr, timed_out)`` decoded as UTF-8 with replacement.
    """
    timed_out = False
    # Shielded so the pipes can still be drained after a kill.
    communicate_task = asyncio.ensure_future(proc.communicate())
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            asyncio.shield(communicate_task),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        timed_out = True
        await _kill_process_group(proc, grace_seconds)
        stdout_bytes, stderr_bytes = await communicate_task
    except asyncio.CancelledError:
        await _kill_process_group(proc, grace_seconds)
        communicate_task.cancel()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")
    return stdout, stderr, timed_out


def _elapsed_ms(start: float) -> float:
    return (time.monotonic() - start) * 1000


# ---------------------------------------------------------------------------
# Docker
# ---------------------------------------------------------------------------


class DockerRunner:
    """Run the executable inside a locked-down, throwaway container.

    Args:
        image: Container image providing ``sh`` and ``timeout``.
        entrypoint: Optional command prefix, e.g. ``["wine"]``.
        docker: Name or path of the docker CLI.
        cleanup_timeout_seconds: Deadline for one housekeeping command
            (``inspect``, ``rm``, ``ps``). A command still running at the
            deadline is killed and treated as failed.
    """

    requires_executable = True

    def __init__(
        self,
        image: str = "sandbox:latest",
        *,
        entrypoint: Sequence[str] = (),
        docker: str = "docker",
        cleanup_timeout_seconds: float = 10.0,
    ) -> None:
        self.image = image
        self.entrypoint = tuple(entrypoint)
        self.docker = docker
        self.cleanup_timeout_seconds = cleanup_timeout_seconds
        self._removals: set[asyncio.Task[None]] = set()

    def build_command(
        self,
        container_name: str,
        executable: Path,
        workdir: Path,
        limits: ExecutionLimits,
        label: str,
    ) -> list[str]:
        """Assemble the ``docker run`` invocation for one execution."""
        program = f"/program/{executable.name}"
        inner = " ".join(
            [
                "timeout",
                f"{limits.timeout_ms / 1000:g}s",
                *(shlex.quote(part) for part in self.entrypoint),
                shlex.quote(program),
                "<",
                f"/sandbox/{INPUT_FILENAME}",
            ]
        )
        return [
            self.docker,
            "run",
            "--name",
            container_name,
            "--label",
            f"{RUN_LABEL}={label}",
            "--network",
            "none",
            "--memory",
            f"{limits.memory_bytes}b",
            "--memory-swap",
            f"{limits.memory_bytes}b",
            "--pids-limit",
            str(limits.max_processes),
            "--cap-drop",
            "ALL",
            "--security-opt",
            "no-new-privileges",
            "--read-only",
            "--tmpfs",
            "/tmp:rw,size=16m",
            "-v",
            f"{executable.resolve()}:{program}:ro",
            "-v",
            f"{workdir.resolve()}:/sandbox:rw",
            "-w",
            "/sandbox",
            self.image,
            "sh",
            "-c",
            inner,
        ]

    async def _docker(self, *args: str) -> tuple[int | None, str]:
        """Run a short docker CLI command, returning ``(exit_status, stdout)``."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.docker,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            logger.warning("docker %s failed to start: %s", args[0], exc)
            return None, ""
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self.cleanup_timeout_seconds)
        except TimeoutError:
            logger.warning("docker %s still running after %gs; killed", args[0], self.cleanup_timeout_seconds)
            await _kill_process_group(proc, _HELPER_KILL_GRACE_SECONDS)
            return None, ""
        except asyncio.CancelledError:
            await _kill_process_group(proc, _HELPER_KILL_GRACE_SECONDS)
            raise
        return proc.returncode, (stdout or b"").decode("utf-8", errors="replace")

    async def _was_oom_killed(self, container_name: str) -> bool:
        status, output = await self._docker("inspect", "--format", "{{.State.OOMKilled}}", container_name)
        return status == 0 and output.strip().lower() == "true"

    async def _remove(self, container_name: str) -> None:
        status, _ = await self._docker("rm", "-f", container_name)
        if status != 0:
            logger.warning("Could not remove container %s (exit %s)", container_name, status)

    def _remove_detached(self, container_name: str) -> None:
        """Schedule removal without waiting for it; used when the run is cancelled."""
        task = asyncio.create_task(self._remove(container_name))
        self._removals.add(task)
        task.add_done_callback(self._removals.discard)

    async def wait_for_removals(self) -> None:
        """Wait until every detached container removal has finished."""
        if self._removals:
            await asyncio.gather(*self._removals, return_exceptions=True)

    async def run(
        self,
        executable: Path | None,
        input_path: Path,
        workdir: Path,
        limits: ExecutionLimits,
        *,
        grace_ms: int,
        label: str,
    ) -> ExecutionResult:
        """Run one execution in a fresh container and remove it afterwards."""
        if executable is None:
            msg = "DockerRunner requires an executable"
            raise SandboxError(msg)

        container_name = f"{WORKSPACE_PREFIX}{label}-{uuid.uuid4().hex[:8]}"
        cmd = self.build_command(container_name, executable, workdir, limits, label)
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            return ExecutionResult(
                stderr=f"docker could not be started: {exc}",
                elapsed_ms=_elapsed_ms(start),
                failure_reason=FailureReason.INFRASTRUCTURE_ERROR,
            )

        cancelled = False
        try:
            stdout, stderr, outer_timeout = await _communicate(
                proc,
                (limits.timeout_ms + grace_ms) / 1000,
                grace_ms / 1000,
            )
            oom_killed = await self._was_oom_killed(container_name)
        except asyncio.CancelledError:
            cancelled = True
            raise
        finally:
            # The watchdog waits on this task, so a cancelled run leaves removal running in the background.
            if cancelled:
                self._remove_detached(container_name)
            else:
                await self._remove(container_name)

        return classify_container_exit(
            proc.returncode,
            stdout=stdout,
            stderr=stderr,
            oom_killed=oom_killed,
            outer_timeout=outer_timeout,
            elapsed_ms=_elapsed_ms(start),
        )

    async def reclaim_orphans(self, active_labels: Collection[str]) -> int:
        """Force-remove labelled containers that belong to no active run."""
        status, output = await self._docker(
            "ps",
            "-a",
            "--filter",
            f"label={RUN_LABEL}",
            "--format",
            f'{{{{.ID}}}} {{{{.Label "{RUN_LABEL}"}}}}',
        )
        if status != 0:
            return 0
        removed = 0
        for line in output.splitlines():
            parts = line.split()
            if len(parts) != 2 or parts[1] in active_labels:
                continue
            await self._remove(parts[0])
            removed += 1
        if removed:
            logger.info("Reclaimed %d orphaned container(s)", removed)
        return removed


def classify_container_exit(
    exit_status: int | None,
    *,
    stdout: str = "",
    stderr: str = "",
    oom_killed: bool = False,
    outer_timeout: bool = False,
    elapsed_ms: float = 0.0,
) -> ExecutionResult:
    """Map a ``docker run`` exit onto an :class:`ExecutionResult`.

    124 is the in-container ``timeout`` expiring, 137 or an OOM flag is the
    kernel killing the program, and 125-127 mean docker itself failed.
    """
    if outer_timeout or exit_status == _TIMEOUT_EXIT:
        return ExecutionResult(
            stdout=stdout, stderr=stderr, exit_status=exit_status, timed_out=True, elapsed_ms=elapsed_ms
        )
    if oom_killed or exit_status == _KILLED_EXIT:
        return ExecutionResult(
            stdout=stdout, stderr=stderr, exit_status=exit_status, resource_exceeded=True, elapsed_ms=elapsed_ms
        )
    if exit_status is None or exit_status in _DOCKER_FAILURE_EXITS:
        return ExecutionResult(
            stdout=stdout,
            stderr=stderr,
            exit_status=exit_status,
            elapsed_ms=elapsed_ms,
            failure_reason=FailureReason.INFRASTRUCTURE_ERROR,
        )
    return ExecutionResult(stdout=stdout, stderr=stderr, exit_status=exit_status, elapsed_ms=elapsed_ms)


# ---------------------------------------------------------------------------
# Local process
# ---------------------------------------------------------------------------


def _limit_resources(limits: ExecutionLimits) -> Callable[[], None]:
    """Build a ``preexec_fn`` applying address-space, CPU and process limits."""

    def apply() -> None:
        import resource

        cpu_seconds = math.ceil(limits.timeout_ms / 1000) + 1
        resource.setrlimit(resource.RLIMIT_AS, (limits.memory_bytes, limits.memory_bytes))
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))
        with contextlib.suppress(ValueError, OSError):
            resource.setrlimit(resource.RLIMIT_NPROC, (limits.max_processes, limits.max_processes))

    return apply


class LocalProcessRunner:
    """Run the executable as a host process under rlimits.

    Args:
        entrypoint: Optional command prefix, e.g. an interpreter.
    """

    requires_executable = True

    def __init__(self, *, entrypoint: Sequence[str] = ()) -> None:
        self.entrypoint = tuple(entrypoint)

    async def run(
        self,
        executable: Path | None,
        input_path: Path,
        workdir: Path,
        limits: ExecutionLimits,
        *,
        grace_ms: int,
        label: str,
    ) -> ExecutionResult:
        """Run one execution as a process group with stdin from *input_path*."""
        if executable is None:
            msg = "LocalProcessRunner requires an executable"
            raise SandboxError(msg)

        start = time.monotonic()
        with input_path.open("rb") as stdin:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *self.entrypoint,
                    str(executable),
                    stdin=stdin,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=str(workdir),
                    env={"PATH": os.environ.get("PATH", "")},
                    start_new_session=True,
                    preexec_fn=_limit_resources(limits),
                )
            except OSError as exc:
                return ExecutionResult(
                    stderr=f"process could not be started: {exc}",
                    elapsed_ms=_elapsed_ms(start),
                    failure_reason=FailureReason.INFRASTRUCTURE_ERROR,
                )
            stdout, stderr, timed_out = await _communicate(proc, limits.timeout_ms / 1000, grace_ms / 1000)

        exit_status = proc.returncode
        elapsed = _elapsed_ms(start)
        if timed_out or exit_status == -signal.SIGXCPU:
            return ExecutionResult(
                stdout=stdout, stderr=stderr, exit_status=exit_status, timed_out=True, elapsed_ms=elapsed
            )
        out_of_memory = exit_status != 0 and any(marker in stderr for marker in _MEMORY_MARKERS)
        if exit_status == -signal.SIGKILL or out_of_memory:
            return ExecutionResult(
                stdout=stdout, stderr=stderr, exit_status=exit_status, resource_exceeded=True, elapsed_ms=elapsed
            )
        return ExecutionResult(stdout=stdout, stderr=stderr, exit_status=exit_status, elapsed_ms=elapsed)

    async def reclaim_orphans(self, active_labels: Collection[str]) -> int:
        """Process groups die with their session; nothing to reclaim."""
        return 0


# ---------------------------------------------------------------------------
# Mock
# ---------------------------------------------------------------------------

MockBehavior = Callable[[str], str | ExecutionResult]


class MockRunner:
    """In-memory runner answering from *behavior*.

    *behavior* receives the input text and returns either the program's
    stdout (a clean exit 0) or a complete :class:`ExecutionResult`.

    Attributes:
        calls: Input texts received, in order.
    """

    requires_executable = False

    def __init__(self, behavior: MockBehavior, *, delay_ms: int = 0) -> None:
        self.behavior = behavior
        self.delay_ms = delay_ms
        self.calls: list[str] = []

    async def run(
        self,
        executable: Path | None,
        input_path: Path,
        workdir: Path,
        limits: ExecutionLimits,
        *,
        grace_ms: int,
        label: str,
    ) -> ExecutionResult:
        start = time.monotonic()
        text = input_path.read_text(encoding="utf-8")
        self.calls.append(text)
        if self.delay_ms:
            await asyncio.sleep(self.delay_ms / 1000)
        outcome = self.behavior(text)
        if isinstance(outcome, ExecutionResult):
            return outcome
        return ExecutionResult(stdout=outcome, exit_status=0, elapsed_ms=_elapsed_ms(start))

    async def reclaim_orphans(self, active_labels: Collection[str]) -> int:
        return 0


# ---------------------------------------------------------------------------
# Workspaces and execution
# ---------------------------------------------------------------------------


class RunWorkspace(BaseModel):
    """Per-run directory and the run's private copy of the executable."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    path: Path
    executable: Path | None = None


def workspace_root(root: str | Path | None) -> Path:
    """Directory holding run workspaces, the system temp dir by default."""
    return Path(root) if root is not None else Path(tempfile.gettempdir())


@contextlib.contextmanager
def run_workspace(
    root: str | Path | None,
    run_id: str,
    executable_path: str | Path | None,
) -> Iterator[RunWorkspace]:
    """Create ``rj-<run_id>-*``, copy the executable in, remove it on exit.

    Args:
        root: Parent directory, or ``None`` for the system temp dir.
        run_id: Owning run; embedded in the directory name for the sweeper.
        executable_path: Program to copy, or ``None`` when the runner needs none.

    Yields:
        The workspace description.

    Raises:
        SandboxError: If *executable_path* does not exist.
    """
    parent = workspace_root(root)
    parent.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=f"{WORKSPACE_PREFIX}{run_id}-", dir=parent))
    try:
        executable: Path | None = None
        if executable_path is not None:
            source = Path(executable_path)
            if not source.is_file():
                msg = f"Executable not found: {source}"
                raise SandboxError(msg)
            executable = path / source.name
            shutil.copy2(source, executable)
            executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IRUSR)
        logger.debug("Created workspace %s", path)
        yield RunWorkspace(run_id=run_id, path=path, executable=executable)
    finally:
        shutil.rmtree(path, ignore_errors=True)
        logger.debug("Removed workspace %s", path)


async def execute(
    runner: IsolatedRunner,
    executable_path: Path | None,
    input_text: str,
    limits: ExecutionLimits,
    *,
    workdir_root: Path | None = None,
    grace_ms: int = 2000,
    watchdog_margin_ms: int = 1000,
    label: str = "adhoc",
) -> ExecutionResult:
    """Execute one input against the program and categorize the outcome.

    A fresh ``exec-*`` directory holding ``input.txt`` is created under
    *workdir_root* and removed afterwards. The runner is raced against
    ``timeout_ms + grace_ms + watchdog_margin_ms``; when the watchdog fires
    the runner is cancelled, which triggers its own cleanup.

    Args:
        runner: Isolation backend.
        executable_path: Program to run (the workspace copy).
        input_text: Exact stdin contents.
        limits: Time, memory and process ceilings.
        workdir_root: Parent of the execution directory, the system temp
            dir by default.
        grace_ms: Grace period between SIGTERM and SIGKILL.
        watchdog_margin_ms: Extra slack before the outer watchdog fires.
        label: Owning run id, attached to sandbox resources.

    Returns:
        The categorized execution result. Sandbox faults are returned as
        infrastructure errors rather than raised.
    """
    parent = workdir_root if workdir_root is not None else Path(tempfile.gettempdir())
    workdir = Path(tempfile.mkdtemp(prefix=EXEC_PREFIX, dir=parent))
    watchdog_seconds = (limits.timeout_ms + grace_ms + watchdog_margin_ms) / 1000
    start = time.monotonic()
    try:
        input_path = workdir / INPUT_FILENAME
        input_path.write_text(input_text, encoding="utf-8")
        return await asyncio.wait_for(
            runner.run(executable_path, input_path, workdir, limits, grace_ms=grace_ms, label=label),
            timeout=watchdog_seconds,
        )
    except TimeoutError:
        logger.warning("Watchdog fired after %.1fs; runner cancelled", watchdog_seconds)
        return ExecutionResult(
            stderr=f"watchdog expired after {watchdog_seconds:g}s",
            timed_out=True,
            elapsed_ms=_elapsed_ms(start),
        )
    except (SandboxError, OSError) as exc:
        logger.warning("Sandbox failure: %s", exc)
        return ExecutionResult(
            stderr=str(exc),
            elapsed_ms=_elapsed_ms(start),
            failure_reason=FailureReason.INFRASTRUCTURE_ERROR,
        )
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


# ---------------------------------------------------------------------------
# Orphan sweep
# ---------------------------------------------------------------------------


def _workspace_run_id(path: Path) -> str | None:
    name = path.name
    if not name.startswith(WORKSPACE_PREFIX):
        return None
    # mkdtemp appends "-" plus a random suffix without hyphens; run ids may contain "-".
    run_id, _, _ = name[len(WORKSPACE_PREFIX) :].rpartition("-")
    return run_id or None


class OrphanSweeper:
    """Periodically reclaim workspaces and containers no live run owns.

    Args:
        runner: Backend asked to reclaim its labelled resources.
        root: Workspace parent directory, ``None`` for the system temp dir.
        active_runs: Returns the ids of runs currently in flight.
        interval_seconds: Delay between sweeps.
        max_age_seconds: Minimum age before an unowned workspace is removed.
        clock: Wall-clock source compared against directory mtimes.
        on_sweep: Extra housekeeping run on every sweep, returning how many
            entries it dropped.
    """

    def __init__(
        self,
        runner: IsolatedRunner,
        root: str | Path | None,
        active_runs: Callable[[], Collection[str]],
        *,
        interval_seconds: float = 300,
        max_age_seconds: float = 1800,
        clock: Callable[[], float] = time.time,
        on_sweep: Callable[[], int] | None = None,
    ) -> None:
        self.runner = runner
        self.root = workspace_root(root)
        self.active_runs = active_runs
        self.interval_seconds = interval_seconds
        self.max_age_seconds = max_age_seconds
        self.clock = clock
        self.on_sweep = on_sweep
        self._task: asyncio.Task[None] | None = None

    async def sweep_once(self) -> int:
        """Run one sweep, returning the number of resources reclaimed."""
        active = set(self.active_runs())
        now = self.clock()
        removed = 0
        if self.root.is_dir():
            for entry in self.root.glob(f"{WORKSPACE_PREFIX}*"):
                run_id = _workspace_run_id(entry)
                if run_id is None or run_id in active or not entry.is_dir():
                    continue
                try:
                    age = now - entry.stat().st_mtime
                except OSError:
                    continue
                if age < self.max_age_seconds:
                    continue
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
                logger.info("Removed orphaned workspace %s (age %.0fs)", entry.name, age)
        removed += await self.runner.reclaim_orphans(active)
        if self.on_sweep is not None:
            removed += self.on_sweep()
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep_once()
            except (OSError, SandboxError):
                logger.exception("Orphan sweep failed")

    def start(self) -> None:
        """Start the background sweep task (idempotent)."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the background sweep task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
