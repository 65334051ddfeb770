"""Tests for the sandbox executor.

Covers exit classification, the docker command line, the in-memory runner,
per-run workspaces, the outer watchdog, the orphan sweeper, and real
subprocess runs through ``LocalProcessRunner``.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
import sys
import textwrap
from unittest.mock import AsyncMock, MagicMock, patch

from reverse_judge.models import ExecutionLimits, ExecutionResult, FailureReason, PipelineStage
from reverse_judge.progress import JobSnapshot, JobStore
from reverse_judge.recovery import SandboxError
from reverse_judge.sandbox import (
    RUN_LABEL,
    DockerRunner,
    LocalProcessRunner,
    MockRunner,
    OrphanSweeper,
    classify_container_exit,
    execute,
    run_workspace,
)
import pytest

from tests.conftest import sum_program

_MODULE = "reverse_judge.sandbox"

_LIMITS = ExecutionLimits(timeout_ms=1000, memory_bytes=2 * 1024**3, max_processes=64)


def _write_program(tmp_path: Path, body: str, name: str = "program") -> Path:
    """Write an executable Python script with an absolute-interpreter shebang."""
    path = tmp_path / name
    path.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body), encoding="utf-8")
    path.chmod(0o755)
    return path


# ===========================================================================
# Exit classification
# ===========================================================================


@pytest.mark.unit
class TestClassifyContainerExit:
    """docker run exit statuses map onto failure reasons."""

    def test_clean_exit(self) -> None:
        result = classify_container_exit(0, stdout="6\n")
        assert result.succeeded is True
        assert result.stdout == "6\n"

    def test_timeout_exit(self) -> None:
        assert classify_container_exit(124).failure_reason is FailureReason.TIMED_OUT

    def test_outer_timeout(self) -> None:
        assert classify_container_exit(0, outer_timeout=True).timed_out is True

    def test_killed_is_resource_exceeded(self) -> None:
        assert classify_container_exit(137).failure_reason is FailureReason.RESOURCE_EXCEEDED

    def test_oom_flag(self) -> None:
        assert classify_container_exit(1, oom_killed=True).resource_exceeded is True

    @pytest.mark.parametrize("status", [None, 125, 126, 127])
    def test_docker_failures(self, status: int | None) -> None:
        assert classify_container_exit(status).failure_reason is FailureReason.INFRASTRUCTURE_ERROR

    def test_program_error(self) -> None:
        assert classify_container_exit(1, stderr="boom").failure_reason is FailureReason.PROCESS_ERROR


# ===========================================================================
# Docker runner
# ===========================================================================


@pytest.mark.unit
class TestDockerRunner:
    """Command assembly and container housekeeping."""

    def test_build_command_isolation_flags(self, tmp_path: Path) -> None:
        runner = DockerRunner("judge:1", entrypoint=["wine"])
        exe = tmp_path / "solution.exe"
        exe.write_bytes(b"")
        cmd = runner.build_command("rj-abc-1234", exe, tmp_path, ExecutionLimits(timeout_ms=1500), "abc")

        assert cmd[:4] == ["docker", "run", "--name", "rj-abc-1234"]
        assert f"{RUN_LABEL}=abc" in cmd
        assert cmd[cmd.index("--network") + 1] == "none"
        assert cmd[cmd.index("--memory") + 1] == "268435456b"
        assert cmd[cmd.index("--memory-swap") + 1] == "268435456b"
        assert cmd[cmd.index("--pids-limit") + 1] == "50"
        assert cmd[cmd.index("--cap-drop") + 1] == "ALL"
        assert "--read-only" in cmd
        assert f"{exe.resolve()}:/program/solution.exe:ro" in cmd
        assert cmd[-4:-2] == ["judge:1", "sh"]
        assert cmd[-1] == "timeout 1.5s wine /program/solution.exe < /sandbox/input.txt"

    @pytest.mark.asyncio
    async def test_run_without_executable_raises(self, tmp_path: Path) -> None:
        with pytest.raises(SandboxError):
            await DockerRunner().run(None, tmp_path / "input.txt", tmp_path, _LIMITS, grace_ms=0, label="x")

    @pytest.mark.asyncio
    async def test_missing_docker_is_infrastructure_error(self, tmp_path: Path) -> None:
        exe = tmp_path / "solution"
        exe.write_bytes(b"")
        with patch(f"{_MODULE}.asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError("docker"))):
            result = await DockerRunner().run(exe, tmp_path / "input.txt", tmp_path, _LIMITS, grace_ms=0, label="x")
        assert result.failure_reason is FailureReason.INFRASTRUCTURE_ERROR
        assert "docker could not be started" in result.stderr

    @pytest.mark.asyncio
    async def test_reclaim_skips_active_labels(self) -> None:
        runner = DockerRunner()
        runner._docker = AsyncMock(return_value=(0, "c1 live\nc2 dead\nc3 gone\n"))  # type: ignore[method-assign]
        runner._remove = AsyncMock()  # type: ignore[method-assign]
        removed = await runner.reclaim_orphans({"live"})
        assert removed == 2
        assert [call.args[0] for call in runner._remove.await_args_list] == ["c2", "c3"]

    @pytest.mark.asyncio
    async def test_reclaim_when_docker_fails(self) -> None:
        runner = DockerRunner()
        runner._docker = AsyncMock(return_value=(None, ""))  # type: ignore[method-assign]
        assert await runner.reclaim_orphans(set()) == 0


_HANGING_DOCKER = """
import sys
import time

if sys.argv[1] == "run":
    sys.exit(0)
time.sleep(30)
"""


@pytest.mark.integration
@pytest.mark.skipif(sys.platform == "win32", reason="requires POSIX process groups")
class TestDockerHousekeepingDeadlines:
    """A docker CLI that hangs on ``inspect`` / ``rm`` cannot stall an execution."""

    @pytest.mark.asyncio
    async def test_hung_helper_is_killed(self, tmp_path: Path) -> None:
        docker = _write_program(tmp_path, _HANGING_DOCKER, name="docker")
        runner = DockerRunner(docker=str(docker), cleanup_timeout_seconds=0.2)
        loop = asyncio.get_running_loop()
        start = loop.time()
        assert await runner._docker("inspect", "rj-x") == (None, "")
        assert loop.time() - start < 2

    @pytest.mark.asyncio
    async def test_run_finishes_despite_hung_cleanup(self, tmp_path: Path) -> None:
        docker = _write_program(tmp_path, _HANGING_DOCKER, name="docker")
        exe = tmp_path / "solution"
        exe.write_bytes(b"")
        runner = DockerRunner(docker=str(docker), cleanup_timeout_seconds=0.2)
        limits = ExecutionLimits(timeout_ms=5000)
        result = await execute(runner, exe, "1\n", limits, workdir_root=tmp_path, grace_ms=200)
        assert result.exit_status == 0
        assert result.elapsed_ms < 3000

    @pytest.mark.asyncio
    async def test_watchdog_is_not_held_by_cleanup(self, tmp_path: Path) -> None:
        docker = _write_program(tmp_path, _HANGING_DOCKER, name="docker")
        exe = tmp_path / "solution"
        exe.write_bytes(b"")
        runner = DockerRunner(docker=str(docker), cleanup_timeout_seconds=3)
        limits = ExecutionLimits(timeout_ms=500)
        loop = asyncio.get_running_loop()
        start = loop.time()
        result = await execute(
            runner, exe, "1\n", limits, workdir_root=tmp_path, grace_ms=200, watchdog_margin_ms=200
        )
        elapsed = loop.time() - start
        await runner.wait_for_removals()

        assert result.timed_out is True
        assert "watchdog expired" in result.stderr
        assert elapsed < 2.5


# ===========================================================================
# Mock runner and execute()
# ===========================================================================


@pytest.mark.unit
class TestExecute:
    """execute() with the in-memory runner."""

    @pytest.mark.asyncio
    async def test_string_behavior_is_clean_exit(self, tmp_path: Path) -> None:
        runner = MockRunner(sum_program)
        result = await execute(runner, None, "3\n1 2 3\n", _LIMITS, workdir_root=tmp_path)
        assert result.stdout == "6"
        assert result.succeeded is True
        assert runner.calls == ["3\n1 2 3\n"]

    @pytest.mark.asyncio
    async def test_result_behavior_is_returned(self, tmp_path: Path) -> None:
        crash = ExecutionResult(stderr="segfault", exit_status=139)
        result = await execute(MockRunner(lambda _text: crash), None, "1\n", _LIMITS, workdir_root=tmp_path)
        assert result.failure_reason is FailureReason.PROCESS_ERROR

    @pytest.mark.asyncio
    async def test_exec_dir_is_removed(self, tmp_path: Path) -> None:
        await execute(MockRunner(sum_program), None, "1\n5\n", _LIMITS, workdir_root=tmp_path)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_watchdog_fires(self, tmp_path: Path) -> None:
        """A runner outliving timeout + grace + margin is cancelled."""
        runner = MockRunner(sum_program, delay_ms=5000)
        limits = ExecutionLimits(timeout_ms=50)
        result = await execute(
            runner, None, "1\n5\n", limits, workdir_root=tmp_path, grace_ms=10, watchdog_margin_ms=10
        )
        assert result.timed_out is True
        assert "watchdog" in result.stderr
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_sandbox_error_becomes_result(self, tmp_path: Path) -> None:
        runner = MockRunner(sum_program)
        runner.run = AsyncMock(side_effect=SandboxError("daemon gone"))  # type: ignore[method-assign]
        result = await execute(runner, None, "1\n5\n", _LIMITS, workdir_root=tmp_path)
        assert result.failure_reason is FailureReason.INFRASTRUCTURE_ERROR
        assert result.stderr == "daemon gone"


# ===========================================================================
# Workspaces and sweeping
# ===========================================================================


@pytest.mark.unit
class TestRunWorkspace:
    """Per-run directories."""

    def test_copies_executable_and_cleans_up(self, tmp_path: Path, workspace_root: Path) -> None:
        source = tmp_path / "solution"
        source.write_text("binary", encoding="utf-8")
        with run_workspace(workspace_root, "run1", source) as workspace:
            assert workspace.path.name.startswith("rj-run1-")
            assert workspace.executable is not None
            assert workspace.executable.read_text(encoding="utf-8") == "binary"
            assert os.access(workspace.executable, os.X_OK)
        assert not workspace.path.exists()

    def test_missing_executable(self, workspace_root: Path) -> None:
        with pytest.raises(SandboxError, match="Executable not found"), run_workspace(
            workspace_root, "run2", workspace_root / "nope"
        ):
            pass
        assert list(workspace_root.iterdir()) == []

    def test_without_executable(self, workspace_root: Path) -> None:
        with run_workspace(workspace_root, "run3", None) as workspace:
            assert workspace.executable is None

    def test_removed_on_error(self, workspace_root: Path) -> None:
        with pytest.raises(RuntimeError), run_workspace(workspace_root, "run4", None):
            raise RuntimeError("boom")
        assert list(workspace_root.iterdir()) == []


@pytest.mark.unit
class TestOrphanSweeper:
    """Reclaiming stale workspaces."""

    @pytest.mark.asyncio
    async def test_removes_only_stale_unowned(self, workspace_root: Path) -> None:
        for name in ("rj-live-aaaa", "rj-dead-bbbb", "rj-young-cccc", "unrelated"):
            (workspace_root / name).mkdir()
        stale = os.stat(workspace_root / "rj-dead-bbbb").st_mtime
        os.utime(workspace_root / "rj-dead-bbbb", (stale - 7200, stale - 7200))
        os.utime(workspace_root / "rj-live-aaaa", (stale - 7200, stale - 7200))

        sweeper = OrphanSweeper(MockRunner(sum_program), workspace_root, lambda: {"live"}, max_age_seconds=1800)
        removed = await sweeper.sweep_once()

        assert removed == 1
        assert sorted(p.name for p in workspace_root.iterdir()) == ["rj-live-aaaa", "rj-young-cccc", "unrelated"]

    @pytest.mark.asyncio
    async def test_counts_runner_reclaims(self, workspace_root: Path) -> None:
        runner = MockRunner(sum_program)
        runner.reclaim_orphans = AsyncMock(return_value=3)  # type: ignore[method-assign]
        sweeper = OrphanSweeper(runner, workspace_root, lambda: ())
        assert await sweeper.sweep_once() == 3
        runner.reclaim_orphans.assert_awaited_once_with(set())

    @pytest.mark.asyncio
    async def test_start_and_stop(self, workspace_root: Path) -> None:
        sweeper = OrphanSweeper(MockRunner(sum_program), workspace_root, lambda: (), interval_seconds=3600)
        sweeper.start()
        await asyncio.sleep(0)
        await sweeper.stop()
        await sweeper.stop()

    @pytest.mark.asyncio
    async def test_hyphenated_run_id_is_owned(self, workspace_root: Path) -> None:
        """Run ids containing ``-`` still match their workspace."""
        stale_path = workspace_root / "rj-job-7-zzzz"
        stale_path.mkdir()
        sweeper = OrphanSweeper(MockRunner(sum_program), workspace_root, lambda: {"job-42", "job"}, max_age_seconds=0)
        with run_workspace(workspace_root, "job-42", None) as workspace:
            os.utime(workspace.path, (0, 0))
            os.utime(stale_path, (0, 0))
            assert await sweeper.sweep_once() == 1
            assert workspace.path.is_dir()
        assert not stale_path.exists()

    @pytest.mark.asyncio
    async def test_housekeeping_hook_runs_each_sweep(self, workspace_root: Path) -> None:
        on_sweep = MagicMock(return_value=2)
        sweeper = OrphanSweeper(MockRunner(sum_program), workspace_root, lambda: (), on_sweep=on_sweep)
        assert await sweeper.sweep_once() == 2
        on_sweep.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_loop_expires_jobs_without_close(self, workspace_root: Path) -> None:
        now = [0.0]
        jobs = JobStore(10, clock=lambda: now[0])
        jobs.put(JobSnapshot(run_id="done", stage=PipelineStage.COMPLETE))
        now[0] = 60.0
        sweeper = OrphanSweeper(
            MockRunner(sum_program), workspace_root, lambda: (), interval_seconds=0.01, on_sweep=jobs.sweep
        )
        sweeper.start()
        for _ in range(100):
            if len(jobs) == 0:
                break
            await asyncio.sleep(0.01)
        await sweeper.stop()
        assert len(jobs) == 0


# ===========================================================================
# Local process runner (real subprocesses)
# ===========================================================================


@pytest.mark.integration
@pytest.mark.skipif(sys.platform == "win32", reason="requires POSIX process groups and rlimits")
class TestLocalProcessRunner:
    """Real executions under rlimits."""

    @pytest.mark.asyncio
    async def test_sum_program(self, tmp_path: Path) -> None:
        exe = _write_program(
            tmp_path,
            """
            import sys
            data = sys.stdin.read().split()
            print(sum(int(x) for x in data[1:]))
            """,
        )
        result = await execute(LocalProcessRunner(), exe, "3\n1 2 3\n", _LIMITS, workdir_root=tmp_path, grace_ms=200)
        assert result.succeeded is True
        assert result.stdout.strip() == "6"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path: Path) -> None:
        exe = _write_program(tmp_path, "import sys\nsys.exit(3)\n")
        result = await execute(LocalProcessRunner(), exe, "1\n", _LIMITS, workdir_root=tmp_path, grace_ms=200)
        assert result.exit_status == 3
        assert result.failure_reason is FailureReason.PROCESS_ERROR

    @pytest.mark.asyncio
    async def test_infinite_loop_times_out(self, tmp_path: Path) -> None:
        exe = _write_program(tmp_path, "while True:\n    pass\n")
        result = await execute(LocalProcessRunner(), exe, "1\n", _LIMITS, workdir_root=tmp_path, grace_ms=200)
        assert result.timed_out is True
        assert result.failure_reason is FailureReason.TIMED_OUT
        assert result.elapsed_ms < 5000

    @pytest.mark.asyncio
    async def test_memory_hog_exceeds_resources(self, tmp_path: Path) -> None:
        exe = _write_program(tmp_path, "block = bytearray(4 * 1024 ** 3)\nprint(len(block))\n")
        limits = ExecutionLimits(timeout_ms=5000, memory_bytes=512 * 1024**2, max_processes=64)
        result = await execute(LocalProcessRunner(), exe, "1\n", limits, workdir_root=tmp_path, grace_ms=200)
        assert result.failure_reason is FailureReason.RESOURCE_EXCEEDED

    @pytest.mark.asyncio
    async def test_missing_binary_is_infrastructure_error(self, tmp_path: Path) -> None:
        result = await execute(
            LocalProcessRunner(), tmp_path / "absent", "1\n", _LIMITS, workdir_root=tmp_path, grace_ms=200
        )
        assert result.failure_reason is FailureReason.INFRASTRUCTURE_ERROR
