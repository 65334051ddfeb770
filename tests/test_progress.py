"""Tests for progress fan-out and the expiring job store."""

from __future__ import annotations

import asyncio
import logging

from reverse_judge.models import PipelineStage, ProgressEvent
from reverse_judge.progress import ALL_RUNS, JobSnapshot, JobStore, ProgressChannel
import pytest


def _event(message: str = "tick") -> ProgressEvent:
    return ProgressEvent(stage=PipelineStage.EXECUTING, progress_percent=30, message=message)


@pytest.mark.unit
class TestProgressChannel:
    """Per-run subscriptions."""

    def test_sync_delivery_without_loop(self) -> None:
        channel = ProgressChannel()
        received: list[str] = []
        channel.subscribe("run-1", lambda event: received.append(event.message))
        channel.emit("run-1", _event("hello"))
        channel.emit("run-2", _event("other"))
        assert received == ["hello"]

    def test_all_runs_subscription(self) -> None:
        channel = ProgressChannel()
        received: list[str] = []
        channel.subscribe(ALL_RUNS, lambda event: received.append(event.message))
        channel.emit("run-1", _event("a"))
        channel.emit("run-2", _event("b"))
        assert received == ["a", "b"]

    def test_unsubscribe(self) -> None:
        channel = ProgressChannel()
        received: list[str] = []

        def callback(event: ProgressEvent) -> None:
            received.append(event.message)

        channel.subscribe("run-1", callback)
        assert channel.subscriber_count("run-1") == 1
        channel.unsubscribe("run-1", callback)
        assert channel.subscriber_count("run-1") == 0
        channel.emit("run-1", _event())
        assert received == []

    def test_unsubscribe_all(self) -> None:
        channel = ProgressChannel()
        channel.subscribe("run-1", lambda event: None)
        channel.subscribe("run-1", lambda event: None)
        channel.unsubscribe("run-1")
        assert channel.subscriber_count("run-1") == 0

    def test_failing_subscriber_is_isolated(self, caplog: pytest.LogCaptureFixture) -> None:
        channel = ProgressChannel()
        received: list[str] = []

        def broken(event: ProgressEvent) -> None:
            raise ValueError("subscriber bug")

        channel.subscribe("run-1", broken)
        channel.subscribe("run-1", lambda event: received.append(event.message))
        with caplog.at_level(logging.ERROR, logger="reverse_judge.progress"):
            channel.emit("run-1", _event("still delivered"))
        assert received == ["still delivered"]
        assert "Progress subscriber for run run-1 failed" in caplog.text

    @pytest.mark.asyncio
    async def test_delivery_is_scheduled_on_loop(self) -> None:
        """Inside a loop, emit returns before callbacks run."""
        channel = ProgressChannel()
        received: list[str] = []
        channel.subscribe("run-1", lambda event: received.append(event.message))
        channel.emit("run-1", _event("later"))
        assert received == []
        await channel.drain()
        assert received == ["later"]

    @pytest.mark.asyncio
    async def test_async_subscriber(self) -> None:
        channel = ProgressChannel()
        received: list[str] = []

        async def callback(event: ProgressEvent) -> None:
            await asyncio.sleep(0)
            received.append(event.message)

        channel.subscribe("run-1", callback)
        channel.emit("run-1", _event("async"))
        await channel.drain()
        assert received == ["async"]

    @pytest.mark.asyncio
    async def test_async_subscriber_failure_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        channel = ProgressChannel()

        async def callback(event: ProgressEvent) -> None:
            raise RuntimeError("async bug")

        channel.subscribe("run-1", callback)
        with caplog.at_level(logging.ERROR, logger="reverse_judge.progress"):
            channel.emit("run-1", _event())
            await channel.drain()
        assert "async bug" in caplog.text


@pytest.mark.unit
class TestJobStore:
    """Snapshots expire after their TTL."""

    def test_put_and_get(self) -> None:
        store = JobStore(60)
        snapshot = JobSnapshot(run_id="r1", stage=PipelineStage.GENERATING, message="start")
        store.put(snapshot)
        assert store.get("r1") == snapshot
        assert "r1" in store
        assert "r2" not in store

    def test_expiry(self) -> None:
        now = [0.0]
        store = JobStore(10, clock=lambda: now[0])
        store.put(JobSnapshot(run_id="r1", stage=PipelineStage.COMPLETE))
        now[0] = 10.0
        assert store.get("r1") is not None
        now[0] = 10.5
        assert store.get("r1") is None
        assert len(store) == 0

    def test_update_refreshes_ttl(self) -> None:
        now = [0.0]
        store = JobStore(10, clock=lambda: now[0])
        store.put(JobSnapshot(run_id="r1", stage=PipelineStage.EXECUTING))
        now[0] = 8.0
        store.put(JobSnapshot(run_id="r1", stage=PipelineStage.REASONING, progress_percent=70))
        now[0] = 15.0
        snapshot = store.get("r1")
        assert snapshot is not None
        assert snapshot.stage is PipelineStage.REASONING

    def test_sweep(self) -> None:
        now = [0.0]
        store = JobStore(5, clock=lambda: now[0])
        store.put(JobSnapshot(run_id="old", stage=PipelineStage.COMPLETE))
        now[0] = 4.0
        store.put(JobSnapshot(run_id="new", stage=PipelineStage.EXECUTING))
        now[0] = 6.0
        assert store.sweep() == 1
        assert len(store) == 1
