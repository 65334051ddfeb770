"""Progress fan-out and time-boxed job bookkeeping.

:class:`ProgressChannel` delivers :class:`ProgressEvent` objects to
per-run subscribers. Delivery is scheduled on the running loop and never
awaited by the emitter; a failing subscriber is logged and does not affect
the pipeline.

:class:`JobStore` keeps the latest status snapshot of each run for a fixed
time after its last update.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import inspect
import logging
import time

from pydantic import BaseModel, ConfigDict

from reverse_judge.models import AnalysisResult, PipelineStage, ProgressEvent

logger = logging.getLogger(__name__)

ALL_RUNS = "*"
"""Subscription key receiving the events of every run."""

ProgressCallback = Callable[[ProgressEvent], "Awaitable[None] | None"]


class ProgressChannel:
    """Per-run publish/subscribe for progress events."""

    def __init__(self) -> None:
        self._subscribers: dict[str, list[ProgressCallback]] = {}
        self._pending: set[asyncio.Future[None]] = set()

    def subscribe(self, run_id: str, callback: ProgressCallback) -> None:
        """Register *callback* for *run_id* (or :data:`ALL_RUNS`)."""
        self._subscribers.setdefault(run_id, []).append(callback)

    def unsubscribe(self, run_id: str, callback: ProgressCallback | None = None) -> None:
        """Remove one callback, or every callback when *callback* is ``None``."""
        if callback is None:
            self._subscribers.pop(run_id, None)
            return
        callbacks = self._subscribers.get(run_id, [])
        if callback in callbacks:
            callbacks.remove(callback)
        if not callbacks:
            self._subscribers.pop(run_id, None)

    def subscriber_count(self, run_id: str) -> int:
        return len(self._subscribers.get(run_id, ()))

    def emit(self, run_id: str, event: ProgressEvent) -> None:
        """Schedule delivery of *event* to the subscribers of *run_id*.

        Outside a running event loop, callbacks are invoked immediately.
        """
        callbacks = [*self._subscribers.get(run_id, ()), *self._subscribers.get(ALL_RUNS, ())]
        if not callbacks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for callback in callbacks:
            if loop is None:
                self._deliver(callback, run_id, event)
            else:
                loop.call_soon(self._deliver, callback, run_id, event)

    def _deliver(self, callback: ProgressCallback, run_id: str, event: ProgressEvent) -> None:
        try:
            outcome = callback(event)
        except Exception:
            logger.exception("Progress subscriber for run %s failed", run_id[:8])
            return
        if inspect.isawaitable(outcome):
            future = asyncio.ensure_future(outcome)
            self._pending.add(future)
            future.add_done_callback(self._finished)

    def _finished(self, future: asyncio.Future[None]) -> None:
        self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Async progress subscriber failed: %s", future.exception())

    async def drain(self) -> None:
        """Wait until every scheduled delivery has completed."""
        await asyncio.sleep(0)
        while self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
            await asyncio.sleep(0)


class JobSnapshot(BaseModel):
    """Latest known status of a run."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    stage: PipelineStage
    progress_percent: int = 0
    message: str = ""
    result: AnalysisResult | None = None


class JobStore:
    """In-memory map of run snapshots that expire after *ttl_seconds*.

    Args:
        ttl_seconds: Lifetime of an entry after its last update.
        clock: Monotonic clock in seconds.
    """

    def __init__(self, ttl_seconds: float = 3600, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, JobSnapshot]] = {}

    def put(self, snapshot: JobSnapshot) -> None:
        self._entries[snapshot.run_id] = (self._clock(), snapshot)

    def _expired(self, stamp: float) -> bool:
        return self._clock() - stamp > self.ttl_seconds

    def get(self, run_id: str) -> JobSnapshot | None:
        """Return the snapshot for *run_id*, or ``None`` if unknown or expired."""
        entry = self._entries.get(run_id)
        if entry is None:
            return None
        stamp, snapshot = entry
        if self._expired(stamp):
            del self._entries[run_id]
            return None
        return snapshot

    def sweep(self) -> int:
        """Drop expired entries, returning how many were removed."""
        stale = [run_id for run_id, (stamp, _) in self._entries.items() if self._expired(stamp)]
        for run_id in stale:
            del self._entries[run_id]
        if stale:
            logger.debug("Swept %d expired job(s)", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, run_id: object) -> bool:
        return isinstance(run_id, str) and self.get(run_id) is not None
