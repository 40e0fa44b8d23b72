"""
Telemetry Flush Pipeline
Single-flight flush executor and the periodic scheduler that drives it.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from log_buffer import LogBuffer
from partitioner import group_by_date
from telemetry import JsonlWriter
from utils import classify_write_error, to_iso, utc_now

logger = structlog.get_logger()


class FlushState(Enum):
    """Flush executor states."""
    IDLE = "idle"
    DRAINING = "draining"
    WRITING = "writing"
    RESTORING = "restoring"


class FlushStatus(str, Enum):
    """Outcome of one flush attempt."""
    FLUSHED = "flushed"
    EMPTY = "empty"        # Nothing buffered, no writes
    SKIPPED = "skipped"    # Another flush already in flight
    FAILED = "failed"      # A bucket write failed, remainder restored


class FlushResult(BaseModel):
    """Result of a flush attempt."""

    status: FlushStatus
    trigger: str
    drained: int = 0
    written: int = 0
    restored: int = 0
    dates: List[str] = Field(default_factory=list)
    failed_date: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    finished_at: Optional[str] = None


class FlushExecutor:
    """
    Drains the buffer, writes one file per date bucket, and restores what
    could not be written.

    At most one run is active: a trigger that arrives while the lock is held
    returns SKIPPED instead of waiting. Buckets written before a failure stay
    written (at-least-once delivery).
    """

    def __init__(
        self,
        buffer: LogBuffer,
        writer: JsonlWriter,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.buffer = buffer
        self.writer = writer
        self.clock = clock
        self.state = FlushState.IDLE
        self._lock = asyncio.Lock()

        self.last_result: Optional[FlushResult] = None
        self.last_failure: Optional[FlushResult] = None
        self.last_flush_at: Optional[str] = None
        self.total_written = 0
        self.flush_count = 0
        self.failure_count = 0

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def run(self, trigger: str = "manual", wait: bool = False) -> FlushResult:
        """
        Run one flush cycle. Never raises for write failures.

        Args:
            trigger: Name of the trigger source, for logs and results
            wait: Queue behind an in-flight flush instead of skipping
        """
        if wait:
            async with self._lock:
                pass

        if self._lock.locked():
            logger.debug("flush_skipped", trigger=trigger, reason="in_progress")
            return FlushResult(status=FlushStatus.SKIPPED, trigger=trigger)

        if not len(self.buffer):
            logger.debug("flush_skipped", trigger=trigger, reason="empty_buffer")
            return FlushResult(status=FlushStatus.EMPTY, trigger=trigger)

        async with self._lock:
            try:
                result = await self._flush(trigger)
            finally:
                self.state = FlushState.IDLE

        self.last_result = result
        return result

    async def _flush(self, trigger: str) -> FlushResult:
        self.state = FlushState.DRAINING
        snapshot = self.buffer.drain_snapshot()
        now = self.clock()
        logger.info("flush_started", trigger=trigger, entries=len(snapshot))

        buckets: Dict[str, List[dict]] = {}
        current: Optional[str] = None
        written = 0
        try:
            buckets = group_by_date(snapshot, now)
            self.state = FlushState.WRITING
            for date_key, records in buckets.items():
                current = date_key
                await asyncio.to_thread(self.writer.write_partition, date_key, records)
                written += len(records)
                logger.debug("flush_bucket_written", date=date_key, entries=len(records))
        except asyncio.CancelledError as e:
            # drained entries must be written or restored, even when the caller goes away
            self._recover(trigger, snapshot, buckets, current, written, e)
            raise
        except Exception as e:
            return self._recover(trigger, snapshot, buckets, current, written, e)

        self.total_written += written
        self.flush_count += 1
        self.last_flush_at = to_iso(self.clock())
        logger.info("flush_completed", trigger=trigger, entries=written, dates=list(buckets))
        return FlushResult(
            status=FlushStatus.FLUSHED,
            trigger=trigger,
            drained=len(snapshot),
            written=written,
            dates=list(buckets),
            finished_at=self.last_flush_at,
        )

    def _recover(
        self,
        trigger: str,
        snapshot: List[dict],
        buckets: Dict[str, List[dict]],
        failed_date: Optional[str],
        written: int,
        error: BaseException,
    ) -> FlushResult:
        """Restore the failed bucket and every unattempted bucket, in snapshot order."""
        self.state = FlushState.RESTORING

        done = set()
        for date_key, records in buckets.items():
            if date_key == failed_date:
                break
            done.update(id(record) for record in records)
        remaining = [entry for entry in snapshot if id(entry) not in done]
        self.buffer.restore(remaining)

        reason = classify_write_error(error)
        self.total_written += written
        self.failure_count += 1
        logger.error(
            "flush_failed",
            trigger=trigger,
            failed_date=failed_date,
            written=written,
            restored=len(remaining),
            failure_reason=reason,
            error=str(error),
        )
        logger.warning("flush_entries_restored", restored=len(remaining), buffer_size=len(self.buffer))

        result = FlushResult(
            status=FlushStatus.FAILED,
            trigger=trigger,
            drained=len(snapshot),
            written=written,
            restored=len(remaining),
            dates=list(buckets),
            failed_date=failed_date,
            error=str(error),
            reason=reason,
            finished_at=to_iso(self.clock()),
        )
        self.last_failure = result
        return result


class FlushScheduler:
    """Periodic flush trigger owned by the controller, cancellable on shutdown."""

    def __init__(
        self,
        trigger: Callable[[str], Awaitable[FlushResult]],
        interval_ms: int = 5000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.trigger = trigger
        self.interval_ms = interval_ms
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start ticking on the running event loop."""
        if self.running:
            return
        logger.info("flush_scheduler_started", interval_ms=self.interval_ms)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the periodic task, then wait for a flush it had in flight."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

        inflight, self._inflight = self._inflight, None
        if inflight is not None and not inflight.done():
            logger.info("flush_scheduler_awaiting_inflight")
            try:
                await inflight
            except Exception as e:
                logger.error("periodic_flush_error", error=str(e), error_type=type(e).__name__)
        logger.info("flush_scheduler_stopped")

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval_ms / 1000.0)
            logger.debug("periodic_flush_triggered")
            try:
                # stop() must not cancel a flush between drain and restore
                self._inflight = asyncio.ensure_future(self.trigger("periodic"))
                await asyncio.shield(self._inflight)
            except Exception as e:
                logger.error("periodic_flush_error", error=str(e), error_type=type(e).__name__)
