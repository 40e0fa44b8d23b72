"""
Frontend Logging Controller
Enriches client telemetry, buffers log entries, and exposes the operator surface.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, Field

from flush import FlushExecutor, FlushResult, FlushScheduler, FlushStatus
from log_buffer import LogBuffer
from partitioner import parse_timestamp
from stats import scan_directory
from telemetry import GAME_EVENT_FILE_PREFIX, LOG_FILE_PREFIX, JsonlWriter
from utils import to_iso, utc_now

logger = structlog.get_logger()

SOURCE = "frontend"


class LoggingConfig(BaseModel):
    """Configuration for the logging controller."""

    logs_dir: str = "logs/frontend"
    max_buffer_size: int = Field(default=100, ge=1)
    flush_interval_ms: int = Field(default=5000, ge=1)
    flush_on_shutdown: bool = True


class ClientInfo(BaseModel):
    """Network origin of a request."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None


class ResultKind(str, Enum):
    PROCESSED = "processed"
    NOT_INITIALIZED = "not_initialized"
    INVALID = "invalid"
    FAILED = "failed"


class ControllerResult(BaseModel):
    """Outcome of an operator-facing call."""

    kind: ResultKind
    success: bool
    message: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success, "message": self.message}
        body.update(self.payload)
        if self.error:
            body["error"] = self.error
        return body


def _processed(message: str, **payload) -> ControllerResult:
    return ControllerResult(kind=ResultKind.PROCESSED, success=True, message=message, payload=payload)


def _not_initialized() -> ControllerResult:
    return ControllerResult(
        kind=ResultKind.NOT_INITIALIZED,
        success=False,
        message="LoggingController not yet initialized",
    )


def _invalid(message: str) -> ControllerResult:
    return ControllerResult(kind=ResultKind.INVALID, success=False, message=message)


def _failed(message: str, error: Exception) -> ControllerResult:
    return ControllerResult(kind=ResultKind.FAILED, success=False, message=message, error=str(error))


class LoggingController:
    """
    Owns the buffer, the flush executor and the periodic scheduler.

    Lifecycle is explicit: ``init`` creates the output directory, ``start``
    begins periodic flushing, ``stop`` cancels it and flushes what is left.
    Ingestion is rejected until ``init`` succeeds.
    """

    LOG_RESERVED = ("id", "receivedAt", "timestamp", "source", "ip", "userAgent")
    BATCH_RESERVED = LOG_RESERVED + ("batchId", "sessionId", "batchVersion")
    EVENT_RESERVED = ("id", "receivedAt", "source", "ip", "userAgent")

    def __init__(
        self,
        config: Optional[LoggingConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config or LoggingConfig()
        self.logs_dir = Path(self.config.logs_dir)
        self.clock = clock
        self.is_initialized = False

        self.buffer = LogBuffer()
        self.log_writer = JsonlWriter(self.logs_dir, LOG_FILE_PREFIX)
        self.game_event_writer = JsonlWriter(self.logs_dir, GAME_EVENT_FILE_PREFIX)
        self.executor = FlushExecutor(self.buffer, self.log_writer, clock=clock)
        self.scheduler = FlushScheduler(
            self.flush,
            interval_ms=self.config.flush_interval_ms,
            sleep=sleep or asyncio.sleep,
        )

    # Lifecycle

    async def init(self) -> bool:
        """Create the output directory; stays uninitialized on failure."""
        if self.is_initialized:
            return True
        try:
            logger.info("logs_directory_init", logs_dir=str(self.logs_dir))
            await asyncio.to_thread(self.logs_dir.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            logger.error("logs_directory_init_failed", logs_dir=str(self.logs_dir), error=str(e))
            return False

        self.is_initialized = True
        logger.info("logging_controller_initialized", max_buffer_size=self.config.max_buffer_size)
        return True

    def start(self) -> None:
        if not self.is_initialized:
            logger.warning("flush_scheduler_not_started", reason="not_initialized")
            return
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self.is_initialized and self.config.flush_on_shutdown and len(self.buffer):
            result = await self.executor.run("shutdown", wait=True)
            if result.status == FlushStatus.FAILED:
                logger.error("shutdown_flush_incomplete", unwritten=len(self.buffer))

    async def flush(self, trigger: str = "manual") -> FlushResult:
        """Single entry point for periodic, threshold and manual triggers."""
        if not self.is_initialized:
            logger.debug("flush_skipped", trigger=trigger, reason="not_initialized")
            return FlushResult(status=FlushStatus.SKIPPED, trigger=trigger, reason="not_initialized")
        return await self.executor.run(trigger)

    async def _check_threshold(self) -> None:
        if len(self.buffer) >= self.config.max_buffer_size:
            logger.info("buffer_full", buffer_size=len(self.buffer))
            await self.flush("threshold")

    # Enrichment

    def _server_fields(self, client: ClientInfo, received_at: str) -> Dict[str, Any]:
        return {
            "id": str(uuid.uuid4()),
            "receivedAt": received_at,
            "source": SOURCE,
            "ip": client.ip,
            "userAgent": client.user_agent,
        }

    def _enrich_log(
        self,
        entry: Dict[str, Any],
        client: ClientInfo,
        received_at: str,
        batch_fields: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        enriched = self._server_fields(client, received_at)
        client_timestamp = entry.get("timestamp")
        if parse_timestamp(client_timestamp) is not None:
            enriched["timestamp"] = client_timestamp
        else:
            enriched["timestamp"] = received_at

        reserved = self.LOG_RESERVED
        if batch_fields is not None:
            enriched.update(batch_fields)
            reserved = self.BATCH_RESERVED

        for key, value in entry.items():
            if key not in reserved:
                enriched[key] = value
        return enriched

    # Operator surface

    async def ingest_one(self, entry: Dict[str, Any], client: Optional[ClientInfo] = None) -> ControllerResult:
        """Buffer a single log entry."""
        if not self.is_initialized:
            return _not_initialized()
        if not isinstance(entry, dict):
            return _invalid("Log entry must be an object")

        try:
            received_at = to_iso(self.clock())
            enriched = self._enrich_log(entry, client or ClientInfo(), received_at)
            log_id = self.buffer.append(enriched)
            logger.debug("log_buffered", buffer_size=len(self.buffer))

            await self._check_threshold()

            logger.info(
                "frontend_log_received",
                log_id=log_id,
                object_name=entry.get("objectName"),
                level=entry.get("level"),
            )
            return _processed("Log received successfully", logId=log_id, timestamp=received_at)
        except Exception as e:
            logger.error("receive_log_failed", error=str(e), error_type=type(e).__name__)
            return _failed("Failed to process log", e)

    async def ingest_batch(self, batch: Dict[str, Any], client: Optional[ClientInfo] = None) -> ControllerResult:
        """Buffer every entry of a batch under one batch id."""
        if not self.is_initialized:
            return _not_initialized()
        if not isinstance(batch, dict):
            return _invalid("Batch must be an object")

        logs = batch.get("logs")
        if not isinstance(logs, list):
            return _invalid("Logs must be an array")
        if not all(isinstance(entry, dict) for entry in logs):
            return _invalid("Each log entry must be an object")

        try:
            client = client or ClientInfo()
            received_at = to_iso(self.clock())
            batch_id = str(uuid.uuid4())
            batch_fields = {
                "batchId": batch_id,
                "sessionId": batch.get("sessionId"),
                "batchVersion": batch.get("version"),
            }

            log_ids = [
                self.buffer.append(self._enrich_log(entry, client, received_at, batch_fields))
                for entry in logs
            ]
            logger.debug("batch_buffered", count=len(logs), buffer_size=len(self.buffer))

            await self._check_threshold()

            logger.info(
                "frontend_batch_received",
                batch_id=batch_id,
                session_id=batch.get("sessionId"),
                count=len(logs),
            )
            return _processed(
                f"Processed {len(logs)} logs successfully",
                batchId=batch_id,
                logIds=log_ids,
                timestamp=received_at,
            )
        except Exception as e:
            logger.error("receive_batch_failed", error=str(e), error_type=type(e).__name__)
            return _failed("Failed to process batch logs", e)

    async def ingest_game_event(self, event: Dict[str, Any], client: Optional[ClientInfo] = None) -> ControllerResult:
        """Write a game event straight to its daily file, bypassing the buffer."""
        if not self.is_initialized:
            return _not_initialized()
        if not isinstance(event, dict):
            return _invalid("Game event must be an object")

        try:
            now = self.clock()
            enriched = self._server_fields(client or ClientInfo(), to_iso(now))
            for key, value in event.items():
                if key not in self.EVENT_RESERVED:
                    enriched[key] = value

            date_key = now.astimezone(timezone.utc).date().isoformat()
            await asyncio.to_thread(self.game_event_writer.write_partition, date_key, [enriched])

            logger.info(
                "game_event_received",
                event_id=enriched["id"],
                event_name=event.get("eventName"),
                player_id=event.get("playerId"),
            )
            return _processed(
                "Game event received successfully",
                eventId=enriched["id"],
                timestamp=enriched["receivedAt"],
            )
        except Exception as e:
            logger.error("receive_game_event_failed", error=str(e), error_type=type(e).__name__)
            return _failed("Failed to process game event", e)

    async def trigger_manual_flush(self) -> ControllerResult:
        if not self.is_initialized:
            return _not_initialized()

        result = await self.flush("manual")
        summary = result.model_dump(mode="json", exclude_none=True)
        if result.status == FlushStatus.FAILED:
            return ControllerResult(
                kind=ResultKind.FAILED,
                success=False,
                message="Manual flush failed; unwritten entries were restored to the buffer",
                payload={"flush": summary},
                error=result.error,
            )

        messages = {
            FlushStatus.FLUSHED: "Buffer flushed successfully",
            FlushStatus.EMPTY: "Buffer empty, nothing to flush",
            FlushStatus.SKIPPED: "Flush already in progress",
        }
        return _processed(messages[result.status], flush=summary, timestamp=to_iso(self.clock()))

    async def clear_buffer(self) -> ControllerResult:
        if not self.is_initialized:
            return _not_initialized()

        cleared = self.buffer.clear()
        logger.warning("buffer_cleared", cleared=cleared)
        return _processed(f"Cleared {cleared} logs from buffer", cleared=cleared, timestamp=to_iso(self.clock()))

    def _last_failure(self) -> Optional[Dict[str, Any]]:
        failure = self.executor.last_failure
        if failure is None:
            return None
        return failure.model_dump(mode="json", exclude_none=True)

    async def get_stats(self) -> ControllerResult:
        """Buffer counters plus an uncached scan of the output directory."""
        try:
            file_stats = scan_directory(self.logs_dir)
            data = {
                "bufferSize": len(self.buffer),
                "isProcessing": self.executor.in_progress,
                "lastFlush": self.executor.last_flush_at,
                "totalLogsProcessed": self.executor.total_written,
                "flushCount": self.executor.flush_count,
                "failedFlushes": self.executor.failure_count,
                "lastFailure": self._last_failure(),
                "fileStats": file_stats,
            }
            return _processed("Log statistics", data=data)
        except Exception as e:
            logger.error("log_stats_failed", error=str(e), error_type=type(e).__name__)
            return _failed("Failed to get log statistics", e)

    async def get_status(self) -> ControllerResult:
        data = {
            "isInitialized": self.is_initialized,
            "bufferSize": len(self.buffer),
            "isProcessing": self.executor.in_progress,
            "flushState": self.executor.state.value,
            "logsDirectory": str(self.logs_dir),
            "lastFlush": self.executor.last_flush_at,
            "lastFailure": self._last_failure(),
            "schedulerRunning": self.scheduler.running,
        }
        return _processed("Logging controller status", data=data)
