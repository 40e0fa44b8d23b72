import errno
from datetime import datetime, timezone

import orjson
import pytest

from flush import FlushStatus
from logging_controller import ClientInfo, LoggingConfig, LoggingController, ResultKind

NOW = datetime(2024, 1, 20, 12, 0, tzinfo=timezone.utc)
CLIENT = ClientInfo(ip="10.0.0.7", user_agent="pytest-browser")


def _log(message, timestamp=None, **extra):
    entry = {"level": "INFO", "objectName": "Scene", "message": message, **extra}
    if timestamp is not None:
        entry["timestamp"] = timestamp
    return entry


def _controller(tmp_path, **overrides):
    config = LoggingConfig(logs_dir=str(tmp_path / "logs"), **overrides)
    return LoggingController(config, clock=lambda: NOW)


async def _ready_controller(tmp_path, **overrides):
    controller = _controller(tmp_path, **overrides)
    assert await controller.init() is True
    return controller


def _lines(path):
    return [orjson.loads(line) for line in path.read_bytes().splitlines()]


def _break_log_writer(controller):
    def fail(_date_key, _records):
        raise OSError(errno.EACCES, "Permission denied")

    controller.log_writer.write_partition = fail


@pytest.mark.asyncio
async def test_ingestion_rejected_before_init(tmp_path):
    controller = _controller(tmp_path)

    for result in (
        await controller.ingest_one(_log("hi"), CLIENT),
        await controller.ingest_batch({"logs": [], "sessionId": "s", "version": "1"}, CLIENT),
        await controller.ingest_game_event({"eventName": "spin", "eventData": {}}, CLIENT),
        await controller.trigger_manual_flush(),
        await controller.clear_buffer(),
    ):
        assert result.kind == ResultKind.NOT_INITIALIZED
        assert result.success is False

    assert controller.buffer.size() == 0


@pytest.mark.asyncio
async def test_init_failure_leaves_controller_uninitialized(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    controller = LoggingController(LoggingConfig(logs_dir=str(blocker / "logs")), clock=lambda: NOW)

    assert await controller.init() is False
    assert controller.is_initialized is False
    assert (await controller.ingest_one(_log("hi"), CLIENT)).kind == ResultKind.NOT_INITIALIZED


@pytest.mark.asyncio
async def test_ingest_one_enriches_and_buffers(tmp_path):
    controller = await _ready_controller(tmp_path)

    result = await controller.ingest_one(
        _log("hello", "2024-01-15T10:00:00Z", id="client-id", source="spoofed", extraField=7),
        CLIENT,
    )

    assert result.kind == ResultKind.PROCESSED
    assert result.payload["timestamp"] == "2024-01-20T12:00:00.000Z"
    entry = controller.buffer.drain_snapshot()[0]
    assert entry["id"] == result.payload["logId"] != "client-id"
    assert entry["source"] == "frontend"
    assert entry["receivedAt"] == "2024-01-20T12:00:00.000Z"
    assert entry["timestamp"] == "2024-01-15T10:00:00Z"
    assert entry["ip"] == "10.0.0.7"
    assert entry["userAgent"] == "pytest-browser"
    assert entry["extraField"] == 7


@pytest.mark.asyncio
async def test_invalid_client_timestamp_is_replaced_by_received_at(tmp_path):
    controller = await _ready_controller(tmp_path)

    await controller.ingest_one(_log("hello", "yesterday-ish"), CLIENT)
    await controller.ingest_one(_log("no timestamp"), CLIENT)

    entries = controller.buffer.drain_snapshot()
    assert [e["timestamp"] for e in entries] == ["2024-01-20T12:00:00.000Z"] * 2


@pytest.mark.asyncio
async def test_ids_are_unique(tmp_path):
    controller = await _ready_controller(tmp_path, max_buffer_size=1000)

    ids = [(await controller.ingest_one(_log(str(i)), CLIENT)).payload["logId"] for i in range(200)]

    assert len(set(ids)) == 200
    assert controller.buffer.size() == 200


@pytest.mark.asyncio
async def test_reaching_threshold_triggers_one_flush(tmp_path):
    controller = await _ready_controller(tmp_path, max_buffer_size=3)
    calls = []
    original_run = controller.executor.run

    async def counting_run(trigger="manual", wait=False):
        calls.append(trigger)
        return await original_run(trigger, wait)

    controller.executor.run = counting_run

    for i in range(2):
        await controller.ingest_one(_log(str(i), "2024-01-15T10:00:00Z"), CLIENT)
    assert calls == []
    assert controller.buffer.size() == 2

    await controller.ingest_one(_log("2", "2024-01-15T10:00:00Z"), CLIENT)

    assert calls == ["threshold"]
    assert controller.buffer.size() == 0
    assert len(_lines(tmp_path / "logs" / "frontend-logs-2024-01-15.jsonl")) == 3


@pytest.mark.asyncio
async def test_manual_flush_splits_entries_by_date(tmp_path):
    controller = await _ready_controller(tmp_path)
    await controller.ingest_one(_log("a", "2024-01-15T08:00:00Z"), CLIENT)
    await controller.ingest_one(_log("b", "2024-01-16T08:00:00Z"), CLIENT)
    await controller.ingest_one(_log("c", "2024-01-15T09:00:00Z"), CLIENT)

    result = await controller.trigger_manual_flush()

    assert result.kind == ResultKind.PROCESSED
    assert result.payload["flush"]["status"] == "flushed"
    logs_dir = tmp_path / "logs"
    assert sorted(p.name for p in logs_dir.iterdir()) == [
        "frontend-logs-2024-01-15.jsonl",
        "frontend-logs-2024-01-16.jsonl",
    ]
    assert [r["message"] for r in _lines(logs_dir / "frontend-logs-2024-01-15.jsonl")] == ["a", "c"]
    assert [r["message"] for r in _lines(logs_dir / "frontend-logs-2024-01-16.jsonl")] == ["b"]


@pytest.mark.asyncio
async def test_manual_flush_on_empty_buffer_changes_nothing(tmp_path):
    controller = await _ready_controller(tmp_path)

    result = await controller.trigger_manual_flush()

    assert result.kind == ResultKind.PROCESSED
    assert result.payload["flush"]["status"] == "empty"
    assert list((tmp_path / "logs").iterdir()) == []
    status = (await controller.get_status()).payload["data"]
    assert status["lastFlush"] is None
    assert status["bufferSize"] == 0


@pytest.mark.asyncio
async def test_failed_manual_flush_is_reported_and_entries_kept(tmp_path):
    controller = await _ready_controller(tmp_path)
    _break_log_writer(controller)
    await controller.ingest_one(_log("a", "2024-01-15T08:00:00Z"), CLIENT)
    await controller.ingest_one(_log("b", "2024-01-16T08:00:00Z"), CLIENT)

    result = await controller.trigger_manual_flush()

    assert result.kind == ResultKind.FAILED
    assert result.payload["flush"]["restored"] == 2
    assert controller.buffer.size() == 2
    status = (await controller.get_status()).payload["data"]
    assert status["isProcessing"] is False
    assert status["lastFailure"]["reason"] == "permission_denied"


@pytest.mark.asyncio
async def test_threshold_flush_failure_does_not_fail_ingestion(tmp_path):
    controller = await _ready_controller(tmp_path, max_buffer_size=1)
    _break_log_writer(controller)

    result = await controller.ingest_one(_log("a"), CLIENT)

    assert result.kind == ResultKind.PROCESSED
    assert controller.buffer.size() == 1


@pytest.mark.asyncio
async def test_batch_entries_share_batch_metadata(tmp_path):
    controller = await _ready_controller(tmp_path)
    batch = {
        "logs": [_log("a"), _log("b", batchId="spoofed")],
        "sessionId": "session-1",
        "timestamp": "2024-01-20T11:59:00Z",
        "version": "2.1.0",
    }

    result = await controller.ingest_batch(batch, CLIENT)

    assert result.kind == ResultKind.PROCESSED
    assert result.message == "Processed 2 logs successfully"
    entries = controller.buffer.drain_snapshot()
    assert [e["id"] for e in entries] == result.payload["logIds"]
    assert {e["batchId"] for e in entries} == {result.payload["batchId"]}
    assert all(e["sessionId"] == "session-1" and e["batchVersion"] == "2.1.0" for e in entries)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "batch",
    [
        {"logs": "not-a-list", "sessionId": "s", "version": "1"},
        {"sessionId": "s", "version": "1"},
        {"logs": [{"message": "ok"}, "bad"], "sessionId": "s", "version": "1"},
        ["not", "an", "object"],
    ],
)
async def test_malformed_batch_is_rejected_before_buffering(tmp_path, batch):
    controller = await _ready_controller(tmp_path)

    result = await controller.ingest_batch(batch, CLIENT)

    assert result.kind == ResultKind.INVALID
    assert controller.buffer.size() == 0


@pytest.mark.asyncio
async def test_game_event_is_written_immediately(tmp_path):
    controller = await _ready_controller(tmp_path)

    result = await controller.ingest_game_event(
        {"eventName": "spin", "eventData": {"prize": "rare"}, "playerId": "p1"}, CLIENT
    )

    assert result.kind == ResultKind.PROCESSED
    assert controller.buffer.size() == 0
    records = _lines(tmp_path / "logs" / "game-events-2024-01-20.jsonl")
    assert records == [
        {
            "id": result.payload["eventId"],
            "receivedAt": "2024-01-20T12:00:00.000Z",
            "source": "frontend",
            "ip": "10.0.0.7",
            "userAgent": "pytest-browser",
            "eventName": "spin",
            "eventData": {"prize": "rare"},
            "playerId": "p1",
        }
    ]


@pytest.mark.asyncio
async def test_game_event_write_failure_is_reported(tmp_path):
    controller = await _ready_controller(tmp_path)

    def fail(_date_key, _records):
        raise OSError(errno.EIO, "I/O error")

    controller.game_event_writer.write_partition = fail

    result = await controller.ingest_game_event({"eventName": "spin", "eventData": {}}, CLIENT)

    assert result.kind == ResultKind.FAILED
    assert result.message == "Failed to process game event"


@pytest.mark.asyncio
async def test_clear_buffer_reports_count(tmp_path):
    controller = await _ready_controller(tmp_path)
    await controller.ingest_one(_log("a"), CLIENT)
    await controller.ingest_one(_log("b"), CLIENT)

    result = await controller.clear_buffer()

    assert result.message == "Cleared 2 logs from buffer"
    assert controller.buffer.size() == 0


@pytest.mark.asyncio
async def test_stats_count_files_and_bytes(tmp_path):
    controller = await _ready_controller(tmp_path)
    await controller.ingest_one(_log("a", "2024-01-15T08:00:00Z"), CLIENT)
    await controller.trigger_manual_flush()
    await controller.ingest_game_event({"eventName": "spin", "eventData": {}}, CLIENT)
    await controller.ingest_one(_log("b"), CLIENT)

    data = (await controller.get_stats()).payload["data"]

    logs_dir = tmp_path / "logs"
    expected_size = sum(p.stat().st_size for p in logs_dir.iterdir())
    assert data["bufferSize"] == 1
    assert data["totalLogsProcessed"] == 1
    assert data["flushCount"] == 1
    assert data["lastFlush"] == "2024-01-20T12:00:00.000Z"
    assert data["fileStats"] == {
        "totalFiles": 2,
        "logFiles": 1,
        "gameEventFiles": 1,
        "totalSize": expected_size,
    }


@pytest.mark.asyncio
async def test_stats_report_unreadable_directory(tmp_path):
    controller = _controller(tmp_path)

    data = (await controller.get_stats()).payload["data"]

    assert data["fileStats"] == {"error": "Failed to get file statistics"}


@pytest.mark.asyncio
async def test_stop_flushes_remaining_entries(tmp_path):
    controller = await _ready_controller(tmp_path)
    controller.start()
    assert controller.scheduler.running is True
    await controller.ingest_one(_log("a", "2024-01-15T08:00:00Z"), CLIENT)

    await controller.stop()

    assert controller.scheduler.running is False
    assert controller.buffer.size() == 0
    assert len(_lines(tmp_path / "logs" / "frontend-logs-2024-01-15.jsonl")) == 1


@pytest.mark.asyncio
async def test_flush_before_init_is_skipped(tmp_path):
    controller = _controller(tmp_path)

    result = await controller.flush("periodic")

    assert result.status == FlushStatus.SKIPPED
    assert result.reason == "not_initialized"
