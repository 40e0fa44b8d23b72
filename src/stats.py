"""
Directory statistics for the JSONL output directory.
"""

import os
from pathlib import Path
from typing import Any, Dict

import structlog

from telemetry import GAME_EVENT_FILE_PREFIX, LOG_FILE_PREFIX

logger = structlog.get_logger()


def scan_directory(log_dir: Path) -> Dict[str, Any]:
    """
    Count log and game-event files and sum their sizes.

    Runs on every call, uncached. Returns ``{"error": ...}`` when the
    directory cannot be read.
    """
    stats = {
        "totalFiles": 0,
        "logFiles": 0,
        "gameEventFiles": 0,
        "totalSize": 0,
    }

    try:
        with os.scandir(log_dir) as entries:
            for entry in entries:
                if not entry.is_file():
                    continue
                stats["totalFiles"] += 1
                if entry.name.startswith(LOG_FILE_PREFIX):
                    stats["logFiles"] += 1
                elif entry.name.startswith(GAME_EVENT_FILE_PREFIX):
                    stats["gameEventFiles"] += 1
                stats["totalSize"] += entry.stat().st_size
    except OSError as e:
        logger.error("file_stats_failed", log_dir=str(log_dir), error=str(e))
        return {"error": "Failed to get file statistics"}

    return stats
