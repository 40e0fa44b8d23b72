"""
Append-only JSONL writer for the frontend log and game event streams.
"""

from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable

import orjson

LOG_FILE_PREFIX = "frontend-logs-"
GAME_EVENT_FILE_PREFIX = "game-events-"
FILE_SUFFIX = ".jsonl"


def encode_lines(records: Iterable[Dict[str, Any]]) -> bytes:
    """Serialize records as newline-delimited JSON."""
    return b"".join(orjson.dumps(record) + b"\n" for record in records)


class JsonlWriter:
    """Append records to date-named JSONL files of one stream."""

    def __init__(self, log_dir: Path, prefix: str):
        self.log_dir = Path(log_dir)
        self.prefix = prefix
        self._lock = Lock()

    def path_for(self, date_key: str) -> Path:
        return self.log_dir / f"{self.prefix}{date_key}{FILE_SUFFIX}"

    def append_lines(self, path: Path, records: Iterable[Dict[str, Any]]) -> int:
        """
        Append records to ``path`` with a single write call.

        Raises:
            OSError: The file could not be opened or written. Not retried here.
        """
        payload = encode_lines(records)
        if not payload:
            return 0

        with self._lock:
            with open(path, "ab") as handle:
                handle.write(payload)
        return len(payload)

    def write_partition(self, date_key: str, records: Iterable[Dict[str, Any]]) -> Path:
        """Append records to the stream's file for ``date_key``."""
        path = self.path_for(date_key)
        self.append_lines(path, records)
        return path
