"""
Date partitioning for buffered log entries.
Maps each enriched entry to the UTC calendar date its file is named after.
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger()

# fromisoformat before 3.11 accepts only 3 or 6 fraction digits
_FRACTION = re.compile(r"(\d{2}:\d{2}:\d{2})[.,](\d+)")


def _normalize_fraction(match: re.Match) -> str:
    return f"{match.group(1)}.{match.group(2)[:6].ljust(6, '0')}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a client-supplied timestamp.

    Accepts ISO-8601 strings (a trailing "Z" is read as UTC, naive values are
    taken as UTC) and numbers as epoch milliseconds.

    Returns:
        An aware UTC datetime, or None when the value cannot be parsed
    """
    if value is None or isinstance(value, bool):
        return None

    try:
        if isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        elif isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            if text[-1] in ("Z", "z"):
                text = text[:-1] + "+00:00"
            text = _FRACTION.sub(_normalize_fraction, text, count=1)
            parsed = datetime.fromisoformat(text)
        else:
            return None
    except (ValueError, OverflowError, OSError):
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def partition_key(entry: Dict[str, Any], now: datetime) -> str:
    """Return the YYYY-MM-DD (UTC) partition for an entry, falling back to ``now``."""
    moment = parse_timestamp(entry.get("timestamp"))
    if moment is None:
        logger.warning(
            "invalid_entry_timestamp",
            log_id=entry.get("id"),
            original_timestamp=entry.get("timestamp"),
        )
        moment = now
    return moment.astimezone(timezone.utc).date().isoformat()


def group_by_date(entries: List[Dict[str, Any]], now: datetime) -> Dict[str, List[Dict[str, Any]]]:
    """
    Bucket entries by partition date.

    Buckets appear in the order their first entry appears; entries keep
    snapshot order inside each bucket.
    """
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for entry in entries:
        grouped.setdefault(partition_key(entry, now), []).append(entry)
    return grouped
