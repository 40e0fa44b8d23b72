"""
In-memory buffer of enriched log entries awaiting a flush.
"""

from typing import Any, Dict, List, Sequence


class LogBuffer:
    """
    Ordered, unbounded buffer of enriched entries.

    Only the flush executor drains and restores; ingestion only appends.
    The soft capacity lives in the controller: reaching it triggers a flush,
    it never rejects an entry.
    """

    def __init__(self):
        self._entries: List[Dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def size(self) -> int:
        return len(self._entries)

    def append(self, entry: Dict[str, Any]) -> str:
        """Add an entry and return its id."""
        entry_id = entry.get("id")
        if not entry_id:
            raise ValueError("entry must carry an id before buffering")
        self._entries.append(entry)
        return entry_id

    def drain_snapshot(self) -> List[Dict[str, Any]]:
        """Take the current contents and leave the buffer empty."""
        snapshot, self._entries = self._entries, []
        return snapshot

    def restore(self, entries: Sequence[Dict[str, Any]]) -> None:
        """Put entries back at the front, ahead of anything appended since the drain."""
        if entries:
            self._entries[0:0] = list(entries)

    def clear(self) -> int:
        """Discard everything buffered; returns how many entries were dropped."""
        cleared = len(self._entries)
        self._entries = []
        return cleared
