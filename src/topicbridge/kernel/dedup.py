from __future__ import annotations

from collections import OrderedDict
from typing import Optional

DEFAULT_CAPACITY = 1000


class DedupWindow:
    """Bounded recent-id cache plus a monotonic timestamp high-watermark.

    Not thread-safe: only the source consumer mutates it. Eviction is by
    insertion order (oldest first), never by recency of lookup.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, high_watermark: float = 0.0):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self.high_watermark = float(high_watermark)
        self._seen: "OrderedDict[str, None]" = OrderedDict()

    def is_new(self, message_id: str, timestamp: float) -> bool:
        """Would `accept` take this message? Does not record anything."""
        mid = str(message_id or "")
        if not mid or mid in self._seen:
            return False
        return float(timestamp) > self.high_watermark

    def accept(self, message_id: str, timestamp: float) -> bool:
        """Return True exactly once per new message; record it on acceptance."""
        if not self.is_new(message_id, timestamp):
            return False
        self.commit(message_id, timestamp)
        return True

    def commit(self, message_id: str, timestamp: float) -> None:
        """Record a message as handled."""
        mid = str(message_id)
        ts = float(timestamp)
        self._seen[mid] = None
        self.high_watermark = max(self.high_watermark, ts)
        while len(self._seen) > self.capacity:
            self._seen.popitem(last=False)

    def seen(self, message_id: str) -> bool:
        return str(message_id) in self._seen

    def oldest(self) -> Optional[str]:
        return next(iter(self._seen), None)

    def __len__(self) -> int:
        return len(self._seen)
