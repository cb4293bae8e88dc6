"""Duplicate and stale event filter.

In-memory and best-effort: at most once per process lifetime, reset on
restart. Stale events (reconnect backfill, redelivery) are dropped by age.
"""

from __future__ import annotations

import collections
import logging
import time

log = logging.getLogger(__name__)

STALE_THRESHOLD_S = 60.0
MAX_PROCESSED = 1000


class EventFilter:
    def __init__(self, stale_threshold: float = STALE_THRESHOLD_S,
                 max_processed: int = MAX_PROCESSED):
        self.stale_threshold = stale_threshold
        self.max_processed = max_processed
        # event_id → None; insertion order is eviction order
        self._seen: collections.OrderedDict[str, None] = collections.OrderedDict()

    def __contains__(self, event_id: str) -> bool:
        return event_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def should_process(self, event_id: str, created_at: float | None,
                       now: float | None = None) -> bool:
        """Return True and record the event if it is fresh and unseen."""
        if now is None:
            now = time.time()

        if created_at is not None:
            age = now - created_at
            if age > self.stale_threshold:
                log.warning("Ignoring stale event %s (%.1fs old)", event_id, age)
                return False

        if event_id in self._seen:
            log.warning("Ignoring duplicate event %s", event_id)
            return False

        self._seen[event_id] = None
        while len(self._seen) > self.max_processed:
            self._seen.popitem(last=False)
        return True
