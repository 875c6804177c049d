"""Fixed-window attempt counters shared through the relational store."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .custody import isoformat, parse_iso8601, utcnow
from .errors import RateLimited
from .store import RowStore

logger = logging.getLogger(__name__)

RATE_LIMITS_TABLE = "rate_limits"


class RateLimiter:
    def __init__(
        self,
        store: RowStore,
        *,
        limit: int,
        window_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.store = store
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock

    def hit(self, key: str) -> int:
        """Count one attempt for ``key``; raises ``RateLimited`` once the window is full."""
        now = self._clock()
        with self.store.atomic():
            row = self.store.select_one(RATE_LIMITS_TABLE, eq={"key": key})
            window_start = now
            count = 0
            if row is not None:
                try:
                    started = parse_iso8601(str(row.get("window_start")))
                except ValueError:
                    started = None
                if started is not None and now - started < timedelta(seconds=self.window_seconds):
                    window_start = started
                    count = int(row.get("count") or 0)
            if count >= self.limit:
                retry_after = window_start + timedelta(seconds=self.window_seconds) - now
                logger.warning("Rate limit reached for %s", key)
                raise RateLimited(
                    f"Too many attempts; retry in {max(int(retry_after.total_seconds()), 1)} seconds"
                )
            count += 1
            self.store.upsert(
                RATE_LIMITS_TABLE,
                {"key": key, "window_start": isoformat(window_start), "count": count},
                on_conflict="key",
            )
        return self.limit - count

    def reset(self, key: str) -> None:
        self.store.update(RATE_LIMITS_TABLE, {"count": 0}, eq={"key": key})
