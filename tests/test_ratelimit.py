from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from settlement.errors import RateLimited
from settlement.ratelimit import RateLimiter
from settlement.store import JsonRowStore


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 6, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


def test_fixed_window_blocks_after_limit(tmp_path: Path):
    clock = Clock()
    limiter = RateLimiter(JsonRowStore(tmp_path / "store.json"), limit=2, window_seconds=60, clock=clock)

    assert limiter.hit("wallet_export:user-1") == 1
    assert limiter.hit("wallet_export:user-1") == 0
    with pytest.raises(RateLimited):
        limiter.hit("wallet_export:user-1")

    assert limiter.hit("wallet_export:user-2") == 1

    clock.now += timedelta(seconds=61)
    assert limiter.hit("wallet_export:user-1") == 1


def test_limiters_sharing_a_store_share_counters(tmp_path: Path):
    clock = Clock()
    store = JsonRowStore(tmp_path / "store.json")
    first = RateLimiter(store, limit=1, window_seconds=60, clock=clock)
    second = RateLimiter(store, limit=1, window_seconds=60, clock=clock)

    first.hit("key")
    with pytest.raises(RateLimited):
        second.hit("key")

    second.reset("key")
    first.hit("key")
