"""
Tests for the shared partner token cache
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from partner_sync.domain.services.token_cache import TokenCache


NOW = datetime(2025, 1, 20, 8, 0, tzinfo=timezone.utc)


class MovingClock:
    def __init__(self):
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> MovingClock:
    return MovingClock()


@pytest.fixture
def cache(clock) -> TokenCache:
    return TokenCache(safety_margin=timedelta(minutes=10), clock=clock)


@pytest.mark.unit
def test_empty_cache(cache):
    assert cache.get_token() is None
    assert cache.peek() is None
    assert cache.seconds_remaining() is None


@pytest.mark.unit
def test_token_served_until_safety_margin(cache, clock):
    cache.set_token("abc", NOW + timedelta(hours=1))

    assert cache.get_token() == "abc"
    clock.now = NOW + timedelta(minutes=49, seconds=59)
    assert cache.get_token() == "abc"
    clock.now = NOW + timedelta(minutes=50)
    assert cache.get_token() is None
    # still visible for status and refresh
    assert cache.peek().value == "abc"


@pytest.mark.unit
def test_expired_token_is_absent(cache, clock):
    cache.set_token("abc", NOW - timedelta(seconds=1))
    assert cache.get_token() is None


@pytest.mark.unit
def test_set_token_for(cache):
    expires_at = cache.set_token_for("abc", 3600, "Bearer")

    assert expires_at == NOW + timedelta(hours=1)
    assert cache.seconds_remaining() == pytest.approx(3000)


@pytest.mark.unit
def test_naive_expiry_is_utc(cache):
    cache.set_token("abc", datetime(2025, 1, 20, 9, 0))
    assert cache.peek().expires_at.tzinfo is timezone.utc
    assert cache.get_token() == "abc"


@pytest.mark.unit
def test_invalidate(cache):
    cache.set_token("abc", NOW + timedelta(hours=1))
    cache.invalidate()
    assert cache.get_token() is None
    assert cache.peek() is None


@pytest.mark.unit
def test_concurrent_writers_leave_one_consistent_token(cache):
    def writer(n: int):
        for _ in range(200):
            cache.set_token(f"token-{n}", NOW + timedelta(hours=1))

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert cache.get_token() in {f"token-{n}" for n in range(8)}
