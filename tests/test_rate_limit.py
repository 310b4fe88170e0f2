from __future__ import annotations

import pytest
from fastapi import HTTPException

import rate_limit


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _maybe_rate_limit(key: str, limit: int, window_seconds: int) -> None:
    if rate_limit.rate_limit_enabled():
        rate_limit.rate_limit_or_429(key=key, limit=limit, window_seconds=window_seconds)


def test_rate_limit_disabled_no_429(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "0")
    monkeypatch.setattr(rate_limit, "_limiter", rate_limit.InMemoryRateLimiter())

    _maybe_rate_limit("test:key", limit=1, window_seconds=60)
    _maybe_rate_limit("test:key", limit=1, window_seconds=60)


def test_rate_limit_enabled_exceeding_limit_429(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "1")
    monkeypatch.setattr(rate_limit, "_limiter", rate_limit.InMemoryRateLimiter())

    _maybe_rate_limit("test:key", limit=2, window_seconds=60)
    _maybe_rate_limit("test:key", limit=2, window_seconds=60)

    with pytest.raises(HTTPException) as exc:
        _maybe_rate_limit("test:key", limit=2, window_seconds=60)

    err = exc.value
    assert err.status_code == 429
    assert err.detail == "RATE_LIMITED"
    assert err.headers and "Retry-After" in err.headers


def test_window_slides():
    clock = FakeClock()
    limiter = rate_limit.InMemoryRateLimiter(clock=clock)

    assert limiter.allow("k", 1, 60)
    allowed, retry_after = limiter.check("k", 1, 60)
    assert not allowed
    assert retry_after == 60

    clock.now += 45
    assert limiter.check("k", 1, 60) == (False, 15)

    clock.now += 15
    assert limiter.allow("k", 1, 60)


def test_least_recently_used_key_is_evicted():
    limiter = rate_limit.InMemoryRateLimiter(max_keys=2, clock=FakeClock())

    limiter.allow("a", 1, 60)
    limiter.allow("b", 1, 60)
    limiter.allow("a", 1, 60)  # touches a
    limiter.allow("c", 1, 60)

    assert len(limiter) == 2
    # b was evicted, so it starts fresh
    assert limiter.allow("b", 1, 60)


def test_operator_limit_env_override(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_OPERATOR_PER_MIN", "7")
    assert rate_limit.operator_limit_per_min() == 7
    monkeypatch.setenv("RATE_LIMIT_OPERATOR_PER_MIN", "lots")
    assert rate_limit.operator_limit_per_min() == rate_limit.settings.RATE_LIMIT_OPERATOR_PER_MIN
