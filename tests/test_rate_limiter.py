from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from walletlookup.services.rate_limiter import (
    RateLimitAllowed,
    RateLimitDenied,
    RateLimiter,
    rate_limit_headers,
    window_reset,
    window_start,
)
from walletlookup.services.records import ApiKeyRecord, ApiPlanRecord
from walletlookup.services.store import InMemoryStore

NOW = datetime(2026, 1, 15, 12, 0, 5, tzinfo=timezone.utc)
KEY = ApiKeyRecord(id="key-1", plan="starter")


def _plan(per_minute: int = 10, per_day: int = -1, per_month: int = -1) -> ApiPlanRecord:
    return ApiPlanRecord(
        id="starter",
        requests_per_minute=per_minute,
        requests_per_day=per_day,
        requests_per_month=per_month,
    )


def test_minute_window_allows_limit_then_denies_then_resets() -> None:
    async def run() -> list[bool]:
        limiter = RateLimiter(InMemoryStore())
        plan = _plan(per_minute=10)
        outcomes = []
        for _ in range(11):
            decision = await limiter.check_and_consume(KEY, plan, now=NOW)
            outcomes.append(decision.allowed)
        next_minute = await limiter.check_and_consume(KEY, plan, now=datetime(2026, 1, 15, 12, 1, tzinfo=timezone.utc))
        outcomes.append(next_minute.allowed)
        return outcomes

    outcomes = asyncio.run(run())
    assert outcomes[:10] == [True] * 10
    assert outcomes[10] is False
    assert outcomes[11] is True


def test_denied_decision_reports_window_and_retry_after() -> None:
    async def run():
        limiter = RateLimiter(InMemoryStore())
        return await limiter.check_and_consume(KEY, _plan(per_minute=1), cost=2, now=NOW)

    decision = asyncio.run(run())
    assert isinstance(decision, RateLimitDenied)
    assert decision.window == "minute"
    assert decision.retry_after == 55


def test_denial_in_later_window_rolls_back_earlier_windows() -> None:
    store = InMemoryStore()

    async def run():
        limiter = RateLimiter(store)
        plan = _plan(per_minute=10, per_day=5)
        first = await limiter.check_and_consume(KEY, plan, cost=3, now=NOW)
        second = await limiter.check_and_consume(KEY, plan, cost=3, now=NOW)
        minute = await store.read_counter(KEY.id, "minute", window_start("minute", NOW))
        day = await store.read_counter(KEY.id, "day", window_start("day", NOW))
        return first, second, minute, day

    first, second, minute, day = asyncio.run(run())
    assert first.allowed
    assert isinstance(second, RateLimitDenied)
    assert second.window == "day"
    assert minute == 3
    assert day == 3


def test_key_overrides_take_precedence_over_plan() -> None:
    key = ApiKeyRecord(id="key-2", plan="starter", rate_limit=2)

    async def run() -> list[bool]:
        limiter = RateLimiter(InMemoryStore())
        return [(await limiter.check_and_consume(key, _plan(per_minute=10), now=NOW)).allowed for _ in range(3)]

    assert asyncio.run(run()) == [True, True, False]


def test_unlimited_windows_are_omitted_and_never_counted() -> None:
    store = InMemoryStore()

    async def run():
        limiter = RateLimiter(store)
        return await limiter.check_and_consume(KEY, _plan(per_minute=-1), cost=1000, now=NOW)

    decision = asyncio.run(run())
    assert isinstance(decision, RateLimitAllowed)
    assert decision.windows == []
    assert store.counters == {}
    assert rate_limit_headers(decision) == {}


def test_get_status_does_not_consume_quota() -> None:
    async def run():
        limiter = RateLimiter(InMemoryStore())
        plan = _plan(per_minute=10, per_day=100)
        await limiter.check_and_consume(KEY, plan, cost=4, now=NOW)
        await limiter.get_status(KEY, plan, now=NOW)
        return await limiter.get_status(KEY, plan, now=NOW)

    statuses = asyncio.run(run())
    assert [(status.window, status.limit, status.remaining) for status in statuses] == [
        ("minute", 10, 6),
        ("day", 100, 96),
    ]


def test_rate_limit_headers_use_tightest_window() -> None:
    async def run():
        limiter = RateLimiter(InMemoryStore())
        plan = _plan(per_minute=3, per_day=100)
        allowed = await limiter.check_and_consume(KEY, plan, cost=2, now=NOW)
        denied = await limiter.check_and_consume(KEY, plan, cost=2, now=NOW)
        return allowed, denied

    allowed, denied = asyncio.run(run())
    headers = rate_limit_headers(allowed)
    assert headers["X-RateLimit-Limit"] == "3"
    assert headers["X-RateLimit-Remaining"] == "1"
    assert headers["X-RateLimit-Reset"] == str(int(datetime(2026, 1, 15, 12, 1, tzinfo=timezone.utc).timestamp()))
    assert "Retry-After" not in headers

    denied_headers = rate_limit_headers(denied)
    assert denied_headers["X-RateLimit-Remaining"] == "0"
    assert denied_headers["Retry-After"] == "55"


def test_window_boundaries_roll_over_months_and_years() -> None:
    december = datetime(2025, 12, 31, 23, 59, 59, tzinfo=timezone.utc)
    start = window_start("month", december)
    assert start == datetime(2025, 12, 1, tzinfo=timezone.utc)
    assert window_reset("month", start) == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert window_reset("day", window_start("day", december)) == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_cleanup_old_counters_keeps_current_month() -> None:
    store = InMemoryStore()
    store.counters[("key-1", "day", datetime(2025, 12, 20, tzinfo=timezone.utc))] = 4
    store.counters[("key-1", "day", datetime(2026, 1, 2, tzinfo=timezone.utc))] = 4
    store.counters[("key-1", "month", datetime(2026, 1, 1, tzinfo=timezone.utc))] = 8

    deleted = asyncio.run(RateLimiter(store).cleanup_old_counters(now=NOW))

    assert deleted == 1
    assert set(store.counters) == {
        ("key-1", "day", datetime(2026, 1, 2, tzinfo=timezone.utc)),
        ("key-1", "month", datetime(2026, 1, 1, tzinfo=timezone.utc)),
    }
