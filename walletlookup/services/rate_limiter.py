from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Protocol, Union

from walletlookup.services.records import ApiKeyRecord, ApiPlanRecord

logger = logging.getLogger(__name__)

WINDOWS = ("minute", "day", "month")
UNLIMITED = -1
COUNTER_RETENTION_DAYS = 7


class CounterStore(Protocol):
    async def increment_counter(
        self, key_id: str, window: str, window_start: datetime, cost: int, limit: int
    ) -> int | None: ...

    async def decrement_counter(self, key_id: str, window: str, window_start: datetime, cost: int) -> None: ...

    async def read_counter(self, key_id: str, window: str, window_start: datetime) -> int: ...

    async def delete_counters_before(self, cutoff: datetime) -> int: ...


@dataclass(slots=True)
class WindowStatus:
    window: str
    limit: int
    remaining: int
    reset_at: datetime


@dataclass(slots=True)
class RateLimitAllowed:
    windows: list[WindowStatus] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return True


@dataclass(slots=True)
class RateLimitDenied:
    window: str
    retry_after: int
    windows: list[WindowStatus] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return False


RateLimitDecision = Union[RateLimitAllowed, RateLimitDenied]


def window_start(window: str, now: datetime) -> datetime:
    now = _as_utc(now)
    if window == "minute":
        return now.replace(second=0, microsecond=0)
    if window == "day":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if window == "month":
        return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    raise ValueError(f"unknown rate-limit window: {window}")


def window_reset(window: str, start: datetime) -> datetime:
    if window == "minute":
        return start + timedelta(minutes=1)
    if window == "day":
        return start + timedelta(days=1)
    if window == "month":
        if start.month == 12:
            return start.replace(year=start.year + 1, month=1)
        return start.replace(month=start.month + 1)
    raise ValueError(f"unknown rate-limit window: {window}")


def resolve_limit(window: str, key: ApiKeyRecord, plan: ApiPlanRecord) -> int:
    """Per-key overrides win over the plan; ``-1`` means no ceiling."""
    if window == "minute":
        override, default = key.rate_limit, plan.requests_per_minute
    elif window == "day":
        override, default = key.daily_limit, plan.requests_per_day
    elif window == "month":
        override, default = key.monthly_limit, plan.requests_per_month
    else:
        raise ValueError(f"unknown rate-limit window: {window}")
    return override if override is not None else default


class RateLimiter:
    """Admission control for API keys over minute, day and month windows.

    Every bounded window is consumed with one conditional increment on the
    counter store. When a later window refuses, the windows already consumed
    are rolled back, so a denied request never leaves quota behind.
    """

    def __init__(self, store: CounterStore) -> None:
        self.store = store

    async def check_and_consume(
        self,
        key: ApiKeyRecord,
        plan: ApiPlanRecord,
        cost: int = 1,
        *,
        now: datetime | None = None,
    ) -> RateLimitDecision:
        if cost < 0:
            raise ValueError("cost must not be negative")
        current = _as_utc(now or datetime.now(timezone.utc))
        consumed: list[tuple[str, datetime]] = []
        statuses: list[WindowStatus] = []

        for window in WINDOWS:
            limit = resolve_limit(window, key, plan)
            if limit == UNLIMITED:
                continue
            start = window_start(window, current)
            reset_at = window_reset(window, start)
            count = await self.store.increment_counter(key.id, window, start, cost, limit)
            if count is None:
                await self._rollback(key.id, consumed, cost)
                logger.info("rate limit exceeded key=%s window=%s limit=%s cost=%s", key.id, window, limit, cost)
                return RateLimitDenied(
                    window=window,
                    retry_after=_seconds_until(reset_at, current),
                    windows=[
                        WindowStatus(
                            window=status.window,
                            limit=status.limit,
                            remaining=min(status.limit, status.remaining + cost),
                            reset_at=status.reset_at,
                        )
                        for status in statuses
                    ]
                    + [WindowStatus(window=window, limit=limit, remaining=0, reset_at=reset_at)],
                )
            consumed.append((window, start))
            statuses.append(
                WindowStatus(window=window, limit=limit, remaining=max(0, limit - count), reset_at=reset_at)
            )

        return RateLimitAllowed(windows=statuses)

    async def get_status(
        self,
        key: ApiKeyRecord,
        plan: ApiPlanRecord,
        *,
        now: datetime | None = None,
    ) -> list[WindowStatus]:
        current = _as_utc(now or datetime.now(timezone.utc))
        statuses: list[WindowStatus] = []
        for window in WINDOWS:
            limit = resolve_limit(window, key, plan)
            if limit == UNLIMITED:
                continue
            start = window_start(window, current)
            count = await self.store.read_counter(key.id, window, start)
            statuses.append(
                WindowStatus(
                    window=window,
                    limit=limit,
                    remaining=max(0, limit - count),
                    reset_at=window_reset(window, start),
                )
            )
        return statuses

    async def cleanup_old_counters(
        self,
        older_than_days: int = COUNTER_RETENTION_DAYS,
        *,
        now: datetime | None = None,
    ) -> int:
        current = _as_utc(now or datetime.now(timezone.utc))
        # Month windows must survive until their month is over.
        cutoff = min(current - timedelta(days=older_than_days), window_start("month", current))
        deleted = await self.store.delete_counters_before(cutoff)
        if deleted:
            logger.info("deleted expired rate-limit counters count=%s cutoff=%s", deleted, cutoff.isoformat())
        return deleted

    async def _rollback(self, key_id: str, consumed: list[tuple[str, datetime]], cost: int) -> None:
        for window, start in reversed(consumed):
            await self.store.decrement_counter(key_id, window, start, cost)


def rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    """Response headers describing the tightest bounded window."""
    headers: dict[str, str] = {}
    if decision.windows:
        tightest = min(decision.windows, key=lambda status: status.remaining)
        headers["X-RateLimit-Limit"] = str(tightest.limit)
        headers["X-RateLimit-Remaining"] = str(tightest.remaining)
        headers["X-RateLimit-Reset"] = str(int(tightest.reset_at.timestamp()))
    if isinstance(decision, RateLimitDenied):
        headers["Retry-After"] = str(decision.retry_after)
    return headers


def _seconds_until(reset_at: datetime, now: datetime) -> int:
    return max(1, math.ceil((reset_at - now).total_seconds()))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
