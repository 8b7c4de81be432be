from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

import pytest

from walletlookup.core.errors import ProviderError
from walletlookup.services.providers.base import NeynarResult, ProviderResult
from walletlookup.services.store import InMemoryStore


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class FakeProvider:
    """Answers from a fixed wallet -> result table and records every batch it sees."""

    def __init__(
        self,
        name: str = "neynar",
        *,
        max_batch_size: int = 200,
        results: dict[str, ProviderResult] | None = None,
        fail_batches: Iterable[int] = (),
        fail_all: bool = False,
    ) -> None:
        self.name = name
        self.max_batch_size = max_batch_size
        self.results = results or {}
        self.fail_batches = set(fail_batches)
        self.fail_all = fail_all
        self.calls: list[list[str]] = []

    async def resolve_batch(self, addresses: list[str]) -> dict[str, ProviderResult]:
        index = len(self.calls)
        self.calls.append(list(addresses))
        if self.fail_all or index in self.fail_batches:
            raise ProviderError(self.name, "upstream error 502", status_code=502)
        return {address: self.results[address] for address in addresses if address in self.results}


def wallet(index: int) -> str:
    return f"0x{index:040x}"


def neynar_result(address: str, username: str, *, followers: int = 10, twitter: str | None = None) -> NeynarResult:
    return NeynarResult(wallet=address, username=username, fid=1, follower_count=followers, verified_twitter=twitter)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 1, 15, 12, 0, 5, tzinfo=timezone.utc))


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(clock=clock)
