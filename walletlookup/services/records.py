from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from walletlookup.schemas.jobs import JobOptions

TERMINAL_JOB_STATUSES = frozenset({"completed", "failed"})


@dataclass(slots=True)
class JobRecord:
    id: str
    wallets: list[str]
    options: JobOptions
    status: str = "pending"
    original_data: dict[str, dict[str, Any]] = field(default_factory=dict)
    processed_count: int = 0
    current_stage: str | None = None
    twitter_found: int = 0
    farcaster_found: int = 0
    any_social_found: int = 0
    cache_hits: int = 0
    partial_results: list[dict[str, Any]] = field(default_factory=list)
    error_message: str | None = None
    user_id: str | None = None
    attempt: int = 0
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def total(self) -> int:
        return len(self.wallets)


@dataclass(slots=True)
class CacheEntry:
    wallet: str
    ens_name: str | None = None
    twitter_handle: str | None = None
    twitter_url: str | None = None
    twitter_verified: bool = False
    farcaster: str | None = None
    farcaster_url: str | None = None
    fc_followers: int | None = None
    fc_fid: int | None = None
    farcaster_verified: bool = False
    lens: str | None = None
    github: str | None = None
    sources: list[str] = field(default_factory=list)
    data_quality_score: int = 0
    first_seen_at: datetime | None = None
    last_verification_at: datetime | None = None
    last_updated_at: datetime | None = None
    stale_at: datetime | None = None
    lookup_count: int = 0
    last_attempt_at: datetime | None = None
    last_attempt_failed: bool = False


@dataclass(slots=True)
class ChunkProgress:
    """Values written by one committed chunk.

    Counters are the job's new running totals; ``partial_results`` holds only
    the rows produced by this chunk and is appended to the stored list.
    """

    processed_count: int
    twitter_found: int
    farcaster_found: int
    any_social_found: int
    cache_hits: int
    partial_results: list[dict[str, Any]]


@dataclass(slots=True)
class ApiPlanRecord:
    id: str
    requests_per_minute: int
    requests_per_day: int
    requests_per_month: int
    max_batch_size: int = 100


@dataclass(slots=True)
class ApiKeyRecord:
    id: str
    plan: str
    user_id: str | None = None
    rate_limit: int | None = None
    daily_limit: int | None = None
    monthly_limit: int | None = None

    @property
    def owner_id(self) -> str:
        """User that jobs created with this key belong to; unowned keys own their jobs themselves."""
        return self.user_id or self.id


@dataclass(slots=True)
class ProviderMetric:
    provider: str
    latency_ms: int
    status_code: int
    wallet_count: int
    batch_count: int = 0
    error_count: int = 0
    error_message: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class HistoryEntry:
    name: str | None
    user_id: str | None
    job_id: str
    wallet_count: int
    twitter_found: int
    farcaster_found: int
    results: list[dict[str, Any]]


@dataclass(slots=True)
class CacheChange:
    """One field of a cached identity that changed value during a merge."""

    wallet: str
    field: str
    old_value: str | None
    new_value: str | None
    change_source: str | None = None
    changed_at: datetime | None = None
