from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from walletlookup.jobs.lease_reaper import can_claim, lease_expired
from walletlookup.schemas.jobs import JobOptions
from walletlookup.services.identity import build_failed_attempt, diff_cache_entries, merge_cache_entry
from walletlookup.services.records import (
    ApiKeyRecord,
    ApiPlanRecord,
    CacheChange,
    CacheEntry,
    ChunkProgress,
    HistoryEntry,
    JobRecord,
    ProviderMetric,
)
from walletlookup.services.repository import RepositoryConflictError, RepositoryNotFoundError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Process-local store with the same contract as ``PostgresRepository``.

    Used by tests and by local development when no database is configured.
    A single lock serializes mutations so conditional updates behave like
    the row-level checks in the SQL implementation. Records are copied on the
    way in and out so callers never hold live references.
    """

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self.clock = clock
        self.jobs: dict[str, JobRecord] = {}
        self.cache: dict[str, CacheEntry] = {}
        self.cache_history: list[CacheChange] = []
        self.counters: dict[tuple[str, str, datetime], int] = {}
        self.api_keys: dict[str, tuple[ApiKeyRecord, ApiPlanRecord]] = {}
        self.history: list[HistoryEntry] = []
        self.provider_metrics: list[ProviderMetric] = []
        self._lock = asyncio.Lock()

    async def close(self) -> None:
        return None

    async def create_job(
        self,
        *,
        wallets: list[str],
        original_data: dict[str, dict[str, Any]],
        options: JobOptions,
        user_id: str | None = None,
    ) -> JobRecord:
        now = self.clock()
        job = JobRecord(
            id=str(uuid4()),
            wallets=list(wallets),
            options=options.model_copy(),
            original_data=copy.deepcopy(original_data),
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        async with self._lock:
            self.jobs[job.id] = job
        return _copy_job(job)

    async def get_job(self, job_id: str) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return _copy_job(job)

    async def claim_jobs(self, worker_id: str, limit: int, lease_seconds: int) -> list[JobRecord]:
        bounded_limit = max(1, min(limit, 100))
        async with self._lock:
            now = self.clock()
            candidates = sorted(
                (job for job in self.jobs.values() if can_claim(job, now)),
                key=lambda job: job.created_at or now,
            )
            return [self._lease(job, worker_id, lease_seconds, now) for job in candidates[:bounded_limit]]

    async def claim_job(self, job_id: str, worker_id: str, lease_seconds: int) -> JobRecord:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise RepositoryNotFoundError("job not found")
            now = self.clock()
            if not (can_claim(job, now) or (job.status == "processing" and job.lease_owner == worker_id)):
                raise RepositoryConflictError("job is not claimable")
            return self._lease(job, worker_id, lease_seconds, now)

    async def update_job_stage(self, job_id: str, worker_id: str, stage: str) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != "processing" or job.lease_owner != worker_id:
                return False
            job.current_stage = stage
            job.updated_at = self.clock()
            return True

    async def save_chunk_progress(
        self,
        job_id: str,
        worker_id: str,
        *,
        expected_processed_count: int,
        progress: ChunkProgress,
        release_lease: bool = True,
    ) -> JobRecord:
        async with self._lock:
            job = self._check_progress(job_id, worker_id, expected_processed_count, progress)
            self._apply_progress(job, progress, release_lease=release_lease)
            return _copy_job(job)

    async def complete_job(
        self,
        job_id: str,
        worker_id: str,
        *,
        expected_processed_count: int,
        progress: ChunkProgress,
        history: HistoryEntry | None = None,
    ) -> JobRecord:
        async with self._lock:
            job = self._check_progress(job_id, worker_id, expected_processed_count, progress)
            self._apply_progress(job, progress, release_lease=True)
            job.status = "completed"
            job.current_stage = "completed"
            job.completed_at = job.updated_at
            if history is not None:
                self.history.append(copy.deepcopy(history))
            return _copy_job(job)

    async def fail_job(self, job_id: str, error_message: str) -> JobRecord | None:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or job.is_terminal:
                return None
            job.status = "failed"
            job.error_message = error_message[:2000]
            job.lease_owner = None
            job.lease_expires_at = None
            job.updated_at = self.clock()
            return _copy_job(job)

    async def release_expired_leases(self, limit: int) -> int:
        bounded_limit = max(1, min(limit, 1000))
        released = 0
        async with self._lock:
            now = self.clock()
            expired = sorted(
                (
                    job
                    for job in self.jobs.values()
                    if job.status == "processing" and lease_expired(job, now=now)
                ),
                key=lambda job: job.lease_expires_at or now,
            )
            for job in expired[:bounded_limit]:
                job.lease_owner = None
                job.lease_expires_at = None
                job.updated_at = now
                released += 1
        return released

    async def get_cache_entries(self, wallets: list[str]) -> dict[str, CacheEntry]:
        return {wallet: replace(self.cache[wallet]) for wallet in wallets if wallet in self.cache}

    async def merge_cache_entries(self, entries: list[CacheEntry]) -> None:
        async with self._lock:
            for entry in entries:
                existing = self.cache.get(entry.wallet)
                merged = merge_cache_entry(existing, entry)
                self.cache_history.extend(diff_cache_entries(existing, merged, entry))
                self.cache[entry.wallet] = merged

    async def list_cache_changes(self, wallet: str, limit: int = 100) -> list[CacheChange]:
        changes = [change for change in self.cache_history if change.wallet == wallet]
        return [replace(change) for change in changes[: max(1, limit)]]

    async def touch_cache_entries(self, wallets: list[str], *, now: datetime) -> None:
        async with self._lock:
            for wallet in wallets:
                entry = self.cache.get(wallet)
                if entry is None:
                    continue
                entry.lookup_count += 1
                entry.last_updated_at = entry.last_updated_at or now

    async def mark_attempt_failed(self, wallets: list[str], *, now: datetime) -> None:
        await self.merge_cache_entries([build_failed_attempt(wallet, None, now=now) for wallet in wallets])

    async def select_stale_wallets(self, *, now: datetime, max_count: int, min_lookup_count: int) -> list[str]:
        stale = [
            entry
            for entry in self.cache.values()
            if entry.stale_at is not None and entry.stale_at < now and entry.lookup_count >= min_lookup_count
        ]
        stale.sort(key=lambda entry: (not entry.last_attempt_failed, entry.stale_at))
        return [entry.wallet for entry in stale[: max(0, max_count)]]

    async def get_api_key(self, key_hash: str) -> tuple[ApiKeyRecord, ApiPlanRecord] | None:
        found = self.api_keys.get(key_hash)
        if found is None:
            return None
        key, plan = found
        return replace(key), replace(plan)

    async def increment_counter(
        self, key_id: str, window: str, window_start: datetime, cost: int, limit: int
    ) -> int | None:
        async with self._lock:
            counter_key = (key_id, window, window_start)
            current = self.counters.get(counter_key, 0)
            if current + cost > limit:
                return None
            self.counters[counter_key] = current + cost
            return current + cost

    async def decrement_counter(self, key_id: str, window: str, window_start: datetime, cost: int) -> None:
        async with self._lock:
            counter_key = (key_id, window, window_start)
            if counter_key in self.counters:
                self.counters[counter_key] = max(0, self.counters[counter_key] - cost)

    async def read_counter(self, key_id: str, window: str, window_start: datetime) -> int:
        return self.counters.get((key_id, window, window_start), 0)

    async def delete_counters_before(self, cutoff: datetime) -> int:
        async with self._lock:
            expired = [counter_key for counter_key in self.counters if counter_key[2] < cutoff]
            for counter_key in expired:
                del self.counters[counter_key]
            return len(expired)

    async def record_history_entry(self, entry: HistoryEntry) -> str:
        async with self._lock:
            self.history.append(copy.deepcopy(entry))
        return str(uuid4())

    async def record_provider_metric(self, metric: ProviderMetric) -> None:
        self.provider_metrics.append(replace(metric))

    @staticmethod
    def _lease(job: JobRecord, worker_id: str, lease_seconds: int, now: datetime) -> JobRecord:
        job.status = "processing"
        job.lease_owner = worker_id
        job.lease_expires_at = now + timedelta(seconds=lease_seconds)
        job.attempt += 1
        job.started_at = job.started_at or now
        job.updated_at = now
        return _copy_job(job)

    def _check_progress(
        self,
        job_id: str,
        worker_id: str,
        expected_processed_count: int,
        progress: ChunkProgress,
    ) -> JobRecord:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        if (
            job.status != "processing"
            or job.lease_owner != worker_id
            or job.processed_count != expected_processed_count
            or progress.processed_count > job.total
        ):
            raise RepositoryConflictError("job lease or progress changed")
        return job

    def _apply_progress(self, job: JobRecord, progress: ChunkProgress, *, release_lease: bool) -> None:
        job.processed_count = progress.processed_count
        job.twitter_found = progress.twitter_found
        job.farcaster_found = progress.farcaster_found
        job.any_social_found = progress.any_social_found
        job.cache_hits = progress.cache_hits
        job.partial_results.extend(copy.deepcopy(progress.partial_results))
        job.updated_at = self.clock()
        if release_lease:
            job.lease_owner = None
            job.lease_expires_at = None


def _copy_job(job: JobRecord) -> JobRecord:
    return replace(
        job,
        wallets=list(job.wallets),
        options=job.options.model_copy(),
        original_data=copy.deepcopy(job.original_data),
        partial_results=copy.deepcopy(job.partial_results),
    )
