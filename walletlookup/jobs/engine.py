"""Lookup job lifecycle: creation, claiming and chunked execution.

A job moves ``pending -> processing -> completed`` one chunk per call to
``process_chunk``; ``failed`` is reached only on persistence faults. Both
terminal states are final. Each chunk is committed with a compare-and-swap on
the worker's lease and the previous ``processed_count``, so progress never
moves backwards and a worker that lost its lease cannot commit.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace

from walletlookup.core.config import Settings
from walletlookup.core.errors import ConflictError, InvalidInputError, NotFoundError, RateLimitedError
from walletlookup.core.telemetry import job_log_context
from walletlookup.core.wallets import (
    calculate_priority_score,
    dedupe_wallets,
    find_holdings_column,
    parse_holdings_value,
    wallet_side_data,
)
from walletlookup.schemas.jobs import JobOptions
from walletlookup.services.aggregator import ProgressEvent, ProviderAggregator
from walletlookup.services.identity import (
    IdentityRecord,
    build_cache_update,
    build_failed_attempt,
    entry_to_identity,
    is_fresh,
    merge_cache_entry,
)
from walletlookup.services.rate_limiter import RateLimitDenied, RateLimiter
from walletlookup.services.records import (
    ApiKeyRecord,
    ApiPlanRecord,
    CacheEntry,
    ChunkProgress,
    HistoryEntry,
    JobRecord,
)
from walletlookup.services.repository import (
    PERSISTENCE_ERRORS,
    RepositoryConflictError,
    RepositoryNotFoundError,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CHUNK_SIZE = 3000

AggregatorFactory = Callable[[JobOptions], ProviderAggregator]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ProcessResult:
    job_id: str
    completed: bool
    processed_count: int
    twitter_found: int
    farcaster_found: int
    any_social_found: int
    cache_hits: int
    error: str | None = None

    @classmethod
    def from_job(cls, job: JobRecord, *, error: str | None = None) -> ProcessResult:
        return cls(
            job_id=job.id,
            completed=job.is_terminal,
            processed_count=job.processed_count,
            twitter_found=job.twitter_found,
            farcaster_found=job.farcaster_found,
            any_social_found=job.any_social_found,
            cache_hits=job.cache_hits,
            error=error if error is not None else job.error_message,
        )


def plan_chunk_size(chunk_size: int, execution_budget_seconds: float, seconds_per_wallet_estimate: float) -> int:
    """Largest chunk that fits the per-invocation execution budget."""
    size = max(1, chunk_size)
    if seconds_per_wallet_estimate > 0:
        size = min(size, int(execution_budget_seconds / seconds_per_wallet_estimate))
    return max(1, size)


class JobEngine:
    def __init__(
        self,
        store: Any,
        aggregator_factory: AggregatorFactory,
        *,
        worker_id: str,
        rate_limiter: RateLimiter | None = None,
        chunk_size: int = CHUNK_SIZE,
        lease_seconds: int = 360,
        stale_after_days: int = 30,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.aggregator_factory = aggregator_factory
        self.worker_id = worker_id
        self.rate_limiter = rate_limiter
        self.chunk_size = max(1, chunk_size)
        self.lease_seconds = max(1, lease_seconds)
        self.stale_after_days = stale_after_days
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Any,
        aggregator_factory: AggregatorFactory,
        *,
        worker_id: str | None = None,
    ) -> JobEngine:
        return cls(
            store,
            aggregator_factory,
            worker_id=worker_id or settings.worker_id,
            rate_limiter=RateLimiter(store),
            chunk_size=plan_chunk_size(
                settings.chunk_size,
                settings.execution_budget_seconds,
                settings.seconds_per_wallet_estimate,
            ),
            lease_seconds=settings.claim_lease_seconds,
            stale_after_days=settings.stale_after_days,
        )

    async def create_job(
        self,
        wallets: list[Any],
        original_data: dict[str, Any] | None = None,
        options: JobOptions | None = None,
        *,
        user_id: str | None = None,
        api_key: ApiKeyRecord | None = None,
        plan: ApiPlanRecord | None = None,
    ) -> str:
        normalized = dedupe_wallets(wallets)
        if not normalized:
            raise InvalidInputError("no valid wallet addresses provided")

        if api_key is not None and plan is not None:
            if plan.max_batch_size > 0 and len(normalized) > plan.max_batch_size:
                raise InvalidInputError(f"plan {plan.id} allows at most {plan.max_batch_size} wallets per job")
            if self.rate_limiter is None:
                raise InvalidInputError("rate limiting is not configured for API key requests")
            decision = await self.rate_limiter.check_and_consume(api_key, plan, cost=len(normalized))
            if isinstance(decision, RateLimitDenied):
                raise RateLimitedError(
                    f"rate limit exceeded for {decision.window} window",
                    retry_after=decision.retry_after,
                    window=decision.window,
                )
            # Metered jobs always belong to the key owner.
            user_id = api_key.owner_id

        side_data = {wallet: wallet_side_data(_lowercase_keys(original_data or {}), wallet) for wallet in normalized}
        job = await self.store.create_job(
            wallets=normalized,
            original_data={wallet: data for wallet, data in side_data.items() if data},
            options=options or JobOptions(),
            user_id=user_id,
        )
        logger.info("created lookup job id=%s wallets=%s user=%s", job.id, len(normalized), user_id)
        return job.id

    async def get_job(self, job_id: str) -> JobRecord:
        try:
            return await self.store.get_job(job_id)
        except RepositoryNotFoundError as exc:
            raise NotFoundError(f"job {job_id} not found") from exc

    async def claim_pending_jobs(self, limit: int) -> list[JobRecord]:
        jobs = await self.store.claim_jobs(self.worker_id, limit, self.lease_seconds)
        if jobs:
            logger.info("claimed lookup jobs worker=%s count=%s", self.worker_id, len(jobs))
        return jobs

    async def process_chunk(self, job_id: str) -> ProcessResult:
        with job_log_context(job_id), tracer.start_as_current_span("jobs.process_chunk") as span:
            span.set_attribute("job.id", job_id)
            job = await self.get_job(job_id)
            if job.is_terminal:
                return ProcessResult.from_job(job)

            job = await self._hold_lease(job)
            try:
                result = await self._run_chunk(job)
            except RepositoryConflictError as exc:
                raise ConflictError(f"job {job_id} was taken over by another worker") from exc
            except PERSISTENCE_ERRORS as exc:
                logger.exception("lookup job failed id=%s", job_id)
                span.record_exception(exc)
                return await self._fail(job, str(exc) or exc.__class__.__name__)

            span.set_attribute("job.processed_count", result.processed_count)
            span.set_attribute("job.completed", result.completed)
            return result

    async def _hold_lease(self, job: JobRecord) -> JobRecord:
        now = self.clock()
        if job.lease_owner == self.worker_id and job.lease_expires_at is not None and job.lease_expires_at > now:
            return job
        try:
            return await self.store.claim_job(job.id, self.worker_id, self.lease_seconds)
        except RepositoryNotFoundError as exc:
            raise NotFoundError(f"job {job.id} not found") from exc
        except RepositoryConflictError as exc:
            raise ConflictError(f"job {job.id} is held by another worker") from exc

    async def _run_chunk(self, job: JobRecord) -> ProcessResult:
        start = job.processed_count
        chunk = job.wallets[start : start + self.chunk_size]
        now = self.clock()

        await self.store.update_job_stage(job.id, self.worker_id, "cache")
        cached = await self.store.get_cache_entries(chunk)
        hits = {wallet: entry for wallet, entry in cached.items() if is_fresh(entry, now)}
        if hits:
            await self.store.touch_cache_entries(list(hits), now=now)

        identities: dict[str, IdentityRecord] = {}
        for wallet, entry in hits.items():
            identity = entry_to_identity(entry)
            identity.sources = [*identity.sources, "cache"]
            identities[wallet] = identity

        misses = [wallet for wallet in chunk if wallet not in hits]
        if misses:
            identities.update(await self._resolve_misses(job, misses, cached, now))

        rows = self._result_rows(job, chunk, identities, hits)
        twitter = sum(1 for row in rows if row.get("twitter_handle"))
        farcaster = sum(1 for row in rows if row.get("farcaster"))
        any_social = sum(1 for wallet in chunk if wallet in identities and identities[wallet].has_any_social())
        progress = ChunkProgress(
            processed_count=start + len(chunk),
            twitter_found=job.twitter_found + twitter,
            farcaster_found=job.farcaster_found + farcaster,
            any_social_found=job.any_social_found + any_social,
            cache_hits=job.cache_hits + len(hits),
            partial_results=rows,
        )

        if progress.processed_count >= job.total:
            saved = await self.store.complete_job(
                job.id,
                self.worker_id,
                expected_processed_count=start,
                progress=progress,
                history=self._history_entry(job, progress),
            )
            logger.info(
                "completed lookup job id=%s wallets=%s twitter=%s farcaster=%s cache_hits=%s",
                job.id,
                job.total,
                saved.twitter_found,
                saved.farcaster_found,
                saved.cache_hits,
            )
        else:
            saved = await self.store.save_chunk_progress(
                job.id,
                self.worker_id,
                expected_processed_count=start,
                progress=progress,
            )
            logger.info("advanced lookup job id=%s processed=%s/%s", job.id, saved.processed_count, job.total)
        return ProcessResult.from_job(saved)

    async def _resolve_misses(
        self,
        job: JobRecord,
        misses: list[str],
        cached: dict[str, CacheEntry],
        now: datetime,
    ) -> dict[str, IdentityRecord]:
        aggregator = self.aggregator_factory(job.options)
        queue: asyncio.Queue[ProgressEvent | None] = asyncio.Queue()
        consumer = asyncio.create_task(self._consume_progress(job.id, queue))
        try:
            result = await aggregator.resolve(misses, progress=queue, job_id=job.id)  # type: ignore[arg-type]
        finally:
            queue.put_nowait(None)
            await consumer

        updates: list[CacheEntry] = []
        failed_without_data: list[str] = []
        for wallet in misses:
            identity = result.identities.get(wallet)
            if wallet in result.failed_wallets:
                if identity is None:
                    failed_without_data.append(wallet)
                else:
                    updates.append(build_failed_attempt(wallet, identity, now=now))
                continue
            updates.append(
                build_cache_update(
                    wallet,
                    identity or IdentityRecord(),
                    now=now,
                    stale_after_days=self.stale_after_days,
                )
            )

        await self.store.merge_cache_entries(updates)
        await self.store.mark_attempt_failed(failed_without_data, now=now)
        if result.error_count:
            logger.warning(
                "provider batches failed job=%s errors=%s unresolved=%s",
                job.id,
                result.error_count,
                len(result.failed_wallets),
            )

        # Rows report what the cache now holds, including fields kept from earlier lookups.
        resolved: dict[str, IdentityRecord] = {}
        for update in updates:
            merged = entry_to_identity(merge_cache_entry(cached.get(update.wallet), update))
            if merged.has_any_social():
                resolved[update.wallet] = merged
        for wallet in failed_without_data:
            entry = cached.get(wallet)
            if entry is not None and entry_to_identity(entry).has_any_social():
                resolved[wallet] = entry_to_identity(entry)
        return resolved

    async def _consume_progress(self, job_id: str, queue: asyncio.Queue[ProgressEvent | None]) -> None:
        while True:
            event = await queue.get()
            if event is None:
                return
            stage = f"{event.provider} {event.processed}/{event.total}"
            try:
                await self.store.update_job_stage(job_id, self.worker_id, stage)
            except PERSISTENCE_ERRORS:
                logger.warning("failed to update job stage id=%s stage=%s", job_id, stage, exc_info=True)

    def _result_rows(
        self,
        job: JobRecord,
        chunk: list[str],
        identities: dict[str, IdentityRecord],
        hits: dict[str, CacheEntry],
    ) -> list[dict[str, Any]]:
        holdings_column = _job_holdings_column(job)
        rows: list[dict[str, Any]] = []
        for wallet in chunk:
            side_data = wallet_side_data(job.original_data, wallet)
            identity = identities.get(wallet) or IdentityRecord()
            holdings = parse_holdings_value(side_data.get(holdings_column)) if holdings_column else None
            row: dict[str, Any] = {**side_data, "wallet": wallet, **identity.as_result_fields()}
            row["source"] = list(identity.sources)
            row["cached"] = wallet in hits
            row["holdings"] = holdings
            row["priority_score"] = calculate_priority_score(holdings, identity.fc_followers)
            rows.append(row)
        return rows

    def _history_entry(self, job: JobRecord, progress: ChunkProgress) -> HistoryEntry | None:
        if not job.options.save_to_history:
            return None
        return HistoryEntry(
            name=job.options.history_name,
            user_id=job.user_id,
            job_id=job.id,
            wallet_count=job.total,
            twitter_found=progress.twitter_found,
            farcaster_found=progress.farcaster_found,
            results=[*job.partial_results, *progress.partial_results],
        )

    async def _fail(self, job: JobRecord, message: str) -> ProcessResult:
        try:
            failed = await self.store.fail_job(job.id, message)
        except PERSISTENCE_ERRORS:
            # Store is unreachable; the lease expires and the job is claimable again.
            logger.exception("could not mark lookup job failed id=%s", job.id)
            return ProcessResult.from_job(job, error=message)
        if failed is None:
            return ProcessResult.from_job(await self.get_job(job.id))
        return ProcessResult.from_job(failed, error=message)


def _job_holdings_column(job: JobRecord) -> str | None:
    for wallet in job.wallets:
        side_data = job.original_data.get(wallet)
        if side_data:
            return find_holdings_column(side_data.keys())
    return None


def _lowercase_keys(original_data: dict[str, Any]) -> dict[str, Any]:
    return {str(key).strip().lower(): value for key, value in original_data.items()}
