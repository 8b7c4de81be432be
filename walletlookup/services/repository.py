from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from walletlookup.core.config import get_settings
from walletlookup.schemas.jobs import JobOptions
from walletlookup.services.identity import diff_cache_entries, merge_cache_entry, merge_sources
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

if TYPE_CHECKING:
    from walletlookup.services.store import InMemoryStore


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


# Driver and socket faults raised mid-query count as persistence failures too.
PERSISTENCE_ERRORS: tuple[type[Exception], ...] = (
    RepositoryError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    OSError,
    TimeoutError,
)


JOB_COLUMNS = """
  id::text as id,
  wallets,
  original_data,
  options,
  status,
  processed_count,
  current_stage,
  twitter_found,
  farcaster_found,
  any_social_found,
  cache_hits,
  partial_results,
  error_message,
  user_id,
  attempt,
  lease_owner,
  lease_expires_at,
  created_at,
  started_at,
  updated_at,
  completed_at
"""

CACHE_COLUMNS = """
  wallet,
  ens_name,
  twitter_handle,
  twitter_url,
  twitter_verified,
  farcaster,
  farcaster_url,
  fc_followers,
  fc_fid,
  farcaster_verified,
  lens,
  github,
  sources,
  data_quality_score,
  first_seen_at,
  last_verification_at,
  last_updated_at,
  stale_at,
  lookup_count,
  last_attempt_at,
  last_attempt_failed
"""

MERGE_CACHE_SQL = """
insert into identity_cache (
  wallet,
  ens_name,
  twitter_handle,
  twitter_url,
  twitter_verified,
  farcaster,
  farcaster_url,
  fc_followers,
  fc_fid,
  farcaster_verified,
  lens,
  github,
  sources,
  data_quality_score,
  first_seen_at,
  last_verification_at,
  last_updated_at,
  stale_at,
  lookup_count,
  last_attempt_at,
  last_attempt_failed
)
values (
  $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13::text[], $14,
  coalesce($15, now()), $16, $17, coalesce($18, $20, now()), greatest($19, 1), $20, $21
)
on conflict (wallet) do update
set
  ens_name = coalesce(excluded.ens_name, identity_cache.ens_name),
  twitter_handle = case
    when identity_cache.twitter_verified and not excluded.twitter_verified then identity_cache.twitter_handle
    else coalesce(excluded.twitter_handle, identity_cache.twitter_handle)
  end,
  twitter_url = case
    when identity_cache.twitter_verified and not excluded.twitter_verified then identity_cache.twitter_url
    else coalesce(excluded.twitter_url, identity_cache.twitter_url)
  end,
  twitter_verified = identity_cache.twitter_verified or excluded.twitter_verified,
  farcaster = case
    when identity_cache.farcaster_verified and not excluded.farcaster_verified then identity_cache.farcaster
    else coalesce(excluded.farcaster, identity_cache.farcaster)
  end,
  farcaster_url = case
    when identity_cache.farcaster_verified and not excluded.farcaster_verified then identity_cache.farcaster_url
    else coalesce(excluded.farcaster_url, identity_cache.farcaster_url)
  end,
  fc_followers = coalesce(excluded.fc_followers, identity_cache.fc_followers),
  fc_fid = coalesce(excluded.fc_fid, identity_cache.fc_fid),
  farcaster_verified = identity_cache.farcaster_verified or excluded.farcaster_verified,
  lens = coalesce(excluded.lens, identity_cache.lens),
  github = coalesce(excluded.github, identity_cache.github),
  sources = array(
    select source
    from unnest(identity_cache.sources || excluded.sources) with ordinality as merged(source, position)
    group by source
    order by min(position)
  ),
  data_quality_score = greatest(identity_cache.data_quality_score, excluded.data_quality_score),
  first_seen_at = coalesce(identity_cache.first_seen_at, excluded.first_seen_at),
  last_verification_at = coalesce(excluded.last_verification_at, identity_cache.last_verification_at),
  last_updated_at = coalesce(excluded.last_updated_at, identity_cache.last_updated_at),
  stale_at = case
    when excluded.last_attempt_failed then identity_cache.stale_at
    else coalesce(excluded.stale_at, identity_cache.stale_at)
  end,
  lookup_count = identity_cache.lookup_count + 1,
  last_attempt_at = coalesce(excluded.last_attempt_at, identity_cache.last_attempt_at),
  last_attempt_failed = excluded.last_attempt_failed
"""

INSERT_CACHE_CHANGE_SQL = """
insert into identity_cache_history (wallet, field_changed, old_value, new_value, change_source, changed_at)
values ($1, $2, $3, $4, $5, coalesce($6, now()))
"""


class PostgresRepository:
    """asyncpg-backed store for lookup jobs, the identity cache and rate-limit counters."""

    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_job(
        self,
        *,
        wallets: list[str],
        original_data: dict[str, dict[str, Any]],
        options: JobOptions,
        user_id: str | None = None,
    ) -> JobRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into lookup_jobs (wallets, original_data, options, status, user_id)
            values ($1::text[], $2::jsonb, $3::jsonb, 'pending', $4)
            returning {JOB_COLUMNS}
            """,
            wallets,
            json.dumps(original_data),
            options.model_dump_json(),
            self._coerce_text(user_id),
        )
        return self._job_row_to_record(row)

    async def get_job(self, job_id: str) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {JOB_COLUMNS} from lookup_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def claim_jobs(self, worker_id: str, limit: int, lease_seconds: int) -> list[JobRecord]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 100))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with claimable as (
                      select id
                      from lookup_jobs
                      where status = 'pending'
                        or (
                          status = 'processing'
                          and (lease_expires_at is null or lease_expires_at <= now())
                        )
                      order by created_at asc
                      limit $2
                      for update skip locked
                    )
                    update lookup_jobs j
                    set
                      status = 'processing',
                      lease_owner = $1,
                      lease_expires_at = now() + ($3::int * interval '1 second'),
                      attempt = j.attempt + 1,
                      started_at = coalesce(j.started_at, now()),
                      updated_at = now()
                    from claimable c
                    where j.id = c.id
                    returning {_prefixed(JOB_COLUMNS, "j")}
                    """,
                    worker_id,
                    bounded_limit,
                    lease_seconds,
                )
        records = [self._job_row_to_record(row) for row in rows]
        records.sort(key=lambda record: record.created_at or datetime.min)
        return records

    async def claim_job(self, job_id: str, worker_id: str, lease_seconds: int) -> JobRecord:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update lookup_jobs
                        set
                          status = 'processing',
                          lease_owner = $2,
                          lease_expires_at = now() + ($3::int * interval '1 second'),
                          attempt = attempt + 1,
                          started_at = coalesce(started_at, now()),
                          updated_at = now()
                        where id = $1::uuid
                          and (
                            status = 'pending'
                            or (
                              status = 'processing'
                              and (
                                lease_owner = $2
                                or lease_expires_at is null
                                or lease_expires_at <= now()
                              )
                            )
                          )
                        returning {JOB_COLUMNS}
                        """,
                        job_id,
                        worker_id,
                        lease_seconds,
                    )
                    if not row:
                        exists = await conn.fetchval("select 1 from lookup_jobs where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("job not found")
                        raise RepositoryConflictError("job is not claimable")
                    return self._job_row_to_record(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def update_job_stage(self, job_id: str, worker_id: str, stage: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            update lookup_jobs
            set current_stage = $3, updated_at = now()
            where id = $1::uuid and status = 'processing' and lease_owner = $2
            """,
            job_id,
            worker_id,
            stage,
        )
        return self._affected_rows(result) > 0

    async def save_chunk_progress(
        self,
        job_id: str,
        worker_id: str,
        *,
        expected_processed_count: int,
        progress: ChunkProgress,
        release_lease: bool = True,
    ) -> JobRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._apply_chunk_progress(
                    conn,
                    job_id,
                    worker_id,
                    expected_processed_count=expected_processed_count,
                    progress=progress,
                    complete=False,
                    release_lease=release_lease,
                )
                return self._job_row_to_record(row)

    async def complete_job(
        self,
        job_id: str,
        worker_id: str,
        *,
        expected_processed_count: int,
        progress: ChunkProgress,
        history: HistoryEntry | None = None,
    ) -> JobRecord:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await self._apply_chunk_progress(
                    conn,
                    job_id,
                    worker_id,
                    expected_processed_count=expected_processed_count,
                    progress=progress,
                    complete=True,
                    release_lease=True,
                )
                if history is not None:
                    await self._insert_history_entry(conn, history)
                return self._job_row_to_record(row)

    async def fail_job(self, job_id: str, error_message: str) -> JobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update lookup_jobs
            set
              status = 'failed',
              error_message = $2,
              lease_owner = null,
              lease_expires_at = null,
              updated_at = now()
            where id = $1::uuid and status in ('pending', 'processing')
            returning {JOB_COLUMNS}
            """,
            job_id,
            error_message[:2000],
        )
        return self._job_row_to_record(row) if row else None

    async def release_expired_leases(self, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from lookup_jobs
                      where status = 'processing'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update lookup_jobs j
                    set lease_owner = null, lease_expires_at = null, updated_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id
                    """,
                    bounded_limit,
                )
                return len(rows)

    async def get_cache_entries(self, wallets: list[str]) -> dict[str, CacheEntry]:
        if not wallets:
            return {}
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"select {CACHE_COLUMNS} from identity_cache where wallet = any($1::text[])",
            wallets,
        )
        return {row["wallet"]: self._cache_row_to_entry(row) for row in rows}

    async def merge_cache_entries(self, entries: list[CacheEntry]) -> None:
        if not entries:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"select {CACHE_COLUMNS} from identity_cache where wallet = any($1::text[]) for update",
                    [entry.wallet for entry in entries],
                )
                current = {row["wallet"]: self._cache_row_to_entry(row) for row in rows}
                changes: list[CacheChange] = []
                for entry in entries:
                    merged = merge_cache_entry(current.get(entry.wallet), entry)
                    changes.extend(diff_cache_entries(current.get(entry.wallet), merged, entry))
                    current[entry.wallet] = merged

                await conn.executemany(MERGE_CACHE_SQL, [self._cache_entry_args(entry) for entry in entries])
                if changes:
                    await conn.executemany(
                        INSERT_CACHE_CHANGE_SQL,
                        [
                            (
                                change.wallet,
                                change.field,
                                change.old_value,
                                change.new_value,
                                change.change_source,
                                change.changed_at,
                            )
                            for change in changes
                        ],
                    )

    async def list_cache_changes(self, wallet: str, limit: int = 100) -> list[CacheChange]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select wallet, field_changed, old_value, new_value, change_source, changed_at
            from identity_cache_history
            where wallet = $1
            order by changed_at asc, id asc
            limit $2
            """,
            wallet,
            max(1, limit),
        )
        return [
            CacheChange(
                wallet=row["wallet"],
                field=row["field_changed"],
                old_value=row["old_value"],
                new_value=row["new_value"],
                change_source=row["change_source"],
                changed_at=row["changed_at"],
            )
            for row in rows
        ]

    async def touch_cache_entries(self, wallets: list[str], *, now: datetime) -> None:
        if not wallets:
            return
        pool = await self._get_pool()
        await pool.execute(
            """
            update identity_cache
            set lookup_count = lookup_count + 1, last_updated_at = coalesce(last_updated_at, $2)
            where wallet = any($1::text[])
            """,
            wallets,
            now,
        )

    async def mark_attempt_failed(self, wallets: list[str], *, now: datetime) -> None:
        if not wallets:
            return
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into identity_cache (wallet, first_seen_at, stale_at, lookup_count, last_attempt_at, last_attempt_failed)
            select wallet, $2, $2, 1, $2, true
            from unnest($1::text[]) as pending(wallet)
            on conflict (wallet) do update
            set
              lookup_count = identity_cache.lookup_count + 1,
              last_attempt_at = excluded.last_attempt_at,
              last_attempt_failed = true
            """,
            wallets,
            now,
        )

    async def select_stale_wallets(self, *, now: datetime, max_count: int, min_lookup_count: int) -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select wallet
            from identity_cache
            where stale_at < $1 and lookup_count >= $2
            order by last_attempt_failed desc, stale_at asc
            limit $3
            """,
            now,
            min_lookup_count,
            max(0, max_count),
        )
        return [row["wallet"] for row in rows]

    async def get_api_key(self, key_hash: str) -> tuple[ApiKeyRecord, ApiPlanRecord] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              k.id::text as id,
              k.user_id,
              k.rate_limit,
              k.daily_limit,
              k.monthly_limit,
              p.id as plan_id,
              p.requests_per_minute,
              p.requests_per_day,
              p.requests_per_month,
              p.max_batch_size
            from api_keys k
            join api_plans p on p.id = k.plan_id
            where k.key_hash = $1
              and k.is_active = true
              and k.revoked_at is null
            """,
            key_hash,
        )
        if not row:
            return None
        key = ApiKeyRecord(
            id=row["id"],
            plan=row["plan_id"],
            user_id=self._coerce_text(row["user_id"]),
            rate_limit=self._coerce_int(row["rate_limit"]),
            daily_limit=self._coerce_int(row["daily_limit"]),
            monthly_limit=self._coerce_int(row["monthly_limit"]),
        )
        plan = ApiPlanRecord(
            id=row["plan_id"],
            requests_per_minute=int(row["requests_per_minute"]),
            requests_per_day=int(row["requests_per_day"]),
            requests_per_month=int(row["requests_per_month"]),
            max_batch_size=int(row["max_batch_size"]),
        )
        return key, plan

    async def increment_counter(
        self, key_id: str, window: str, window_start: datetime, cost: int, limit: int
    ) -> int | None:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            insert into rate_limit_counters (api_key_id, window_kind, window_start, count)
            select $1, $2, $3, $4
            where $4 <= $5
            on conflict (api_key_id, window_kind, window_start) do update
            set count = rate_limit_counters.count + excluded.count, updated_at = now()
            where rate_limit_counters.count + excluded.count <= $5
            returning count
            """,
            key_id,
            window,
            window_start,
            cost,
            limit,
        )
        return self._coerce_int(value)

    async def decrement_counter(self, key_id: str, window: str, window_start: datetime, cost: int) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update rate_limit_counters
            set count = greatest(0, count - $4), updated_at = now()
            where api_key_id = $1 and window_kind = $2 and window_start = $3
            """,
            key_id,
            window,
            window_start,
            cost,
        )

    async def read_counter(self, key_id: str, window: str, window_start: datetime) -> int:
        pool = await self._get_pool()
        value = await pool.fetchval(
            """
            select count
            from rate_limit_counters
            where api_key_id = $1 and window_kind = $2 and window_start = $3
            """,
            key_id,
            window,
            window_start,
        )
        return self._coerce_int(value) or 0

    async def delete_counters_before(self, cutoff: datetime) -> int:
        pool = await self._get_pool()
        result = await pool.execute("delete from rate_limit_counters where window_start < $1", cutoff)
        return self._affected_rows(result)

    async def record_history_entry(self, entry: HistoryEntry) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await self._insert_history_entry(conn, entry)

    async def record_provider_metric(self, metric: ProviderMetric) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into provider_metrics (
              provider,
              latency_ms,
              status_code,
              wallet_count,
              batch_count,
              error_count,
              error_message,
              job_id
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8::uuid)
            """,
            metric.provider,
            metric.latency_ms,
            metric.status_code,
            metric.wallet_count,
            metric.batch_count,
            metric.error_count,
            metric.error_message,
            metric.job_id,
        )

    async def _apply_chunk_progress(
        self,
        conn: asyncpg.Connection,
        job_id: str,
        worker_id: str,
        *,
        expected_processed_count: int,
        progress: ChunkProgress,
        complete: bool,
        release_lease: bool,
    ) -> asyncpg.Record:
        row = await conn.fetchrow(
            f"""
            update lookup_jobs
            set
              processed_count = $4,
              twitter_found = $5,
              farcaster_found = $6,
              any_social_found = $7,
              cache_hits = $8,
              partial_results = partial_results || $9::jsonb,
              status = case when $10 then 'completed' else status end,
              current_stage = case when $10 then 'completed' else current_stage end,
              completed_at = case when $10 then now() else completed_at end,
              lease_owner = case when $11 then null else lease_owner end,
              lease_expires_at = case when $11 then null else lease_expires_at end,
              updated_at = now()
            where id = $1::uuid
              and status = 'processing'
              and lease_owner = $2
              and processed_count = $3
              and $4 <= cardinality(wallets)
            returning {JOB_COLUMNS}
            """,
            job_id,
            worker_id,
            expected_processed_count,
            progress.processed_count,
            progress.twitter_found,
            progress.farcaster_found,
            progress.any_social_found,
            progress.cache_hits,
            json.dumps(progress.partial_results),
            complete,
            release_lease,
        )
        if not row:
            exists = await conn.fetchval("select 1 from lookup_jobs where id = $1::uuid", job_id)
            if not exists:
                raise RepositoryNotFoundError("job not found")
            raise RepositoryConflictError("job lease or progress changed")
        return row

    async def _insert_history_entry(self, conn: asyncpg.Connection, entry: HistoryEntry) -> str:
        return await conn.fetchval(
            """
            insert into lookup_history (
              name,
              user_id,
              job_id,
              wallet_count,
              twitter_found,
              farcaster_found,
              results
            )
            values ($1, $2, $3::uuid, $4, $5, $6, $7::jsonb)
            returning id::text
            """,
            entry.name,
            entry.user_id,
            entry.job_id,
            entry.wallet_count,
            entry.twitter_found,
            entry.farcaster_found,
            json.dumps(entry.results),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("WL_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _job_row_to_record(self, row: asyncpg.Record) -> JobRecord:
        options = self._coerce_json_dict(row["options"])
        return JobRecord(
            id=row["id"],
            wallets=self._coerce_text_list(list(row["wallets"] or [])),
            options=JobOptions.model_validate(options),
            status=row["status"],
            original_data=self._coerce_json_dict(row["original_data"]),
            processed_count=int(row["processed_count"]),
            current_stage=self._coerce_text(row["current_stage"]),
            twitter_found=int(row["twitter_found"]),
            farcaster_found=int(row["farcaster_found"]),
            any_social_found=int(row["any_social_found"]),
            cache_hits=int(row["cache_hits"]),
            partial_results=self._coerce_json_list(row["partial_results"]),
            error_message=self._coerce_text(row["error_message"]),
            user_id=self._coerce_text(row["user_id"]),
            attempt=int(row["attempt"]),
            lease_owner=self._coerce_text(row["lease_owner"]),
            lease_expires_at=row["lease_expires_at"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    def _cache_row_to_entry(self, row: asyncpg.Record) -> CacheEntry:
        return CacheEntry(
            wallet=row["wallet"],
            ens_name=row["ens_name"],
            twitter_handle=row["twitter_handle"],
            twitter_url=row["twitter_url"],
            twitter_verified=bool(row["twitter_verified"]),
            farcaster=row["farcaster"],
            farcaster_url=row["farcaster_url"],
            fc_followers=self._coerce_int(row["fc_followers"]),
            fc_fid=self._coerce_int(row["fc_fid"]),
            farcaster_verified=bool(row["farcaster_verified"]),
            lens=row["lens"],
            github=row["github"],
            sources=self._coerce_text_list(list(row["sources"] or [])),
            data_quality_score=int(row["data_quality_score"] or 0),
            first_seen_at=row["first_seen_at"],
            last_verification_at=row["last_verification_at"],
            last_updated_at=row["last_updated_at"],
            stale_at=row["stale_at"],
            lookup_count=int(row["lookup_count"] or 0),
            last_attempt_at=row["last_attempt_at"],
            last_attempt_failed=bool(row["last_attempt_failed"]),
        )

    @staticmethod
    def _cache_entry_args(entry: CacheEntry) -> tuple[Any, ...]:
        values = asdict(entry)
        return (
            values["wallet"],
            values["ens_name"],
            values["twitter_handle"],
            values["twitter_url"],
            values["twitter_verified"],
            values["farcaster"],
            values["farcaster_url"],
            values["fc_followers"],
            values["fc_fid"],
            values["farcaster_verified"],
            values["lens"],
            values["github"],
            merge_sources(values["sources"]),
            values["data_quality_score"],
            values["first_seen_at"],
            values["last_verification_at"],
            values["last_updated_at"],
            values["stale_at"],
            values["lookup_count"],
            values["last_attempt_at"],
            values["last_attempt_failed"],
        )

    @staticmethod
    def _affected_rows(result: str) -> int:
        # asyncpg returns the command tag, e.g. "UPDATE 3" or "DELETE 0".
        try:
            return int(result.split()[-1])
        except (AttributeError, IndexError, ValueError):
            return 0

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)

    @staticmethod
    def _coerce_text_list(value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        items: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            stripped = item.strip()
            if stripped:
                items.append(stripped)
        return items

    @staticmethod
    def _coerce_int(value: Any) -> int | None:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_list(value: Any) -> list[dict[str, Any]]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}


def _prefixed(columns: str, alias: str) -> str:
    lines = [line.strip() for line in columns.strip().splitlines()]
    return ",\n".join(f"{alias}.{line.rstrip(',')}" for line in lines)


@lru_cache
def get_repository() -> PostgresRepository | InMemoryStore:
    settings = get_settings()
    if not settings.database_url:
        # Local development without Postgres keeps everything in-process.
        from walletlookup.services.store import InMemoryStore

        return InMemoryStore()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
