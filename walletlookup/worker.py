from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

import httpx
from opentelemetry import trace

from walletlookup.core.config import Settings, get_settings
from walletlookup.core.errors import ConflictError, NotFoundError
from walletlookup.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from walletlookup.jobs.engine import JobEngine, ProcessResult
from walletlookup.jobs.refresh import RefreshSelector
from walletlookup.schemas.jobs import JobOptions
from walletlookup.services.aggregator import ProviderAggregator, build_aggregator
from walletlookup.services.rate_limiter import RateLimiter
from walletlookup.services.repository import get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_engine(
    settings: Settings,
    store: Any,
    *,
    client: httpx.AsyncClient | None = None,
    worker_id: str | None = None,
) -> JobEngine:
    def aggregator_factory(options: JobOptions) -> ProviderAggregator:
        return build_aggregator(settings, options, metrics_sink=store.record_provider_metric, client=client)

    return JobEngine.from_settings(settings, store, aggregator_factory, worker_id=worker_id)


def build_refresh_selector(settings: Settings, store: Any, engine: JobEngine) -> RefreshSelector:
    return RefreshSelector(
        store,
        engine,
        max_count=settings.refresh_batch_size,
        min_lookup_count=settings.refresh_min_lookup_count,
    )


async def run_worker_tick(engine: JobEngine, limit: int) -> list[ProcessResult]:
    """Claim up to ``limit`` jobs and advance each by one chunk, concurrently."""
    with tracer.start_as_current_span("worker.tick") as span:
        jobs = await engine.claim_pending_jobs(limit)
        span.set_attribute("worker.claimed", len(jobs))
        if not jobs:
            return []

        outcomes = await asyncio.gather(*(engine.process_chunk(job.id) for job in jobs), return_exceptions=True)
        results: list[ProcessResult] = []
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, (ConflictError, NotFoundError)):
                logger.warning("skipped lookup job id=%s: %s", job.id, outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
        return results


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, "worker")
    store = get_repository()
    rate_limiter = RateLimiter(store)

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0
    last_refresh_at = 0.0
    last_counter_cleanup_at = 0.0

    try:
        async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
            engine = build_engine(settings, store, client=client)
            refresh = build_refresh_selector(settings, store, engine)
            while True:
                try:
                    with tracer.start_as_current_span("worker.poll_cycle"):
                        now = time.monotonic()
                        if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                            released = await store.release_expired_leases(settings.lease_reaper_batch_size)
                            if released:
                                logger.info("released expired leases: %s", released)
                            last_reap_at = now

                        if now - last_refresh_at >= settings.refresh_interval_seconds:
                            await refresh.run_refresh()
                            last_refresh_at = now

                        if now - last_counter_cleanup_at >= settings.refresh_interval_seconds:
                            await rate_limiter.cleanup_old_counters()
                            last_counter_cleanup_at = now

                        results = await run_worker_tick(engine, settings.parallel_job_limit)
                        backoff = settings.poll_interval_seconds
                        if not results:
                            await asyncio.sleep(settings.poll_interval_seconds)
                except Exception as exc:  # pragma: no cover - bootstrap robustness
                    jitter = random.uniform(0.0, 0.5)
                    sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                    logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                    await asyncio.sleep(sleep_for)
                    backoff = sleep_for
    finally:
        await store.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
