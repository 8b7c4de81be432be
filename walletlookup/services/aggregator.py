from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx
from opentelemetry import trace

from walletlookup.core.config import Settings
from walletlookup.core.errors import ProviderError
from walletlookup.schemas.jobs import JobOptions
from walletlookup.services.identity import IdentityRecord, merge_identities
from walletlookup.services.providers.base import IdentityProvider, ProviderResult
from walletlookup.services.providers.ens import ENSProvider
from walletlookup.services.providers.neynar import NeynarProvider
from walletlookup.services.providers.web3bio import Web3BioProvider
from walletlookup.services.records import ProviderMetric

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

CONCURRENT_BATCHES = 5
ROUND_DELAY_SECONDS = 0.2

MetricsSink = Callable[[ProviderMetric], Awaitable[None]]


@dataclass(slots=True)
class ProgressEvent:
    provider: str
    processed: int
    found: int
    total: int


@dataclass(slots=True)
class ProviderOutcome:
    provider: str
    results: dict[str, ProviderResult] = field(default_factory=dict)
    failed_wallets: set[str] = field(default_factory=set)
    batch_count: int = 0
    error_count: int = 0
    last_error: ProviderError | None = None


@dataclass(slots=True)
class AggregationResult:
    identities: dict[str, IdentityRecord]
    failed_wallets: set[str]
    batch_count: int
    error_count: int
    outcomes: list[ProviderOutcome]


def split_batches(wallets: list[str], batch_size: int) -> list[list[str]]:
    size = max(1, batch_size)
    return [wallets[index : index + size] for index in range(0, len(wallets), size)]


class ProviderAggregator:
    """Fans a wallet set out to identity providers in bounded rounds and merges the answers.

    Providers run side by side; within a provider, batches are dispatched in
    rounds of ``concurrent_batches`` separated by ``round_delay_seconds``. A
    failing batch is counted and skipped, never retried in the same call, so
    every batch is issued exactly once. Results are merged in the order the
    providers were given, which is their priority order.
    """

    def __init__(
        self,
        providers: list[IdentityProvider],
        *,
        concurrent_batches: int = CONCURRENT_BATCHES,
        round_delay_seconds: float = ROUND_DELAY_SECONDS,
        metrics_sink: MetricsSink | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.providers = providers
        self.concurrent_batches = max(1, concurrent_batches)
        self.round_delay_seconds = max(0.0, round_delay_seconds)
        self._metrics_sink = metrics_sink
        self._sleep = sleep

    async def resolve(
        self,
        wallets: list[str],
        *,
        progress: asyncio.Queue[ProgressEvent] | None = None,
        job_id: str | None = None,
    ) -> AggregationResult:
        if not wallets or not self.providers:
            return AggregationResult(identities={}, failed_wallets=set(), batch_count=0, error_count=0, outcomes=[])

        outcomes = list(
            await asyncio.gather(
                *(self._run_provider(provider, wallets, progress=progress, job_id=job_id) for provider in self.providers)
            )
        )

        identities: dict[str, IdentityRecord] = {}
        for wallet in wallets:
            records = [outcome.results[wallet].to_identity() for outcome in outcomes if wallet in outcome.results]
            if records:
                identities[wallet] = merge_identities(records)

        failed: set[str] = set()
        for outcome in outcomes:
            failed |= outcome.failed_wallets

        return AggregationResult(
            identities=identities,
            failed_wallets=failed,
            batch_count=sum(outcome.batch_count for outcome in outcomes),
            error_count=sum(outcome.error_count for outcome in outcomes),
            outcomes=outcomes,
        )

    async def _run_provider(
        self,
        provider: IdentityProvider,
        wallets: list[str],
        *,
        progress: asyncio.Queue[ProgressEvent] | None,
        job_id: str | None,
    ) -> ProviderOutcome:
        outcome = ProviderOutcome(provider=provider.name)
        batches = split_batches(wallets, provider.max_batch_size)
        started_at = time.perf_counter()
        processed = 0

        with tracer.start_as_current_span("aggregator.provider") as span:
            span.set_attribute("provider.name", provider.name)
            span.set_attribute("provider.wallet_count", len(wallets))

            for round_start in range(0, len(batches), self.concurrent_batches):
                round_batches = batches[round_start : round_start + self.concurrent_batches]
                round_results = await asyncio.gather(
                    *(self._run_batch(provider, batch) for batch in round_batches),
                    return_exceptions=True,
                )

                for batch, result in zip(round_batches, round_results):
                    outcome.batch_count += 1
                    processed += len(batch)
                    if isinstance(result, ProviderError):
                        outcome.error_count += 1
                        outcome.last_error = result
                        outcome.failed_wallets.update(batch)
                        logger.warning(
                            "provider batch failed provider=%s size=%s status=%s error=%s",
                            provider.name,
                            len(batch),
                            result.status_code,
                            result,
                        )
                        continue
                    if isinstance(result, BaseException):
                        raise result
                    outcome.results.update(result)

                if progress is not None:
                    progress.put_nowait(
                        ProgressEvent(
                            provider=provider.name,
                            processed=processed,
                            found=len(outcome.results),
                            total=len(wallets),
                        )
                    )

                if round_start + self.concurrent_batches < len(batches):
                    await self._sleep(self.round_delay_seconds)

            span.set_attribute("provider.batch_count", outcome.batch_count)
            span.set_attribute("provider.error_count", outcome.error_count)

        await self._record_metric(
            ProviderMetric(
                provider=provider.name,
                latency_ms=int((time.perf_counter() - started_at) * 1000),
                status_code=_metric_status(outcome),
                wallet_count=len(wallets),
                batch_count=outcome.batch_count,
                error_count=outcome.error_count,
                error_message=str(outcome.last_error) if outcome.last_error else None,
                job_id=job_id,
            )
        )
        return outcome

    async def _run_batch(self, provider: IdentityProvider, batch: list[str]) -> dict[str, ProviderResult]:
        results = await provider.resolve_batch(batch)
        # Providers may echo extra keys; only the requested wallets count.
        return {wallet: results[wallet] for wallet in batch if wallet in results}

    async def _record_metric(self, metric: ProviderMetric) -> None:
        if self._metrics_sink is None:
            return
        try:
            await self._metrics_sink(metric)
        except Exception:  # metrics are observational only
            logger.warning("failed to record provider metric provider=%s", metric.provider, exc_info=True)


def _metric_status(outcome: ProviderOutcome) -> int:
    if outcome.error_count == 0:
        return 200
    if outcome.last_error is not None and outcome.last_error.status_code is not None:
        return outcome.last_error.status_code
    return 500


def build_providers(
    settings: Settings,
    options: JobOptions,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[IdentityProvider]:
    """Providers enabled for a job, in merge priority order."""
    timeout = settings.provider_timeout_seconds
    providers: list[IdentityProvider] = []
    if options.include_ens and options.can_use_ens:
        providers.append(ENSProvider(gateway_url=settings.ens_gateway_url, client=client, timeout_seconds=timeout))
    if settings.neynar_api_key and options.can_use_neynar:
        providers.append(NeynarProvider(settings.neynar_api_key, client=client, timeout_seconds=timeout))
    providers.append(Web3BioProvider(settings.web3bio_api_key, client=client, timeout_seconds=timeout))
    return providers


def build_aggregator(
    settings: Settings,
    options: JobOptions,
    *,
    metrics_sink: MetricsSink | None = None,
    client: httpx.AsyncClient | None = None,
) -> ProviderAggregator:
    return ProviderAggregator(
        build_providers(settings, options, client=client),
        concurrent_batches=settings.concurrent_batches,
        round_delay_seconds=settings.round_delay_seconds,
        metrics_sink=metrics_sink,
    )
