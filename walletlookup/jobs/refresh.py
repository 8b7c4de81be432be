from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from walletlookup.jobs.engine import JobEngine
from walletlookup.schemas.jobs import JobOptions

logger = logging.getLogger(__name__)

REFRESH_BATCH_SIZE = 100
REFRESH_MIN_LOOKUP_COUNT = 5

# System refresh jobs bypass tier gating and never show up in a user's history.
SYSTEM_REFRESH_OPTIONS = JobOptions(
    include_ens=True,
    save_to_history=False,
    can_use_neynar=True,
    can_use_ens=True,
    tier="unlimited",
    input_source="api",
)


@dataclass(slots=True)
class RefreshOutcome:
    wallets: list[str]
    job_id: str | None = None


class RefreshSelector:
    """Picks popular cache entries whose data went stale and queues them for re-validation."""

    def __init__(
        self,
        store: Any,
        engine: JobEngine,
        *,
        max_count: int = REFRESH_BATCH_SIZE,
        min_lookup_count: int = REFRESH_MIN_LOOKUP_COUNT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.max_count = max_count
        self.min_lookup_count = min_lookup_count
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def select_stale(
        self,
        max_count: int | None = None,
        min_lookup_count: int | None = None,
        *,
        now: datetime | None = None,
    ) -> list[str]:
        """Wallets past ``stale_at`` with enough lookups; failed attempts first, then most overdue."""
        return await self.store.select_stale_wallets(
            now=now or self.clock(),
            max_count=self.max_count if max_count is None else max_count,
            min_lookup_count=self.min_lookup_count if min_lookup_count is None else min_lookup_count,
        )

    async def run_refresh(
        self,
        max_count: int | None = None,
        min_lookup_count: int | None = None,
        *,
        now: datetime | None = None,
    ) -> RefreshOutcome:
        wallets = await self.select_stale(max_count, min_lookup_count, now=now)
        if not wallets:
            logger.info("no stale cache entries to refresh")
            return RefreshOutcome(wallets=[])

        job_id = await self.engine.create_job(wallets, {}, SYSTEM_REFRESH_OPTIONS.model_copy())
        logger.info("queued cache refresh job id=%s wallets=%s", job_id, len(wallets))
        return RefreshOutcome(wallets=wallets, job_id=job_id)
