from fastapi import APIRouter, Depends, HTTPException, Query, status

from walletlookup.api.deps import get_engine, get_refresh_selector
from walletlookup.core.auth import Caller
from walletlookup.core.config import Settings, get_settings
from walletlookup.core.security import require_cron_secret
from walletlookup.jobs.engine import JobEngine
from walletlookup.jobs.refresh import RefreshSelector
from walletlookup.schemas.jobs import ChunkResultOut, RefreshOut, WorkerTickOut
from walletlookup.services.repository import RepositoryUnavailableError
from walletlookup.worker import run_worker_tick

router = APIRouter()


@router.post("/tick", response_model=WorkerTickOut)
async def worker_tick(
    _: Caller = Depends(require_cron_secret),
    settings: Settings = Depends(get_settings),
    engine: JobEngine = Depends(get_engine),
) -> WorkerTickOut:
    try:
        results = await run_worker_tick(engine, settings.parallel_job_limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return WorkerTickOut(
        claimed=len(results),
        results=[
            ChunkResultOut(
                job_id=result.job_id,
                completed=result.completed,
                processed_count=result.processed_count,
                twitter_found=result.twitter_found,
                farcaster_found=result.farcaster_found,
                any_social_found=result.any_social_found,
                cache_hits=result.cache_hits,
                error=result.error,
            )
            for result in results
        ],
    )


@router.post("/refresh", response_model=RefreshOut)
async def refresh_stale(
    _: Caller = Depends(require_cron_secret),
    selector: RefreshSelector = Depends(get_refresh_selector),
    limit: int | None = Query(default=None, ge=1, le=1000),
    min_lookup_count: int | None = Query(default=None, ge=0),
) -> RefreshOut:
    try:
        outcome = await selector.run_refresh(limit, min_lookup_count)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RefreshOut(job_id=outcome.job_id, wallet_count=len(outcome.wallets))
