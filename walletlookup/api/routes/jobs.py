from fastapi import APIRouter, Depends, HTTPException, Response, status

from walletlookup.api.deps import get_engine, get_rate_limiter
from walletlookup.core.auth import Caller
from walletlookup.core.errors import InvalidInputError, NotFoundError, RateLimitedError
from walletlookup.core.security import get_api_key_caller, get_job_caller
from walletlookup.jobs.engine import JobEngine
from walletlookup.schemas.jobs import (
    CreateJobRequest,
    JobCreated,
    JobProgress,
    JobStats,
    JobStatusOut,
    RateLimitWindowOut,
    UsageOut,
)
from walletlookup.services.rate_limiter import RateLimitAllowed, RateLimiter, rate_limit_headers
from walletlookup.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("", response_model=JobCreated, status_code=status.HTTP_202_ACCEPTED)
async def create_job(
    payload: CreateJobRequest,
    response: Response,
    caller: Caller = Depends(get_job_caller),
    engine: JobEngine = Depends(get_engine),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> JobCreated:
    try:
        job_id = await engine.create_job(
            payload.wallets,
            payload.original_data,
            payload.options,
            user_id=payload.user_id,
            api_key=caller.api_key,
            plan=caller.plan,
        )
        job = await engine.get_job(job_id)
    except InvalidInputError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RateLimitedError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=str(exc),
            headers={"Retry-After": str(exc.retry_after)},
        ) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if caller.is_metered:
        windows = await rate_limiter.get_status(caller.api_key, caller.plan)
        response.headers.update(rate_limit_headers(RateLimitAllowed(windows=windows)))

    return JobCreated(job_id=job.id, status=job.status, wallet_count=job.total)


@router.get("/usage", response_model=UsageOut)
async def get_usage(
    caller: Caller = Depends(get_api_key_caller),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> UsageOut:
    windows = await rate_limiter.get_status(caller.api_key, caller.plan)
    return UsageOut(
        api_key_id=caller.subject,
        plan=caller.plan.id,
        windows=[
            RateLimitWindowOut(
                window=window.window,
                limit=window.limit,
                remaining=window.remaining,
                reset_at=window.reset_at,
            )
            for window in windows
        ],
    )


@router.get("/{job_id}", response_model=JobStatusOut)
async def get_job_status(
    job_id: str,
    caller: Caller = Depends(get_job_caller),
    engine: JobEngine = Depends(get_engine),
) -> JobStatusOut:
    try:
        job = await engine.get_job(job_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found") from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    # Same answer as a missing job, so other users' job ids cannot be enumerated.
    if caller.api_key is not None and job.user_id != caller.api_key.owner_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")

    return JobStatusOut(
        id=job.id,
        status=job.status,
        progress=JobProgress(processed=job.processed_count, total=job.total, stage=job.current_stage),
        stats=JobStats(
            twitter_found=job.twitter_found,
            farcaster_found=job.farcaster_found,
            any_social_found=job.any_social_found,
            cache_hits=job.cache_hits,
        ),
        # Partial results stay available after a failure.
        results=job.partial_results if job.status in {"completed", "failed"} else None,
        error=job.error_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )
