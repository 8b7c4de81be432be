import hashlib
import hmac

from fastapi import Depends, Header, HTTPException, status

from walletlookup.core.auth import Caller, CallerType
from walletlookup.core.config import Settings, get_settings
from walletlookup.services.repository import RepositoryUnavailableError, get_repository


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


async def require_cron_secret(
    settings: Settings = Depends(get_settings),
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> Caller:
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="worker triggers are not configured",
        )

    token = _bearer_token(authorization)
    if token is None or not hmac.compare_digest(token, settings.cron_secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid cron secret")

    return Caller(caller_type=CallerType.SYSTEM, subject="cron")


async def get_api_key_caller(
    repository=Depends(get_repository),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Caller:
    if not x_api_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-API-Key header is required")

    try:
        found = await repository.get_api_key(hash_api_key(x_api_key))
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if found is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid API key")

    key, plan = found
    return Caller(caller_type=CallerType.API_KEY, subject=key.id, api_key=key, plan=plan)


async def get_job_caller(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    authorization: str | None = Header(default=None, alias="Authorization"),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> Caller:
    """API-key callers are metered; the cron secret identifies unmetered system callers."""
    if x_api_key:
        return await get_api_key_caller(repository=repository, x_api_key=x_api_key)
    if authorization:
        return await require_cron_secret(settings=settings, authorization=authorization)
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="job requests require X-API-Key or a bearer cron secret",
    )


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", maxsplit=1)[1].strip()
    return token or None
