from fastapi import Depends

from walletlookup.core.config import Settings, get_settings
from walletlookup.jobs.engine import JobEngine
from walletlookup.jobs.refresh import RefreshSelector
from walletlookup.services.rate_limiter import RateLimiter
from walletlookup.services.repository import get_repository
from walletlookup.worker import build_engine, build_refresh_selector


def get_engine(settings: Settings = Depends(get_settings), repository=Depends(get_repository)) -> JobEngine:
    return build_engine(settings, repository)


def get_refresh_selector(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    engine: JobEngine = Depends(get_engine),
) -> RefreshSelector:
    return build_refresh_selector(settings, repository, engine)


def get_rate_limiter(repository=Depends(get_repository)) -> RateLimiter:
    return RateLimiter(repository)
