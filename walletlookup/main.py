"""HTTP entrypoint: job submission, status polling and cron-triggered worker runs."""

from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from walletlookup.api.router import api_router
from walletlookup.core.config import get_settings
from walletlookup.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from walletlookup.services.repository import get_repository

logger = logging.getLogger(__name__)


def _caller_kind(request: Request) -> str:
    if "x-api-key" in request.headers:
        return "api_key"
    if "authorization" in request.headers:
        return "bearer"
    return "anonymous"


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings, "api")

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        try:
            yield
        finally:
            shutdown_telemetry(telemetry_runtime)
            # The Postgres store holds an asyncpg pool bound to this event loop.
            await get_repository().close()
            get_repository.cache_clear()

    application = FastAPI(title=settings.app_name, lifespan=lifespan)

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        started_at = time.perf_counter()
        response = await call_next(request)
        logger.info(
            "http request method=%s path=%s status=%s caller=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            _caller_kind(request),
            (time.perf_counter() - started_at) * 1000.0,
        )
        return response

    application.include_router(api_router)
    return application


app = create_app()
