import os
import socket
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def default_worker_id() -> str:
    """Lease owner id unique to this host and process."""
    return f"{socket.gethostname()}-{os.getpid()}"


class Settings(BaseSettings):
    app_name: str = "walletlookup-api"
    environment: str = "dev"
    cron_secret: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    worker_id: str = Field(default_factory=default_worker_id)
    neynar_api_key: str | None = None
    web3bio_api_key: str | None = None
    ens_gateway_url: str = "https://api.ensdata.net"
    provider_timeout_seconds: float = 15.0
    concurrent_batches: int = 5
    round_delay_seconds: float = 0.2
    chunk_size: int = 3000
    execution_budget_seconds: float = 300.0
    seconds_per_wallet_estimate: float = 0.05
    parallel_job_limit: int = 3
    claim_lease_seconds: int = 360
    stale_after_days: int = 30
    refresh_batch_size: int = 100
    refresh_min_lookup_count: int = 5
    poll_interval_seconds: float = 60.0
    max_backoff_seconds: float = 300.0
    lease_reaper_interval_seconds: float = 60.0
    lease_reaper_batch_size: int = 100
    refresh_interval_seconds: float = 86400.0
    otel_enabled: bool = True
    otel_service_name: str = "walletlookup"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="WL_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
