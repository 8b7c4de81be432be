from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobStatus = Literal["pending", "processing", "completed", "failed"]
InputSource = Literal["file_upload", "text_input", "contract_import", "api"]


class JobOptions(BaseModel):
    include_ens: bool = False
    save_to_history: bool = False
    history_name: str | None = None
    can_use_neynar: bool = True
    can_use_ens: bool = False
    tier: str = "free"
    input_source: InputSource | None = None


class CreateJobRequest(BaseModel):
    wallets: list[str]
    original_data: dict[str, dict[str, Any]] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)
    user_id: str | None = None


class JobCreated(BaseModel):
    job_id: str
    status: JobStatus = "pending"
    wallet_count: int


class JobProgress(BaseModel):
    processed: int
    total: int
    stage: str | None = None


class JobStats(BaseModel):
    twitter_found: int
    farcaster_found: int
    any_social_found: int
    cache_hits: int


class JobStatusOut(BaseModel):
    id: str
    status: JobStatus
    progress: JobProgress
    stats: JobStats
    results: list[dict[str, Any]] | None = None
    error: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class ChunkResultOut(BaseModel):
    job_id: str
    completed: bool
    processed_count: int
    twitter_found: int
    farcaster_found: int
    any_social_found: int
    cache_hits: int
    error: str | None = None


class WorkerTickOut(BaseModel):
    claimed: int
    results: list[ChunkResultOut]


class RefreshOut(BaseModel):
    job_id: str | None = None
    wallet_count: int


class RateLimitWindowOut(BaseModel):
    window: str
    limit: int
    remaining: int
    reset_at: datetime


class UsageOut(BaseModel):
    api_key_id: str
    plan: str
    windows: list[RateLimitWindowOut]
