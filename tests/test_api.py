from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone

import pytest
from conftest import FakeProvider, neynar_result, wallet
from fastapi.testclient import TestClient

from walletlookup.api.deps import get_engine
from walletlookup.core.config import Settings, get_settings
from walletlookup.core.security import hash_api_key
from walletlookup.jobs.engine import JobEngine
from walletlookup.main import app
from walletlookup.services.aggregator import ProviderAggregator
from walletlookup.services.rate_limiter import RateLimiter
from walletlookup.services.records import ApiKeyRecord, ApiPlanRecord, CacheEntry
from walletlookup.services.repository import get_repository
from walletlookup.services.store import InMemoryStore

CRON = {"Authorization": "Bearer cron-secret"}
API_KEY = {"X-API-Key": "wl_live_key"}


async def _no_sleep(_: float) -> None:
    return None


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    store.api_keys[hash_api_key("wl_live_key")] = (
        ApiKeyRecord(id="key-1", plan="starter", user_id="user-1"),
        ApiPlanRecord(id="starter", requests_per_minute=3, requests_per_day=-1, requests_per_month=-1, max_batch_size=10),
    )
    return store


@pytest.fixture
def client(store: InMemoryStore) -> TestClient:
    os.environ["WL_CRON_SECRET"] = "cron-secret"
    os.environ["WL_OTEL_ENABLED"] = "false"
    get_settings.cache_clear()

    provider = FakeProvider(results={wallet(1): neynar_result(wallet(1), "alice", twitter="alice_x")})
    engine = JobEngine(
        store,
        lambda options: ProviderAggregator([provider], round_delay_seconds=0, sleep=_no_sleep),
        worker_id="api-worker",
        rate_limiter=RateLimiter(store),
    )
    app.dependency_overrides[get_repository] = lambda: store
    app.dependency_overrides[get_engine] = lambda: engine

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    os.environ.pop("WL_CRON_SECRET", None)
    os.environ.pop("WL_OTEL_ENABLED", None)
    get_settings.cache_clear()


def test_healthz(client: TestClient) -> None:
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "worker_triggers": "enabled"}


def test_job_endpoints_require_credentials(client: TestClient) -> None:
    assert client.post("/jobs", json={"wallets": [wallet(1)]}).status_code == 401
    assert client.post("/jobs", json={"wallets": [wallet(1)]}, headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.post("/jobs", json={"wallets": [wallet(1)]}, headers={"Authorization": "Bearer nope"}).status_code == 401


def test_system_caller_creates_unmetered_job(client: TestClient) -> None:
    response = client.post("/jobs", json={"wallets": [wallet(1), wallet(1), wallet(2)]}, headers=CRON)

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert body["wallet_count"] == 2
    assert "X-RateLimit-Limit" not in response.headers


def test_api_key_caller_is_rate_limited(client: TestClient, store: InMemoryStore) -> None:
    first = client.post("/jobs", json={"wallets": [wallet(1), wallet(2)]}, headers=API_KEY)
    assert first.status_code == 202
    assert first.headers["X-RateLimit-Limit"] == "3"
    assert first.headers["X-RateLimit-Remaining"] == "1"
    job = store.jobs[first.json()["job_id"]]
    assert job.user_id == "user-1"

    second = client.post("/jobs", json={"wallets": [wallet(3), wallet(4)]}, headers=API_KEY)
    assert second.status_code == 429
    assert int(second.headers["Retry-After"]) >= 1
    assert len(store.jobs) == 1


def test_invalid_wallets_are_rejected(client: TestClient) -> None:
    response = client.post("/jobs", json={"wallets": ["0x123", "not-a-wallet"]}, headers=CRON)

    assert response.status_code == 422
    assert "no valid wallet" in response.json()["detail"]


def test_batch_larger_than_plan_allows_is_rejected(client: TestClient) -> None:
    wallets = [wallet(index) for index in range(11)]

    response = client.post("/jobs", json={"wallets": wallets}, headers=API_KEY)

    assert response.status_code == 422


def test_worker_tick_processes_jobs_and_status_reports_results(client: TestClient) -> None:
    assert client.post("/worker/tick").status_code == 401
    job_id = client.post("/jobs", json={"wallets": [wallet(1), wallet(2)]}, headers=CRON).json()["job_id"]

    pending = client.get(f"/jobs/{job_id}", headers=CRON).json()
    assert pending["status"] == "pending"
    assert pending["results"] is None

    tick = client.post("/worker/tick", headers=CRON)
    assert tick.status_code == 200
    assert tick.json()["claimed"] == 1
    assert tick.json()["results"][0]["completed"] is True

    status = client.get(f"/jobs/{job_id}", headers=CRON).json()
    assert status["status"] == "completed"
    assert status["progress"] == {"processed": 2, "total": 2, "stage": "completed"}
    assert status["stats"]["twitter_found"] == 1
    assert status["stats"]["farcaster_found"] == 1
    assert [row["wallet"] for row in status["results"]] == [wallet(1), wallet(2)]
    assert status["results"][0]["twitter_handle"] == "alice_x"


def test_unknown_job_is_404(client: TestClient) -> None:
    assert client.get("/jobs/does-not-exist", headers=CRON).status_code == 404


def test_refresh_queues_stale_popular_wallets(client: TestClient, store: InMemoryStore) -> None:
    stale_at = datetime.now(timezone.utc) - timedelta(days=1)
    store.cache[wallet(9)] = CacheEntry(wallet=wallet(9), stale_at=stale_at, lookup_count=5)
    store.cache[wallet(8)] = CacheEntry(wallet=wallet(8), stale_at=stale_at, lookup_count=1)

    response = client.post("/worker/refresh", headers=CRON)

    assert response.status_code == 200
    body = response.json()
    assert body["wallet_count"] == 1
    assert store.jobs[body["job_id"]].wallets == [wallet(9)]

    lowered = client.post("/worker/refresh", params={"min_lookup_count": 0}, headers=CRON).json()
    assert lowered["wallet_count"] == 2


def test_usage_reports_remaining_quota(client: TestClient) -> None:
    client.post("/jobs", json={"wallets": [wallet(1)]}, headers=API_KEY)

    response = client.get("/jobs/usage", headers=API_KEY)

    assert response.status_code == 200
    body = response.json()
    assert body["api_key_id"] == "key-1"
    assert body["plan"] == "starter"
    assert [(item["window"], item["limit"], item["remaining"]) for item in body["windows"]] == [("minute", 3, 2)]
    assert client.get("/jobs/usage", headers=CRON).status_code == 401


def test_worker_triggers_are_unavailable_without_cron_secret(client: TestClient) -> None:
    app.dependency_overrides[get_settings] = lambda: Settings(cron_secret=None, otel_enabled=False)

    assert client.post("/worker/tick", headers=CRON).status_code == 503


def test_api_key_caller_only_sees_own_jobs(client: TestClient, store: InMemoryStore) -> None:
    store.api_keys[hash_api_key("wl_other_key")] = (
        ApiKeyRecord(id="key-2", plan="starter", user_id="user-2"),
        ApiPlanRecord(id="starter", requests_per_minute=-1, requests_per_day=-1, requests_per_month=-1),
    )
    own = client.post("/jobs", json={"wallets": [wallet(1)], "user_id": "user-2"}, headers=API_KEY).json()["job_id"]
    system = client.post("/jobs", json={"wallets": [wallet(2)], "user_id": "user-1"}, headers=CRON).json()["job_id"]
    unowned = client.post("/jobs", json={"wallets": [wallet(3)]}, headers=CRON).json()["job_id"]

    assert store.jobs[own].user_id == "user-1"
    assert client.get(f"/jobs/{own}", headers=API_KEY).status_code == 200
    assert client.get(f"/jobs/{system}", headers=API_KEY).status_code == 200
    assert client.get(f"/jobs/{own}", headers={"X-API-Key": "wl_other_key"}).status_code == 404
    assert client.get(f"/jobs/{unowned}", headers=API_KEY).status_code == 404
    assert client.get(f"/jobs/{own}", headers=CRON).status_code == 200
