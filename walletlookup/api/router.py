from fastapi import APIRouter

from walletlookup.api.routes import health, jobs, worker

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(worker.router, prefix="/worker", tags=["worker"])
