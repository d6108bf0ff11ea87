from fastapi import APIRouter

from remote_optimizer.api.routes import health, remote_jobs

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(remote_jobs.router, tags=["remote-optimize"])
