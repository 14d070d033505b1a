from fastapi import APIRouter

from govintel.api.routes import health, jobs, schedules, status

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(status.router, prefix="/status", tags=["status"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(schedules.router, prefix="/schedules", tags=["schedules"])
