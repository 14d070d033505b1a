from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, status

from govintel.core.config import get_settings
from govintel.jobs.scheduler import run_scheduler_tick
from govintel.schemas.schedules import ScheduleOut, SchedulerTickOut
from govintel.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("", response_model=list[ScheduleOut])
async def list_schedules(repository=Depends(get_repository)) -> list[ScheduleOut]:
    try:
        schedules = await repository.list_schedules()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [ScheduleOut(**asdict(schedule)) for schedule in schedules]


@router.post("/tick", response_model=SchedulerTickOut)
async def tick_scheduler(
    repository=Depends(get_repository),
    settings=Depends(get_settings),
) -> SchedulerTickOut:
    try:
        enqueued = await run_scheduler_tick(repository, settings)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return SchedulerTickOut(count=len(enqueued), job_ids=[job["id"] for job in enqueued])
