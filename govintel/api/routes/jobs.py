from fastapi import APIRouter, Depends, HTTPException, Query, status

from govintel.core.config import get_settings
from govintel.schemas.jobs import JobCancelRequest, JobDetailOut, JobEventOut, JobOut, JobTriggerRequest
from govintel.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)
from govintel.services.runtime_config import load_runtime_config

router = APIRouter()


@router.get("", response_model=list[JobOut])
async def list_jobs(
    repository=Depends(get_repository),
    job_status: str | None = Query(default=None, alias="status"),
    source: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[JobOut]:
    try:
        rows = await repository.list_jobs(status=job_status, source=source, limit=limit, offset=offset)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [JobOut(**row) for row in rows]


@router.post("", response_model=JobOut, status_code=status.HTTP_201_CREATED)
async def trigger_job(
    payload: JobTriggerRequest,
    repository=Depends(get_repository),
    settings=Depends(get_settings),
) -> JobOut:
    try:
        config = await load_runtime_config(repository, settings)
        row = await repository.enqueue_job(
            source=payload.source,
            run_type=payload.run_type,
            priority=payload.priority,
            triggered_by="manual",
            parameters=payload.parameters,
            max_attempts=config.max_attempts,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobOut(**row)


@router.get("/{job_id}", response_model=JobDetailOut)
async def get_job(job_id: str, repository=Depends(get_repository)) -> JobDetailOut:
    try:
        row = await repository.get_job(job_id)
        events = await repository.list_job_events(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobDetailOut(**row, events=[JobEventOut(**event) for event in events])


@router.post("/{job_id}/cancel", response_model=JobOut)
async def cancel_job(
    job_id: str,
    payload: JobCancelRequest | None = None,
    repository=Depends(get_repository),
) -> JobOut:
    try:
        row = await repository.cancel_job(job_id, actor=payload.actor if payload else None)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobOut(**row)
