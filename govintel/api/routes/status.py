from fastapi import APIRouter, Depends, HTTPException, status

from govintel.schemas.status import SystemStatusOut
from govintel.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


@router.get("", response_model=SystemStatusOut)
async def get_system_status(repository=Depends(get_repository)) -> SystemStatusOut:
    try:
        snapshot = await repository.get_system_status()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return SystemStatusOut(**snapshot)
