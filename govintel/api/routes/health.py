from fastapi import APIRouter

from govintel.core.config import get_settings

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    settings = get_settings()
    return {"service": settings.app_name, "environment": settings.environment}


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}
