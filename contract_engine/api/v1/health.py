from fastapi import APIRouter, Request

from contract_engine.core.config import get_settings

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    rid = getattr(request.state, "request_id", None)
    settings = get_settings()
    return {
        "status": "ok",
        "request_id": rid,
        "environment": settings.environment,
        "sweeper": "enabled" if settings.sweeper_enabled else "disabled",
    }
