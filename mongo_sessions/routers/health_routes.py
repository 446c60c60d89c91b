from fastapi import APIRouter, Request

from ..settings import settings

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz(request: Request):
    manager = getattr(request.app.state, "session_manager", None)
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "context": manager.context_id if manager is not None else None,
        "sessions_in_memory": len(manager) if manager is not None else 0,
    }


@router.get("/readyz")
async def readyz(request: Request):
    manager = getattr(request.app.state, "session_manager", None)
    return {"ready": manager is not None and manager.running}
