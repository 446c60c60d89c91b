# mongo_sessions/routers/session_routes.py
from typing import Any, Dict

from fastapi import APIRouter, Body, HTTPException, Request

from ..errors import EncodingError, InvalidSessionError
from ..middleware.session import get_request_session
from ..session import Session

router = APIRouter(prefix="/session", tags=["session"])


def _dump(session: Session, created: bool) -> Dict[str, Any]:
    return {
        "id": session.cluster_id,
        "new": created,
        "version": session.version,
        "created": session.created,
        "accessed": session.accessed,
        "attributes": {name: session.get_attribute(name) for name in session.names},
    }


@router.get("")
async def dump_session(request: Request, create: bool = False):
    session = await get_request_session(request, create=create)
    if session is None:
        raise HTTPException(404, detail="No session")
    return _dump(session, request.state.sessions.created)


@router.put("/attributes/{name}")
async def set_attribute(name: str, request: Request, value: Any = Body(...)):
    session = await get_request_session(request, create=True)
    try:
        await session.set_attribute(name, value)
    except (EncodingError, ValueError) as e:
        raise HTTPException(422, detail=str(e))
    except InvalidSessionError:
        raise HTTPException(409, detail="Session invalidated")
    return _dump(session, request.state.sessions.created)


@router.delete("/attributes/{name}")
async def remove_attribute(name: str, request: Request):
    session = await get_request_session(request)
    if session is None:
        raise HTTPException(404, detail="No session")
    try:
        await session.remove_attribute(name)
    except InvalidSessionError:
        raise HTTPException(409, detail="Session invalidated")
    return _dump(session, request.state.sessions.created)


@router.delete("", status_code=204)
async def invalidate_session(request: Request):
    session = await get_request_session(request)
    if session is None:
        raise HTTPException(404, detail="No session")
    await session.invalidate()
    return None
