# mongo_sessions/middleware/session.py
from __future__ import annotations

import logging
from typing import List, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ..manager import SessionManager
from ..session import Session

log = logging.getLogger(__name__)


class RequestSessions:
    """The session(s) one request touches, resolved from the session cookie."""

    def __init__(self, manager: SessionManager, requested_node_id: Optional[str]):
        self.manager = manager
        self.requested_id = (
            manager.id_manager.get_cluster_id(requested_node_id) if requested_node_id else None
        )
        self.session: Optional[Session] = None
        self.created = False
        self.resolved = False
        self._held: List[Session] = []

    async def resolve(self) -> Optional[Session]:
        """Look up and access the requested session, once per request."""
        if self.resolved:
            return self.session
        self.resolved = True
        if self.requested_id:
            session = await self.manager.acquire(self.requested_id)
            if session is not None:
                self._held.append(session)
                self.session = session
        return self.session

    async def get(self, create: bool = False) -> Optional[Session]:
        session = await self.resolve()
        if session is not None and session.is_valid:
            return session
        if not create:
            return None
        session = await self.manager.new_session(self.requested_id)
        self._held.append(session)
        self.session = session
        self.created = True
        return session

    async def complete(self) -> None:
        held, self._held = self._held, []
        for session in held:
            try:
                await self.manager.complete(session)
            except Exception:
                log.exception("completing session id=%s failed", session.cluster_id)


class SessionMiddleware(BaseHTTPMiddleware):
    """
    Binds each request to at most one session of a SessionManager.

    The manager is taken from ``app.state.session_manager`` unless given, so
    it can be built in a startup hook.
    """

    def __init__(
        self,
        app,
        manager: Optional[SessionManager] = None,
        cookie_name: str = "SESSIONID",
        cookie_path: str = "/",
        secure: bool = False,
        same_site: str = "lax",
    ):
        super().__init__(app)
        self.manager = manager
        self.cookie_name = cookie_name
        self.cookie_path = cookie_path
        self.secure = secure
        self.same_site = same_site

    async def dispatch(self, request: Request, call_next):
        manager = self.manager if self.manager is not None else request.app.state.session_manager
        sessions = RequestSessions(manager, request.cookies.get(self.cookie_name))
        request.state.sessions = sessions
        try:
            await sessions.resolve()
            response = await call_next(request)
        finally:
            await sessions.complete()

        session = sessions.session
        if session is not None and session.is_valid:
            if sessions.created:
                response.set_cookie(
                    self.cookie_name,
                    manager.id_manager.get_node_id(session.cluster_id),
                    path=self.cookie_path,
                    secure=self.secure,
                    httponly=True,
                    samesite=self.same_site,
                )
        elif sessions.requested_id:
            response.delete_cookie(self.cookie_name, path=self.cookie_path)
        return response


async def get_request_session(request: Request, create: bool = False) -> Optional[Session]:
    return await request.state.sessions.get(create=create)


__all__ = ["RequestSessions", "SessionMiddleware", "get_request_session"]
