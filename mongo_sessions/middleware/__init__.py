from .session import RequestSessions, SessionMiddleware, get_request_session

__all__ = ["RequestSessions", "SessionMiddleware", "get_request_session"]
