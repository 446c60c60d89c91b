# mongo_sessions/main.py
from __future__ import annotations

from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import ORJSONResponse

from .db.mongodb import MotorDocumentStore, close_db, get_collection
from .db.store import DocumentStore
from .id_manager import SessionIdManager
from .logger import get_logger, setup_logging
from .manager import SessionManager
from .middleware.session import SessionMiddleware
from .purger import SessionPurger
from .routers import health_router, session_router
from .settings import settings

setup_logging()
log = get_logger()


def build_components(store: DocumentStore):
    """Id manager, context session manager and (optional) purger configured from settings."""
    id_manager = SessionIdManager(
        store,
        worker_name=settings.WORKER_NAME,
        scavenge_delay=settings.SCAVENGE_DELAY,
        scavenge_period=settings.SCAVENGE_PERIOD,
    )
    manager = SessionManager(
        id_manager,
        context_path=settings.CONTEXT_PATH,
        virtual_hosts=settings.VIRTUAL_HOSTS,
        save_policy=settings.SAVE_POLICY,
        refresh_policy=settings.REFRESH_POLICY,
        stale_period=settings.STALE_PERIOD,
        save_all_attributes=settings.SAVE_ALL_ATTRIBUTES,
        max_inactive_interval=settings.MAX_INACTIVE_INTERVAL,
        idle_period=settings.IDLE_PERIOD,
        invalidate_on_stop=settings.INVALIDATE_ON_STOP,
        preserve_on_stop=settings.PRESERVE_ON_STOP,
    )
    purger = None
    if settings.PURGE_ENABLED:
        purger = SessionPurger(
            store,
            purge_delay=settings.PURGE_DELAY,
            purge_period=settings.PURGE_PERIOD,
            minimal_purge_age=settings.MINIMAL_PURGE_AGE,
        )
    return id_manager, manager, purger


def create_app(manager: Optional[SessionManager] = None) -> FastAPI:
    """
    Build the app. With ``manager`` given (tests, embedding) the caller owns
    its lifecycle; otherwise everything is wired to MongoDB on startup.
    """
    app = FastAPI(
        title="Session Service",
        version="0.1.0",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(
        SessionMiddleware,
        manager=manager,
        cookie_name=settings.COOKIE_NAME,
        cookie_path=settings.CONTEXT_PATH or "/",
    )
    app.state.session_manager = manager
    app.state.owned = ()

    @app.on_event("startup")
    async def startup():
        if app.state.session_manager is not None:
            return
        log.info("startup begin mongo_uri=%s mongo_db=%s collection=%s",
                 settings.MONGO_URI, settings.MONGO_DB, settings.COLLECTION)
        store = MotorDocumentStore(await get_collection())
        id_manager, session_manager, purger = build_components(store)

        await id_manager.start()
        await session_manager.start()
        if purger is not None:
            await purger.start()

        app.state.session_manager = session_manager
        app.state.owned = tuple(
            c for c in (purger, session_manager, id_manager) if c is not None
        )
        log.info("startup complete ctx=%s", session_manager.context_id)

    @app.on_event("shutdown")
    async def shutdown():
        for component in app.state.owned:
            await component.stop()
        if app.state.owned:
            await close_db()

    app.include_router(health_router)
    app.include_router(session_router)
    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "mongo_sessions.main:app",
        host="0.0.0.0",
        port=settings.PORT,
    )
