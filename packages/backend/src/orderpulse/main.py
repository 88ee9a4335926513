"""FastAPI application factory.

Learn: App factory pattern: create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (record store, real-time hub).
Middleware, CORS, and routers all registered here.

The hub and the store hang off app.state; routes reach them through
orderpulse.api.deps, so nothing real-time lives in a module global.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orderpulse import __version__
from orderpulse.api import api_router
from orderpulse.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. If Redis is down at startup the hub still starts its local
    registries; only cross-process delivery is missing until it's back.
    """
    logger.info(
        "orderpulse.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
        broker=settings.broker_backend,
    )

    from orderpulse.db.engine import async_session_factory, engine
    from orderpulse.db.store import SqlRecordStore
    from orderpulse.realtime.hub import RealtimeHub

    store = SqlRecordStore(async_session_factory, engine)
    hub = RealtimeHub.from_settings(settings, store=store)
    app.state.store = store
    app.state.hub = hub

    await hub.start()

    yield

    # Shutdown
    logger.info("orderpulse.shutdown")
    await hub.stop()
    await store.close()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="OrderPulse",
        description="Real-time order, delivery and support event delivery",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → Security → RequestId → handler

    from orderpulse.middleware.request_id import RequestIdMiddleware
    from orderpulse.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount API routes
    app.include_router(api_router)

    # Mount WebSocket route
    from orderpulse.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: orderpulse.main:app)
app = create_app()
