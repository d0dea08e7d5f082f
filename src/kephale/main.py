"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (Redis pool, DB engine).
Middleware, CORS, and routers all registered here.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError

from kephale import __version__
from kephale.api import api_router
from kephale.config import settings
from kephale.logging import configure_logging
from kephale.realtime.redis import close_redis, init_redis

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. Redis is optional at startup: without it presence reads
    everyone as offline and live events are dropped, but push delivery
    and the rest of the API keep working.
    """
    logger.info(
        "kephale.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    try:
        await init_redis()
        logger.info("kephale.redis_connected", url=settings.redis_url)
    except (RedisError, OSError) as e:
        await close_redis()
        logger.warning("kephale.redis_unavailable", error=str(e))

    if not settings.vapid_configured:
        logger.warning("kephale.push_disabled", reason="vapid_keys_missing")

    yield

    logger.info("kephale.shutdown")
    await close_redis()

    from kephale.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    configure_logging()

    app = FastAPI(
        title="Kephale Realtime",
        description="Presence, call signaling, live events and push delivery",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → Security → RequestId → handler

    from kephale.middleware.request_id import RequestIdMiddleware
    from kephale.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from kephale.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: kephale.main:app)
app = create_app()
