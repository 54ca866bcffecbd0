"""
FastAPI application factory.

* Wires the ``RideDispatcher`` facade (presence, fanout, match, lifecycle).
* Registers REST routes under ``/api/v1`` and the ``/ws`` socket.
* Starts / stops the presence monitor via lifespan events.
* Applies rate-limiting middleware.
* Renders engine errors as ``{"error": {"code", "message"}}``.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.api.middleware import limiter
from ride_dispatch.api import realtime
from ride_dispatch.api.routes import admin, drivers, negotiation, rides
from ride_dispatch.config import Settings, settings as default_settings
from ride_dispatch.domain.errors import DispatchError
from ride_dispatch.infrastructure.database import (
    build_engine,
    build_session_factory,
    create_schema,
)
from ride_dispatch.infrastructure.locks import LocalRideLocks, RedisRideLocks
from ride_dispatch.infrastructure.redis_client import close_redis, get_redis
from ride_dispatch.services.dispatcher import RideDispatcher
from ride_dispatch.workers import presence_monitor

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "InternalError", "message": "Internal server error"}},
    )


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> FastAPI:
    settings = settings or default_settings

    owned_engine = None
    if session_factory is None:
        owned_engine = build_engine(settings.database_url)
        session_factory = build_session_factory(owned_engine)

    if settings.ride_lock_backend == "redis":
        locks = RedisRideLocks(
            get_redis(settings.redis_url),
            ttl_seconds=settings.ride_lock_ttl_seconds,
            timeout_seconds=settings.ride_lock_timeout_seconds,
        )
    else:
        locks = LocalRideLocks()

    dispatcher = RideDispatcher(settings, session_factory, locks)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Create the schema if asked, run the monitor, clean up on shutdown."""
        if settings.create_schema_on_startup:
            await create_schema(owned_engine or session_factory.kw["bind"])
        if settings.run_presence_monitor:
            await presence_monitor.start_presence_monitor(
                dispatcher, settings.presence_sweep_interval_seconds
            )
        yield
        if settings.run_presence_monitor:
            await presence_monitor.stop_presence_monitor()
        await dispatcher.close()
        if settings.ride_lock_backend == "redis":
            await close_redis()
        if owned_engine is not None:
            await owned_engine.dispose()

    app = FastAPI(
        title="Ride Dispatch API",
        description=(
            "Live driver presence, geo-filtered trip broadcast, single-winner "
            "matching and the ride lifecycle, over REST and WebSocket."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.dispatcher = dispatcher

    # Rate limiter
    limiter.enabled = settings.rate_limit_enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Errors
    app.add_exception_handler(DispatchError, dispatch_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Routers
    app.include_router(rides.router, prefix="/api/v1")
    app.include_router(negotiation.router, prefix="/api/v1")
    app.include_router(drivers.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(realtime.router)

    return app
