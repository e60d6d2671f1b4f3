"""calpush API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens the state store and closes every resource on shutdown
- Error envelope handlers and the catch-all middleware
- The sync, live-stream, webhook, session and health routers
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calpush import __version__
from calpush.api.deps import wire_runtime
from calpush.api.middleware import register_error_handlers
from calpush.api.routers.events import router as events_router
from calpush.api.routers.health import router as health_router
from calpush.api.routers.notifications import router as notifications_router
from calpush.api.routers.session import router as session_router
from calpush.api.routers.sse import router as sse_router
from calpush.config import ConfigError, ServiceConfig
from calpush.core.state import InMemoryKeyValueStore, KeyValueStore, PostgresKeyValueStore
from calpush.providers.base import CalendarClientFactory
from calpush.runtime import CalpushRuntime

logger = logging.getLogger(__name__)


def create_app(
    config: ServiceConfig | None = None,
    *,
    store: KeyValueStore | None = None,
    client_factory: CalendarClientFactory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Parsed service configuration; defaults apply when omitted.
    store:
        State store to use.  When omitted it is built from ``[storage]``:
        in-memory stores are created immediately, PostgreSQL stores are
        connected during startup.
    client_factory:
        Calendar client factory.  Defaults to the Google Calendar client with
        bearer tokens read from the state store.
    """
    config = config or ServiceConfig()

    if store is None and config.storage.backend == "memory":
        store = InMemoryKeyValueStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime: CalpushRuntime | None = getattr(app.state, "runtime", None)
        if runtime is None:
            if not config.storage.database_url:
                raise ConfigError(
                    "storage.database_url is required when storage.backend = 'postgres'"
                )
            pg_store = await PostgresKeyValueStore.connect(config.storage.database_url)
            runtime = CalpushRuntime.build(config, pg_store, client_factory=client_factory)
            wire_runtime(app, runtime)
        logger.info("calpush %s ready (storage=%s)", __version__, config.storage.backend)

        yield

        await runtime.aclose()

    app = FastAPI(
        title="calpush",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    if config.server.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.server.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(events_router)
    app.include_router(sse_router)
    app.include_router(notifications_router)
    app.include_router(session_router)

    if store is not None:
        wire_runtime(app, CalpushRuntime.build(config, store, client_factory=client_factory))

    return app
