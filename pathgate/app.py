from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI

from .config import GateSettings, load_settings
from .engine import AccessDecisionEngine
from .errors import SessionStoreError
from .forwarder import Forwarder
from .infra.redis_client import RedisSessionStore, SessionStore, create_redis_client
from .routes import gate, health

logger = logging.getLogger("pathgate.app")


def _wire(app: FastAPI) -> None:
    settings: GateSettings = app.state.settings
    if app.state.store is not None:
        app.state.engine = AccessDecisionEngine(
            settings.registry,
            app.state.store,
            key_template=settings.session_key_template,
            grant_non_browser_on_first_visit=settings.grant_non_browser_on_first_visit,
        )
    if app.state.upstream_client is not None:
        app.state.forwarder = Forwarder(app.state.upstream_client)


def _new_upstream_client(settings: GateSettings) -> httpx.AsyncClient:
    # Shared upstream HTTP client (per-worker)
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.upstream_timeout_s),
        follow_redirects=False,
        limits=httpx.Limits(
            max_connections=200,
            max_keepalive_connections=50,
            keepalive_expiry=30.0,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: GateSettings = app.state.settings
    owned = []

    if app.state.store is None:
        client = create_redis_client(
            url=settings.redis_url,
            address=settings.redis_address,
            password=settings.redis_password,
            db=settings.redis_db,
        )
        store = RedisSessionStore(
            client,
            timeout_s=settings.session_store_timeout_s,
            max_attempts=settings.session_store_max_attempts,
        )
        try:
            await store.ping()
        except SessionStoreError:
            logger.error("Failed to connect to Redis at %s", settings.redis_display)
            await store.close()
            raise
        app.state.store = store
        owned.append(store.close)

    if app.state.upstream_client is None:
        app.state.upstream_client = _new_upstream_client(settings)
        owned.append(app.state.upstream_client.aclose)

    _wire(app)

    logger.info("Multi-app proxy started:")
    logger.info("  Listening on: %s:%d", settings.listen_host, settings.listen_port)
    logger.info("  Redis Address: %s", settings.redis_display)
    settings.registry.log_summary()

    try:
        yield
    finally:
        # upstream client first, then Redis
        for close in reversed(owned):
            try:
                await close()
            except Exception:
                logger.warning("error while closing %r", close, exc_info=True)


def create_app(
    settings: Optional[GateSettings] = None,
    *,
    store: Optional[SessionStore] = None,
    upstream_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the gate. With no arguments, configuration comes from the
    environment (and a .env file); usable as `uvicorn --factory pathgate.app:create_app`.
    """
    if settings is None:
        load_dotenv()
        settings = load_settings()

    app = FastAPI(title="pathgate", lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.settings = settings
    app.state.store = store
    app.state.upstream_client = upstream_client
    _wire(app)

    if settings.health_path:
        app.include_router(health.router, prefix=settings.health_path, tags=["health"])
    app.add_route("/{full_path:path}", gate.gate, include_in_schema=False)
    return app
