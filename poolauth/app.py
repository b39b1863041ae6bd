from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request

from poolauth.api.error_handling import register_exception_handlers
from poolauth.api.routes import admin_router, mfa_router, router
from poolauth.logging import get_logger, set_correlation_id
from poolauth.service.engine import ProtocolEngine
from poolauth.storage.errors import BackendUnavailable
from poolauth.storage.factory import disconnect_store

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Bootstrap the default pool and seed the engine's client list."""
    from poolauth.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.accounts.ensure_default_pool()
    await runtime.clients.reload_clients(app.state.engine)
    logger.info("startup_complete", data_provider=runtime.settings.data_provider.value)

    yield

    await runtime.close()
    disconnect_store()
    logger.info("runtime_cleanup_complete")


def create_app(engine: ProtocolEngine) -> FastAPI:
    """Build the HTTP surface around an already-configured protocol engine."""
    app = FastAPI(title="poolauth", version=__version__, lifespan=lifespan)
    app.state.engine = engine

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with the caller's X-Request-ID, or a fresh one, and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(admin_router)
    app.include_router(mfa_router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        from poolauth.service.runtime import get_runtime

        runtime = get_runtime()
        store_ok = True
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.count_users, runtime.settings.default_pool_id),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
        except (asyncio.TimeoutError, BackendUnavailable) as exc:
            logger.error("health_check_store_failed", error=str(exc))
            store_ok = False
        return {
            "status": "ok" if store_ok else "degraded",
            "version": __version__,
            "checks": {
                "store": {"status": "ok" if store_ok else "error"},
                "redis": {"status": "ok" if runtime.cache is not None else "disabled"},
            },
        }

    return app
