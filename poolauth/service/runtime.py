from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union

from redis.exceptions import RedisError

from poolauth.config import get_settings, reset_settings_cache
from poolauth.logging import configure_logging, get_logger, mask_url_password
from poolauth.service.account import AccountService
from poolauth.service.clients import ClientRegistry
from poolauth.service.engine import ProtocolEngine
from poolauth.service.interactions import InteractionOrchestrator
from poolauth.service.mfa import MfaService
from poolauth.service.pending_flows import PendingFlowStore
from poolauth.service.pools import PoolService
from poolauth.storage.factory import disconnect_store, get_store
from poolauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        configure_logging(
            log_level=self.settings.log_level,
            json_output=self.settings.log_json,
            development_mode=self.settings.log_dev_mode,
        )
        logger.info(
            "runtime_init_started",
            data_provider=self.settings.data_provider.value,
            test_mode=self.settings.test_mode,
        )

        self.store = get_store()

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a pytest event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except RedisError as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for interaction session state; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; pending MFA flows "
                    "are held in process memory only."
                ),
                mode=fallback_mode,
            )

        self.pending_flows = PendingFlowStore(
            self.cache, ttl_seconds=self.settings.pending_flow_ttl_seconds
        )
        self.accounts = AccountService(self.store, self.settings)
        self.clients = ClientRegistry(self.store)
        self.pools = PoolService(self.store)
        self.mfa = MfaService(self.store, self.settings)

        logger.info(
            "runtime_initialized",
            data_provider=self.settings.data_provider.value,
            redis_enabled=self.cache is not None,
        )

    def interactions(self, engine: ProtocolEngine) -> InteractionOrchestrator:
        return InteractionOrchestrator(
            engine, self.accounts, self.mfa, self.pending_flows, self.settings
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path, the locked
    re-check stops two first callers from both building a runtime.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime, its store and settings for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache.client.close()
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        disconnect_store()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
