from __future__ import annotations

import threading
from typing import Optional

from poolauth.config import DataProvider, Settings, get_settings
from poolauth.logging import get_logger, mask_url_password
from poolauth.storage.base import IdentityStore

logger = get_logger(__name__)

_store: Optional[IdentityStore] = None
_store_lock = threading.Lock()


def build_store(settings: Settings) -> IdentityStore:
    """Construct, without connecting, the backend named by ``DATA_PROVIDER``."""

    provider = settings.data_provider
    if provider == DataProvider.POSTGRESQL:
        from poolauth.storage.postgres import PostgresStore

        return PostgresStore(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
        )
    if provider == DataProvider.DYNAMODB:
        from poolauth.storage.dynamodb import DynamoStore

        return DynamoStore(
            settings.aws_region,
            endpoint_url=settings.dynamodb_endpoint_url,
            table_prefix=settings.dynamodb_table_prefix,
            create_tables=settings.dynamodb_create_tables,
        )
    if provider == DataProvider.MEMORY:
        from poolauth.storage.memory import MemoryStore

        return MemoryStore()
    raise ValueError(f"unsupported data provider: {provider}")


def _describe_target(settings: Settings) -> Optional[str]:
    if settings.data_provider == DataProvider.POSTGRESQL:
        return mask_url_password(settings.database_url)
    if settings.data_provider == DataProvider.DYNAMODB:
        return settings.dynamodb_endpoint_url or settings.aws_region
    return None


def get_store() -> IdentityStore:
    """Return the process-wide store, connecting it on first use.

    Double-checked under a lock so concurrent first callers connect once.
    """
    global _store
    if _store is not None:
        return _store
    with _store_lock:
        if _store is None:
            settings = get_settings()
            store = build_store(settings)
            store.connect()
            logger.info(
                "store_initialized",
                provider=settings.data_provider.value,
                target=_describe_target(settings),
            )
            _store = store
        return _store


def disconnect_store() -> None:
    """Tear down the singleton; the next ``get_store`` builds a fresh one."""
    global _store
    with _store_lock:
        if _store is None:
            return
        store, _store = _store, None
    store.disconnect()
    logger.info("store_disconnected")


__all__ = ["build_store", "get_store", "disconnect_store"]
