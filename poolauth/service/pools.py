from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from poolauth.config import DEFAULT_POOL_SETTINGS, MfaConfiguration
from poolauth.logging import get_logger
from poolauth.service.errors import ConflictError, NotFoundError, ValidationError
from poolauth.storage.base import IdentityStore
from poolauth.storage.common import new_entity_id
from poolauth.storage.errors import AlreadyExists, NotFound
from poolauth.storage.models import UNSET, Group, GroupUpdate, Page, PoolUpdate, User, UserPool

logger = get_logger(__name__)


def _merge_settings(settings: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = {**DEFAULT_POOL_SETTINGS, **(settings or {})}
    mfa = merged.get("mfaConfiguration")
    try:
        merged["mfaConfiguration"] = MfaConfiguration(str(mfa).upper()).value
    except ValueError as exc:
        raise ValidationError(
            "mfaConfiguration must be OFF, OPTIONAL or REQUIRED",
            detail={"mfaConfiguration": mfa},
        ) from exc
    return merged


class PoolService:
    """Pool and group administration."""

    def __init__(self, store: IdentityStore) -> None:
        self.store = store
        self.logger = logger

    async def _call(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except NotFound as exc:
            raise NotFoundError(exc.message, detail=exc.detail) from exc
        except AlreadyExists as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    # pools
    async def create_pool(
        self,
        *,
        client_id: str,
        pool_name: str,
        pool_id: Optional[str] = None,
        custom_attributes: Optional[Dict[str, str]] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> UserPool:
        pool = UserPool(
            pool_id=pool_id or f"pool-{new_entity_id()}",
            client_id=client_id,
            pool_name=pool_name,
            custom_attributes=dict(custom_attributes or {}),
            settings=_merge_settings(settings),
        )
        created = await self._call(self.store.create_pool, pool)
        self.logger.info("pool_created", pool_id=created.pool_id, client_id=client_id)
        return created

    async def get_pool(self, pool_id: str) -> UserPool:
        return await self._call(self.store.get_pool, pool_id)

    async def list_pools(
        self, *, limit: Optional[int] = None, next_token: Optional[str] = None
    ) -> Page[UserPool]:
        return await self._call(self.store.list_pools, limit, next_token)

    async def update_pool(self, pool_id: str, update: PoolUpdate) -> UserPool:
        if update.settings is not UNSET:
            current = await self.get_pool(pool_id)
            update.settings = _merge_settings({**current.settings, **update.settings})
        updated = await self._call(self.store.update_pool, pool_id, update)
        self.logger.info("pool_updated", pool_id=pool_id, fields=sorted(update.changes()))
        return updated

    async def delete_pool(self, pool_id: str) -> None:
        await self._call(self.store.delete_pool, pool_id)
        self.logger.info("pool_removed", pool_id=pool_id)

    async def pool_stats(self, pool_id: str) -> Dict[str, Any]:
        pool = await self.get_pool(pool_id)
        user_count = await self._call(self.store.count_users, pool_id)
        client_count = await self._count_pages(self.store.list_clients, pool_id)
        group_count = await self._count_pages(self.store.list_groups, pool_id)
        return {
            "pool_id": pool.pool_id,
            "pool_name": pool.pool_name,
            "user_count": user_count,
            "client_count": client_count,
            "group_count": group_count,
            "mfa_configuration": pool.mfa_configuration,
        }

    async def _count_pages(self, lister, pool_id: str) -> int:
        total = 0
        token: Optional[str] = None
        while True:
            page = await self._call(lister, pool_id, None, token)
            total += len(page.items)
            token = page.next_token
            if not token:
                return total

    # groups
    async def create_group(
        self,
        pool_id: str,
        *,
        group_name: str,
        description: Optional[str] = None,
        permissions: Optional[List[str]] = None,
    ) -> Group:
        if not group_name or not group_name.strip():
            raise ValidationError("group name is required", detail={"field": "group_name"})
        group = Group(
            pool_id=pool_id,
            group_name=group_name.strip(),
            description=description,
            permissions=list(permissions or []),
        )
        created = await self._call(self.store.create_group, group)
        self.logger.info("group_created", pool_id=pool_id, group_id=created.group_id)
        return created

    async def get_group(self, pool_id: str, group_id: str) -> Group:
        return await self._call(self.store.get_group, pool_id, group_id)

    async def list_groups(
        self, pool_id: str, *, limit: Optional[int] = None, next_token: Optional[str] = None
    ) -> Page[Group]:
        return await self._call(self.store.list_groups, pool_id, limit, next_token)

    async def update_group(self, pool_id: str, group_id: str, update: GroupUpdate) -> Group:
        return await self._call(self.store.update_group, pool_id, group_id, update)

    async def delete_group(self, pool_id: str, group_id: str) -> None:
        await self._call(self.store.delete_group, pool_id, group_id)
        self.logger.info("group_deleted", pool_id=pool_id, group_id=group_id)

    async def add_user_to_group(self, pool_id: str, user_id: str, group_id: str) -> User:
        return await self._call(self.store.add_user_to_group, pool_id, user_id, group_id)

    async def remove_user_from_group(self, pool_id: str, user_id: str, group_id: str) -> User:
        return await self._call(self.store.remove_user_from_group, pool_id, user_id, group_id)

    async def get_user_groups(self, pool_id: str, user_id: str) -> List[Group]:
        return await self._call(self.store.get_user_groups, pool_id, user_id)

    async def get_group_users(self, pool_id: str, group_id: str) -> List[User]:
        return await self._call(self.store.get_group_users, pool_id, group_id)
