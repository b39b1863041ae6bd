from __future__ import annotations

import asyncio
import secrets
import time
from typing import Any, Dict, List, Optional

from poolauth.config import DEFAULT_CLIENT_SCOPE, DEFAULT_POOL_SETTINGS
from poolauth.logging import get_logger
from poolauth.service.engine import ProtocolEngine
from poolauth.service.errors import ConflictError, NotFoundError, ValidationError
from poolauth.storage.base import IdentityStore
from poolauth.storage.errors import AlreadyExists, NotFound
from poolauth.storage.models import UNSET, Client, ClientUpdate, Page, UserPool

logger = get_logger(__name__)


def generate_client_id() -> str:
    return f"client-{int(time.time() * 1000)}"


def generate_client_secret() -> str:
    return secrets.token_urlsafe(32)


class ClientRegistry:
    """OAuth client records, read through to storage on every call.

    Nothing is cached here. The protocol engine keeps its own client list,
    which only changes when :meth:`reload_clients` is called.
    """

    def __init__(self, store: IdentityStore) -> None:
        self.store = store
        self.logger = logger

    async def get_client(self, client_id: str) -> Client:
        try:
            return await asyncio.to_thread(self.store.get_client, client_id)
        except NotFound as exc:
            raise NotFoundError("client not found", detail={"client_id": client_id}) from exc

    async def find_client(self, client_id: str) -> Optional[Client]:
        try:
            return await asyncio.to_thread(self.store.get_client, client_id)
        except NotFound:
            return None

    async def list_clients(
        self,
        pool_id: Optional[str] = None,
        *,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Client]:
        try:
            return await asyncio.to_thread(self.store.list_clients, pool_id, limit, next_token)
        except ValueError as exc:
            raise ValidationError("invalid page token", detail={"next_token": next_token}) from exc

    async def create_client(self, client: Client) -> Client:
        if not client.redirect_uris:
            raise ValidationError("at least one redirect URI is required", detail={"field": "redirect_uris"})
        try:
            created = await asyncio.to_thread(self.store.create_client, client)
        except AlreadyExists as exc:
            raise ConflictError("client already exists", detail={"client_id": client.client_id}) from exc
        except NotFound as exc:
            raise NotFoundError("pool not found", detail={"pool_id": client.pool_id}) from exc
        self.logger.info("client_created", client_id=created.client_id, pool_id=created.pool_id)
        return created

    async def provision_client(
        self,
        *,
        client_name: str,
        redirect_uris: List[str],
        pool_id: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        post_logout_redirect_uris: Optional[List[str]] = None,
        grant_types: Optional[List[str]] = None,
        response_types: Optional[List[str]] = None,
        scope: str = DEFAULT_CLIENT_SCOPE,
        token_endpoint_auth_method: str = "client_secret_basic",
        application_type: str = "web",
    ) -> Client:
        """Register a client, creating a dedicated pool unless one is named."""
        if not redirect_uris:
            raise ValidationError("at least one redirect URI is required", detail={"field": "redirect_uris"})
        client_id = client_id or generate_client_id()
        created_pool = pool_id is None
        if pool_id is None:
            pool_id = f"pool-{client_id}"
            pool = UserPool(
                pool_id=pool_id,
                client_id=client_id,
                pool_name=f"Pool for {client_name}",
                settings=dict(DEFAULT_POOL_SETTINGS),
            )
            try:
                await asyncio.to_thread(self.store.create_pool, pool)
            except AlreadyExists as exc:
                raise ConflictError("pool already exists", detail={"pool_id": pool_id}) from exc
            self.logger.info("client_pool_created", pool_id=pool_id, client_id=client_id)
        client = Client(
            client_id=client_id,
            client_secret=client_secret or generate_client_secret(),
            client_name=client_name,
            pool_id=pool_id,
            redirect_uris=list(redirect_uris),
            post_logout_redirect_uris=list(post_logout_redirect_uris or []),
            response_types=list(response_types or ["code"]),
            grant_types=list(grant_types or ["authorization_code", "refresh_token"]),
            scope=scope,
            token_endpoint_auth_method=token_endpoint_auth_method,
            application_type=application_type,
        )
        try:
            return await self.create_client(client)
        except ConflictError:
            if created_pool:
                await asyncio.to_thread(self.store.delete_pool, pool_id)
            raise

    async def update_client(self, client_id: str, update: ClientUpdate) -> Client:
        if update.redirect_uris is not UNSET and not update.redirect_uris:
            raise ValidationError("at least one redirect URI is required", detail={"field": "redirect_uris"})
        try:
            updated = await asyncio.to_thread(self.store.update_client, client_id, update)
        except NotFound as exc:
            raise NotFoundError("client not found", detail={"client_id": client_id}) from exc
        self.logger.info("client_updated", client_id=client_id, fields=sorted(update.changes()))
        return updated

    async def rotate_secret(self, client_id: str) -> Client:
        client = await self.update_client(
            client_id, ClientUpdate(client_secret=generate_client_secret())
        )
        self.logger.info("client_secret_rotated", client_id=client_id)
        return client

    async def reassociate_client(self, client_id: str, pool_id: str) -> Client:
        """Move a client to another pool; the only way its pool changes."""
        try:
            client = await asyncio.to_thread(self.store.reassociate_client, client_id, pool_id)
        except NotFound as exc:
            raise NotFoundError(exc.message, detail=exc.detail) from exc
        self.logger.info("client_reassociated", client_id=client_id, pool_id=pool_id)
        return client

    async def delete_client(self, client_id: str, *, delete_orphan_pool: bool = False) -> None:
        """Delete a client, optionally dropping its pool when nothing else uses it."""
        client = await self.get_client(client_id)
        try:
            await asyncio.to_thread(self.store.delete_client, client_id)
        except NotFound as exc:
            raise NotFoundError("client not found", detail={"client_id": client_id}) from exc
        self.logger.info("client_deleted", client_id=client_id, pool_id=client.pool_id)
        if not delete_orphan_pool:
            return
        remaining = await asyncio.to_thread(self.store.list_clients, client.pool_id, 1, None)
        if remaining.items:
            self.logger.info(
                "client_pool_retained", pool_id=client.pool_id, reason="other_clients"
            )
            return
        try:
            await asyncio.to_thread(self.store.delete_pool, client.pool_id)
        except NotFound:
            return
        self.logger.info("client_pool_deleted", pool_id=client.pool_id)

    async def load_all(self) -> List[Dict[str, Any]]:
        """Every client as engine metadata, following pages to the end."""
        clients: List[Dict[str, Any]] = []
        token: Optional[str] = None
        while True:
            page = await asyncio.to_thread(self.store.list_clients, None, None, token)
            clients.extend(client.to_engine_metadata() for client in page.items)
            token = page.next_token
            if not token:
                return clients

    async def reload_clients(self, engine: ProtocolEngine) -> int:
        clients = await self.load_all()
        await engine.load_clients(clients)
        self.logger.info("engine_clients_reloaded", count=len(clients))
        return len(clients)

    async def client_stats(self, client_id: str) -> Dict[str, Any]:
        client = await self.get_client(client_id)
        user_count = await asyncio.to_thread(self.store.count_users, client.pool_id)
        return {
            "client_id": client.client_id,
            "pool_id": client.pool_id,
            "user_count": user_count,
        }
