from __future__ import annotations

import copy
import threading
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from poolauth.logging import get_logger
from poolauth.storage.base import ensure_pool
from poolauth.storage.common import (
    CLIENT_MUTABLE_COLUMNS,
    DEVICE_MUTABLE_COLUMNS,
    GROUP_MUTABLE_COLUMNS,
    POOL_MUTABLE_COLUMNS,
    USER_MUTABLE_COLUMNS,
    apply_changes,
    clamp_page_size,
    filter_changes,
    new_entity_id,
    normalize_email,
)
from poolauth.storage.cursors import decode_id_cursor, encode_id_cursor
from poolauth.storage.errors import AlreadyExists, NotFound
from poolauth.storage.models import (
    Client,
    ClientUpdate,
    Group,
    GroupUpdate,
    MfaDevice,
    MfaDeviceUpdate,
    Page,
    PoolUpdate,
    User,
    UserPool,
    UserUpdate,
    utcnow,
)

E = TypeVar("E")


class MemoryStore:
    """In-process identity store for tests and local development.

    All state lives in dicts guarded by one re-entrant lock; entities are
    copied on the way in and out so callers never share mutable rows.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.pools: Dict[str, UserPool] = {}
        self.users: Dict[Tuple[str, str], User] = {}
        self.clients: Dict[str, Client] = {}
        self.groups: Dict[Tuple[str, str], Group] = {}
        self.devices: Dict[Tuple[str, str, str], MfaDevice] = {}
        # RLock so cascades can call other locked operations
        self._data_lock = threading.RLock()
        self._connected = False

    def connect(self) -> None:
        self._connected = True
        self.logger.info("memory_store_connected")

    def disconnect(self) -> None:
        self._connected = False

    @staticmethod
    def _page(
        rows: Iterable[E], key: Callable[[E], str], limit: Optional[int], next_token: Optional[str]
    ) -> Page[E]:
        size = clamp_page_size(limit)
        after = decode_id_cursor(next_token)
        ordered = sorted(rows, key=key)
        if after is not None:
            ordered = [row for row in ordered if key(row) > after]
        # Fetch one extra row to learn whether another page exists
        window = ordered[: size + 1]
        items = [copy.deepcopy(row) for row in window[:size]]
        token = encode_id_cursor(key(items[-1])) if len(window) > size else None
        return Page(items=items, next_token=token)

    # pools
    def create_pool(self, pool: UserPool) -> UserPool:
        with self._data_lock:
            if pool.pool_id in self.pools:
                raise AlreadyExists("pool already exists", {"field": "pool_id"})
            if any(p.client_id == pool.client_id for p in self.pools.values()):
                raise AlreadyExists("pool client id already in use", {"field": "client_id"})
            now = utcnow()
            stored = replace(copy.deepcopy(pool), created_at=now, updated_at=now)
            self.pools[pool.pool_id] = stored
            return copy.deepcopy(stored)

    def get_pool(self, pool_id: str) -> UserPool:
        with self._data_lock:
            pool = self.pools.get(pool_id)
            if not pool:
                raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})
            return copy.deepcopy(pool)

    def get_pool_by_client_id(self, client_id: str) -> Optional[UserPool]:
        with self._data_lock:
            for pool in self.pools.values():
                if pool.client_id == client_id:
                    return copy.deepcopy(pool)
        return None

    def list_pools(
        self, limit: Optional[int] = None, next_token: Optional[str] = None
    ) -> Page[UserPool]:
        with self._data_lock:
            return self._page(list(self.pools.values()), lambda p: p.pool_id, limit, next_token)

    def update_pool(self, pool_id: str, update: PoolUpdate) -> UserPool:
        changes = filter_changes(update.changes(), POOL_MUTABLE_COLUMNS)
        with self._data_lock:
            current = self.pools.get(pool_id)
            if not current:
                raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})
            new_client = changes.get("client_id")
            if new_client and any(
                p.client_id == new_client and p.pool_id != pool_id for p in self.pools.values()
            ):
                raise AlreadyExists("pool client id already in use", {"field": "client_id"})
            updated = apply_changes(current, copy.deepcopy(changes))
            self.pools[pool_id] = updated
            return copy.deepcopy(updated)

    def delete_pool(self, pool_id: str) -> None:
        with self._data_lock:
            if pool_id not in self.pools:
                raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})
            for key in [k for k in self.devices if k[0] == pool_id]:
                del self.devices[key]
            for key in [k for k in self.groups if k[0] == pool_id]:
                del self.groups[key]
            for key in [k for k in self.users if k[0] == pool_id]:
                del self.users[key]
            for client_id in [c.client_id for c in self.clients.values() if c.pool_id == pool_id]:
                del self.clients[client_id]
            del self.pools[pool_id]
        self.logger.info("pool_deleted", pool_id=pool_id)

    # users
    def _require_pool(self, pool_id: str) -> None:
        if pool_id not in self.pools:
            raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})

    def _require_user(self, pool_id: str, user_id: str) -> User:
        user = self.users.get((pool_id, user_id))
        if not user:
            raise NotFound(
                f"user not found: {user_id} in pool {pool_id}",
                {"pool_id": pool_id, "user_id": user_id},
            )
        ensure_pool(user.pool_id, pool_id, entity="user", key=user_id)
        return user

    def _email_taken(self, pool_id: str, email: str, *, exclude: Optional[str] = None) -> bool:
        return any(
            u.pool_id == pool_id and u.email == email and u.user_id != exclude
            for u in self.users.values()
        )

    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        with self._data_lock:
            self._require_pool(user.pool_id)
            if self._email_taken(user.pool_id, email):
                raise AlreadyExists("email already exists", {"field": "email"})
            now = utcnow()
            stored = replace(
                copy.deepcopy(user),
                user_id=user.user_id or new_entity_id(),
                email=email,
                created_at=now,
                updated_at=now,
            )
            if (stored.pool_id, stored.user_id) in self.users:
                raise AlreadyExists("user already exists", {"field": "user_id"})
            self.users[(stored.pool_id, stored.user_id)] = stored
            return copy.deepcopy(stored)

    def get_user(self, pool_id: str, user_id: str) -> User:
        with self._data_lock:
            return copy.deepcopy(self._require_user(pool_id, user_id))

    def get_user_by_email(self, pool_id: str, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.pool_id == pool_id and user.email == email:
                    return copy.deepcopy(user)
        return None

    def list_users(
        self,
        pool_id: str,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[User]:
        with self._data_lock:
            rows = [u for u in self.users.values() if u.pool_id == pool_id]
            return self._page(rows, lambda u: u.user_id, limit, next_token)

    def count_users(self, pool_id: str) -> int:
        with self._data_lock:
            return sum(1 for u in self.users.values() if u.pool_id == pool_id)

    def update_user(self, pool_id: str, user_id: str, update: UserUpdate) -> User:
        changes = filter_changes(update.changes(), USER_MUTABLE_COLUMNS)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        with self._data_lock:
            current = self._require_user(pool_id, user_id)
            if "email" in changes and self._email_taken(pool_id, changes["email"], exclude=user_id):
                raise AlreadyExists("email already exists", {"field": "email"})
            updated = apply_changes(current, copy.deepcopy(changes))
            self.users[(pool_id, user_id)] = updated
            return copy.deepcopy(updated)

    def update_user_mfa_status(self, pool_id: str, user_id: str, enabled: bool) -> User:
        return self.update_user(pool_id, user_id, UserUpdate(mfa_enabled=enabled))

    def delete_user(self, pool_id: str, user_id: str) -> None:
        with self._data_lock:
            self._require_user(pool_id, user_id)
            for key in [k for k in self.devices if k[0] == pool_id and k[1] == user_id]:
                del self.devices[key]
            del self.users[(pool_id, user_id)]

    # clients
    def create_client(self, client: Client) -> Client:
        with self._data_lock:
            self._require_pool(client.pool_id)
            if client.client_id in self.clients:
                raise AlreadyExists("client already exists", {"field": "client_id"})
            now = utcnow()
            stored = replace(copy.deepcopy(client), created_at=now, updated_at=now)
            self.clients[client.client_id] = stored
            return copy.deepcopy(stored)

    def get_client(self, client_id: str) -> Client:
        with self._data_lock:
            client = self.clients.get(client_id)
            if not client:
                raise NotFound(f"client not found: {client_id}", {"client_id": client_id})
            return copy.deepcopy(client)

    def list_clients(
        self,
        pool_id: Optional[str] = None,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Client]:
        with self._data_lock:
            rows = [
                c for c in self.clients.values() if pool_id is None or c.pool_id == pool_id
            ]
            return self._page(rows, lambda c: c.client_id, limit, next_token)

    def update_client(self, client_id: str, update: ClientUpdate) -> Client:
        changes = filter_changes(update.changes(), CLIENT_MUTABLE_COLUMNS)
        with self._data_lock:
            current = self.clients.get(client_id)
            if not current:
                raise NotFound(f"client not found: {client_id}", {"client_id": client_id})
            updated = apply_changes(current, copy.deepcopy(changes))
            self.clients[client_id] = updated
            return copy.deepcopy(updated)

    def reassociate_client(self, client_id: str, pool_id: str) -> Client:
        with self._data_lock:
            self._require_pool(pool_id)
            current = self.clients.get(client_id)
            if not current:
                raise NotFound(f"client not found: {client_id}", {"client_id": client_id})
            updated = apply_changes(current, {"pool_id": pool_id})
            self.clients[client_id] = updated
            return copy.deepcopy(updated)

    def delete_client(self, client_id: str) -> None:
        with self._data_lock:
            if client_id not in self.clients:
                raise NotFound(f"client not found: {client_id}", {"client_id": client_id})
            del self.clients[client_id]

    # groups
    def _require_group(self, pool_id: str, group_id: str) -> Group:
        group = self.groups.get((pool_id, group_id))
        if not group:
            raise NotFound(
                f"group not found: {group_id} in pool {pool_id}",
                {"pool_id": pool_id, "group_id": group_id},
            )
        ensure_pool(group.pool_id, pool_id, entity="group", key=group_id)
        return group

    def _group_name_taken(
        self, pool_id: str, group_name: str, *, exclude: Optional[str] = None
    ) -> bool:
        return any(
            g.pool_id == pool_id and g.group_name == group_name and g.group_id != exclude
            for g in self.groups.values()
        )

    def create_group(self, group: Group) -> Group:
        with self._data_lock:
            self._require_pool(group.pool_id)
            if self._group_name_taken(group.pool_id, group.group_name):
                raise AlreadyExists("group name already exists", {"field": "group_name"})
            now = utcnow()
            stored = replace(
                copy.deepcopy(group),
                group_id=group.group_id or new_entity_id(),
                created_at=now,
                updated_at=now,
            )
            if (stored.pool_id, stored.group_id) in self.groups:
                raise AlreadyExists("group already exists", {"field": "group_id"})
            self.groups[(stored.pool_id, stored.group_id)] = stored
            return copy.deepcopy(stored)

    def get_group(self, pool_id: str, group_id: str) -> Group:
        with self._data_lock:
            return copy.deepcopy(self._require_group(pool_id, group_id))

    def get_group_by_name(self, pool_id: str, group_name: str) -> Optional[Group]:
        with self._data_lock:
            for group in self.groups.values():
                if group.pool_id == pool_id and group.group_name == group_name:
                    return copy.deepcopy(group)
        return None

    def list_groups(
        self,
        pool_id: str,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Group]:
        with self._data_lock:
            rows = [g for g in self.groups.values() if g.pool_id == pool_id]
            return self._page(rows, lambda g: g.group_id, limit, next_token)

    def update_group(self, pool_id: str, group_id: str, update: GroupUpdate) -> Group:
        changes = filter_changes(update.changes(), GROUP_MUTABLE_COLUMNS)
        with self._data_lock:
            current = self._require_group(pool_id, group_id)
            name = changes.get("group_name")
            if name and self._group_name_taken(pool_id, name, exclude=group_id):
                raise AlreadyExists("group name already exists", {"field": "group_name"})
            updated = apply_changes(current, copy.deepcopy(changes))
            self.groups[(pool_id, group_id)] = updated
            return copy.deepcopy(updated)

    def delete_group(self, pool_id: str, group_id: str) -> None:
        with self._data_lock:
            self._require_group(pool_id, group_id)
            for key, user in list(self.users.items()):
                if user.pool_id == pool_id and group_id in user.groups:
                    self.users[key] = apply_changes(
                        user, {"groups": [g for g in user.groups if g != group_id]}
                    )
            del self.groups[(pool_id, group_id)]

    def add_user_to_group(self, pool_id: str, user_id: str, group_id: str) -> User:
        with self._data_lock:
            self._require_group(pool_id, group_id)
            user = self._require_user(pool_id, user_id)
            if group_id in user.groups:
                return copy.deepcopy(user)
            updated = apply_changes(user, {"groups": [*user.groups, group_id]})
            self.users[(pool_id, user_id)] = updated
            return copy.deepcopy(updated)

    def remove_user_from_group(self, pool_id: str, user_id: str, group_id: str) -> User:
        with self._data_lock:
            user = self._require_user(pool_id, user_id)
            if group_id not in user.groups:
                return copy.deepcopy(user)
            updated = apply_changes(
                user, {"groups": [g for g in user.groups if g != group_id]}
            )
            self.users[(pool_id, user_id)] = updated
            return copy.deepcopy(updated)

    def get_user_groups(self, pool_id: str, user_id: str) -> List[Group]:
        with self._data_lock:
            user = self._require_user(pool_id, user_id)
            return [
                copy.deepcopy(self.groups[(pool_id, gid)])
                for gid in user.groups
                if (pool_id, gid) in self.groups
            ]

    def get_group_users(self, pool_id: str, group_id: str) -> List[User]:
        with self._data_lock:
            self._require_group(pool_id, group_id)
            rows = [
                u for u in self.users.values() if u.pool_id == pool_id and group_id in u.groups
            ]
            return [copy.deepcopy(u) for u in sorted(rows, key=lambda u: u.user_id)]

    # mfa devices
    def _require_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice:
        device = self.devices.get((pool_id, user_id, device_id))
        if not device:
            raise NotFound(
                f"mfa device not found: {device_id}",
                {"pool_id": pool_id, "user_id": user_id, "device_id": device_id},
            )
        ensure_pool(device.pool_id, pool_id, entity="mfa_device", key=device_id)
        return device

    def _device_name_taken(
        self, pool_id: str, user_id: str, name: str, *, exclude: Optional[str] = None
    ) -> bool:
        return any(
            k[0] == pool_id and k[1] == user_id and d.device_name == name and d.device_id != exclude
            for k, d in self.devices.items()
        )

    def create_mfa_device(self, device: MfaDevice) -> MfaDevice:
        with self._data_lock:
            self._require_user(device.pool_id, device.user_id)
            if self._device_name_taken(device.pool_id, device.user_id, device.device_name):
                raise AlreadyExists("device name already exists", {"field": "device_name"})
            now = utcnow()
            stored = replace(
                copy.deepcopy(device),
                device_id=device.device_id or new_entity_id(),
                created_at=now,
                updated_at=now,
            )
            if any(key[2] == stored.device_id for key in self.devices):
                raise AlreadyExists("device already exists", {"field": "device_id"})
            self.devices[(stored.pool_id, stored.user_id, stored.device_id)] = stored
            return copy.deepcopy(stored)

    def get_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice:
        with self._data_lock:
            return copy.deepcopy(self._require_device(pool_id, user_id, device_id))

    def list_user_mfa_devices(self, pool_id: str, user_id: str) -> List[MfaDevice]:
        with self._data_lock:
            rows = [
                d for k, d in self.devices.items() if k[0] == pool_id and k[1] == user_id
            ]
            return [copy.deepcopy(d) for d in sorted(rows, key=lambda d: d.device_id)]

    def update_mfa_device(
        self, pool_id: str, user_id: str, device_id: str, update: MfaDeviceUpdate
    ) -> MfaDevice:
        changes = filter_changes(update.changes(), DEVICE_MUTABLE_COLUMNS)
        with self._data_lock:
            current = self._require_device(pool_id, user_id, device_id)
            name = changes.get("device_name")
            if name and self._device_name_taken(pool_id, user_id, name, exclude=device_id):
                raise AlreadyExists("device name already exists", {"field": "device_name"})
            updated = apply_changes(current, copy.deepcopy(changes))
            self.devices[(pool_id, user_id, device_id)] = updated
            return copy.deepcopy(updated)

    def verify_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice:
        return self.update_mfa_device(
            pool_id, user_id, device_id, MfaDeviceUpdate(is_verified=True)
        )

    def consume_backup_code(
        self, pool_id: str, user_id: str, device_id: str, code_digest: str
    ) -> bool:
        with self._data_lock:
            device = self._require_device(pool_id, user_id, device_id)
            if code_digest not in device.backup_codes:
                return False
            remaining = [c for c in device.backup_codes if c != code_digest]
            self.devices[(pool_id, user_id, device_id)] = apply_changes(
                device, {"backup_codes": remaining, "last_used": utcnow()}
            )
            return True

    def delete_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> None:
        with self._data_lock:
            self._require_device(pool_id, user_id, device_id)
            del self.devices[(pool_id, user_id, device_id)]
