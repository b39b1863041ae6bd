"""Storage contract shared by every identity backend.

Rules every implementation follows:

- ``create_*`` raises ``AlreadyExists`` when a primary or declared-unique key
  collides (pool id, client id, (pool, email), (pool, group name),
  (pool, user, device name)).
- Primary-key ``get_*``, ``update_*`` and ``delete_*`` raise ``NotFound`` when
  the (pool id, id) key does not resolve. ``*_by_*`` unique lookups return
  ``None`` instead.
- ``list_*`` returns a :class:`Page`; ``next_token`` is set only when more rows
  exist, and following it never repeats or skips rows that existed when the
  first page was read.
- ``created_at``/``updated_at`` are always stamped by the store.
- Reads filter by pool id; a row surfacing under the wrong pool raises
  ``TenantIsolationViolation``.
"""

from __future__ import annotations

from typing import List, Optional, Protocol

from poolauth.storage.errors import TenantIsolationViolation
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
)


class IdentityStore(Protocol):
    def connect(self) -> None: ...

    def disconnect(self) -> None: ...

    # pools
    def create_pool(self, pool: UserPool) -> UserPool: ...

    def get_pool(self, pool_id: str) -> UserPool: ...

    def get_pool_by_client_id(self, client_id: str) -> Optional[UserPool]: ...

    def list_pools(
        self, limit: Optional[int] = None, next_token: Optional[str] = None
    ) -> Page[UserPool]: ...

    def update_pool(self, pool_id: str, update: PoolUpdate) -> UserPool: ...

    def delete_pool(self, pool_id: str) -> None: ...

    # users
    def create_user(self, user: User) -> User: ...

    def get_user(self, pool_id: str, user_id: str) -> User: ...

    def get_user_by_email(self, pool_id: str, email: str) -> Optional[User]: ...

    def list_users(
        self,
        pool_id: str,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[User]: ...

    def count_users(self, pool_id: str) -> int: ...

    def update_user(self, pool_id: str, user_id: str, update: UserUpdate) -> User: ...

    def update_user_mfa_status(self, pool_id: str, user_id: str, enabled: bool) -> User: ...

    def delete_user(self, pool_id: str, user_id: str) -> None: ...

    # clients
    def create_client(self, client: Client) -> Client: ...

    def get_client(self, client_id: str) -> Client: ...

    def list_clients(
        self,
        pool_id: Optional[str] = None,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Client]: ...

    def update_client(self, client_id: str, update: ClientUpdate) -> Client: ...

    def reassociate_client(self, client_id: str, pool_id: str) -> Client: ...

    def delete_client(self, client_id: str) -> None: ...

    # groups
    def create_group(self, group: Group) -> Group: ...

    def get_group(self, pool_id: str, group_id: str) -> Group: ...

    def get_group_by_name(self, pool_id: str, group_name: str) -> Optional[Group]: ...

    def list_groups(
        self,
        pool_id: str,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Group]: ...

    def update_group(self, pool_id: str, group_id: str, update: GroupUpdate) -> Group: ...

    def delete_group(self, pool_id: str, group_id: str) -> None: ...

    def add_user_to_group(self, pool_id: str, user_id: str, group_id: str) -> User: ...

    def remove_user_from_group(self, pool_id: str, user_id: str, group_id: str) -> User: ...

    def get_user_groups(self, pool_id: str, user_id: str) -> List[Group]: ...

    def get_group_users(self, pool_id: str, group_id: str) -> List[User]: ...

    # mfa devices
    def create_mfa_device(self, device: MfaDevice) -> MfaDevice: ...

    def get_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice: ...

    def list_user_mfa_devices(self, pool_id: str, user_id: str) -> List[MfaDevice]: ...

    def update_mfa_device(
        self, pool_id: str, user_id: str, device_id: str, update: MfaDeviceUpdate
    ) -> MfaDevice: ...

    def verify_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice: ...

    def consume_backup_code(
        self, pool_id: str, user_id: str, device_id: str, code_digest: str
    ) -> bool: ...

    def delete_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> None: ...


def ensure_pool(entity_pool_id: str, pool_id: str, *, entity: str, key: str) -> None:
    """Fail loudly when a pool-scoped read surfaced another pool's row."""

    if entity_pool_id != pool_id:
        raise TenantIsolationViolation(
            f"{entity} {key} resolved outside pool {pool_id}",
            {"entity": entity, "key": key, "expected_pool": pool_id},
        )


__all__ = ["IdentityStore", "ensure_pool"]
