from __future__ import annotations

import json
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from poolauth.logging import get_logger, sanitize_error_message
from poolauth.storage.base import ensure_pool
from poolauth.storage.common import (
    CLIENT_MUTABLE_COLUMNS,
    DEVICE_MUTABLE_COLUMNS,
    GROUP_MUTABLE_COLUMNS,
    JSON_COLUMNS,
    POOL_MUTABLE_COLUMNS,
    USER_MUTABLE_COLUMNS,
    clamp_page_size,
    filter_changes,
    new_entity_id,
    normalize_email,
    parse_json_map,
)
from poolauth.storage.cursors import decode_id_cursor, encode_id_cursor
from poolauth.storage.errors import AlreadyExists, BackendUnavailable, NotFound
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
    UserStatus,
    UserUpdate,
    utcnow,
)

_SCHEMA_STATEMENTS: Tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS user_pools (
        pool_id VARCHAR(255) PRIMARY KEY,
        client_id VARCHAR(255) UNIQUE NOT NULL,
        pool_name VARCHAR(255) NOT NULL,
        custom_attributes JSONB NOT NULL DEFAULT '{}',
        settings JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(64) PRIMARY KEY,
        pool_id VARCHAR(255) NOT NULL REFERENCES user_pools(pool_id) ON DELETE CASCADE,
        email VARCHAR(255) NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        password_hash TEXT NOT NULL,
        name VARCHAR(255),
        given_name VARCHAR(255),
        family_name VARCHAR(255),
        nickname VARCHAR(255),
        picture TEXT,
        website TEXT,
        custom_attributes JSONB NOT NULL DEFAULT '{}',
        groups TEXT[] NOT NULL DEFAULT '{}',
        status VARCHAR(32) NOT NULL DEFAULT 'CONFIRMED',
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_required BOOLEAN NOT NULL DEFAULT FALSE,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (pool_id, email),
        UNIQUE (pool_id, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS clients (
        client_id VARCHAR(255) PRIMARY KEY,
        client_secret VARCHAR(255) NOT NULL,
        client_name VARCHAR(255) NOT NULL,
        pool_id VARCHAR(255) NOT NULL REFERENCES user_pools(pool_id) ON DELETE CASCADE,
        redirect_uris TEXT[] NOT NULL DEFAULT '{}',
        post_logout_redirect_uris TEXT[] NOT NULL DEFAULT '{}',
        response_types TEXT[] NOT NULL DEFAULT '{code}',
        grant_types TEXT[] NOT NULL DEFAULT '{authorization_code,refresh_token}',
        scope VARCHAR(255) NOT NULL DEFAULT 'openid profile email',
        token_endpoint_auth_method VARCHAR(50) NOT NULL DEFAULT 'client_secret_basic',
        application_type VARCHAR(50) NOT NULL DEFAULT 'web',
        settings JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pool_groups (
        group_id VARCHAR(64) PRIMARY KEY,
        pool_id VARCHAR(255) NOT NULL REFERENCES user_pools(pool_id) ON DELETE CASCADE,
        group_name VARCHAR(255) NOT NULL,
        description TEXT,
        permissions TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (pool_id, group_name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mfa_devices (
        device_id VARCHAR(64) PRIMARY KEY,
        pool_id VARCHAR(255) NOT NULL REFERENCES user_pools(pool_id) ON DELETE CASCADE,
        user_id VARCHAR(64) NOT NULL,
        device_name VARCHAR(255) NOT NULL,
        device_type VARCHAR(50) NOT NULL DEFAULT 'TOTP',
        secret_key TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        backup_codes TEXT[] NOT NULL DEFAULT '{}',
        last_used TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        FOREIGN KEY (pool_id, user_id) REFERENCES users(pool_id, id) ON DELETE CASCADE,
        UNIQUE (pool_id, user_id, device_name)
    )
    """,
    "ALTER TABLE users ADD COLUMN IF NOT EXISTS mfa_required BOOLEAN NOT NULL DEFAULT FALSE",
    "CREATE INDEX IF NOT EXISTS idx_users_pool_id ON users(pool_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_clients_pool_id ON clients(pool_id, client_id)",
    "CREATE INDEX IF NOT EXISTS idx_pool_groups_pool_id ON pool_groups(pool_id, group_id)",
    "CREATE INDEX IF NOT EXISTS idx_mfa_devices_user ON mfa_devices(pool_id, user_id)",
)


def _constraint_name(exc: errors.UniqueViolation) -> str:
    """Name of the violated constraint, e.g. ``user_pools_client_id_key``."""
    return getattr(exc.diag, "constraint_name", None) or ""


class PostgresStore:
    """Identity store over PostgreSQL with foreign-key cascades per pool."""

    def __init__(
        self, dsn: str, *, min_size: int = 2, max_size: int = 20
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    def connect(self) -> None:
        try:
            self.pool.open(wait=True)
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise BackendUnavailable("postgres unavailable", {"error": sanitize_error_message(str(exc))}) from exc
        self._ensure_schema()
        self.logger.info("postgres_store_connected")

    def disconnect(self) -> None:
        self.pool.close()
        self.logger.info("postgres_store_disconnected")

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=sanitize_error_message(str(exc)))
            raise BackendUnavailable("postgres unavailable", {"error": sanitize_error_message(str(exc))}) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _adapt(attr: str, value: Any) -> Any:
        if attr in JSON_COLUMNS:
            return json.dumps(value or {})
        if isinstance(value, UserStatus):
            return value.value
        return value

    def _build_update(
        self,
        table: str,
        allowed: Dict[str, str],
        changes: Dict[str, Any],
        where: Sequence[Tuple[str, Any]],
    ) -> Tuple[str, List[Any]]:
        """Build ``UPDATE ... SET`` restricted to ``allowed`` columns.

        Column names come from the allow-list, never from the caller.
        """
        assignments: List[str] = []
        params: List[Any] = []
        for attr, value in changes.items():
            column = allowed[attr]
            assignments.append(f"{column} = %s")
            params.append(self._adapt(attr, value))
        assignments.append("updated_at = now()")
        conditions = []
        for column, value in where:
            conditions.append(f"{column} = %s")
            params.append(value)
        sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE {' AND '.join(conditions)} RETURNING *"
        return sql, params

    def _fetch_page(
        self,
        base_sql: str,
        params: List[Any],
        key_column: str,
        limit: Optional[int],
        next_token: Optional[str],
    ) -> Tuple[List[dict], Optional[str]]:
        size = clamp_page_size(limit)
        after = decode_id_cursor(next_token)
        sql = base_sql
        query_params = list(params)
        if after is not None:
            sql += f" {'AND' if ' WHERE ' in sql else 'WHERE'} {key_column} > %s"
            query_params.append(after)
        sql += f" ORDER BY {key_column} LIMIT %s"
        query_params.append(size + 1)
        with self._connect() as conn:
            rows = conn.execute(sql, query_params).fetchall()
        token = encode_id_cursor(str(rows[size - 1][key_column])) if len(rows) > size else None
        return rows[:size], token

    # row mapping
    @staticmethod
    def _pool_from_row(row: dict) -> UserPool:
        return UserPool(
            pool_id=row["pool_id"],
            client_id=row["client_id"],
            pool_name=row["pool_name"],
            custom_attributes=parse_json_map(row.get("custom_attributes")),
            settings=parse_json_map(row.get("settings")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            user_id=str(row["id"]),
            pool_id=row["pool_id"],
            email=row["email"],
            email_verified=bool(row.get("email_verified", False)),
            password_hash=row["password_hash"],
            name=row.get("name"),
            given_name=row.get("given_name"),
            family_name=row.get("family_name"),
            nickname=row.get("nickname"),
            picture=row.get("picture"),
            website=row.get("website"),
            custom_attributes=parse_json_map(row.get("custom_attributes")),
            groups=list(row.get("groups") or []),
            status=UserStatus(row.get("status") or UserStatus.CONFIRMED.value),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_required=bool(row.get("mfa_required", False)),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _client_from_row(row: dict) -> Client:
        return Client(
            client_id=row["client_id"],
            client_secret=row["client_secret"],
            client_name=row["client_name"],
            pool_id=row["pool_id"],
            redirect_uris=list(row.get("redirect_uris") or []),
            post_logout_redirect_uris=list(row.get("post_logout_redirect_uris") or []),
            response_types=list(row.get("response_types") or ["code"]),
            grant_types=list(row.get("grant_types") or []),
            scope=row.get("scope") or "openid profile email",
            token_endpoint_auth_method=row.get("token_endpoint_auth_method")
            or "client_secret_basic",
            application_type=row.get("application_type") or "web",
            settings=parse_json_map(row.get("settings")),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _group_from_row(row: dict) -> Group:
        return Group(
            group_id=row["group_id"],
            pool_id=row["pool_id"],
            group_name=row["group_name"],
            description=row.get("description"),
            permissions=list(row.get("permissions") or []),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _device_from_row(row: dict) -> MfaDevice:
        return MfaDevice(
            device_id=row["device_id"],
            pool_id=row["pool_id"],
            user_id=str(row["user_id"]),
            device_name=row["device_name"],
            device_type=row.get("device_type") or "TOTP",
            secret_key=row["secret_key"],
            is_verified=bool(row.get("is_verified", False)),
            backup_codes=list(row.get("backup_codes") or []),
            last_used=row.get("last_used"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    # pools
    def create_pool(self, pool: UserPool) -> UserPool:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO user_pools (pool_id, client_id, pool_name, custom_attributes, settings)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        pool.pool_id,
                        pool.client_id,
                        pool.pool_name,
                        json.dumps(pool.custom_attributes or {}),
                        json.dumps(pool.settings or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            if "client_id" in _constraint_name(exc):
                raise AlreadyExists("pool client id already in use", {"field": "client_id"})
            raise AlreadyExists("pool already exists", {"field": "pool_id"})
        return self._pool_from_row(row)

    def get_pool(self, pool_id: str) -> UserPool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_pools WHERE pool_id = %s", (pool_id,)
            ).fetchone()
        if not row:
            raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})
        return self._pool_from_row(row)

    def get_pool_by_client_id(self, client_id: str) -> Optional[UserPool]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_pools WHERE client_id = %s", (client_id,)
            ).fetchone()
        return self._pool_from_row(row) if row else None

    def list_pools(
        self, limit: Optional[int] = None, next_token: Optional[str] = None
    ) -> Page[UserPool]:
        rows, token = self._fetch_page(
            "SELECT * FROM user_pools", [], "pool_id", limit, next_token
        )
        return Page(items=[self._pool_from_row(r) for r in rows], next_token=token)

    def update_pool(self, pool_id: str, update: PoolUpdate) -> UserPool:
        changes = filter_changes(update.changes(), POOL_MUTABLE_COLUMNS)
        sql, params = self._build_update(
            "user_pools", POOL_MUTABLE_COLUMNS, changes, [("pool_id", pool_id)]
        )
        try:
            with self._connect() as conn:
                row = conn.execute(sql, params).fetchone()
        except errors.UniqueViolation:
            raise AlreadyExists("pool client id already in use", {"field": "client_id"})
        if not row:
            raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})
        return self._pool_from_row(row)

    def delete_pool(self, pool_id: str) -> None:
        # users, clients, groups and devices go with it via ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM user_pools WHERE pool_id = %s", (pool_id,))
            if result.rowcount == 0:
                raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})
        self.logger.info("pool_deleted", pool_id=pool_id)

    # users
    def create_user(self, user: User) -> User:
        user_id = user.user_id or new_entity_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (
                        id, pool_id, email, email_verified, password_hash, name, given_name,
                        family_name, nickname, picture, website, custom_attributes, groups,
                        status, mfa_enabled, mfa_required
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        user.pool_id,
                        normalize_email(user.email),
                        user.email_verified,
                        user.password_hash,
                        user.name,
                        user.given_name,
                        user.family_name,
                        user.nickname,
                        user.picture,
                        user.website,
                        json.dumps(user.custom_attributes or {}),
                        list(user.groups),
                        UserStatus(user.status).value,
                        user.mfa_enabled,
                        user.mfa_required,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise AlreadyExists("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise NotFound(f"pool not found: {user.pool_id}", {"pool_id": user.pool_id})
        return self._user_from_row(row)

    def get_user(self, pool_id: str, user_id: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE pool_id = %s AND id = %s", (pool_id, user_id)
            ).fetchone()
        if not row:
            raise NotFound(
                f"user not found: {user_id} in pool {pool_id}",
                {"pool_id": pool_id, "user_id": user_id},
            )
        user = self._user_from_row(row)
        ensure_pool(user.pool_id, pool_id, entity="user", key=user_id)
        return user

    def get_user_by_email(self, pool_id: str, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE pool_id = %s AND email = %s",
                (pool_id, normalize_email(email)),
            ).fetchone()
        if not row:
            return None
        user = self._user_from_row(row)
        ensure_pool(user.pool_id, pool_id, entity="user", key=user.user_id)
        return user

    def list_users(
        self,
        pool_id: str,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[User]:
        rows, token = self._fetch_page(
            "SELECT * FROM users WHERE pool_id = %s", [pool_id], "id", limit, next_token
        )
        return Page(items=[self._user_from_row(r) for r in rows], next_token=token)

    def count_users(self, pool_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM users WHERE pool_id = %s", (pool_id,)
            ).fetchone()
        return int(row["n"]) if row else 0

    def update_user(self, pool_id: str, user_id: str, update: UserUpdate) -> User:
        changes = filter_changes(update.changes(), USER_MUTABLE_COLUMNS)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
        sql, params = self._build_update(
            "users", USER_MUTABLE_COLUMNS, changes, [("pool_id", pool_id), ("id", user_id)]
        )
        try:
            with self._connect() as conn:
                row = conn.execute(sql, params).fetchone()
        except errors.UniqueViolation:
            raise AlreadyExists("email already exists", {"field": "email"})
        if not row:
            raise NotFound(
                f"user not found: {user_id} in pool {pool_id}",
                {"pool_id": pool_id, "user_id": user_id},
            )
        return self._user_from_row(row)

    def update_user_mfa_status(self, pool_id: str, user_id: str, enabled: bool) -> User:
        return self.update_user(pool_id, user_id, UserUpdate(mfa_enabled=enabled))

    def delete_user(self, pool_id: str, user_id: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM users WHERE pool_id = %s AND id = %s", (pool_id, user_id)
            )
            if result.rowcount == 0:
                raise NotFound(
                    f"user not found: {user_id} in pool {pool_id}",
                    {"pool_id": pool_id, "user_id": user_id},
                )

    # clients
    def create_client(self, client: Client) -> Client:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO clients (
                        client_id, client_secret, client_name, pool_id, redirect_uris,
                        post_logout_redirect_uris, response_types, grant_types, scope,
                        token_endpoint_auth_method, application_type, settings
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        client.client_id,
                        client.client_secret,
                        client.client_name,
                        client.pool_id,
                        list(client.redirect_uris),
                        list(client.post_logout_redirect_uris),
                        list(client.response_types),
                        list(client.grant_types),
                        client.scope,
                        client.token_endpoint_auth_method,
                        client.application_type,
                        json.dumps(client.settings or {}),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise AlreadyExists("client already exists", {"field": "client_id"})
        except errors.ForeignKeyViolation:
            raise NotFound(f"pool not found: {client.pool_id}", {"pool_id": client.pool_id})
        return self._client_from_row(row)

    def get_client(self, client_id: str) -> Client:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM clients WHERE client_id = %s", (client_id,)
            ).fetchone()
        if not row:
            raise NotFound(f"client not found: {client_id}", {"client_id": client_id})
        return self._client_from_row(row)

    def list_clients(
        self,
        pool_id: Optional[str] = None,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Client]:
        if pool_id is None:
            base, params = "SELECT * FROM clients", []
        else:
            base, params = "SELECT * FROM clients WHERE pool_id = %s", [pool_id]
        rows, token = self._fetch_page(base, params, "client_id", limit, next_token)
        return Page(items=[self._client_from_row(r) for r in rows], next_token=token)

    def update_client(self, client_id: str, update: ClientUpdate) -> Client:
        changes = filter_changes(update.changes(), CLIENT_MUTABLE_COLUMNS)
        sql, params = self._build_update(
            "clients", CLIENT_MUTABLE_COLUMNS, changes, [("client_id", client_id)]
        )
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        if not row:
            raise NotFound(f"client not found: {client_id}", {"client_id": client_id})
        return self._client_from_row(row)

    def reassociate_client(self, client_id: str, pool_id: str) -> Client:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "UPDATE clients SET pool_id = %s, updated_at = now() WHERE client_id = %s RETURNING *",
                    (pool_id, client_id),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})
        if not row:
            raise NotFound(f"client not found: {client_id}", {"client_id": client_id})
        return self._client_from_row(row)

    def delete_client(self, client_id: str) -> None:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM clients WHERE client_id = %s", (client_id,))
            if result.rowcount == 0:
                raise NotFound(f"client not found: {client_id}", {"client_id": client_id})

    # groups
    def create_group(self, group: Group) -> Group:
        group_id = group.group_id or new_entity_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO pool_groups (group_id, pool_id, group_name, description, permissions)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        group_id,
                        group.pool_id,
                        group.group_name,
                        group.description,
                        list(group.permissions),
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise AlreadyExists("group name already exists", {"field": "group_name"})
        except errors.ForeignKeyViolation:
            raise NotFound(f"pool not found: {group.pool_id}", {"pool_id": group.pool_id})
        return self._group_from_row(row)

    def get_group(self, pool_id: str, group_id: str) -> Group:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pool_groups WHERE pool_id = %s AND group_id = %s",
                (pool_id, group_id),
            ).fetchone()
        if not row:
            raise NotFound(
                f"group not found: {group_id} in pool {pool_id}",
                {"pool_id": pool_id, "group_id": group_id},
            )
        return self._group_from_row(row)

    def get_group_by_name(self, pool_id: str, group_name: str) -> Optional[Group]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pool_groups WHERE pool_id = %s AND group_name = %s",
                (pool_id, group_name),
            ).fetchone()
        return self._group_from_row(row) if row else None

    def list_groups(
        self,
        pool_id: str,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Group]:
        rows, token = self._fetch_page(
            "SELECT * FROM pool_groups WHERE pool_id = %s",
            [pool_id],
            "group_id",
            limit,
            next_token,
        )
        return Page(items=[self._group_from_row(r) for r in rows], next_token=token)

    def update_group(self, pool_id: str, group_id: str, update: GroupUpdate) -> Group:
        changes = filter_changes(update.changes(), GROUP_MUTABLE_COLUMNS)
        sql, params = self._build_update(
            "pool_groups",
            GROUP_MUTABLE_COLUMNS,
            changes,
            [("pool_id", pool_id), ("group_id", group_id)],
        )
        try:
            with self._connect() as conn:
                row = conn.execute(sql, params).fetchone()
        except errors.UniqueViolation:
            raise AlreadyExists("group name already exists", {"field": "group_name"})
        if not row:
            raise NotFound(
                f"group not found: {group_id} in pool {pool_id}",
                {"pool_id": pool_id, "group_id": group_id},
            )
        return self._group_from_row(row)

    def delete_group(self, pool_id: str, group_id: str) -> None:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                """
                UPDATE users SET groups = array_remove(groups, %s), updated_at = now()
                WHERE pool_id = %s AND %s = ANY(groups)
                """,
                (group_id, pool_id, group_id),
            )
            result = conn.execute(
                "DELETE FROM pool_groups WHERE pool_id = %s AND group_id = %s",
                (pool_id, group_id),
            )
            if result.rowcount == 0:
                raise NotFound(
                    f"group not found: {group_id} in pool {pool_id}",
                    {"pool_id": pool_id, "group_id": group_id},
                )

    def add_user_to_group(self, pool_id: str, user_id: str, group_id: str) -> User:
        self.get_group(pool_id, group_id)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users SET groups = array_append(groups, %s), updated_at = now()
                WHERE pool_id = %s AND id = %s AND NOT (%s = ANY(groups))
                RETURNING *
                """,
                (group_id, pool_id, user_id, group_id),
            ).fetchone()
        if row:
            return self._user_from_row(row)
        # Already a member, or no such user
        return self.get_user(pool_id, user_id)

    def remove_user_from_group(self, pool_id: str, user_id: str, group_id: str) -> User:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users SET groups = array_remove(groups, %s), updated_at = now()
                WHERE pool_id = %s AND id = %s AND %s = ANY(groups)
                RETURNING *
                """,
                (group_id, pool_id, user_id, group_id),
            ).fetchone()
        if row:
            return self._user_from_row(row)
        return self.get_user(pool_id, user_id)

    def get_user_groups(self, pool_id: str, user_id: str) -> List[Group]:
        user = self.get_user(pool_id, user_id)
        if not user.groups:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pool_groups WHERE pool_id = %s AND group_id = ANY(%s) ORDER BY group_id",
                (pool_id, list(user.groups)),
            ).fetchall()
        return [self._group_from_row(r) for r in rows]

    def get_group_users(self, pool_id: str, group_id: str) -> List[User]:
        self.get_group(pool_id, group_id)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE pool_id = %s AND %s = ANY(groups) ORDER BY id",
                (pool_id, group_id),
            ).fetchall()
        return [self._user_from_row(r) for r in rows]

    # mfa devices
    def create_mfa_device(self, device: MfaDevice) -> MfaDevice:
        device_id = device.device_id or new_entity_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO mfa_devices (
                        device_id, pool_id, user_id, device_name, device_type, secret_key,
                        is_verified, backup_codes
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        device_id,
                        device.pool_id,
                        device.user_id,
                        device.device_name,
                        device.device_type,
                        device.secret_key,
                        device.is_verified,
                        list(device.backup_codes),
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            if _constraint_name(exc).endswith("_pkey"):
                raise AlreadyExists("device already exists", {"field": "device_id"})
            raise AlreadyExists("device name already exists", {"field": "device_name"})
        except errors.ForeignKeyViolation:
            raise NotFound(
                f"user not found: {device.user_id} in pool {device.pool_id}",
                {"pool_id": device.pool_id, "user_id": device.user_id},
            )
        return self._device_from_row(row)

    def get_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mfa_devices WHERE pool_id = %s AND user_id = %s AND device_id = %s",
                (pool_id, user_id, device_id),
            ).fetchone()
        if not row:
            raise NotFound(
                f"mfa device not found: {device_id}",
                {"pool_id": pool_id, "user_id": user_id, "device_id": device_id},
            )
        return self._device_from_row(row)

    def list_user_mfa_devices(self, pool_id: str, user_id: str) -> List[MfaDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mfa_devices WHERE pool_id = %s AND user_id = %s ORDER BY device_id",
                (pool_id, user_id),
            ).fetchall()
        return [self._device_from_row(r) for r in rows]

    def update_mfa_device(
        self, pool_id: str, user_id: str, device_id: str, update: MfaDeviceUpdate
    ) -> MfaDevice:
        changes = filter_changes(update.changes(), DEVICE_MUTABLE_COLUMNS)
        sql, params = self._build_update(
            "mfa_devices",
            DEVICE_MUTABLE_COLUMNS,
            changes,
            [("pool_id", pool_id), ("user_id", user_id), ("device_id", device_id)],
        )
        try:
            with self._connect() as conn:
                row = conn.execute(sql, params).fetchone()
        except errors.UniqueViolation:
            raise AlreadyExists("device name already exists", {"field": "device_name"})
        if not row:
            raise NotFound(
                f"mfa device not found: {device_id}",
                {"pool_id": pool_id, "user_id": user_id, "device_id": device_id},
            )
        return self._device_from_row(row)

    def verify_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice:
        return self.update_mfa_device(
            pool_id, user_id, device_id, MfaDeviceUpdate(is_verified=True)
        )

    def consume_backup_code(
        self, pool_id: str, user_id: str, device_id: str, code_digest: str
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_devices
                SET backup_codes = array_remove(backup_codes, %s), last_used = now(), updated_at = now()
                WHERE pool_id = %s AND user_id = %s AND device_id = %s AND %s = ANY(backup_codes)
                RETURNING device_id
                """,
                (code_digest, pool_id, user_id, device_id, code_digest),
            ).fetchone()
        return row is not None

    def delete_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM mfa_devices WHERE pool_id = %s AND user_id = %s AND device_id = %s",
                (pool_id, user_id, device_id),
            )
            if result.rowcount == 0:
                raise NotFound(
                    f"mfa device not found: {device_id}",
                    {"pool_id": pool_id, "user_id": user_id, "device_id": device_id},
                )
