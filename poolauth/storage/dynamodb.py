"""Identity store over DynamoDB.

Table layout (names carry the configured prefix):

- ``user-pools``: hash ``pool_id``; GSI ``ClientIdIndex`` on ``client_id``.
- ``users``: hash ``pool_id``, range ``user_id``; GSI ``EmailIndex`` on
  ``(pool_id, email)``.
- ``clients``: hash ``client_id``; GSI ``PoolIdIndex`` on ``(pool_id, client_id)``.
- ``groups``: hash ``pool_id``, range ``group_id``; GSI ``GroupNameIndex`` on
  ``(pool_id, group_name)``.
- ``mfa-devices``: hash ``pool_user`` (``<pool_id>#<user_id>``), range ``device_id``.

DynamoDB has no cross-table transactions here, so pool cascades and the
group-removal fan-out run as individual item writes. A failed item is logged
as a warning and the operation carries on; both operations are idempotent and
safe to re-run. Declared-unique secondary keys are checked through their index
before the conditional put, which leaves a small race window the relational
backend does not have.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

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
from poolauth.storage.cursors import decode_page_token, encode_page_token
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

# Attributes stored as DynamoDB string sets so membership edits are atomic
_STRING_SET_ATTRS = frozenset({"groups", "backup_codes"})

_TABLE_DEFINITIONS: Dict[str, Dict[str, Any]] = {
    "user-pools": {
        "KeySchema": [{"AttributeName": "pool_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "pool_id", "AttributeType": "S"},
            {"AttributeName": "client_id", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            {
                "IndexName": "ClientIdIndex",
                "KeySchema": [{"AttributeName": "client_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
    },
    "users": {
        "KeySchema": [
            {"AttributeName": "pool_id", "KeyType": "HASH"},
            {"AttributeName": "user_id", "KeyType": "RANGE"},
        ],
        "AttributeDefinitions": [
            {"AttributeName": "pool_id", "AttributeType": "S"},
            {"AttributeName": "user_id", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            {
                "IndexName": "EmailIndex",
                "KeySchema": [
                    {"AttributeName": "pool_id", "KeyType": "HASH"},
                    {"AttributeName": "email", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
    },
    "clients": {
        "KeySchema": [{"AttributeName": "client_id", "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": "client_id", "AttributeType": "S"},
            {"AttributeName": "pool_id", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            {
                "IndexName": "PoolIdIndex",
                "KeySchema": [
                    {"AttributeName": "pool_id", "KeyType": "HASH"},
                    {"AttributeName": "client_id", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
    },
    "groups": {
        "KeySchema": [
            {"AttributeName": "pool_id", "KeyType": "HASH"},
            {"AttributeName": "group_id", "KeyType": "RANGE"},
        ],
        "AttributeDefinitions": [
            {"AttributeName": "pool_id", "AttributeType": "S"},
            {"AttributeName": "group_id", "AttributeType": "S"},
            {"AttributeName": "group_name", "AttributeType": "S"},
        ],
        "GlobalSecondaryIndexes": [
            {
                "IndexName": "GroupNameIndex",
                "KeySchema": [
                    {"AttributeName": "pool_id", "KeyType": "HASH"},
                    {"AttributeName": "group_name", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            }
        ],
    },
    "mfa-devices": {
        "KeySchema": [
            {"AttributeName": "pool_user", "KeyType": "HASH"},
            {"AttributeName": "device_id", "KeyType": "RANGE"},
        ],
        "AttributeDefinitions": [
            {"AttributeName": "pool_user", "AttributeType": "S"},
            {"AttributeName": "device_id", "AttributeType": "S"},
        ],
    },
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value))


def _pool_user(pool_id: str, user_id: str) -> str:
    return f"{pool_id}#{user_id}"


class DynamoStore:
    """Identity store backed by DynamoDB tables and secondary indexes."""

    def __init__(
        self,
        region: str,
        *,
        endpoint_url: Optional[str] = None,
        table_prefix: str = "identity-",
        create_tables: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.region = region
        self.table_prefix = table_prefix
        self.create_tables = create_tables
        self.dynamodb = boto3.resource("dynamodb", region_name=region, endpoint_url=endpoint_url)
        self.pools_table = self.dynamodb.Table(self._table_name("user-pools"))
        self.users_table = self.dynamodb.Table(self._table_name("users"))
        self.clients_table = self.dynamodb.Table(self._table_name("clients"))
        self.groups_table = self.dynamodb.Table(self._table_name("groups"))
        self.devices_table = self.dynamodb.Table(self._table_name("mfa-devices"))

    def _table_name(self, base: str) -> str:
        return f"{self.table_prefix}{base}"

    def connect(self) -> None:
        if self.create_tables:
            self._ensure_tables()
        self.logger.info("dynamodb_store_connected", region=self.region, prefix=self.table_prefix)

    def disconnect(self) -> None:
        self.logger.info("dynamodb_store_disconnected")

    @contextmanager
    def _calls(self) -> Iterator[None]:
        try:
            yield
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code == "ConditionalCheckFailedException":
                raise
            self.logger.error("dynamodb_request_failed", code=code, error=sanitize_error_message(str(exc)))
            raise BackendUnavailable(
                f"dynamodb request failed: {exc.response.get('Error', {}).get('Message', code)}",
                {"code": code},
            ) from exc
        except BotoCoreError as exc:
            self.logger.error("dynamodb_unavailable", error=sanitize_error_message(str(exc)))
            raise BackendUnavailable("dynamodb unavailable", {"error": sanitize_error_message(str(exc))}) from exc

    @staticmethod
    def _is_condition_failure(exc: ClientError) -> bool:
        return exc.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"

    def _ensure_tables(self) -> None:
        client = self.dynamodb.meta.client
        with self._calls():
            existing = set(client.list_tables().get("TableNames", []))
            for base, definition in _TABLE_DEFINITIONS.items():
                name = self._table_name(base)
                if name in existing:
                    continue
                client.create_table(TableName=name, BillingMode="PAY_PER_REQUEST", **definition)
                client.get_waiter("table_exists").wait(TableName=name)
                self.logger.info("dynamodb_table_created", table=name)

    def _put_new(self, table: Any, item: Dict[str, Any], key_attr: str, message: str, field: str) -> None:
        try:
            with self._calls():
                table.put_item(
                    Item=item,
                    ConditionExpression=Attr(key_attr).not_exists(),
                )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                raise AlreadyExists(message, {"field": field}) from exc
            raise

    def _update(
        self,
        table: Any,
        key: Dict[str, Any],
        changes: Dict[str, Any],
        allowed: Dict[str, str],
        not_found: NotFound,
    ) -> Dict[str, Any]:
        """Apply an allow-listed partial update and return the new item.

        Attribute names are bound through placeholders taken from ``allowed``.
        """
        now = utcnow().isoformat()
        set_parts = ["#updated_at = :updated_at"]
        remove_parts: List[str] = []
        names: Dict[str, str] = {"#updated_at": "updated_at"}
        values: Dict[str, Any] = {":updated_at": now}
        for index, (attr, value) in enumerate(changes.items()):
            column = allowed[attr]
            placeholder = f"#f{index}"
            names[placeholder] = column
            if value is None:
                remove_parts.append(placeholder)
                continue
            if attr in _STRING_SET_ATTRS:
                if not value:
                    remove_parts.append(placeholder)
                    continue
                value = set(value)
            elif attr in JSON_COLUMNS:
                value = json.dumps(value or {})
            elif isinstance(value, UserStatus):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            values[f":v{index}"] = value
            set_parts.append(f"{placeholder} = :v{index}")
        expression = "SET " + ", ".join(set_parts)
        if remove_parts:
            expression += " REMOVE " + ", ".join(remove_parts)
        first_key = next(iter(key))
        names["#pk"] = first_key
        try:
            with self._calls():
                response = table.update_item(
                    Key=key,
                    UpdateExpression=expression,
                    ConditionExpression="attribute_exists(#pk)",
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values,
                    ReturnValues="ALL_NEW",
                )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                raise not_found from exc
            raise
        return response["Attributes"]

    def _delete(self, table: Any, key: Dict[str, Any], not_found: NotFound) -> None:
        names = {"#pk": next(iter(key))}
        try:
            with self._calls():
                table.delete_item(
                    Key=key,
                    ConditionExpression="attribute_exists(#pk)",
                    ExpressionAttributeNames=names,
                )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                raise not_found from exc
            raise

    def _paged(
        self,
        operation: Callable[..., Dict[str, Any]],
        key_names: Sequence[str],
        limit: Optional[int],
        next_token: Optional[str],
        **kwargs: Any,
    ) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        size = clamp_page_size(limit)
        start = decode_page_token(next_token)
        items: List[Dict[str, Any]] = []
        # Read one past the page so the token is only issued when rows remain
        while len(items) <= size:
            request = dict(kwargs, Limit=size + 1 - len(items))
            if start:
                request["ExclusiveStartKey"] = start
            with self._calls():
                response = operation(**request)
            items.extend(response.get("Items", []))
            start = response.get("LastEvaluatedKey")
            if not start:
                break
        token = None
        if len(items) > size:
            last = items[size - 1]
            token = encode_page_token({name: last[name] for name in key_names})
        return items[:size], token

    def _query_all(self, table: Any, **kwargs: Any) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        start = None
        while True:
            request = dict(kwargs)
            if start:
                request["ExclusiveStartKey"] = start
            with self._calls():
                response = table.query(**request)
            items.extend(response.get("Items", []))
            start = response.get("LastEvaluatedKey")
            if not start:
                return items

    # item mapping
    @staticmethod
    def _pool_item(pool: UserPool) -> Dict[str, Any]:
        return {
            "pool_id": pool.pool_id,
            "client_id": pool.client_id,
            "pool_name": pool.pool_name,
            "custom_attributes": json.dumps(pool.custom_attributes or {}),
            "settings": json.dumps(pool.settings or {}),
            "created_at": _iso(pool.created_at),
            "updated_at": _iso(pool.updated_at),
        }

    @staticmethod
    def _pool_from_item(item: Dict[str, Any]) -> UserPool:
        return UserPool(
            pool_id=item["pool_id"],
            client_id=item["client_id"],
            pool_name=item["pool_name"],
            custom_attributes=parse_json_map(item.get("custom_attributes")),
            settings=parse_json_map(item.get("settings")),
            created_at=_parse_ts(item.get("created_at")) or utcnow(),
            updated_at=_parse_ts(item.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _user_item(user: User) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "pool_id": user.pool_id,
            "user_id": user.user_id,
            "email": user.email,
            "email_verified": user.email_verified,
            "password_hash": user.password_hash,
            "name": user.name,
            "given_name": user.given_name,
            "family_name": user.family_name,
            "nickname": user.nickname,
            "picture": user.picture,
            "website": user.website,
            "custom_attributes": json.dumps(user.custom_attributes or {}),
            "status": UserStatus(user.status).value,
            "mfa_enabled": user.mfa_enabled,
            "mfa_required": user.mfa_required,
            "last_login": _iso(user.last_login),
            "created_at": _iso(user.created_at),
            "updated_at": _iso(user.updated_at),
        }
        if user.groups:
            item["groups"] = set(user.groups)
        return item

    @staticmethod
    def _user_from_item(item: Dict[str, Any]) -> User:
        return User(
            user_id=item["user_id"],
            pool_id=item["pool_id"],
            email=item["email"],
            email_verified=bool(item.get("email_verified", False)),
            password_hash=item["password_hash"],
            name=item.get("name"),
            given_name=item.get("given_name"),
            family_name=item.get("family_name"),
            nickname=item.get("nickname"),
            picture=item.get("picture"),
            website=item.get("website"),
            custom_attributes=parse_json_map(item.get("custom_attributes")),
            groups=sorted(item.get("groups") or []),
            status=UserStatus(item.get("status") or UserStatus.CONFIRMED.value),
            mfa_enabled=bool(item.get("mfa_enabled", False)),
            mfa_required=bool(item.get("mfa_required", False)),
            last_login=_parse_ts(item.get("last_login")),
            created_at=_parse_ts(item.get("created_at")) or utcnow(),
            updated_at=_parse_ts(item.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _client_item(client: Client) -> Dict[str, Any]:
        return {
            "client_id": client.client_id,
            "client_secret": client.client_secret,
            "client_name": client.client_name,
            "pool_id": client.pool_id,
            "redirect_uris": list(client.redirect_uris),
            "post_logout_redirect_uris": list(client.post_logout_redirect_uris),
            "response_types": list(client.response_types),
            "grant_types": list(client.grant_types),
            "scope": client.scope,
            "token_endpoint_auth_method": client.token_endpoint_auth_method,
            "application_type": client.application_type,
            "settings": json.dumps(client.settings or {}),
            "created_at": _iso(client.created_at),
            "updated_at": _iso(client.updated_at),
        }

    @staticmethod
    def _client_from_item(item: Dict[str, Any]) -> Client:
        return Client(
            client_id=item["client_id"],
            client_secret=item["client_secret"],
            client_name=item["client_name"],
            pool_id=item["pool_id"],
            redirect_uris=list(item.get("redirect_uris") or []),
            post_logout_redirect_uris=list(item.get("post_logout_redirect_uris") or []),
            response_types=list(item.get("response_types") or ["code"]),
            grant_types=list(item.get("grant_types") or []),
            scope=item.get("scope") or "openid profile email",
            token_endpoint_auth_method=item.get("token_endpoint_auth_method")
            or "client_secret_basic",
            application_type=item.get("application_type") or "web",
            settings=parse_json_map(item.get("settings")),
            created_at=_parse_ts(item.get("created_at")) or utcnow(),
            updated_at=_parse_ts(item.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _group_item(group: Group) -> Dict[str, Any]:
        return {
            "pool_id": group.pool_id,
            "group_id": group.group_id,
            "group_name": group.group_name,
            "description": group.description,
            "permissions": list(group.permissions),
            "created_at": _iso(group.created_at),
            "updated_at": _iso(group.updated_at),
        }

    @staticmethod
    def _group_from_item(item: Dict[str, Any]) -> Group:
        return Group(
            group_id=item["group_id"],
            pool_id=item["pool_id"],
            group_name=item["group_name"],
            description=item.get("description"),
            permissions=list(item.get("permissions") or []),
            created_at=_parse_ts(item.get("created_at")) or utcnow(),
            updated_at=_parse_ts(item.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _device_item(device: MfaDevice) -> Dict[str, Any]:
        item: Dict[str, Any] = {
            "pool_user": _pool_user(device.pool_id, device.user_id),
            "device_id": device.device_id,
            "pool_id": device.pool_id,
            "user_id": device.user_id,
            "device_name": device.device_name,
            "device_type": device.device_type,
            "secret_key": device.secret_key,
            "is_verified": device.is_verified,
            "last_used": _iso(device.last_used),
            "created_at": _iso(device.created_at),
            "updated_at": _iso(device.updated_at),
        }
        if device.backup_codes:
            item["backup_codes"] = set(device.backup_codes)
        return item

    @staticmethod
    def _device_from_item(item: Dict[str, Any]) -> MfaDevice:
        return MfaDevice(
            device_id=item["device_id"],
            pool_id=item["pool_id"],
            user_id=item["user_id"],
            device_name=item["device_name"],
            device_type=item.get("device_type") or "TOTP",
            secret_key=item["secret_key"],
            is_verified=bool(item.get("is_verified", False)),
            backup_codes=sorted(item.get("backup_codes") or []),
            last_used=_parse_ts(item.get("last_used")),
            created_at=_parse_ts(item.get("created_at")) or utcnow(),
            updated_at=_parse_ts(item.get("updated_at")) or utcnow(),
        )

    # pools
    def create_pool(self, pool: UserPool) -> UserPool:
        if self.get_pool_by_client_id(pool.client_id) is not None:
            raise AlreadyExists("pool client id already in use", {"field": "client_id"})
        now = utcnow()
        stored = UserPool(
            pool_id=pool.pool_id,
            client_id=pool.client_id,
            pool_name=pool.pool_name,
            custom_attributes=dict(pool.custom_attributes),
            settings=dict(pool.settings),
            created_at=now,
            updated_at=now,
        )
        self._put_new(self.pools_table, self._pool_item(stored), "pool_id", "pool already exists", "pool_id")
        return stored

    def get_pool(self, pool_id: str) -> UserPool:
        with self._calls():
            response = self.pools_table.get_item(Key={"pool_id": pool_id})
        item = response.get("Item")
        if not item:
            raise NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id})
        return self._pool_from_item(item)

    def get_pool_by_client_id(self, client_id: str) -> Optional[UserPool]:
        with self._calls():
            response = self.pools_table.query(
                IndexName="ClientIdIndex",
                KeyConditionExpression=Key("client_id").eq(client_id),
                Limit=1,
            )
        items = response.get("Items", [])
        return self._pool_from_item(items[0]) if items else None

    def list_pools(
        self, limit: Optional[int] = None, next_token: Optional[str] = None
    ) -> Page[UserPool]:
        items, token = self._paged(self.pools_table.scan, ["pool_id"], limit, next_token)
        return Page(items=[self._pool_from_item(i) for i in items], next_token=token)

    def update_pool(self, pool_id: str, update: PoolUpdate) -> UserPool:
        changes = filter_changes(update.changes(), POOL_MUTABLE_COLUMNS)
        new_client_id = changes.get("client_id")
        if new_client_id:
            holder = self.get_pool_by_client_id(new_client_id)
            if holder is not None and holder.pool_id != pool_id:
                raise AlreadyExists("pool client id already in use", {"field": "client_id"})
        item = self._update(
            self.pools_table,
            {"pool_id": pool_id},
            changes,
            POOL_MUTABLE_COLUMNS,
            NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id}),
        )
        return self._pool_from_item(item)

    def delete_pool(self, pool_id: str) -> None:
        """Delete a pool and, item by item, everything scoped to it."""
        self.get_pool(pool_id)
        failures = 0
        users = self._query_all(
            self.users_table, KeyConditionExpression=Key("pool_id").eq(pool_id)
        )
        for item in users:
            try:
                failures += self._delete_user_items(pool_id, item["user_id"])
            except (BackendUnavailable, NotFound) as exc:
                failures += 1
                self.logger.warning(
                    "pool_cascade_item_failed", pool_id=pool_id, entity="user",
                    key=item["user_id"], error=str(exc),
                )
        groups = self._query_all(
            self.groups_table, KeyConditionExpression=Key("pool_id").eq(pool_id)
        )
        for item in groups:
            try:
                with self._calls():
                    self.groups_table.delete_item(Key={"pool_id": pool_id, "group_id": item["group_id"]})
            except BackendUnavailable as exc:
                failures += 1
                self.logger.warning(
                    "pool_cascade_item_failed", pool_id=pool_id, entity="group",
                    key=item["group_id"], error=str(exc),
                )
        clients = self._query_all(
            self.clients_table,
            IndexName="PoolIdIndex",
            KeyConditionExpression=Key("pool_id").eq(pool_id),
        )
        for item in clients:
            try:
                with self._calls():
                    self.clients_table.delete_item(Key={"client_id": item["client_id"]})
            except BackendUnavailable as exc:
                failures += 1
                self.logger.warning(
                    "pool_cascade_item_failed", pool_id=pool_id, entity="client",
                    key=item["client_id"], error=str(exc),
                )
        self._delete(
            self.pools_table,
            {"pool_id": pool_id},
            NotFound(f"pool not found: {pool_id}", {"pool_id": pool_id}),
        )
        self.logger.info("pool_deleted", pool_id=pool_id, cascade_failures=failures)

    # users
    def create_user(self, user: User) -> User:
        self.get_pool(user.pool_id)
        email = normalize_email(user.email)
        if self.get_user_by_email(user.pool_id, email) is not None:
            raise AlreadyExists("email already exists", {"field": "email"})
        now = utcnow()
        stored = replace(
            user,
            user_id=user.user_id or new_entity_id(),
            email=email,
            groups=list(user.groups),
            custom_attributes=dict(user.custom_attributes),
            created_at=now,
            updated_at=now,
        )
        self._put_new(self.users_table, self._user_item(stored), "user_id", "user already exists", "user_id")
        return stored

    def get_user(self, pool_id: str, user_id: str) -> User:
        with self._calls():
            response = self.users_table.get_item(Key={"pool_id": pool_id, "user_id": user_id})
        item = response.get("Item")
        if not item:
            raise NotFound(
                f"user not found: {user_id} in pool {pool_id}",
                {"pool_id": pool_id, "user_id": user_id},
            )
        user = self._user_from_item(item)
        ensure_pool(user.pool_id, pool_id, entity="user", key=user_id)
        return user

    def get_user_by_email(self, pool_id: str, email: str) -> Optional[User]:
        with self._calls():
            response = self.users_table.query(
                IndexName="EmailIndex",
                KeyConditionExpression=Key("pool_id").eq(pool_id)
                & Key("email").eq(normalize_email(email)),
                Limit=1,
            )
        items = response.get("Items", [])
        if not items:
            return None
        user = self._user_from_item(items[0])
        ensure_pool(user.pool_id, pool_id, entity="user", key=user.user_id)
        return user

    def list_users(
        self,
        pool_id: str,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[User]:
        items, token = self._paged(
            self.users_table.query,
            ["pool_id", "user_id"],
            limit,
            next_token,
            KeyConditionExpression=Key("pool_id").eq(pool_id),
        )
        return Page(items=[self._user_from_item(i) for i in items], next_token=token)

    def count_users(self, pool_id: str) -> int:
        total = 0
        start = None
        while True:
            request: Dict[str, Any] = {
                "KeyConditionExpression": Key("pool_id").eq(pool_id),
                "Select": "COUNT",
            }
            if start:
                request["ExclusiveStartKey"] = start
            with self._calls():
                response = self.users_table.query(**request)
            total += int(response.get("Count", 0))
            start = response.get("LastEvaluatedKey")
            if not start:
                return total

    def update_user(self, pool_id: str, user_id: str, update: UserUpdate) -> User:
        changes = filter_changes(update.changes(), USER_MUTABLE_COLUMNS)
        if "email" in changes:
            changes["email"] = normalize_email(changes["email"])
            holder = self.get_user_by_email(pool_id, changes["email"])
            if holder is not None and holder.user_id != user_id:
                raise AlreadyExists("email already exists", {"field": "email"})
        item = self._update(
            self.users_table,
            {"pool_id": pool_id, "user_id": user_id},
            changes,
            USER_MUTABLE_COLUMNS,
            NotFound(
                f"user not found: {user_id} in pool {pool_id}",
                {"pool_id": pool_id, "user_id": user_id},
            ),
        )
        return self._user_from_item(item)

    def update_user_mfa_status(self, pool_id: str, user_id: str, enabled: bool) -> User:
        return self.update_user(pool_id, user_id, UserUpdate(mfa_enabled=enabled))

    def _delete_user_items(self, pool_id: str, user_id: str) -> int:
        """Delete the user's devices one by one, then the user; returns device failures."""
        failures = 0
        for device in self._query_all(
            self.devices_table,
            KeyConditionExpression=Key("pool_user").eq(_pool_user(pool_id, user_id)),
        ):
            try:
                with self._calls():
                    self.devices_table.delete_item(
                        Key={"pool_user": device["pool_user"], "device_id": device["device_id"]}
                    )
            except BackendUnavailable as exc:
                failures += 1
                self.logger.warning(
                    "user_cascade_item_failed", pool_id=pool_id, user_id=user_id,
                    entity="mfa_device", key=device["device_id"], error=str(exc),
                )
        self._delete(
            self.users_table,
            {"pool_id": pool_id, "user_id": user_id},
            NotFound(
                f"user not found: {user_id} in pool {pool_id}",
                {"pool_id": pool_id, "user_id": user_id},
            ),
        )
        return failures

    def delete_user(self, pool_id: str, user_id: str) -> None:
        self.get_user(pool_id, user_id)
        failures = self._delete_user_items(pool_id, user_id)
        if failures:
            self.logger.warning(
                "user_deleted_with_orphans", pool_id=pool_id, user_id=user_id, failures=failures
            )

    # clients
    def create_client(self, client: Client) -> Client:
        self.get_pool(client.pool_id)
        now = utcnow()
        stored = replace(client, created_at=now, updated_at=now)
        self._put_new(
            self.clients_table, self._client_item(stored), "client_id", "client already exists", "client_id"
        )
        return stored

    def get_client(self, client_id: str) -> Client:
        with self._calls():
            response = self.clients_table.get_item(Key={"client_id": client_id})
        item = response.get("Item")
        if not item:
            raise NotFound(f"client not found: {client_id}", {"client_id": client_id})
        return self._client_from_item(item)

    def list_clients(
        self,
        pool_id: Optional[str] = None,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Client]:
        if pool_id is None:
            items, token = self._paged(self.clients_table.scan, ["client_id"], limit, next_token)
        else:
            items, token = self._paged(
                self.clients_table.query,
                ["client_id", "pool_id"],
                limit,
                next_token,
                IndexName="PoolIdIndex",
                KeyConditionExpression=Key("pool_id").eq(pool_id),
            )
        return Page(items=[self._client_from_item(i) for i in items], next_token=token)

    def update_client(self, client_id: str, update: ClientUpdate) -> Client:
        changes = filter_changes(update.changes(), CLIENT_MUTABLE_COLUMNS)
        item = self._update(
            self.clients_table,
            {"client_id": client_id},
            changes,
            CLIENT_MUTABLE_COLUMNS,
            NotFound(f"client not found: {client_id}", {"client_id": client_id}),
        )
        return self._client_from_item(item)

    def reassociate_client(self, client_id: str, pool_id: str) -> Client:
        self.get_pool(pool_id)
        item = self._update(
            self.clients_table,
            {"client_id": client_id},
            {"pool_id": pool_id},
            {"pool_id": "pool_id"},
            NotFound(f"client not found: {client_id}", {"client_id": client_id}),
        )
        return self._client_from_item(item)

    def delete_client(self, client_id: str) -> None:
        self._delete(
            self.clients_table,
            {"client_id": client_id},
            NotFound(f"client not found: {client_id}", {"client_id": client_id}),
        )

    # groups
    def create_group(self, group: Group) -> Group:
        self.get_pool(group.pool_id)
        if self.get_group_by_name(group.pool_id, group.group_name) is not None:
            raise AlreadyExists("group name already exists", {"field": "group_name"})
        now = utcnow()
        stored = Group(
            pool_id=group.pool_id,
            group_name=group.group_name,
            group_id=group.group_id or new_entity_id(),
            description=group.description,
            permissions=list(group.permissions),
            created_at=now,
            updated_at=now,
        )
        self._put_new(self.groups_table, self._group_item(stored), "group_id", "group already exists", "group_id")
        return stored

    def get_group(self, pool_id: str, group_id: str) -> Group:
        with self._calls():
            response = self.groups_table.get_item(Key={"pool_id": pool_id, "group_id": group_id})
        item = response.get("Item")
        if not item:
            raise NotFound(
                f"group not found: {group_id} in pool {pool_id}",
                {"pool_id": pool_id, "group_id": group_id},
            )
        return self._group_from_item(item)

    def get_group_by_name(self, pool_id: str, group_name: str) -> Optional[Group]:
        with self._calls():
            response = self.groups_table.query(
                IndexName="GroupNameIndex",
                KeyConditionExpression=Key("pool_id").eq(pool_id)
                & Key("group_name").eq(group_name),
                Limit=1,
            )
        items = response.get("Items", [])
        return self._group_from_item(items[0]) if items else None

    def list_groups(
        self,
        pool_id: str,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Group]:
        items, token = self._paged(
            self.groups_table.query,
            ["pool_id", "group_id"],
            limit,
            next_token,
            KeyConditionExpression=Key("pool_id").eq(pool_id),
        )
        return Page(items=[self._group_from_item(i) for i in items], next_token=token)

    def update_group(self, pool_id: str, group_id: str, update: GroupUpdate) -> Group:
        changes = filter_changes(update.changes(), GROUP_MUTABLE_COLUMNS)
        if "group_name" in changes:
            holder = self.get_group_by_name(pool_id, changes["group_name"])
            if holder is not None and holder.group_id != group_id:
                raise AlreadyExists("group name already exists", {"field": "group_name"})
        item = self._update(
            self.groups_table,
            {"pool_id": pool_id, "group_id": group_id},
            changes,
            GROUP_MUTABLE_COLUMNS,
            NotFound(
                f"group not found: {group_id} in pool {pool_id}",
                {"pool_id": pool_id, "group_id": group_id},
            ),
        )
        return self._group_from_item(item)

    def delete_group(self, pool_id: str, group_id: str) -> None:
        """Remove the group from every member, then delete it.

        Member updates are independent writes; a failure is logged per user
        and does not stop the deletion.
        """
        self.get_group(pool_id, group_id)
        for user in self.get_group_users(pool_id, group_id):
            try:
                self.remove_user_from_group(pool_id, user.user_id, group_id)
            except (BackendUnavailable, NotFound) as exc:
                self.logger.warning(
                    "group_member_removal_failed",
                    pool_id=pool_id,
                    group_id=group_id,
                    user_id=user.user_id,
                    error=str(exc),
                )
        self._delete(
            self.groups_table,
            {"pool_id": pool_id, "group_id": group_id},
            NotFound(
                f"group not found: {group_id} in pool {pool_id}",
                {"pool_id": pool_id, "group_id": group_id},
            ),
        )

    def _edit_membership(self, pool_id: str, user_id: str, group_id: str, action: str) -> User:
        try:
            with self._calls():
                response = self.users_table.update_item(
                    Key={"pool_id": pool_id, "user_id": user_id},
                    UpdateExpression=f"{action} #groups :group SET #updated_at = :now",
                    ConditionExpression="attribute_exists(user_id)",
                    ExpressionAttributeNames={"#groups": "groups", "#updated_at": "updated_at"},
                    ExpressionAttributeValues={":group": {group_id}, ":now": utcnow().isoformat()},
                    ReturnValues="ALL_NEW",
                )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                raise NotFound(
                    f"user not found: {user_id} in pool {pool_id}",
                    {"pool_id": pool_id, "user_id": user_id},
                ) from exc
            raise
        return self._user_from_item(response["Attributes"])

    def add_user_to_group(self, pool_id: str, user_id: str, group_id: str) -> User:
        self.get_group(pool_id, group_id)
        return self._edit_membership(pool_id, user_id, group_id, "ADD")

    def remove_user_from_group(self, pool_id: str, user_id: str, group_id: str) -> User:
        return self._edit_membership(pool_id, user_id, group_id, "DELETE")

    def get_user_groups(self, pool_id: str, user_id: str) -> List[Group]:
        user = self.get_user(pool_id, user_id)
        groups: List[Group] = []
        for group_id in sorted(user.groups):
            try:
                groups.append(self.get_group(pool_id, group_id))
            except NotFound:
                # stale membership left by an interrupted group delete
                self.logger.warning("stale_group_membership", pool_id=pool_id, user_id=user_id, group_id=group_id)
        return groups

    def get_group_users(self, pool_id: str, group_id: str) -> List[User]:
        self.get_group(pool_id, group_id)
        items = self._query_all(
            self.users_table,
            KeyConditionExpression=Key("pool_id").eq(pool_id),
            FilterExpression=Attr("groups").contains(group_id),
        )
        return [self._user_from_item(i) for i in items]

    # mfa devices
    def create_mfa_device(self, device: MfaDevice) -> MfaDevice:
        self.get_user(device.pool_id, device.user_id)
        existing = self.list_user_mfa_devices(device.pool_id, device.user_id)
        if any(d.device_name == device.device_name for d in existing):
            raise AlreadyExists("device name already exists", {"field": "device_name"})
        now = utcnow()
        stored = replace(
            device,
            device_id=device.device_id or new_entity_id(),
            backup_codes=list(device.backup_codes),
            created_at=now,
            updated_at=now,
        )
        self._put_new(
            self.devices_table, self._device_item(stored), "device_id", "device already exists", "device_id"
        )
        return stored

    def _device_not_found(self, pool_id: str, user_id: str, device_id: str) -> NotFound:
        return NotFound(
            f"mfa device not found: {device_id}",
            {"pool_id": pool_id, "user_id": user_id, "device_id": device_id},
        )

    def get_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice:
        with self._calls():
            response = self.devices_table.get_item(
                Key={"pool_user": _pool_user(pool_id, user_id), "device_id": device_id}
            )
        item = response.get("Item")
        if not item:
            raise self._device_not_found(pool_id, user_id, device_id)
        device = self._device_from_item(item)
        ensure_pool(device.pool_id, pool_id, entity="mfa_device", key=device_id)
        return device

    def list_user_mfa_devices(self, pool_id: str, user_id: str) -> List[MfaDevice]:
        items = self._query_all(
            self.devices_table,
            KeyConditionExpression=Key("pool_user").eq(_pool_user(pool_id, user_id)),
        )
        return [self._device_from_item(i) for i in items]

    def update_mfa_device(
        self, pool_id: str, user_id: str, device_id: str, update: MfaDeviceUpdate
    ) -> MfaDevice:
        changes = filter_changes(update.changes(), DEVICE_MUTABLE_COLUMNS)
        if "device_name" in changes:
            for other in self.list_user_mfa_devices(pool_id, user_id):
                if other.device_name == changes["device_name"] and other.device_id != device_id:
                    raise AlreadyExists("device name already exists", {"field": "device_name"})
        item = self._update(
            self.devices_table,
            {"pool_user": _pool_user(pool_id, user_id), "device_id": device_id},
            changes,
            DEVICE_MUTABLE_COLUMNS,
            self._device_not_found(pool_id, user_id, device_id),
        )
        return self._device_from_item(item)

    def verify_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> MfaDevice:
        return self.update_mfa_device(
            pool_id, user_id, device_id, MfaDeviceUpdate(is_verified=True)
        )

    def consume_backup_code(
        self, pool_id: str, user_id: str, device_id: str, code_digest: str
    ) -> bool:
        now = utcnow().isoformat()
        try:
            with self._calls():
                self.devices_table.update_item(
                    Key={"pool_user": _pool_user(pool_id, user_id), "device_id": device_id},
                    UpdateExpression="DELETE backup_codes :code SET last_used = :now, updated_at = :now",
                    ConditionExpression=Attr("backup_codes").contains(code_digest),
                    ExpressionAttributeValues={":code": {code_digest}, ":now": now},
                )
        except ClientError as exc:
            if self._is_condition_failure(exc):
                return False
            raise
        return True

    def delete_mfa_device(self, pool_id: str, user_id: str, device_id: str) -> None:
        self._delete(
            self.devices_table,
            {"pool_user": _pool_user(pool_id, user_id), "device_id": device_id},
            self._device_not_found(pool_id, user_id, device_id),
        )
