from __future__ import annotations

import asyncio
import re
import string
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from poolauth.config import DEFAULT_POOL_SETTINGS, Settings
from poolauth.logging import get_logger
from poolauth.service.errors import (
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    ReauthenticationRequired,
    ValidationError,
)
from poolauth.storage.base import IdentityStore
from poolauth.storage.common import normalize_email
from poolauth.storage.errors import AlreadyExists, NotFound
from poolauth.storage.models import (
    UNSET,
    Page,
    User,
    UserPool,
    UserStatus,
    UserUpdate,
    utcnow,
)

logger = get_logger(__name__)

# Account ids minted by the previous identity scheme; sessions carrying them must re-authenticate.
LEGACY_ACCOUNT_ID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)

_CUSTOM_ATTRIBUTE_TYPES: Dict[str, tuple] = {
    "string": (str,),
    "number": (int, float),
    "boolean": (bool,),
}


def is_legacy_account_id(account_id: str) -> bool:
    return bool(LEGACY_ACCOUNT_ID.match(account_id or ""))


def _parse_scopes(scope: Any) -> set[str]:
    if scope is None:
        return set()
    if isinstance(scope, str):
        return {part for part in scope.split() if part}
    return {str(part) for part in scope if part}


def _display_name(user: User) -> Optional[str]:
    joined = " ".join(part for part in (user.given_name, user.family_name) if part)
    return joined or user.name or None


def project_claims(user: User, scope: Any, pool: Optional[UserPool] = None) -> Dict[str, Any]:
    """Claims for ``user`` under the requested ``scope``.

    ``sub`` is always present. Custom attributes declared by the pool are
    added whatever the scope; they are not gated like standard claims.
    """
    scopes = _parse_scopes(scope)
    claims: Dict[str, Any] = {"sub": user.user_id}
    if "profile" in scopes:
        claims.update(
            {
                "given_name": user.given_name,
                "family_name": user.family_name,
                "name": _display_name(user),
                "nickname": user.nickname,
                "picture": user.picture,
                "website": user.website,
                "updated_at": int(user.updated_at.timestamp()),
            }
        )
    if "email" in scopes:
        claims["email"] = user.email
        claims["email_verified"] = bool(user.email_verified)
    declared = pool.custom_attributes if pool is not None else None
    for key, value in (user.custom_attributes or {}).items():
        if key == "sub":
            continue
        if declared is not None and key not in declared:
            continue
        claims[key] = value
    return claims


@dataclass
class AccountProjection:
    """What the protocol engine receives from ``find_account``."""

    account_id: str
    pool_id: str
    user: User
    pool: Optional[UserPool] = None
    client_id: Optional[str] = None

    def claims(self, use: str = "id_token", scope: Any = "openid") -> Dict[str, Any]:
        return project_claims(self.user, scope, self.pool)


class AccountService:
    """Pool-scoped identity operations backed by the configured store."""

    def __init__(self, store: IdentityStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both failures cost the same
        self._dummy_hash = self._pwd_hasher.hash("poolauth-timing-equalizer")
        self.logger = logger

    # pools
    async def resolve_pool_for_client(self, client_id: str) -> Optional[UserPool]:
        """Resolve the single pool a client unlocks.

        The client record's pool wins; pools that still name the client as
        their owner are the fallback.
        """
        if not client_id:
            return None
        try:
            client = await asyncio.to_thread(self.store.get_client, client_id)
        except NotFound:
            client = None
        if client is not None:
            try:
                return await asyncio.to_thread(self.store.get_pool, client.pool_id)
            except NotFound:
                self.logger.error(
                    "client_pool_missing", client_id=client_id, pool_id=client.pool_id
                )
                return None
        return await asyncio.to_thread(self.store.get_pool_by_client_id, client_id)

    async def ensure_default_pool(self) -> UserPool:
        """Create the bootstrap pool on first start."""
        pool_id = self.settings.default_pool_id
        try:
            return await asyncio.to_thread(self.store.get_pool, pool_id)
        except NotFound:
            pass
        pool = UserPool(
            pool_id=pool_id,
            client_id=self.settings.default_client_id,
            pool_name="Default User Pool",
            custom_attributes={},
            settings=dict(DEFAULT_POOL_SETTINGS),
        )
        try:
            created = await asyncio.to_thread(self.store.create_pool, pool)
        except AlreadyExists:
            return await asyncio.to_thread(self.store.get_pool, pool_id)
        self.logger.info("default_pool_created", pool_id=pool_id)
        return created

    # lookups
    async def find_by_pool_and_id(self, pool_id: str, account_id: str) -> Optional[User]:
        try:
            return await asyncio.to_thread(self.store.get_user, pool_id, account_id)
        except NotFound:
            return None

    async def find_by_pool_and_email(self, pool_id: str, email: str) -> Optional[User]:
        return await asyncio.to_thread(self.store.get_user_by_email, pool_id, email)

    async def find_account(
        self, account_id: str, client_id: Optional[str]
    ) -> Optional[AccountProjection]:
        """Protocol-engine callback resolving an account for a client.

        Returns ``None`` for legacy-format ids, unknown clients and unknown
        accounts, which makes the engine prompt for login again.
        """
        if is_legacy_account_id(account_id):
            self.logger.warning("legacy_account_id_rejected", account_id=account_id)
            return None
        if not client_id:
            self.logger.error("find_account_missing_client", account_id=account_id)
            return None
        pool = await self.resolve_pool_for_client(client_id)
        if pool is None:
            self.logger.error("find_account_unknown_client", client_id=client_id)
            return None
        user = await self.find_by_pool_and_id(pool.pool_id, account_id)
        if user is None:
            self.logger.warning(
                "find_account_not_found", account_id=account_id, pool_id=pool.pool_id
            )
            return None
        return AccountProjection(
            account_id=user.user_id,
            pool_id=pool.pool_id,
            user=user,
            pool=pool,
            client_id=client_id,
        )

    def require_current_account_id(self, account_id: Optional[str]) -> str:
        if not account_id or is_legacy_account_id(account_id):
            raise ReauthenticationRequired("Login required")
        return account_id

    # credentials
    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, password_hash: Optional[str], password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash or self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def authenticate(self, email: str, password: str, client_id: str) -> User:
        """Return the user for valid credentials; ``InvalidCredentials`` otherwise.

        Unknown email and wrong password raise the same error with the same
        message. The internal cause is only logged.
        """
        pool = await self.resolve_pool_for_client(client_id)
        if pool is None:
            self.logger.error("authenticate_unknown_client", client_id=client_id)
            raise ValidationError("Client configuration error", detail={"client_id": client_id})
        user = await self.find_by_pool_and_email(pool.pool_id, email or "")
        if user is None:
            await asyncio.to_thread(self._verify_password, None, password or "")
            self.logger.warning(
                "authenticate_failed", reason="unknown_email", pool_id=pool.pool_id
            )
            raise InvalidCredentials()
        valid = await asyncio.to_thread(self._verify_password, user.password_hash, password or "")
        if not valid:
            self.logger.warning(
                "authenticate_failed",
                reason="password_mismatch",
                pool_id=pool.pool_id,
                user_id=user.user_id,
            )
            raise InvalidCredentials()
        if user.status == UserStatus.ARCHIVED:
            self.logger.warning(
                "authenticate_failed", reason="archived", pool_id=pool.pool_id, user_id=user.user_id
            )
            raise InvalidCredentials()
        updated = await asyncio.to_thread(
            self.store.update_user,
            pool.pool_id,
            user.user_id,
            UserUpdate(last_login=utcnow()),
        )
        self.logger.info("authenticate_succeeded", pool_id=pool.pool_id, user_id=user.user_id)
        return updated

    def validate_password(self, password: str, pool: UserPool) -> None:
        policy = pool.password_policy or DEFAULT_POOL_SETTINGS["passwordPolicy"]
        problems: List[str] = []
        min_length = int(policy.get("minLength", 8))
        if len(password or "") < min_length:
            problems.append(f"at least {min_length} characters")
        if policy.get("requireUppercase") and not any(c.isupper() for c in password):
            problems.append("an uppercase letter")
        if policy.get("requireLowercase") and not any(c.islower() for c in password):
            problems.append("a lowercase letter")
        if policy.get("requireNumbers") and not any(c.isdigit() for c in password):
            problems.append("a number")
        if policy.get("requireSymbols") and not any(c in string.punctuation for c in password):
            problems.append("a symbol")
        if problems:
            raise ValidationError(
                "Password must contain " + ", ".join(problems),
                detail={"password_policy": policy},
            )

    def _validate_custom_attributes(self, attributes: Dict[str, Any], pool: UserPool) -> None:
        declared = pool.custom_attributes or {}
        for key, value in attributes.items():
            if key not in declared:
                raise ValidationError(
                    f"Unknown custom attribute: {key}", detail={"attribute": key}
                )
            expected = _CUSTOM_ATTRIBUTE_TYPES.get(str(declared[key]).lower())
            if value is None or expected is None:
                continue
            if not isinstance(value, expected) or (
                expected != (bool,) and isinstance(value, bool)
            ):
                raise ValidationError(
                    f"Custom attribute {key} must be a {declared[key]}",
                    detail={"attribute": key},
                )

    async def _get_pool(self, pool_id: str) -> UserPool:
        try:
            return await asyncio.to_thread(self.store.get_pool, pool_id)
        except NotFound as exc:
            raise NotFoundError("pool not found", detail={"pool_id": pool_id}) from exc

    # lifecycle
    async def create(
        self,
        pool_id: str,
        *,
        email: str,
        password: str,
        given_name: Optional[str] = None,
        family_name: Optional[str] = None,
        nickname: Optional[str] = None,
        picture: Optional[str] = None,
        website: Optional[str] = None,
        custom_attributes: Optional[Dict[str, Any]] = None,
        email_verified: bool = False,
    ) -> User:
        pool = await self._get_pool(pool_id)
        normalized = normalize_email(email or "")
        if "@" not in normalized:
            raise ValidationError("A valid email address is required", detail={"field": "email"})
        self.validate_password(password, pool)
        attributes = dict(custom_attributes or {})
        self._validate_custom_attributes(attributes, pool)
        name = " ".join(p for p in (given_name, family_name) if p) or None
        user = User(
            pool_id=pool_id,
            email=normalized,
            password_hash=await asyncio.to_thread(self._hash_password, password),
            email_verified=email_verified,
            name=name,
            given_name=given_name,
            family_name=family_name,
            nickname=nickname,
            picture=picture,
            website=website,
            custom_attributes={k: v for k, v in attributes.items() if v is not None},
        )
        try:
            created = await asyncio.to_thread(self.store.create_user, user)
        except AlreadyExists as exc:
            raise ConflictError(
                "An account with this email already exists", detail={"field": "email"}
            ) from exc
        self.logger.info("account_created", pool_id=pool_id, user_id=created.user_id)
        return created

    async def update(
        self,
        pool_id: str,
        account_id: str,
        *,
        email: Optional[str] = UNSET,
        email_verified: Optional[bool] = UNSET,
        given_name: Optional[str] = UNSET,
        family_name: Optional[str] = UNSET,
        nickname: Optional[str] = UNSET,
        picture: Optional[str] = UNSET,
        website: Optional[str] = UNSET,
        custom_attributes: Optional[Dict[str, Any]] = UNSET,
        groups: Optional[List[str]] = UNSET,
        status: Optional[UserStatus] = UNSET,
    ) -> User:
        """Partial update. Omitted fields stay as they are; ``None`` clears a
        profile field.

        Custom attributes are merged key by key, and a ``None`` value inside
        ``custom_attributes`` removes that key.
        """
        required = {
            "email": email,
            "email_verified": email_verified,
            "custom_attributes": custom_attributes,
            "groups": groups,
            "status": status,
        }
        for field_name, value in required.items():
            if value is None:
                raise ValidationError(
                    f"{field_name} cannot be cleared", detail={"field": field_name}
                )
        current = await self.find_by_pool_and_id(pool_id, account_id)
        if current is None:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        merged_attributes = UNSET
        if custom_attributes is not UNSET:
            pool = await self._get_pool(pool_id)
            self._validate_custom_attributes(custom_attributes, pool)
            merged_attributes = dict(current.custom_attributes)
            for key, value in custom_attributes.items():
                if value is None:
                    merged_attributes.pop(key, None)
                else:
                    merged_attributes[key] = value
        name = UNSET
        if given_name is not UNSET or family_name is not UNSET:
            name = " ".join(
                p
                for p in (
                    current.given_name if given_name is UNSET else given_name,
                    current.family_name if family_name is UNSET else family_name,
                )
                if p
            ) or None
        update = UserUpdate(
            email=UNSET if email is UNSET else normalize_email(email),
            email_verified=email_verified,
            name=name,
            given_name=given_name,
            family_name=family_name,
            nickname=nickname,
            picture=picture,
            website=website,
            custom_attributes=merged_attributes,
            groups=groups,
            status=status,
        )
        try:
            return await asyncio.to_thread(self.store.update_user, pool_id, account_id, update)
        except AlreadyExists as exc:
            raise ConflictError(
                "An account with this email already exists", detail={"field": "email"}
            ) from exc
        except NotFound as exc:
            raise NotFoundError("account not found", detail={"account_id": account_id}) from exc

    async def change_password(self, pool_id: str, account_id: str, new_password: str) -> User:
        pool = await self._get_pool(pool_id)
        self.validate_password(new_password, pool)
        password_hash = await asyncio.to_thread(self._hash_password, new_password)
        try:
            user = await asyncio.to_thread(
                self.store.update_user,
                pool_id,
                account_id,
                UserUpdate(password_hash=password_hash),
            )
        except NotFound as exc:
            raise NotFoundError("account not found", detail={"account_id": account_id}) from exc
        self.logger.info("password_changed", pool_id=pool_id, user_id=account_id)
        return user

    async def set_status(self, pool_id: str, account_id: str, status: UserStatus) -> User:
        try:
            return await asyncio.to_thread(
                self.store.update_user,
                pool_id,
                account_id,
                UserUpdate(status=UserStatus(status)),
            )
        except NotFound as exc:
            raise NotFoundError("account not found", detail={"account_id": account_id}) from exc

    async def delete(self, pool_id: str, account_id: str) -> None:
        try:
            await asyncio.to_thread(self.store.delete_user, pool_id, account_id)
        except NotFound as exc:
            raise NotFoundError("account not found", detail={"account_id": account_id}) from exc
        self.logger.info("account_deleted", pool_id=pool_id, user_id=account_id)

    async def list_accounts(
        self, pool_id: str, *, limit: Optional[int] = None, next_token: Optional[str] = None
    ) -> Page[User]:
        try:
            return await asyncio.to_thread(self.store.list_users, pool_id, limit, next_token)
        except ValueError as exc:
            raise ValidationError("invalid page token", detail={"next_token": next_token}) from exc

    async def project_claims(
        self, user: User, scope: Iterable[str] | str
    ) -> Dict[str, Any]:
        pool = await self._get_pool(user.pool_id)
        return project_claims(user, scope, pool)
