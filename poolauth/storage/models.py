from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Generic, List, Optional, TypeVar

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    CONFIRMED = "CONFIRMED"
    UNCONFIRMED = "UNCONFIRMED"
    ARCHIVED = "ARCHIVED"
    COMPROMISED = "COMPROMISED"
    RESET_REQUIRED = "RESET_REQUIRED"


@dataclass
class UserPool:
    pool_id: str
    client_id: str
    pool_name: str
    custom_attributes: Dict[str, str] = field(default_factory=dict)
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def password_policy(self) -> Dict[str, Any]:
        return dict(self.settings.get("passwordPolicy") or {})

    @property
    def mfa_configuration(self) -> str:
        return str(self.settings.get("mfaConfiguration") or "OFF")


@dataclass
class User:
    pool_id: str
    email: str
    password_hash: str
    user_id: str = ""
    email_verified: bool = False
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    website: Optional[str] = None
    custom_attributes: Dict[str, Any] = field(default_factory=dict)
    groups: List[str] = field(default_factory=list)
    status: UserStatus = UserStatus.CONFIRMED
    mfa_enabled: bool = False
    mfa_required: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Client:
    client_id: str
    client_secret: str
    client_name: str
    pool_id: str
    redirect_uris: List[str] = field(default_factory=list)
    post_logout_redirect_uris: List[str] = field(default_factory=list)
    response_types: List[str] = field(default_factory=lambda: ["code"])
    grant_types: List[str] = field(
        default_factory=lambda: ["authorization_code", "refresh_token"]
    )
    scope: str = "openid profile email"
    token_endpoint_auth_method: str = "client_secret_basic"
    application_type: str = "web"
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_engine_metadata(self) -> Dict[str, Any]:
        """Client metadata in the snake_case shape OIDC engines consume."""
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "client_name": self.client_name,
            "redirect_uris": list(self.redirect_uris),
            "post_logout_redirect_uris": list(self.post_logout_redirect_uris),
            "response_types": list(self.response_types),
            "grant_types": list(self.grant_types),
            "scope": self.scope,
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
            "application_type": self.application_type,
        }


@dataclass
class Group:
    pool_id: str
    group_name: str
    group_id: str = ""
    description: Optional[str] = None
    permissions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class MfaDevice:
    pool_id: str
    user_id: str
    device_name: str
    secret_key: str
    device_id: str = ""
    device_type: str = "TOTP"
    is_verified: bool = False
    backup_codes: List[str] = field(default_factory=list)
    last_used: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Page(Generic[T]):
    items: List[T]
    next_token: Optional[str] = None


class _Unset:
    """Marker for an update field the caller did not supply."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False

    def __copy__(self) -> "_Unset":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_Unset":
        return self


UNSET: Any = _Unset()


class _Update:
    """Partial update.

    ``UNSET`` leaves a field unchanged and ``None`` clears it. Only fields
    named in ``clearable`` accept ``None``.
    """

    clearable: ClassVar[FrozenSet[str]] = frozenset()

    def __post_init__(self) -> None:
        for f in fields(self):  # type: ignore[arg-type]
            if getattr(self, f.name) is None and f.name not in self.clearable:
                raise ValueError(f"{f.name} cannot be cleared")

    def changes(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)  # type: ignore[arg-type]
            if getattr(self, f.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.changes()


@dataclass
class PoolUpdate(_Update):
    client_id: Optional[str] = UNSET
    pool_name: Optional[str] = UNSET
    custom_attributes: Optional[Dict[str, str]] = UNSET
    settings: Optional[Dict[str, Any]] = UNSET


@dataclass
class UserUpdate(_Update):
    clearable: ClassVar[FrozenSet[str]] = frozenset(
        {"name", "given_name", "family_name", "nickname", "picture", "website", "last_login"}
    )

    email: Optional[str] = UNSET
    email_verified: Optional[bool] = UNSET
    password_hash: Optional[str] = UNSET
    name: Optional[str] = UNSET
    given_name: Optional[str] = UNSET
    family_name: Optional[str] = UNSET
    nickname: Optional[str] = UNSET
    picture: Optional[str] = UNSET
    website: Optional[str] = UNSET
    custom_attributes: Optional[Dict[str, Any]] = UNSET
    groups: Optional[List[str]] = UNSET
    status: Optional[UserStatus] = UNSET
    mfa_enabled: Optional[bool] = UNSET
    mfa_required: Optional[bool] = UNSET
    last_login: Optional[datetime] = UNSET


@dataclass
class ClientUpdate(_Update):
    client_secret: Optional[str] = UNSET
    client_name: Optional[str] = UNSET
    redirect_uris: Optional[List[str]] = UNSET
    post_logout_redirect_uris: Optional[List[str]] = UNSET
    response_types: Optional[List[str]] = UNSET
    grant_types: Optional[List[str]] = UNSET
    scope: Optional[str] = UNSET
    token_endpoint_auth_method: Optional[str] = UNSET
    application_type: Optional[str] = UNSET
    settings: Optional[Dict[str, Any]] = UNSET


@dataclass
class GroupUpdate(_Update):
    clearable: ClassVar[FrozenSet[str]] = frozenset({"description"})

    group_name: Optional[str] = UNSET
    description: Optional[str] = UNSET
    permissions: Optional[List[str]] = UNSET


@dataclass
class MfaDeviceUpdate(_Update):
    clearable: ClassVar[FrozenSet[str]] = frozenset({"last_used"})

    device_name: Optional[str] = UNSET
    is_verified: Optional[bool] = UNSET
    backup_codes: Optional[List[str]] = UNSET
    last_used: Optional[datetime] = UNSET
