from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from poolauth.config import DEFAULT_CLIENT_SCOPE, MfaConfiguration
from poolauth.logging import get_correlation_id
from poolauth.storage.common import MAX_DEVICE_NAME_LENGTH
from poolauth.storage.models import (
    Client,
    Group,
    MfaDevice,
    User,
    UserPool,
    UserStatus,
)

_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "invalid_credentials",
    "mfa_verification_failed",
    "login_required",
    "forbidden",
    "not_found",
    "conflict",
    "session_mismatch",
    "interaction_expired",
    "backend_unavailable",
    "server_error",
}


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _ERROR_CODES:
            return "server_error"
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# interaction requests
class LoginRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    remember: bool = False


class MfaCodeRequest(BaseModel):
    code: str = Field(..., max_length=16)


class BackupCodeRequest(BaseModel):
    backup_code: str = Field(..., max_length=32)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    confirm_password: Optional[str] = Field(None, max_length=1024)
    given_name: Optional[str] = Field(None, max_length=256)
    family_name: Optional[str] = Field(None, max_length=256)
    enable_mfa: bool = False


class MfaSetupCompleteRequest(BaseModel):
    uid: str
    device_id: str
    code: str = Field(..., max_length=16)


# admin requests
class PoolCreateRequest(BaseModel):
    client_id: str
    pool_name: str = Field(..., min_length=1, max_length=256)
    pool_id: Optional[str] = None
    custom_attributes: Dict[str, str] = Field(default_factory=dict)
    settings: Dict[str, Any] = Field(default_factory=dict)


class PoolUpdateRequest(BaseModel):
    client_id: Optional[str] = None
    pool_name: Optional[str] = Field(None, min_length=1, max_length=256)
    custom_attributes: Optional[Dict[str, str]] = None
    settings: Optional[Dict[str, Any]] = None


class UserCreateRequest(BaseModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    website: Optional[str] = None
    email_verified: bool = False
    custom_attributes: Dict[str, Any] = Field(default_factory=dict)


class UserUpdateRequest(BaseModel):
    email: Optional[str] = Field(None, max_length=320)
    email_verified: Optional[bool] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    website: Optional[str] = None
    custom_attributes: Optional[Dict[str, Any]] = None
    status: Optional[UserStatus] = None


class PasswordChangeRequest(BaseModel):
    password: str = Field(..., max_length=1024)


class GroupCreateRequest(BaseModel):
    group_name: str = Field(..., min_length=1, max_length=128)
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class GroupUpdateRequest(BaseModel):
    group_name: Optional[str] = Field(None, min_length=1, max_length=128)
    description: Optional[str] = None
    permissions: Optional[List[str]] = None


class ClientProvisionRequest(BaseModel):
    client_name: str = Field(..., min_length=1, max_length=256)
    redirect_uris: List[str] = Field(..., min_length=1)
    pool_id: Optional[str] = None
    client_id: Optional[str] = None
    post_logout_redirect_uris: List[str] = Field(default_factory=list)
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    scope: str = DEFAULT_CLIENT_SCOPE
    token_endpoint_auth_method: str = "client_secret_basic"
    application_type: str = "web"


class ClientUpdateRequest(BaseModel):
    client_name: Optional[str] = Field(None, min_length=1, max_length=256)
    redirect_uris: Optional[List[str]] = None
    post_logout_redirect_uris: Optional[List[str]] = None
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    scope: Optional[str] = None
    token_endpoint_auth_method: Optional[str] = None
    application_type: Optional[str] = None


class ClientReassociateRequest(BaseModel):
    pool_id: str


class DeviceRenameRequest(BaseModel):
    device_name: str = Field(..., min_length=1, max_length=MAX_DEVICE_NAME_LENGTH)


class MfaEnrolRequest(BaseModel):
    pool_id: str
    user_id: str
    device_name: str = Field("Default Device", min_length=1, max_length=MAX_DEVICE_NAME_LENGTH)


class MfaVerifySetupRequest(BaseModel):
    pool_id: str
    user_id: str
    device_id: str
    code: str = Field(..., max_length=16)


class MfaVerifyAuthRequest(BaseModel):
    pool_id: str
    user_id: str
    code: str = Field(..., max_length=16)


# responses
class PoolResponse(BaseModel):
    pool_id: str
    client_id: str
    pool_name: str
    custom_attributes: Dict[str, str]
    settings: Dict[str, Any]
    mfa_configuration: MfaConfiguration
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, pool: UserPool) -> "PoolResponse":
        return cls(
            pool_id=pool.pool_id,
            client_id=pool.client_id,
            pool_name=pool.pool_name,
            custom_attributes=pool.custom_attributes,
            settings=pool.settings,
            mfa_configuration=MfaConfiguration(pool.mfa_configuration),
            created_at=pool.created_at,
            updated_at=pool.updated_at,
        )


class UserResponse(BaseModel):
    """Users without their password hash."""

    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    pool_id: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    website: Optional[str] = None
    custom_attributes: Dict[str, Any]
    groups: List[str]
    status: UserStatus
    mfa_enabled: bool
    mfa_required: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, user: User) -> "UserResponse":
        return cls(
            user_id=user.user_id,
            pool_id=user.pool_id,
            email=user.email,
            email_verified=user.email_verified,
            name=user.name,
            given_name=user.given_name,
            family_name=user.family_name,
            nickname=user.nickname,
            picture=user.picture,
            website=user.website,
            custom_attributes=user.custom_attributes,
            groups=list(user.groups),
            status=user.status,
            mfa_enabled=user.mfa_enabled,
            mfa_required=user.mfa_required,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class ClientResponse(BaseModel):
    client_id: str
    client_name: str
    pool_id: str
    redirect_uris: List[str]
    post_logout_redirect_uris: List[str]
    response_types: List[str]
    grant_types: List[str]
    scope: str
    token_endpoint_auth_method: str
    application_type: str
    client_secret: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, client: Client, *, include_secret: bool = False) -> "ClientResponse":
        return cls(
            client_id=client.client_id,
            client_name=client.client_name,
            pool_id=client.pool_id,
            redirect_uris=list(client.redirect_uris),
            post_logout_redirect_uris=list(client.post_logout_redirect_uris),
            response_types=list(client.response_types),
            grant_types=list(client.grant_types),
            scope=client.scope,
            token_endpoint_auth_method=client.token_endpoint_auth_method,
            application_type=client.application_type,
            client_secret=client.client_secret if include_secret else None,
            created_at=client.created_at,
            updated_at=client.updated_at,
        )


class GroupResponse(BaseModel):
    group_id: str
    pool_id: str
    group_name: str
    description: Optional[str] = None
    permissions: List[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_entity(cls, group: Group) -> "GroupResponse":
        return cls(
            group_id=group.group_id,
            pool_id=group.pool_id,
            group_name=group.group_name,
            description=group.description,
            permissions=list(group.permissions),
            created_at=group.created_at,
            updated_at=group.updated_at,
        )


class DeviceResponse(BaseModel):
    """Device metadata; the secret and backup codes never leave the service."""

    device_id: str
    device_name: str
    device_type: str
    is_verified: bool
    backup_codes_remaining: int
    last_used: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_entity(cls, device: MfaDevice) -> "DeviceResponse":
        return cls(
            device_id=device.device_id,
            device_name=device.device_name,
            device_type=device.device_type,
            is_verified=device.is_verified,
            backup_codes_remaining=len(device.backup_codes),
            last_used=device.last_used,
            created_at=device.created_at,
        )


class PageResponse(BaseModel):
    items: List[Any]
    next_token: Optional[str] = None
