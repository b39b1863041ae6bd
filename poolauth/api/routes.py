from __future__ import annotations

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from pydantic import BaseModel

from poolauth.api.schemas import (
    BackupCodeRequest,
    ClientProvisionRequest,
    ClientReassociateRequest,
    ClientResponse,
    ClientUpdateRequest,
    DeviceRenameRequest,
    DeviceResponse,
    Envelope,
    GroupCreateRequest,
    GroupResponse,
    GroupUpdateRequest,
    LoginRequest,
    MfaCodeRequest,
    MfaEnrolRequest,
    MfaSetupCompleteRequest,
    MfaVerifyAuthRequest,
    MfaVerifySetupRequest,
    PageResponse,
    PasswordChangeRequest,
    PoolCreateRequest,
    PoolResponse,
    PoolUpdateRequest,
    RegisterRequest,
    UserCreateRequest,
    UserResponse,
    UserUpdateRequest,
)
from poolauth.logging import get_logger
from poolauth.service.engine import ProtocolEngine
from poolauth.service.errors import ForbiddenError, NotFoundError, ValidationError
from poolauth.service.interactions import InteractionOrchestrator, InteractionOutcome
from poolauth.service.runtime import get_runtime
from poolauth.storage.models import ClientUpdate, GroupUpdate, PoolUpdate, User

logger = get_logger(__name__)

SESSION_COOKIE = "poolauth_session"

router = APIRouter(tags=["interaction"])
admin_router = APIRouter(prefix="/v1/admin", tags=["admin"])


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _engine(request: Request) -> ProtocolEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise _http_error("server_error", "protocol engine not configured", status_code=500)
    return engine


def _orchestrator(request: Request) -> InteractionOrchestrator:
    return get_runtime().interactions(_engine(request))


def _update_from(update_cls, body: BaseModel):
    """Build a partial update from the fields the request actually sent."""
    changes = body.model_dump(exclude_unset=True)
    for name, value in changes.items():
        if value is None and name not in update_cls.clearable:
            raise ValidationError(f"{name} cannot be cleared", detail={"field": name})
    return update_cls(**changes)


def _session_id(request: Request, response: Response) -> str:
    """Return the browser's session id, issuing a cookie on first contact."""
    session_id = request.cookies.get(SESSION_COOKIE)
    if session_id:
        return session_id
    session_id = secrets.token_urlsafe(32)
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        httponly=True,
        samesite="lax",
        secure=request.url.scheme == "https",
        path="/",
    )
    return session_id


def _outcome(outcome: InteractionOutcome) -> Envelope:
    return Envelope(status="ok", data=outcome.to_dict())


async def require_admin(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> None:
    expected = get_runtime().settings.admin_api_key
    if not expected:
        raise ForbiddenError("admin API disabled")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        logger.warning("admin_key_rejected")
        raise ForbiddenError("admin access required")


# interactions
@router.get("/interaction/{uid}", response_model=Envelope)
async def show_interaction(uid: str, request: Request):
    return _outcome(await _orchestrator(request).show(uid))


@router.post("/interaction/{uid}/login", response_model=Envelope)
async def submit_login(uid: str, body: LoginRequest, request: Request, response: Response):
    outcome = await _orchestrator(request).login(
        uid,
        _session_id(request, response),
        email=body.email,
        password=body.password,
        remember=body.remember,
    )
    return _outcome(outcome)


@router.post("/interaction/{uid}/mfa", response_model=Envelope)
async def submit_mfa(uid: str, body: MfaCodeRequest, request: Request):
    outcome = await _orchestrator(request).verify_mfa(
        uid, request.cookies.get(SESSION_COOKIE), body.code
    )
    return _outcome(outcome)


@router.post("/interaction/{uid}/mfa/backup", response_model=Envelope)
async def submit_backup_code(uid: str, body: BackupCodeRequest, request: Request):
    outcome = await _orchestrator(request).verify_backup_code(
        uid, request.cookies.get(SESSION_COOKIE), body.backup_code
    )
    return _outcome(outcome)


@router.post("/interaction/{uid}/confirm", response_model=Envelope)
async def confirm_consent(uid: str, request: Request):
    return _outcome(await _orchestrator(request).confirm(uid))


@router.post("/interaction/{uid}/abort", response_model=Envelope)
async def abort_interaction(uid: str, request: Request):
    outcome = await _orchestrator(request).abort(uid, request.cookies.get(SESSION_COOKIE))
    return _outcome(outcome)


@router.post("/interaction/{uid}/register", response_model=Envelope, status_code=200)
async def register(uid: str, body: RegisterRequest, request: Request, response: Response):
    outcome = await _orchestrator(request).register(
        uid,
        _session_id(request, response),
        email=body.email,
        password=body.password,
        confirm_password=body.confirm_password,
        given_name=body.given_name,
        family_name=body.family_name,
        enable_mfa=body.enable_mfa,
    )
    return _outcome(outcome)


@router.get("/mfa/setup", response_model=Envelope)
async def start_mfa_setup(request: Request, uid: str = Query(...)):
    outcome = await _orchestrator(request).start_mfa_setup(
        uid, request.cookies.get(SESSION_COOKIE)
    )
    return _outcome(outcome)


@router.post("/mfa/setup/complete", response_model=Envelope)
async def complete_mfa_setup(body: MfaSetupCompleteRequest, request: Request):
    outcome = await _orchestrator(request).complete_mfa_setup(
        body.uid,
        request.cookies.get(SESSION_COOKIE),
        device_id=body.device_id,
        code=body.code,
    )
    return _outcome(outcome)


# admin: pools
@admin_router.post(
    "/pools", response_model=Envelope, status_code=201, dependencies=[Depends(require_admin)]
)
async def admin_create_pool(body: PoolCreateRequest):
    pool = await get_runtime().pools.create_pool(
        client_id=body.client_id,
        pool_name=body.pool_name,
        pool_id=body.pool_id,
        custom_attributes=body.custom_attributes,
        settings=body.settings,
    )
    return Envelope(status="ok", data=PoolResponse.from_entity(pool))


@admin_router.get("/pools", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_list_pools(
    limit: Optional[int] = Query(None, ge=1), next_token: Optional[str] = None
):
    page = await get_runtime().pools.list_pools(limit=limit, next_token=next_token)
    return Envelope(
        status="ok",
        data=PageResponse(
            items=[PoolResponse.from_entity(p) for p in page.items], next_token=page.next_token
        ),
    )


@admin_router.get("/pools/{pool_id}", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_get_pool(pool_id: str):
    pool = await get_runtime().pools.get_pool(pool_id)
    return Envelope(status="ok", data=PoolResponse.from_entity(pool))


@admin_router.patch("/pools/{pool_id}", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_update_pool(pool_id: str, body: PoolUpdateRequest):
    pool = await get_runtime().pools.update_pool(pool_id, _update_from(PoolUpdate, body))
    return Envelope(status="ok", data=PoolResponse.from_entity(pool))


@admin_router.delete("/pools/{pool_id}", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_delete_pool(pool_id: str):
    await get_runtime().pools.delete_pool(pool_id)
    return Envelope(status="ok", data={"deleted": True, "pool_id": pool_id})


@admin_router.get(
    "/pools/{pool_id}/stats", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_pool_stats(pool_id: str):
    return Envelope(status="ok", data=await get_runtime().pools.pool_stats(pool_id))


# admin: users
async def _require_user(pool_id: str, user_id: str) -> User:
    user = await get_runtime().accounts.find_by_pool_and_id(pool_id, user_id)
    if user is None:
        raise NotFoundError("account not found", detail={"user_id": user_id})
    return user


@admin_router.get(
    "/pools/{pool_id}/users", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_list_users(
    pool_id: str, limit: Optional[int] = Query(None, ge=1), next_token: Optional[str] = None
):
    page = await get_runtime().accounts.list_accounts(pool_id, limit=limit, next_token=next_token)
    return Envelope(
        status="ok",
        data=PageResponse(
            items=[UserResponse.from_entity(u) for u in page.items], next_token=page.next_token
        ),
    )


@admin_router.post(
    "/pools/{pool_id}/users",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(require_admin)],
)
async def admin_create_user(pool_id: str, body: UserCreateRequest):
    user = await get_runtime().accounts.create(
        pool_id,
        email=body.email,
        password=body.password,
        given_name=body.given_name,
        family_name=body.family_name,
        nickname=body.nickname,
        picture=body.picture,
        website=body.website,
        custom_attributes=body.custom_attributes,
        email_verified=body.email_verified,
    )
    return Envelope(status="ok", data=UserResponse.from_entity(user))


@admin_router.get(
    "/pools/{pool_id}/users/{user_id}", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_get_user(pool_id: str, user_id: str):
    return Envelope(status="ok", data=UserResponse.from_entity(await _require_user(pool_id, user_id)))


@admin_router.patch(
    "/pools/{pool_id}/users/{user_id}", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_update_user(pool_id: str, user_id: str, body: UserUpdateRequest):
    user = await get_runtime().accounts.update(
        pool_id, user_id, **body.model_dump(exclude_unset=True)
    )
    return Envelope(status="ok", data=UserResponse.from_entity(user))


@admin_router.delete(
    "/pools/{pool_id}/users/{user_id}", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_delete_user(pool_id: str, user_id: str):
    await get_runtime().accounts.delete(pool_id, user_id)
    return Envelope(status="ok", data={"deleted": True, "user_id": user_id})


@admin_router.post(
    "/pools/{pool_id}/users/{user_id}/password",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_change_password(pool_id: str, user_id: str, body: PasswordChangeRequest):
    user = await get_runtime().accounts.change_password(pool_id, user_id, body.password)
    return Envelope(status="ok", data=UserResponse.from_entity(user))


@admin_router.get(
    "/pools/{pool_id}/users/{user_id}/groups",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_user_groups(pool_id: str, user_id: str):
    groups = await get_runtime().pools.get_user_groups(pool_id, user_id)
    return Envelope(status="ok", data=[GroupResponse.from_entity(g) for g in groups])


# admin: groups
@admin_router.get(
    "/pools/{pool_id}/groups", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_list_groups(
    pool_id: str, limit: Optional[int] = Query(None, ge=1), next_token: Optional[str] = None
):
    page = await get_runtime().pools.list_groups(pool_id, limit=limit, next_token=next_token)
    return Envelope(
        status="ok",
        data=PageResponse(
            items=[GroupResponse.from_entity(g) for g in page.items], next_token=page.next_token
        ),
    )


@admin_router.post(
    "/pools/{pool_id}/groups",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(require_admin)],
)
async def admin_create_group(pool_id: str, body: GroupCreateRequest):
    group = await get_runtime().pools.create_group(
        pool_id,
        group_name=body.group_name,
        description=body.description,
        permissions=body.permissions,
    )
    return Envelope(status="ok", data=GroupResponse.from_entity(group))


@admin_router.get(
    "/pools/{pool_id}/groups/{group_id}", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_get_group(pool_id: str, group_id: str):
    group = await get_runtime().pools.get_group(pool_id, group_id)
    return Envelope(status="ok", data=GroupResponse.from_entity(group))


@admin_router.patch(
    "/pools/{pool_id}/groups/{group_id}", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_update_group(pool_id: str, group_id: str, body: GroupUpdateRequest):
    update = _update_from(GroupUpdate, body)
    group = await get_runtime().pools.update_group(pool_id, group_id, update)
    return Envelope(status="ok", data=GroupResponse.from_entity(group))


@admin_router.delete(
    "/pools/{pool_id}/groups/{group_id}", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_delete_group(pool_id: str, group_id: str):
    await get_runtime().pools.delete_group(pool_id, group_id)
    return Envelope(status="ok", data={"deleted": True, "group_id": group_id})


@admin_router.get(
    "/pools/{pool_id}/groups/{group_id}/members",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_group_members(pool_id: str, group_id: str):
    users = await get_runtime().pools.get_group_users(pool_id, group_id)
    return Envelope(status="ok", data=[UserResponse.from_entity(u) for u in users])


@admin_router.put(
    "/pools/{pool_id}/groups/{group_id}/members/{user_id}",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_add_group_member(pool_id: str, group_id: str, user_id: str):
    user = await get_runtime().pools.add_user_to_group(pool_id, user_id, group_id)
    return Envelope(status="ok", data=UserResponse.from_entity(user))


@admin_router.delete(
    "/pools/{pool_id}/groups/{group_id}/members/{user_id}",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_remove_group_member(pool_id: str, group_id: str, user_id: str):
    user = await get_runtime().pools.remove_user_from_group(pool_id, user_id, group_id)
    return Envelope(status="ok", data=UserResponse.from_entity(user))


# admin: clients
@admin_router.get("/clients", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_list_clients(
    pool_id: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    next_token: Optional[str] = None,
):
    page = await get_runtime().clients.list_clients(pool_id, limit=limit, next_token=next_token)
    return Envelope(
        status="ok",
        data=PageResponse(
            items=[ClientResponse.from_entity(c) for c in page.items], next_token=page.next_token
        ),
    )


@admin_router.post(
    "/clients", response_model=Envelope, status_code=201, dependencies=[Depends(require_admin)]
)
async def admin_provision_client(body: ClientProvisionRequest):
    client = await get_runtime().clients.provision_client(
        client_name=body.client_name,
        redirect_uris=body.redirect_uris,
        pool_id=body.pool_id,
        client_id=body.client_id,
        post_logout_redirect_uris=body.post_logout_redirect_uris,
        grant_types=body.grant_types,
        response_types=body.response_types,
        scope=body.scope,
        token_endpoint_auth_method=body.token_endpoint_auth_method,
        application_type=body.application_type,
    )
    return Envelope(status="ok", data=ClientResponse.from_entity(client, include_secret=True))


@admin_router.post("/clients/reload", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_reload_clients(request: Request):
    count = await get_runtime().clients.reload_clients(_engine(request))
    return Envelope(status="ok", data={"reloaded": count})


@admin_router.get("/clients/{client_id}", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_get_client(client_id: str):
    client = await get_runtime().clients.get_client(client_id)
    return Envelope(status="ok", data=ClientResponse.from_entity(client))


@admin_router.patch(
    "/clients/{client_id}", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_update_client(client_id: str, body: ClientUpdateRequest):
    update = _update_from(ClientUpdate, body)
    client = await get_runtime().clients.update_client(client_id, update)
    return Envelope(status="ok", data=ClientResponse.from_entity(client))


@admin_router.delete(
    "/clients/{client_id}", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_delete_client(client_id: str, delete_orphan_pool: bool = False):
    await get_runtime().clients.delete_client(client_id, delete_orphan_pool=delete_orphan_pool)
    return Envelope(status="ok", data={"deleted": True, "client_id": client_id})


@admin_router.post(
    "/clients/{client_id}/rotate-secret",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_rotate_client_secret(client_id: str):
    client = await get_runtime().clients.rotate_secret(client_id)
    return Envelope(status="ok", data=ClientResponse.from_entity(client, include_secret=True))


@admin_router.post(
    "/clients/{client_id}/pool", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_reassociate_client(client_id: str, body: ClientReassociateRequest):
    client = await get_runtime().clients.reassociate_client(client_id, body.pool_id)
    return Envelope(status="ok", data=ClientResponse.from_entity(client))


@admin_router.get(
    "/clients/{client_id}/stats", response_model=Envelope, dependencies=[Depends(require_admin)]
)
async def admin_client_stats(client_id: str):
    return Envelope(status="ok", data=await get_runtime().clients.client_stats(client_id))


# admin: mfa
@admin_router.get(
    "/pools/{pool_id}/users/{user_id}/mfa",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_mfa_status(pool_id: str, user_id: str):
    runtime = get_runtime()
    status = await runtime.mfa.mfa_status(pool_id, user_id)
    devices = await runtime.mfa.list_devices(pool_id, user_id)
    return Envelope(
        status="ok",
        data={**status, "devices": [DeviceResponse.from_entity(d) for d in devices]},
    )


@admin_router.patch(
    "/pools/{pool_id}/users/{user_id}/mfa/devices/{device_id}",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_rename_device(pool_id: str, user_id: str, device_id: str, body: DeviceRenameRequest):
    device = await get_runtime().mfa.rename_device(pool_id, user_id, device_id, body.device_name)
    return Envelope(status="ok", data=DeviceResponse.from_entity(device))


@admin_router.delete(
    "/pools/{pool_id}/users/{user_id}/mfa/devices/{device_id}",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_remove_device(pool_id: str, user_id: str, device_id: str):
    enabled = await get_runtime().mfa.remove_device(pool_id, user_id, device_id)
    return Envelope(
        status="ok", data={"deleted": True, "device_id": device_id, "mfa_enabled": enabled}
    )


@admin_router.delete(
    "/pools/{pool_id}/users/{user_id}/mfa",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_reset_mfa(pool_id: str, user_id: str):
    await _require_user(pool_id, user_id)
    removed = await get_runtime().mfa.reset_user_mfa(pool_id, user_id)
    return Envelope(status="ok", data={"removed_devices": removed, "mfa_enabled": False})


@admin_router.get("/mfa/metrics", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_mfa_metrics(pool_id: Optional[str] = None):
    return Envelope(status="ok", data=await get_runtime().mfa.adoption_metrics(pool_id))


@admin_router.get("/mfa/pools", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_mfa_pools():
    metrics = await get_runtime().mfa.adoption_metrics()
    return Envelope(status="ok", data=metrics["pools"])


@admin_router.get("/mfa/users", response_model=Envelope, dependencies=[Depends(require_admin)])
async def admin_mfa_users(
    pool_id: str,
    enabled_only: bool = True,
    limit: Optional[int] = Query(None, ge=1),
    next_token: Optional[str] = None,
):
    page = await get_runtime().mfa.list_mfa_users(
        pool_id, enabled_only=enabled_only, limit=limit, next_token=next_token
    )
    return Envelope(status="ok", data=PageResponse(items=page.items, next_token=page.next_token))


@admin_router.post(
    "/mfa/users/{pool_id}/{user_id}/force-enable",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_force_enable_mfa(pool_id: str, user_id: str):
    user = await get_runtime().mfa.force_enable(pool_id, user_id)
    return Envelope(status="ok", data=UserResponse.from_entity(user))


@admin_router.post(
    "/mfa/users/{pool_id}/{user_id}/disable",
    response_model=Envelope,
    dependencies=[Depends(require_admin)],
)
async def admin_disable_mfa(pool_id: str, user_id: str):
    removed = await get_runtime().mfa.disable(pool_id, user_id)
    return Envelope(
        status="ok",
        data={"removed_devices": removed, "mfa_enabled": False, "mfa_required": False},
    )


# account mfa, called server-to-server on behalf of a signed-in user
mfa_router = APIRouter(prefix="/v1/mfa", tags=["mfa"], dependencies=[Depends(require_admin)])


@mfa_router.post("/setup", response_model=Envelope, status_code=201)
async def mfa_setup(body: MfaEnrolRequest):
    setup = await get_runtime().mfa.generate_setup(
        body.pool_id, body.user_id, device_name=body.device_name
    )
    return Envelope(
        status="ok",
        data={
            "device_id": setup.device_id,
            "secret": setup.secret,
            "otpauth_uri": setup.otpauth_uri,
            "backup_codes": setup.backup_codes,
        },
    )


@mfa_router.post("/verify-setup", response_model=Envelope)
async def mfa_verify_setup(body: MfaVerifySetupRequest):
    verified = await get_runtime().mfa.verify_registration(
        body.pool_id, body.user_id, body.device_id, body.code.strip()
    )
    if not verified:
        raise ValidationError(
            "Invalid verification code. Please try again.", detail={"field": "code"}
        )
    return Envelope(status="ok", data={"device_id": body.device_id, "mfa_enabled": True})


@mfa_router.post("/verify-auth", response_model=Envelope)
async def mfa_verify_auth(body: MfaVerifyAuthRequest):
    device_id = await get_runtime().mfa.require_code(body.pool_id, body.user_id, body.code.strip())
    return Envelope(status="ok", data={"device_id": device_id})


@mfa_router.get("/status/{pool_id}/{user_id}", response_model=Envelope)
async def mfa_account_status(pool_id: str, user_id: str):
    return Envelope(status="ok", data=await get_runtime().mfa.mfa_status(pool_id, user_id))
