"""Login, MFA, consent and registration steps for one engine interaction.

Each step reads the interaction context from the protocol engine, does its
work and either finishes the interaction (``FINISHED``/``ABORTED`` with a
redirect) or returns the state to re-render with an error message.
Recoverable failures (bad password, bad code) never raise; session and
expiry problems do.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from poolauth.config import DEFAULT_CLIENT_SCOPE, Settings
from poolauth.logging import get_logger
from poolauth.service.account import AccountService
from poolauth.service.engine import (
    ConsentResult,
    ErrorResult,
    InteractionContext,
    InteractionNotFound,
    InteractionResult,
    LoginResult,
    ProtocolEngine,
)
from poolauth.service.errors import (
    ConflictError,
    InteractionExpired,
    InvalidCredentials,
    MfaVerificationFailed,
    ServerError,
    SessionMismatch,
    ValidationError,
)
from poolauth.service.mfa import MfaService
from poolauth.service.pending_flows import MfaPending, MfaSetupPending, PendingFlowStore
from poolauth.storage.models import User

logger = get_logger(__name__)

_TOTP_CODE = re.compile(r"^\d{6}$")

ACCESS_DENIED = ErrorResult(
    error="access_denied",
    error_description="The resource owner denied the request",
)


class InteractionState(str, Enum):
    AWAITING_LOGIN = "awaiting_login"
    AWAITING_MFA = "awaiting_mfa"
    AWAITING_CONSENT = "awaiting_consent"
    MFA_SETUP = "mfa_setup"
    FINISHED = "finished"
    ABORTED = "aborted"


@dataclass
class InteractionOutcome:
    state: InteractionState
    uid: str
    redirect_to: Optional[str] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "uid": self.uid,
            "redirect_to": self.redirect_to,
            "error": self.error,
            "data": self.data,
        }


class InteractionOrchestrator:
    def __init__(
        self,
        engine: ProtocolEngine,
        accounts: AccountService,
        mfa: MfaService,
        pending: PendingFlowStore,
        settings: Settings,
    ) -> None:
        self.engine = engine
        self.accounts = accounts
        self.mfa = mfa
        self.pending = pending
        self.settings = settings
        self.logger = logger

    # engine access
    async def _context(self, uid: str) -> InteractionContext:
        try:
            return await self.engine.get_interaction_context(uid)
        except InteractionNotFound as exc:
            self.logger.warning("interaction_lookup_failed", interaction_id=uid)
            raise InteractionExpired(
                "This sign-in request has expired. Please start again.",
                detail={"interaction_id": uid},
            ) from exc

    async def _finish(self, uid: str, result: InteractionResult) -> str:
        try:
            return await self.engine.finish_interaction(uid, result)
        except InteractionNotFound as exc:
            self.logger.warning("interaction_finish_failed", interaction_id=uid)
            raise InteractionExpired(
                "This sign-in request has expired. Please start again.",
                detail={"interaction_id": uid},
            ) from exc

    async def _finish_login(self, uid: str, account_id: str, remember: bool = False) -> InteractionOutcome:
        redirect = await self._finish(uid, LoginResult(account_id=account_id, remember=remember))
        self.logger.info("interaction_login_finished", interaction_id=uid, account_id=account_id)
        return InteractionOutcome(
            InteractionState.FINISHED, uid, redirect_to=redirect, data={"account_id": account_id}
        )

    @staticmethod
    def _retry(state: InteractionState, uid: str, error: str, **data: Any) -> InteractionOutcome:
        return InteractionOutcome(state, uid, error=error, data=data)

    # steps
    async def show(self, uid: str) -> InteractionOutcome:
        """Describe what the browser should render for the current prompt."""
        ctx = await self._context(uid)
        if ctx.prompt_name == "login":
            return InteractionOutcome(
                InteractionState.AWAITING_LOGIN,
                uid,
                data={"client_id": ctx.client_id, "login_hint": ctx.param("login_hint")},
            )
        if ctx.prompt_name == "consent":
            return InteractionOutcome(
                InteractionState.AWAITING_CONSENT,
                uid,
                data={
                    "client_id": ctx.client_id,
                    "missing_oidc_scope": list(ctx.missing_oidc_scope),
                    "missing_oidc_claims": list(ctx.missing_oidc_claims),
                    "missing_resource_scopes": dict(ctx.missing_resource_scopes),
                },
            )
        self.logger.error("interaction_unknown_prompt", interaction_id=uid, prompt=ctx.prompt_name)
        raise ServerError(f"Unsupported prompt: {ctx.prompt_name}", status_code=501)

    async def login(
        self,
        uid: str,
        session_id: Optional[str],
        *,
        email: str,
        password: str,
        remember: bool = False,
    ) -> InteractionOutcome:
        ctx = await self._context(uid)
        if not ctx.client_id:
            self.logger.error("interaction_missing_client", interaction_id=uid)
            return self._retry(InteractionState.AWAITING_LOGIN, uid, "Invalid client configuration")
        try:
            user = await self.accounts.authenticate(email, password, ctx.client_id)
        except InvalidCredentials as exc:
            return self._retry(InteractionState.AWAITING_LOGIN, uid, exc.message)
        except ValidationError as exc:
            return self._retry(InteractionState.AWAITING_LOGIN, uid, exc.message)
        if user.mfa_enabled:
            if not session_id:
                raise SessionMismatch("A session is required to continue", detail={"interaction_id": uid})
            await self.pending.put(
                session_id,
                MfaPending(
                    interaction_id=uid,
                    account_id=user.user_id,
                    pool_id=user.pool_id,
                    email=user.email,
                ),
            )
            self.logger.info("interaction_mfa_required", interaction_id=uid, account_id=user.user_id)
            return InteractionOutcome(InteractionState.AWAITING_MFA, uid)
        if user.mfa_required:
            self.logger.info(
                "interaction_mfa_enrolment_required", interaction_id=uid, account_id=user.user_id
            )
            return await self._divert_to_setup(uid, session_id, ctx, user)
        return await self._finish_login(uid, user.user_id, remember)

    async def verify_mfa(self, uid: str, session_id: Optional[str], code: str) -> InteractionOutcome:
        flow = await self.pending.get(session_id, uid, MfaPending)
        code = (code or "").strip()
        if not _TOTP_CODE.match(code):
            return self._retry(InteractionState.AWAITING_MFA, uid, "Please enter a valid 6-digit code.")
        try:
            await self.mfa.require_code(flow.pool_id, flow.account_id, code)
        except MfaVerificationFailed as exc:
            return self._retry(InteractionState.AWAITING_MFA, uid, exc.message)
        await self.pending.clear(session_id)
        return await self._finish_login(uid, flow.account_id)

    async def verify_backup_code(
        self, uid: str, session_id: Optional[str], backup_code: str
    ) -> InteractionOutcome:
        flow = await self.pending.get(session_id, uid, MfaPending)
        if not (backup_code or "").strip():
            return self._retry(InteractionState.AWAITING_MFA, uid, "Please enter a valid backup code.")
        try:
            await self.mfa.require_backup_code(flow.pool_id, flow.account_id, backup_code)
        except MfaVerificationFailed as exc:
            return self._retry(InteractionState.AWAITING_MFA, uid, exc.message)
        await self.pending.clear(session_id)
        return await self._finish_login(uid, flow.account_id)

    async def confirm(self, uid: str) -> InteractionOutcome:
        """Grant what the engine reports as missing and finish with consent."""
        ctx = await self._context(uid)
        account_id = self.accounts.require_current_account_id(ctx.session_account_id)
        if ctx.grant_id:
            grant = await self.engine.find_grant(ctx.grant_id)
            if grant is None:
                self.logger.error("interaction_grant_missing", interaction_id=uid, grant_id=ctx.grant_id)
                raise ValidationError("Invalid grant. Please try again.", detail={"grant_id": ctx.grant_id})
        else:
            if not ctx.client_id:
                raise ValidationError("Invalid client configuration", detail={"interaction_id": uid})
            grant = self.engine.new_grant(account_id=account_id, client_id=ctx.client_id)
        if ctx.missing_oidc_scope:
            grant.add_oidc_scope(" ".join(ctx.missing_oidc_scope))
        if ctx.missing_oidc_claims:
            grant.add_oidc_claims(list(ctx.missing_oidc_claims))
        for indicator, scopes in ctx.missing_resource_scopes.items():
            grant.add_resource_scope(indicator, " ".join(scopes))
        grant_id = await grant.save()
        # An existing grant is already bound to the interaction
        result = ConsentResult(grant_id=None if ctx.grant_id else grant_id)
        redirect = await self._finish(uid, result)
        self.logger.info("interaction_consent_finished", interaction_id=uid, grant_id=grant_id)
        return InteractionOutcome(
            InteractionState.FINISHED, uid, redirect_to=redirect, data={"grant_id": grant_id}
        )

    async def abort(self, uid: str, session_id: Optional[str] = None) -> InteractionOutcome:
        await self.pending.clear(session_id)
        redirect = await self._finish(uid, ACCESS_DENIED)
        self.logger.info("interaction_aborted", interaction_id=uid)
        return InteractionOutcome(InteractionState.ABORTED, uid, redirect_to=redirect)

    async def register(
        self,
        uid: str,
        session_id: Optional[str],
        *,
        email: str,
        password: str,
        confirm_password: Optional[str] = None,
        given_name: Optional[str] = None,
        family_name: Optional[str] = None,
        enable_mfa: bool = False,
    ) -> InteractionOutcome:
        """Create an account, then log in directly or divert to MFA setup."""
        if confirm_password is not None and password != confirm_password:
            return self._retry(
                InteractionState.AWAITING_LOGIN, uid, "Passwords do not match", mode="register"
            )
        ctx = await self._context(uid)
        if not ctx.client_id:
            self.logger.error("interaction_missing_client", interaction_id=uid)
            return self._retry(
                InteractionState.AWAITING_LOGIN, uid, "Invalid client configuration", mode="register"
            )
        pool = await self.accounts.resolve_pool_for_client(ctx.client_id)
        if pool is None:
            self.logger.error("register_unknown_client", interaction_id=uid, client_id=ctx.client_id)
            return self._retry(
                InteractionState.AWAITING_LOGIN, uid, "Client configuration error", mode="register"
            )
        try:
            user = await self.accounts.create(
                pool.pool_id,
                email=email,
                password=password,
                given_name=given_name,
                family_name=family_name,
            )
        except (ConflictError, ValidationError) as exc:
            return self._retry(InteractionState.AWAITING_LOGIN, uid, exc.message, mode="register")
        if not enable_mfa:
            return await self._finish_login(uid, user.user_id)
        self.logger.info("register_mfa_setup_requested", interaction_id=uid, account_id=user.user_id)
        return await self._divert_to_setup(uid, session_id, ctx, user)

    async def _divert_to_setup(
        self, uid: str, session_id: Optional[str], ctx: InteractionContext, user: User
    ) -> InteractionOutcome:
        """Park the authorization request in the session and send the browser to MFA setup."""
        if not session_id:
            raise SessionMismatch("A session is required to continue", detail={"interaction_id": uid})
        await self.pending.put(
            session_id,
            MfaSetupPending(
                interaction_id=uid,
                account_id=user.user_id,
                pool_id=user.pool_id,
                email=user.email,
                client_id=ctx.client_id,
                redirect_uri=ctx.param("redirect_uri"),
                scope=ctx.param("scope"),
                state=ctx.param("state"),
                code_challenge=ctx.param("code_challenge"),
                code_challenge_method=ctx.param("code_challenge_method"),
            ),
        )
        return InteractionOutcome(
            InteractionState.MFA_SETUP,
            uid,
            redirect_to="/mfa/setup?" + urlencode({"uid": uid}),
            data={"account_id": user.user_id},
        )

    async def start_mfa_setup(self, uid: str, session_id: Optional[str]) -> InteractionOutcome:
        """Issue a fresh device for the account parked in this session."""
        flow = await self.pending.get(session_id, uid, MfaSetupPending)
        if flow.device_id:
            await self.mfa.discard_pending_device(flow.pool_id, flow.account_id, flow.device_id)
        setup = await self.mfa.generate_setup(flow.pool_id, flow.account_id, account_name=flow.email)
        flow.device_id = setup.device_id
        await self.pending.put(session_id, flow)
        return InteractionOutcome(
            InteractionState.MFA_SETUP,
            uid,
            data={
                "device_id": setup.device_id,
                "secret": setup.secret,
                "otpauth_uri": setup.otpauth_uri,
                "backup_codes": setup.backup_codes,
            },
        )

    async def complete_mfa_setup(
        self, uid: str, session_id: Optional[str], *, device_id: str, code: str
    ) -> InteractionOutcome:
        """Verify the new device and log in, resuming from scratch if the interaction expired."""
        flow = await self.pending.get(session_id, uid, MfaSetupPending)
        if not flow.device_id or flow.device_id != device_id:
            raise SessionMismatch(
                "Device does not belong to this setup session", detail={"device_id": device_id}
            )
        verified = await self.mfa.verify_registration(
            flow.pool_id, flow.account_id, device_id, (code or "").strip()
        )
        if not verified:
            return self._retry(
                InteractionState.MFA_SETUP,
                uid,
                "Invalid verification code. Please try again.",
                device_id=device_id,
            )
        await self.pending.clear(session_id)
        try:
            redirect = await self.engine.finish_interaction(uid, LoginResult(account_id=flow.account_id))
        except InteractionNotFound:
            redirect = self.resumption_url(flow)
            self.logger.info(
                "mfa_setup_resuming_authorization", interaction_id=uid, account_id=flow.account_id
            )
            return InteractionOutcome(
                InteractionState.FINISHED,
                uid,
                redirect_to=redirect,
                data={"account_id": flow.account_id, "resumed": True},
            )
        self.logger.info("interaction_login_finished", interaction_id=uid, account_id=flow.account_id)
        return InteractionOutcome(
            InteractionState.FINISHED,
            uid,
            redirect_to=redirect,
            data={"account_id": flow.account_id, "resumed": False},
        )

    def resumption_url(self, flow: MfaSetupPending) -> str:
        """Rebuild the original authorization request with the new account as login hint."""
        if not flow.client_id or not flow.redirect_uri:
            return "/?" + urlencode({"login_hint": flow.email})
        params: Dict[str, str] = {
            "response_type": "code",
            "client_id": flow.client_id,
            "redirect_uri": flow.redirect_uri,
            "scope": flow.scope or DEFAULT_CLIENT_SCOPE,
            "login_hint": flow.email,
        }
        if flow.state:
            params["state"] = flow.state
        if flow.code_challenge and flow.code_challenge_method:
            params["code_challenge"] = flow.code_challenge
            params["code_challenge_method"] = flow.code_challenge_method
        return f"{self.settings.issuer_url.rstrip('/')}/auth?{urlencode(params)}"
