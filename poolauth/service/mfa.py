from __future__ import annotations

import asyncio
import base64
import hashlib
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from poolauth.config import Settings
from poolauth.logging import get_logger
from poolauth.service.errors import (
    ConflictError,
    MfaVerificationFailed,
    NotFoundError,
    ValidationError,
)
from poolauth.service.totp import (
    generate_backup_codes,
    generate_secret,
    hash_backup_code,
    provisioning_uri,
    verify_totp,
)
from poolauth.storage.base import IdentityStore
from poolauth.storage.common import MAX_DEVICE_NAME_LENGTH
from poolauth.storage.errors import AlreadyExists, NotFound
from poolauth.storage.models import (
    MfaDevice,
    MfaDeviceUpdate,
    Page,
    User,
    UserPool,
    UserUpdate,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class MfaSetup:
    """Returned once at enrolment; the secret and backup codes are not retrievable later."""

    device_id: str
    secret: str
    otpauth_uri: str
    backup_codes: List[str]


class MfaService:
    """TOTP enrolment and verification, scoped per pool and user.

    The ``verify_*`` methods answer ``False``/``None`` for a bad code; the
    ``require_*`` variants raise ``MfaVerificationFailed`` instead. Only this
    service writes a user's ``mfa_enabled`` flag.
    """

    def __init__(self, store: IdentityStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.issuer = settings.mfa_issuer
        self.window = settings.mfa_totp_window
        self.backup_code_count = settings.mfa_backup_code_count
        self._cipher = self._build_cipher(settings.mfa_encryption_key)
        self.logger = logger

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: Optional[str]) -> Fernet:
        if not key_material:
            raise RuntimeError("MFA_ENCRYPTION_KEY is required")
        return Fernet(self._derive_cipher_key(key_material))

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, ciphertext: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            self.logger.error("mfa_secret_decrypt_failed")
            return None

    @staticmethod
    def _validate_device_name(device_name: str) -> str:
        name = (device_name or "").strip()
        if not name:
            raise ValidationError("device name is required", detail={"field": "device_name"})
        if len(name) > MAX_DEVICE_NAME_LENGTH:
            raise ValidationError(
                f"device name must be at most {MAX_DEVICE_NAME_LENGTH} characters",
                detail={"field": "device_name"},
            )
        return name

    # enrolment
    async def generate_setup(
        self,
        pool_id: str,
        user_id: str,
        *,
        account_name: Optional[str] = None,
        device_name: str = "Default Device",
    ) -> MfaSetup:
        """Create an unverified TOTP device with fresh backup codes."""
        name = self._validate_device_name(device_name)
        try:
            user = await asyncio.to_thread(self.store.get_user, pool_id, user_id)
        except NotFound as exc:
            raise NotFoundError("account not found", detail={"user_id": user_id}) from exc
        secret = generate_secret()
        backup_codes = generate_backup_codes(self.backup_code_count)
        device = MfaDevice(
            pool_id=pool_id,
            user_id=user_id,
            device_name=name,
            secret_key=self._encrypt(secret),
            backup_codes=[hash_backup_code(code) for code in backup_codes],
        )
        try:
            created = await asyncio.to_thread(self.store.create_mfa_device, device)
        except AlreadyExists as exc:
            raise ConflictError(
                "a device with this name already exists", detail={"device_name": name}
            ) from exc
        self.logger.info(
            "mfa_setup_generated", pool_id=pool_id, user_id=user_id, device_id=created.device_id
        )
        return MfaSetup(
            device_id=created.device_id,
            secret=secret,
            otpauth_uri=provisioning_uri(secret, account_name or user.email, self.issuer),
            backup_codes=backup_codes,
        )

    async def verify_registration(
        self, pool_id: str, user_id: str, device_id: str, code: str
    ) -> bool:
        """Verify a pending device; an already verified device is refused."""
        try:
            device = await asyncio.to_thread(
                self.store.get_mfa_device, pool_id, user_id, device_id
            )
        except NotFound:
            self.logger.warning(
                "mfa_registration_device_missing", pool_id=pool_id, user_id=user_id, device_id=device_id
            )
            return False
        if device.is_verified:
            self.logger.warning("mfa_device_already_verified", device_id=device_id)
            return False
        secret = self._decrypt(device.secret_key)
        if not secret or not verify_totp(secret, code, window=self.window):
            self.logger.warning("mfa_registration_failed", pool_id=pool_id, user_id=user_id, device_id=device_id)
            return False
        await asyncio.to_thread(self.store.verify_mfa_device, pool_id, user_id, device_id)
        await asyncio.to_thread(self.store.update_user_mfa_status, pool_id, user_id, True)
        self.logger.info("mfa_device_verified", pool_id=pool_id, user_id=user_id, device_id=device_id)
        return True

    # authentication
    async def _verified_devices(self, pool_id: str, user_id: str) -> List[MfaDevice]:
        devices = await asyncio.to_thread(self.store.list_user_mfa_devices, pool_id, user_id)
        return [device for device in devices if device.is_verified]

    def _code_matches(self, device: MfaDevice, code: str) -> bool:
        secret = self._decrypt(device.secret_key)
        return bool(secret) and verify_totp(secret, code, window=self.window)

    async def verify_authentication(
        self, pool_id: str, user_id: str, code: str
    ) -> Optional[str]:
        """Check ``code`` against every verified device; return the matching id."""
        devices = await self._verified_devices(pool_id, user_id)
        if not devices:
            self.logger.warning("mfa_no_verified_devices", pool_id=pool_id, user_id=user_id)
            return None
        results = await asyncio.gather(
            *(asyncio.to_thread(self._code_matches, device, code) for device in devices)
        )
        for device, matched in zip(devices, results):
            if matched:
                await asyncio.to_thread(
                    self.store.update_mfa_device,
                    pool_id,
                    user_id,
                    device.device_id,
                    MfaDeviceUpdate(last_used=utcnow()),
                )
                self.logger.info(
                    "mfa_authentication_succeeded",
                    pool_id=pool_id,
                    user_id=user_id,
                    device_id=device.device_id,
                )
                return device.device_id
        self.logger.warning("mfa_authentication_failed", pool_id=pool_id, user_id=user_id)
        return None

    async def verify_backup_code(
        self, pool_id: str, user_id: str, backup_code: str
    ) -> Optional[str]:
        """Consume one backup code from whichever verified device holds it."""
        digest = hash_backup_code(backup_code)
        for device in await self._verified_devices(pool_id, user_id):
            if digest not in device.backup_codes:
                continue
            consumed = await asyncio.to_thread(
                self.store.consume_backup_code, pool_id, user_id, device.device_id, digest
            )
            if consumed:
                self.logger.info(
                    "mfa_backup_code_used",
                    pool_id=pool_id,
                    user_id=user_id,
                    device_id=device.device_id,
                    remaining=len(device.backup_codes) - 1,
                )
                return device.device_id
        self.logger.warning("mfa_backup_code_rejected", pool_id=pool_id, user_id=user_id)
        return None

    async def require_code(self, pool_id: str, user_id: str, code: str) -> str:
        device_id = await self.verify_authentication(pool_id, user_id, code)
        if device_id is None:
            raise MfaVerificationFailed("Invalid verification code. Please try again.")
        return device_id

    async def require_backup_code(self, pool_id: str, user_id: str, backup_code: str) -> str:
        device_id = await self.verify_backup_code(pool_id, user_id, backup_code)
        if device_id is None:
            raise MfaVerificationFailed("Invalid backup code. Please try again.")
        return device_id

    # management
    async def list_devices(self, pool_id: str, user_id: str) -> List[MfaDevice]:
        return await asyncio.to_thread(self.store.list_user_mfa_devices, pool_id, user_id)

    async def rename_device(
        self, pool_id: str, user_id: str, device_id: str, device_name: str
    ) -> MfaDevice:
        name = self._validate_device_name(device_name)
        try:
            return await asyncio.to_thread(
                self.store.update_mfa_device,
                pool_id,
                user_id,
                device_id,
                MfaDeviceUpdate(device_name=name),
            )
        except NotFound as exc:
            raise NotFoundError("device not found", detail={"device_id": device_id}) from exc
        except AlreadyExists as exc:
            raise ConflictError(
                "a device with this name already exists", detail={"device_name": name}
            ) from exc

    async def _rederive_enabled(self, pool_id: str, user_id: str) -> bool:
        enabled = bool(await self._verified_devices(pool_id, user_id))
        try:
            await asyncio.to_thread(self.store.update_user_mfa_status, pool_id, user_id, enabled)
        except NotFound:
            self.logger.warning("mfa_status_user_missing", pool_id=pool_id, user_id=user_id)
        return enabled

    async def remove_device(self, pool_id: str, user_id: str, device_id: str) -> bool:
        """Delete a device and return whether MFA stays enabled for the user."""
        try:
            await asyncio.to_thread(self.store.delete_mfa_device, pool_id, user_id, device_id)
        except NotFound as exc:
            raise NotFoundError("device not found", detail={"device_id": device_id}) from exc
        enabled = await self._rederive_enabled(pool_id, user_id)
        self.logger.info(
            "mfa_device_removed",
            pool_id=pool_id,
            user_id=user_id,
            device_id=device_id,
            mfa_enabled=enabled,
        )
        return enabled

    async def discard_pending_device(self, pool_id: str, user_id: str, device_id: str) -> None:
        """Drop an enrolment that was never verified."""
        try:
            device = await asyncio.to_thread(self.store.get_mfa_device, pool_id, user_id, device_id)
        except NotFound:
            return
        if device.is_verified:
            return
        await asyncio.to_thread(self.store.delete_mfa_device, pool_id, user_id, device_id)

    async def reset_user_mfa(self, pool_id: str, user_id: str) -> int:
        devices = await asyncio.to_thread(self.store.list_user_mfa_devices, pool_id, user_id)
        for device in devices:
            try:
                await asyncio.to_thread(
                    self.store.delete_mfa_device, pool_id, user_id, device.device_id
                )
            except NotFound:
                continue
        await self._rederive_enabled(pool_id, user_id)
        self.logger.info("mfa_reset", pool_id=pool_id, user_id=user_id, removed=len(devices))
        return len(devices)

    async def mfa_status(self, pool_id: str, user_id: str) -> Dict[str, Any]:
        try:
            user = await asyncio.to_thread(self.store.get_user, pool_id, user_id)
        except NotFound as exc:
            raise NotFoundError("account not found", detail={"user_id": user_id}) from exc
        devices = await asyncio.to_thread(self.store.list_user_mfa_devices, pool_id, user_id)
        verified = [device for device in devices if device.is_verified]
        return {
            "mfa_enabled": user.mfa_enabled,
            "verified_devices": len(verified),
            "total_devices": len(devices),
            "backup_codes_remaining": sum(len(device.backup_codes) for device in verified),
        }

    # enforcement
    async def _set_user_flags(self, pool_id: str, user_id: str, update: UserUpdate) -> User:
        try:
            return await asyncio.to_thread(self.store.update_user, pool_id, user_id, update)
        except NotFound as exc:
            raise NotFoundError("account not found", detail={"user_id": user_id}) from exc

    async def force_enable(self, pool_id: str, user_id: str) -> User:
        """Require MFA for the user; without a verified device the next login diverts to setup."""
        user = await self._set_user_flags(pool_id, user_id, UserUpdate(mfa_required=True))
        self.logger.info(
            "mfa_force_enabled", pool_id=pool_id, user_id=user_id, mfa_enabled=user.mfa_enabled
        )
        return user

    async def disable(self, pool_id: str, user_id: str) -> int:
        """Remove every device and lift any requirement; returns the number removed."""
        await self._set_user_flags(pool_id, user_id, UserUpdate(mfa_required=False))
        removed = await self.reset_user_mfa(pool_id, user_id)
        self.logger.info("mfa_disabled", pool_id=pool_id, user_id=user_id, removed=removed)
        return removed

    # reporting
    async def _pages(self, lister, *args: Any) -> AsyncIterator[List[Any]]:
        token: Optional[str] = None
        while True:
            page = await asyncio.to_thread(lister, *args, None, token)
            yield page.items
            token = page.next_token
            if not token:
                return

    async def _pool_adoption(self, pool: UserPool) -> Dict[str, Any]:
        total = await asyncio.to_thread(self.store.count_users, pool.pool_id)
        enabled = 0
        required = 0
        async for users in self._pages(self.store.list_users, pool.pool_id):
            enabled += sum(1 for user in users if user.mfa_enabled)
            required += sum(1 for user in users if user.mfa_required and not user.mfa_enabled)
        return {
            "pool_id": pool.pool_id,
            "pool_name": pool.pool_name,
            "mfa_configuration": pool.mfa_configuration,
            "total_users": total,
            "mfa_enabled_users": enabled,
            "mfa_pending_users": required,
            "adoption_rate": _rate(enabled, total),
        }

    async def adoption_metrics(self, pool_id: Optional[str] = None) -> Dict[str, Any]:
        """Enabled versus total users, per pool and overall.

        ``mfa_pending_users`` counts users required to enrol who have not yet.
        """
        if pool_id is not None:
            try:
                pools = [await asyncio.to_thread(self.store.get_pool, pool_id)]
            except NotFound as exc:
                raise NotFoundError("pool not found", detail={"pool_id": pool_id}) from exc
        else:
            pools = []
            async for items in self._pages(self.store.list_pools):
                pools.extend(items)
        per_pool = [await self._pool_adoption(pool) for pool in pools]
        total = sum(p["total_users"] for p in per_pool)
        enabled = sum(p["mfa_enabled_users"] for p in per_pool)
        return {
            "total_users": total,
            "mfa_enabled_users": enabled,
            "mfa_pending_users": sum(p["mfa_pending_users"] for p in per_pool),
            "adoption_rate": _rate(enabled, total),
            "pools": per_pool,
        }

    async def list_mfa_users(
        self,
        pool_id: str,
        *,
        enabled_only: bool = True,
        limit: Optional[int] = None,
        next_token: Optional[str] = None,
    ) -> Page[Dict[str, Any]]:
        """One page of a pool's users with their device counts.

        Filtering happens within the store page, so a page may hold fewer
        items than ``limit`` while ``next_token`` is still set.
        """
        try:
            page = await asyncio.to_thread(self.store.list_users, pool_id, limit, next_token)
        except ValueError as exc:
            raise ValidationError("invalid page token", detail={"next_token": next_token}) from exc
        items = []
        for user in page.items:
            if enabled_only and not user.mfa_enabled:
                continue
            devices = await asyncio.to_thread(
                self.store.list_user_mfa_devices, pool_id, user.user_id
            )
            items.append(
                {
                    "user_id": user.user_id,
                    "pool_id": user.pool_id,
                    "email": user.email,
                    "mfa_enabled": user.mfa_enabled,
                    "mfa_required": user.mfa_required,
                    "device_count": len(devices),
                    "verified_devices": sum(1 for d in devices if d.is_verified),
                    "last_login": user.last_login,
                }
            )
        return Page(items=items, next_token=page.next_token)


def _rate(part: int, whole: int) -> float:
    """Percentage rounded to one decimal; an empty pool reports 0.0."""
    return round(part * 100.0 / whole, 1) if whole else 0.0
