"""Session-carried state for interactions that span several round-trips.

A session holds at most one pending flow: either an MFA challenge after a
successful password check, or an MFA enrolment started during registration.
Every record remembers the interaction id it was created for, and reads are
validated against the interaction id in the request URL.
"""

from __future__ import annotations

import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple, Type, TypeVar, Union

from poolauth.logging import get_logger
from poolauth.service.errors import SessionMismatch
from poolauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass
class MfaPending:
    interaction_id: str
    account_id: str
    pool_id: str
    email: str

    kind = "mfa_pending"


@dataclass
class MfaSetupPending:
    """Enough of the original authorization request to replay it later."""

    interaction_id: str
    account_id: str
    pool_id: str
    email: str
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    device_id: Optional[str] = None

    kind = "mfa_setup_pending"


PendingFlow = Union[MfaPending, MfaSetupPending]
F = TypeVar("F", MfaPending, MfaSetupPending)

_KINDS: Dict[str, Type[Any]] = {
    MfaPending.kind: MfaPending,
    MfaSetupPending.kind: MfaSetupPending,
}


def _serialize(flow: PendingFlow) -> Dict[str, Any]:
    return {"kind": flow.kind, **asdict(flow)}


def _deserialize(record: Dict[str, Any]) -> Optional[PendingFlow]:
    payload = dict(record)
    cls = _KINDS.get(payload.pop("kind", ""))
    if cls is None:
        return None
    try:
        return cls(**payload)
    except TypeError:
        logger.warning("pending_flow_malformed", kind=cls.kind)
        return None


class PendingFlowStore:
    """Pending flows in Redis, or a lock-guarded dict when Redis is absent."""

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]],
        *,
        ttl_seconds: int = 900,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._local: Dict[str, Tuple[Dict[str, Any], float]] = {}
        self._local_lock = threading.Lock()

    async def put(self, session_id: str, flow: PendingFlow) -> None:
        record = _serialize(flow)
        if self.cache is not None:
            await self.cache.set_pending_flow(session_id, record, self.ttl_seconds)
            return
        with self._local_lock:
            self._local[session_id] = (record, time.monotonic() + self.ttl_seconds)

    async def _read(self, session_id: str) -> Optional[PendingFlow]:
        if self.cache is not None:
            record = await self.cache.get_pending_flow(session_id)
        else:
            with self._local_lock:
                entry = self._local.get(session_id)
                if entry and entry[1] <= time.monotonic():
                    self._local.pop(session_id, None)
                    entry = None
            record = entry[0] if entry else None
        return _deserialize(record) if record else None

    async def get(self, session_id: Optional[str], interaction_id: str, kind: Type[F]) -> F:
        """Return the pending flow of ``kind`` bound to ``interaction_id``.

        Raises ``SessionMismatch`` when the session holds nothing of that kind
        or holds it for a different interaction.
        """
        flow = await self._read(session_id) if session_id else None
        if not isinstance(flow, kind):
            logger.warning(
                "pending_flow_missing",
                interaction_id=interaction_id,
                expected=kind.kind,
                found=getattr(flow, "kind", None),
            )
            raise SessionMismatch(
                "Invalid verification session. Please try logging in again.",
                detail={"interaction_id": interaction_id},
            )
        if flow.interaction_id != interaction_id:
            logger.warning(
                "pending_flow_interaction_mismatch",
                interaction_id=interaction_id,
                session_interaction_id=flow.interaction_id,
            )
            raise SessionMismatch(
                "Session belongs to a different interaction",
                detail={"interaction_id": interaction_id},
            )
        return flow

    async def clear(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        if self.cache is not None:
            await self.cache.delete_pending_flow(session_id)
            return
        with self._local_lock:
            self._local.pop(session_id, None)
