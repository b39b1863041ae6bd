"""Contracts consumed from the external OIDC protocol engine.

The engine owns interactions, grants, token issuance and its own client
cache. This package only reads interaction context, hands back a result
through ``finish_interaction`` and edits grants on consent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union


class InteractionNotFound(Exception):
    """The engine has no live interaction for the given id."""


@dataclass
class InteractionContext:
    uid: str
    prompt_name: str
    client_id: Optional[str] = None
    session_account_id: Optional[str] = None
    grant_id: Optional[str] = None
    missing_oidc_scope: List[str] = field(default_factory=list)
    missing_oidc_claims: List[str] = field(default_factory=list)
    missing_resource_scopes: Dict[str, List[str]] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    def param(self, name: str) -> Optional[str]:
        value = self.params.get(name)
        return str(value) if value not in (None, "") else None


@dataclass
class LoginResult:
    account_id: str
    remember: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {"login": {"accountId": self.account_id, "remember": self.remember}}


@dataclass
class ConsentResult:
    grant_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        consent: Dict[str, Any] = {}
        if self.grant_id:
            consent["grantId"] = self.grant_id
        return {"consent": consent}


@dataclass
class ErrorResult:
    error: str
    error_description: str

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.error, "error_description": self.error_description}


InteractionResult = Union[LoginResult, ConsentResult, ErrorResult]


class Grant(Protocol):
    account_id: str
    client_id: str

    def add_oidc_scope(self, scope: str) -> None: ...

    def add_oidc_claims(self, claims: List[str]) -> None: ...

    def add_resource_scope(self, indicator: str, scope: str) -> None: ...

    async def save(self) -> str: ...


class ProtocolEngine(Protocol):
    async def get_interaction_context(self, uid: str) -> InteractionContext:
        """Raise :class:`InteractionNotFound` when ``uid`` is unknown or expired."""
        ...

    async def finish_interaction(self, uid: str, result: InteractionResult) -> str:
        """Resume protocol processing; returns the URL to redirect the browser to.

        Raises :class:`InteractionNotFound` when the interaction has expired.
        """
        ...

    async def find_grant(self, grant_id: str) -> Optional[Grant]: ...

    def new_grant(self, *, account_id: str, client_id: str) -> Grant: ...

    async def load_clients(self, clients: List[Dict[str, Any]]) -> None: ...


__all__ = [
    "InteractionNotFound",
    "InteractionContext",
    "LoginResult",
    "ConsentResult",
    "ErrorResult",
    "InteractionResult",
    "Grant",
    "ProtocolEngine",
]
