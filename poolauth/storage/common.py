"""Helpers shared by the memory, postgres and dynamodb stores.

Keeping id generation, paging limits and update allow-lists in one place
keeps the three backends observably identical.
"""

from __future__ import annotations

import json
import secrets
import time
from dataclasses import replace
from typing import Any, Dict, Optional, TypeVar

from poolauth.storage.models import utcnow

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_DEVICE_NAME_LENGTH = 50

E = TypeVar("E")

# Entity attribute -> relational column. Only these may appear in a SET clause.
POOL_MUTABLE_COLUMNS: Dict[str, str] = {
    "client_id": "client_id",
    "pool_name": "pool_name",
    "custom_attributes": "custom_attributes",
    "settings": "settings",
}

USER_MUTABLE_COLUMNS: Dict[str, str] = {
    "email": "email",
    "email_verified": "email_verified",
    "password_hash": "password_hash",
    "name": "name",
    "given_name": "given_name",
    "family_name": "family_name",
    "nickname": "nickname",
    "picture": "picture",
    "website": "website",
    "custom_attributes": "custom_attributes",
    "groups": "groups",
    "status": "status",
    "mfa_enabled": "mfa_enabled",
    "mfa_required": "mfa_required",
    "last_login": "last_login",
}

CLIENT_MUTABLE_COLUMNS: Dict[str, str] = {
    "client_secret": "client_secret",
    "client_name": "client_name",
    "redirect_uris": "redirect_uris",
    "post_logout_redirect_uris": "post_logout_redirect_uris",
    "response_types": "response_types",
    "grant_types": "grant_types",
    "scope": "scope",
    "token_endpoint_auth_method": "token_endpoint_auth_method",
    "application_type": "application_type",
    "settings": "settings",
}

GROUP_MUTABLE_COLUMNS: Dict[str, str] = {
    "group_name": "group_name",
    "description": "description",
    "permissions": "permissions",
}

DEVICE_MUTABLE_COLUMNS: Dict[str, str] = {
    "device_name": "device_name",
    "is_verified": "is_verified",
    "backup_codes": "backup_codes",
    "last_used": "last_used",
}

# Columns stored as JSONB / serialized maps
JSON_COLUMNS = frozenset({"custom_attributes", "settings"})


def new_entity_id() -> str:
    """Generate a time-ordered identifier.

    Twelve hex digits of epoch milliseconds followed by random hex, so
    lexical order follows creation order and the value never matches the
    dashed UUID shape rejected for account ids.
    """
    millis = int(time.time() * 1000)
    return f"{millis:012x}{secrets.token_hex(6)}"


def clamp_page_size(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_PAGE_SIZE
    return max(1, min(int(limit), MAX_PAGE_SIZE))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def apply_changes(entity: E, changes: Dict[str, Any]) -> E:
    """Return a copy of ``entity`` with ``changes`` applied and updated_at bumped."""
    return replace(entity, **changes, updated_at=utcnow())  # type: ignore[type-var]


def filter_changes(changes: Dict[str, Any], allowed: Dict[str, str]) -> Dict[str, Any]:
    """Drop any attribute not on the backend allow-list."""
    return {key: value for key, value in changes.items() if key in allowed}


def parse_json_map(raw: Any) -> Dict[str, Any]:
    """Parse a serialized map column; non-maps collapse to ``{}``."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    if isinstance(raw, dict):
        return raw
    return {}
