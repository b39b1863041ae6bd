from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, Optional


def encode_page_token(key: Optional[Dict[str, Any]]) -> Optional[str]:
    """Encode the last-seen key of a page as an opaque continuation token."""

    if not key:
        return None
    raw = json.dumps(key, separators=(",", ":"), sort_keys=True).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def decode_page_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """Decode a continuation token produced by :func:`encode_page_token`."""

    if not token:
        return None
    padding = "=" * ((4 - len(token) % 4) % 4)
    try:
        decoded = json.loads(base64.urlsafe_b64decode(token + padding))
    except (binascii.Error, ValueError) as exc:
        raise ValueError("invalid page token") from exc
    if not isinstance(decoded, dict):
        raise ValueError("invalid page token")
    return decoded


def encode_id_cursor(last_id: str) -> str:
    """Keyset cursor for stores paginating on a single ordered id column."""

    return encode_page_token({"id": last_id})  # type: ignore[return-value]


def decode_id_cursor(token: Optional[str]) -> Optional[str]:
    key = decode_page_token(token)
    if key is None:
        return None
    last_id = key.get("id")
    if not isinstance(last_id, str) or not last_id:
        raise ValueError("invalid page token")
    return last_id
