from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from typing import Optional
from urllib.parse import quote, urlencode

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
TOTP_ALGORITHM = "SHA1"


def generate_secret(num_bytes: int = 20) -> str:
    """Random base32 secret without padding, as authenticator apps expect."""
    return base64.b32encode(secrets.token_bytes(num_bytes)).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return None


def generate_totp(
    secret: str,
    timestamp: Optional[float] = None,
    *,
    interval: int = TOTP_INTERVAL,
    digits: int = TOTP_DIGITS,
) -> str:
    """RFC 6238 code for ``timestamp`` (HMAC-SHA1); empty for a bad secret."""
    key = _decode_secret(secret)
    if key is None:
        return ""
    now = time.time() if timestamp is None else timestamp
    counter = int(now // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    *,
    window: int = 1,
    timestamp: Optional[float] = None,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept ``code`` within ``window`` steps either side of now."""
    code = (code or "").strip()
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    now = time.time() if timestamp is None else timestamp
    for offset in range(-window, window + 1):
        generated = generate_totp(secret, now + offset * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    """``otpauth://`` URI rendered as a QR code by enrolment screens."""
    label = quote(f"{issuer}:{account_name}", safe="@:")
    query = urlencode(
        {
            "secret": secret,
            "issuer": issuer,
            "algorithm": TOTP_ALGORITHM,
            "digits": TOTP_DIGITS,
            "period": TOTP_INTERVAL,
        }
    )
    return f"otpauth://totp/{label}?{query}"


def generate_backup_codes(count: int) -> list[str]:
    """Single-use recovery codes: eight uppercase hex characters each."""
    return [secrets.token_hex(4).upper() for _ in range(count)]


def normalize_backup_code(code: str) -> str:
    return (code or "").strip().upper().replace(" ", "").replace("-", "")


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()
