from __future__ import annotations

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import structlog

# Request id carried through every log line of one HTTP request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of log keys whose values are credentials and never logged
_SECRET_KEYS = (
    "password",
    "secret",
    "token",
    "authorization",
    "totp",
    "backup_code",
    "mfa_code",
    "otpauth",
)
# Substrings of log keys whose values identify a person; masked, not dropped
_ADDRESS_KEYS = ("email", "login_hint")

_MAX_REDACT_DEPTH = 4


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the caller's request id, or a fresh one, to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def mask_email(value: str) -> str:
    """``alice@example.com`` -> ``a***@example.com``; the domain stays for triage."""
    local, sep, domain = value.partition("@")
    if not sep:
        return local[:1] + "***" if local else value
    return f"{local[:1]}***@{domain}"


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:pw@cache:6379/0`` -> ``redis://:***@cache:6379/0``."""
    if not url:
        return url
    try:
        parsed = urlsplit(url)
        password = parsed.password
    except ValueError:
        return "***unparseable-url***"
    if not password:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunsplit(parsed._replace(netloc=f"{parsed.username or ''}:***@{host}"))


def _redact_value(key: str, value: Any, depth: int) -> Any:
    lower_key = key.lower()
    if any(part in lower_key for part in _SECRET_KEYS):
        return "[redacted]" if value else value
    if isinstance(value, str) and any(part in lower_key for part in _ADDRESS_KEYS):
        return mask_email(value)
    if isinstance(value, Mapping) and depth < _MAX_REDACT_DEPTH:
        return {k: _redact_value(str(k), v, depth + 1) for k, v in value.items()}
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credentials and mask addresses, including inside ``detail`` dicts."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = _redact_value(key, event_dict[key], 0)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    Args:
        log_level: Minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line when True
        development_mode: Coloured console output, overrides ``json_output``
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderer: list = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Defaults until the runtime applies LOG_LEVEL, LOG_JSON and LOG_DEV_MODE from Settings
configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments of driver errors that expose connection details or queries
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)postgres(?:ql)?://\S+"),
    re.compile(r"(?i)\b(?:host|user|dbname|port)=\S+"),
    re.compile(r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+"),
    re.compile(r"(?i)arn:aws:\S+"),
    re.compile(r"(?i)\b(select|insert into|update|delete from)\b.{0,80}"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]

_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip DSNs, credentials, ARNs and SQL out of a backend error message."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
