from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's ``X-Request-ID`` when given, otherwise mint a UUID."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Values under these keys are never logged, not even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization")
_EMAIL_KEYS = ("email",)
_REDACTED = "[redacted]"


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def _redact_value(key: str, value: Any) -> Any:
    lower_key = key.lower()
    if isinstance(value, (str, bytes)) and any(marker in lower_key for marker in _SECRET_KEYS):
        return _REDACTED if value else value
    if isinstance(value, str) and any(marker in lower_key for marker in _EMAIL_KEYS):
        return _mask_email(value)
    if isinstance(value, Mapping):
        return {k: _redact_value(str(k), v) for k, v in value.items()}
    return value


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credentials and mask email addresses, including in nested dicts.

    ``token_type``-style keys are left alone; only values that carry a
    secret are replaced.
    """
    for key in list(event_dict.keys()):
        if key in ("event", "level", "timestamp", "token_type"):
            continue
        event_dict[key] = _redact_value(key, event_dict[key])
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_user(user_id: str) -> None:
    """Attach the authenticated user id to every log line of the current request."""
    structlog.contextvars.bind_contextvars(user_id=user_id)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
    correlation_id_var.set(None)


# Fragments that must never reach a client in a 5xx message
_SENSITIVE_ERROR_PATTERNS = [
    # filesystem paths, e.g. the DATA_DIR state file
    r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root|data)/[^\s]+",
    r"(?i)[a-z]:\\[^\s]+",
    # compact JWTs and bearer credentials
    r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*",
    r"(?i)bearer\s+[^\s]+",
    r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+",
    r"(?i)traceback\s*\(most recent call last\)",
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]

MAX_CLIENT_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = _REDACTED) -> str:
    """Strip paths, tokens and traces from a message bound for a client.

    Args:
        error: Original error message
        replacement: String to replace sensitive content with

    Returns:
        The message with every sensitive fragment replaced, truncated to
        ``MAX_CLIENT_ERROR_LENGTH`` characters
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_CLIENT_ERROR_LENGTH:
        result = result[: MAX_CLIENT_ERROR_LENGTH - 3] + "..."

    return result
