from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware in app.py
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys never reach the log stream, not even partially
_DROPPED_KEYS = ("password", "secret", "cookie", "authorization", "api_key", "x-api-key")
_TOKEN_KEYS = ("token",)
_EMAIL_KEYS = ("email",)
_PHONE_KEYS = ("phone",)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Adopt the caller's request id (or mint one) for the current request."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(method: str, path: str) -> None:
    """Attach method and path to every event logged while handling this request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(http_method=method, http_path=path)


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def mask_phone(value: str) -> str:
    digits = [c for c in value if c.isdigit()]
    return "***" + "".join(digits[-2:])


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Strip secrets and mask personal data before rendering.

    Passwords, API keys and cookies are replaced outright; tokens keep a short
    prefix so two log lines can be matched; emails keep their domain and phone
    numbers their last two digits.
    """
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if not isinstance(value, str) or not value:
            continue
        lower_key = key.lower()
        if any(k in lower_key for k in _DROPPED_KEYS):
            event_dict[key] = "[redacted]"
        elif any(k in lower_key for k in _TOKEN_KEYS):
            event_dict[key] = value[:6] + "***"
        elif any(k in lower_key for k in _EMAIL_KEYS):
            event_dict[key] = mask_email(value)
        elif any(k in lower_key for k in _PHONE_KEYS):
            event_dict[key] = mask_phone(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the processor chain shared by the app, the stores and the scripts.

    Args:
        log_level: Minimum level emitted (DEBUG, INFO, WARNING, ERROR)
        json_output: Render one JSON object per line
        development_mode: Render coloured console lines instead of JSON
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name).bind(logger=name)
