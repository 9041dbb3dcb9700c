from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the inbound ``X-Request-ID`` (or a fresh uuid4) to this request."""
    cid = correlation_id or str(uuid.uuid4())
    request_id_var.set(cid)
    return cid


def _bind_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = request_id_var.get()
    if cid:
        event_dict.setdefault("request_id", cid)
    return event_dict


# Values under these keys are never worth keeping, even partially
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "cookie", "credential")
_SAFE_KEYS = frozenset({"token_type", "error_type"})


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _scrub_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values and shorten addresses before rendering."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key in _SAFE_KEYS:
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _CREDENTIAL_KEYS):
            event_dict[key] = "[redacted]"
        elif "email" in lowered:
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _bind_request_id,
        _scrub_event,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_TRUTHY = {"1", "true", "yes", "on"}

configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must never appear in an error body, even in dev mode
_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)postgres(?:ql)?://\S+"),
    re.compile(r"\$argon2(?:id|i|d)\$\S+"),
    re.compile(r"[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}"),
    re.compile(r"(?i)\b(?:select|insert into|update|delete from)\b.{0,80}"),
    re.compile(r"(?i)(?:password|secret|token|key)\s*[:=]\s*\S+"),
    re.compile(r"(?:/[\w.-]+){2,}"),
]
_MAX_ERROR_LENGTH = 300


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip DSNs, digests, signed tokens, SQL and paths from an error string."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_ERROR_LENGTH:
        error = error[: _MAX_ERROR_LENGTH - 3] + "..."
    return error
