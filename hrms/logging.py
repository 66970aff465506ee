from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request-scoped context; set by whatever transport drives the auth service
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
identity_id_var: ContextVar[Optional[str]] = ContextVar("identity_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use ``correlation_id`` for this context, generating one if absent."""
    value = correlation_id or uuid.uuid4().hex
    correlation_id_var.set(value)
    return value


def bind_identity(identity_id: Optional[str]) -> None:
    """Attach the authenticated identity to every later log line in this context."""
    identity_id_var.set(identity_id)


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    correlation_id = correlation_id_var.get()
    if correlation_id:
        event_dict.setdefault("correlation_id", correlation_id)
    identity_id = identity_id_var.get()
    if identity_id:
        event_dict.setdefault("identity_id", identity_id)
    return event_dict


_PII_KEYS = ("password", "secret", "token", "otp", "code", "authorization", "email")
_PII_EXEMPT_KEYS = frozenset({"event", "status_code", "error_code"})


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-like and contact fields, keeping first/last 2 chars."""
    for key, value in list(event_dict.items()):
        name = key.lower()
        if name.endswith("_hash") or name in _PII_EXEMPT_KEYS:
            continue
        if not any(marker in name for marker in _PII_KEYS) or not isinstance(value, str):
            continue
        event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    Console rendering is used in development mode or when JSON output is
    switched off; otherwise each event is a single JSON line on stdout.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_context,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def hash_email(email: str) -> str:
    """Stable, non-reversible email reference for log lines."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]
