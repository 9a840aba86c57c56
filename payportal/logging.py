from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# X-Request-ID of the request being served, attached to every log line.
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Use the caller's request id, or mint one, for the current context."""
    rid = (request_id or "").strip()[:128] or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def _add_request_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    rid = get_request_id()
    if rid:
        event_dict.setdefault("request_id", rid)
    return event_dict


# Never logged, not even partially.
_SECRET_KEYS = ("password", "secret", "token", "authorization", "backup_code", "otp")
# Logged with only the last four characters visible.
_MASKED_KEYS = ("id_number", "account_number", "recipient_account")


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credentials and mask account identifiers before rendering."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif any(part in lower_key for part in _MASKED_KEYS) and isinstance(value, str):
            event_dict[key] = "*" * max(len(value) - 4, 0) + value[-4:]
    return event_dict


def _configure_structlog(log_level: str, json_output: bool) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_TRUTHY = {"1", "true", "yes", "on"}
_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Database URLs carry credentials; SQL text leaks the schema.
_DSN_CREDENTIALS = re.compile(r"(?i)\b(postgres(?:ql)?|redis|rediss)://[^@\s]+@")
_SQL_FRAGMENT = re.compile(r"(?i)\b(select|insert|update|delete)\b.*")


def sanitize_error_message(error: str) -> str:
    """Make an exception message safe to echo back in development mode."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = _DSN_CREDENTIALS.sub(r"\1://[redacted]@", error)
    result = _SQL_FRAGMENT.sub("[query]", result)
    return result[:200]
