from __future__ import annotations

import logging
import os
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, get_contextvars, unbind_contextvars

CORRELATION_KEY = "correlation_id"

# Matched as substrings of lower-cased keys, at any nesting depth
SECRET_MARKERS = ("password", "secret", "token", "authorization", "jwt")
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    """Correlation id of the login flow running in this context, if any."""
    return get_contextvars().get(CORRELATION_KEY)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id for every log line emitted in this context."""
    cid = correlation_id or f"login-{uuid.uuid4().hex[:12]}"
    bind_contextvars(**{CORRELATION_KEY: cid})
    return cid


@contextmanager
def flow_log_context(**fields: Any) -> Iterator[str]:
    """Bind a correlation id plus ``fields`` for the duration of one login flow.

    An id already bound by the caller (an outer request, say) is reused and
    left in place on exit; everything this call bound is unbound again.
    """
    outer_cid = get_correlation_id()
    cid = outer_cid or set_correlation_id()
    bind_contextvars(**fields)
    try:
        yield cid
    finally:
        unbind_contextvars(*fields)
        if outer_cid is None:
            unbind_contextvars(CORRELATION_KEY)


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "***"
    return value[:4] + "***"


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: _mask(item)
            if isinstance(item, str) and any(m in str(key).lower() for m in SECRET_MARKERS)
            else _redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask token and secret values, including inside nested detail payloads."""
    return _redact(event_dict)


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; arguments left as None are read from LOG_* env vars."""
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
