"""Log context for one fetch job or one HTTP request."""

from __future__ import annotations

import re
from typing import Any, Optional
from uuid import uuid4

import structlog

CORRELATION_HEADER = "X-Correlation-ID"
_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def current_correlation_id() -> Optional[str]:
    return structlog.contextvars.get_contextvars().get("correlation_id")


def ensure_correlation_id(value: Optional[str] = None) -> str:
    """Bind ``value`` (or the active id, or a fresh one) and return it."""
    if value and not _VALID_ID.match(value):
        value = None
    correlation_id = value or current_correlation_id() or uuid4().hex
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    return correlation_id


def bind_job_context(
    job_id: str, *, url: Optional[str] = None, article_id: Optional[str] = None
) -> None:
    structlog.contextvars.bind_contextvars(job_id=job_id, url=url, article_id=article_id)


def bind_request_context(url: Optional[str] = None, **extra: Any) -> None:
    """Bind the URL being fetched plus any extra fields (domain, source)."""
    structlog.contextvars.bind_contextvars(url=url, **extra)


def bind_http_request(request) -> str:
    """Start a fresh context for an incoming Flask request.

    An ``X-Correlation-ID`` header is honoured when it looks like an id.
    """
    structlog.contextvars.clear_contextvars()
    correlation_id = ensure_correlation_id(request.headers.get(CORRELATION_HEADER))
    structlog.contextvars.bind_contextvars(path=request.path, method=request.method)
    return correlation_id


def update_context(**extra: Any) -> None:
    if extra:
        structlog.contextvars.bind_contextvars(**extra)


def clear_correlation_context() -> None:
    structlog.contextvars.clear_contextvars()
