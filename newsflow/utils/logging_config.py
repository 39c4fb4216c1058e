"""structlog setup shared by the Flask app and the worker runner.

Events are named ``<component>.<what_happened>`` and carry whatever job or
request context is bound in :mod:`newsflow.utils.correlation`.
"""

import logging
import logging.handlers
import os
import sys
import threading
from typing import Any, Dict, Optional

import structlog

from newsflow.config import settings

_configured = False

CONTEXT_FIELDS = ("correlation_id", "job_id", "article_id", "url", "domain", "strategy")
QUIET_LOGGERS = {
    "werkzeug": logging.INFO,
    "google": logging.WARNING,
    "urllib3": logging.WARNING,
    "httpx": logging.WARNING,
    "openai": logging.WARNING,
    "playwright": logging.WARNING,
    "readability": logging.WARNING,
}
WORKER_THREAD_PREFIX = "fetch-worker"


def _add_fetch_context(
    _: logging.Logger, __: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Copy bound job/request fields onto stdlib records too."""
    context = structlog.contextvars.get_contextvars()
    for key in CONTEXT_FIELDS:
        if key not in event_dict and context.get(key) is not None:
            event_dict[key] = context[key]
    event_dict.setdefault("event", event_dict.get("message") or "log")
    thread_name = threading.current_thread().name
    if thread_name.startswith(WORKER_THREAD_PREFIX):
        event_dict.setdefault("worker", thread_name)
    return event_dict


def _drop_liveness_probes(
    _: logging.Logger, __: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    path = event_dict.get("path") or structlog.contextvars.get_contextvars().get("path")
    if path and path.startswith("/healthz"):
        raise structlog.DropEvent
    return event_dict


def _shared_processors(log_format: str) -> list:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_fetch_context,
        _drop_liveness_probes,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if log_format == "plain":
        processors.append(structlog.processors.UnicodeDecoder())
    return processors


def setup_logging(
    level: Optional[str] = None, log_format: Optional[str] = None, force: bool = False
) -> None:
    """Route structlog and stdlib logging through one renderer.

    ``LOG_FORMAT`` is ``json`` (default) or ``plain``. ``LOG_FILE`` adds a
    rotating file handler next to stdout.
    """
    global _configured
    if _configured and not force:
        return

    level = (level or os.getenv("LOG_LEVEL") or settings.LOG_LEVEL).upper()
    log_format = (log_format or os.getenv("LOG_FORMAT") or settings.LOG_FORMAT).strip().lower()
    if log_format not in {"json", "plain"}:
        log_format = "json"

    shared = _shared_processors(log_format)
    renderer = (
        structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
        if log_format == "plain"
        else structlog.processors.JSONRenderer()
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer, foreign_pre_chain=shared, fmt="%(message)s"
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    log_file = os.getenv("LOG_FILE") or settings.LOG_FILE
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=3
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    _configured = True
    structlog.get_logger(__name__).debug(
        "logging.configured", level=level, format=log_format, log_file=log_file
    )
