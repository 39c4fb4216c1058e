"""Job progress signals.

Receivers are called synchronously on the worker thread. A failing receiver
is logged and never affects the job.
"""

from __future__ import annotations

from typing import Any

import structlog
from blinker import Namespace

logger = structlog.get_logger(__name__)

job_signals = Namespace()

job_started = job_signals.signal("job-started")
job_progress = job_signals.signal("job-progress")
job_completed = job_signals.signal("job-completed")
job_failed = job_signals.signal("job-failed")


def emit(signal, job_id: str, **payload: Any) -> None:
    try:
        signal.send(job_id, **payload)
    except Exception as exc:  # receivers are third-party code
        logger.warning(
            "events.receiver_failed",
            signal=signal.name,
            job_id=job_id,
            error=str(exc),
        )
