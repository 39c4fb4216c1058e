"""Worker pool that drains the fetch job queue.

Each worker thread claims one due job at a time and runs the orchestrator
under a per-job ``Deadline`` derived from the pool's root deadline, so
cancelling the root on shutdown reaches every in-flight call.
"""

from __future__ import annotations

import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import structlog

from newsflow.config import settings
from newsflow.models.fetch import AUTO_CHAIN, FetchResult
from newsflow.models.job import FetchJob
from newsflow.services import events
from newsflow.services.articles import COMPLETED, FAILED, PENDING, ArticleSink
from newsflow.services.firestore_client import FirestoreError
from newsflow.services.jobs import JobStore, new_job
from newsflow.services.orchestrator import UnifiedFetcher
from newsflow.utils.correlation import (
    bind_job_context,
    clear_correlation_context,
    ensure_correlation_id,
)
from newsflow.utils.deadline import Deadline

logger = structlog.get_logger(__name__)

INTERNAL_ERROR = "INTERNAL_ERROR"
PERSIST_ERROR = "PERSIST_ERROR"


def backoff_delay(attempt: int, base_seconds: Optional[float] = None) -> float:
    """Delay before retry number ``attempt`` (1-based): ``base * 2^(attempt-1)``."""
    base = settings.JOB_BACKOFF_SECONDS if base_seconds is None else base_seconds
    return base * (2 ** max(attempt - 1, 0))


def job_budget_seconds(job: FetchJob) -> float:
    per_attempt = job.timeout or settings.FETCH_TIMEOUT_SECONDS
    chain_length = 1 if job.strategy else len(AUTO_CHAIN)
    return per_attempt * chain_length + settings.RATE_LIMIT_WAIT_SECONDS


def _article_payload(result: FetchResult) -> dict[str, Any]:
    return {
        "status": COMPLETED,
        "content": result.content,
        "title": result.title,
        "textContent": result.textContent,
        "contentFormat": result.contentFormat,
        "excerpt": result.metadata.get("excerpt"),
        "byline": result.metadata.get("byline") or result.metadata.get("author"),
        "readingTime": result.metadata.get("readingTime"),
        "finalUrl": result.finalUrl,
        "strategyUsed": result.strategyUsed,
        "durationMs": result.durationMs,
    }


def enqueue_fetch(
    store: JobStore,
    sink: Optional[ArticleSink],
    article_id: str,
    url: str,
    **options: Any,
) -> tuple[str, bool]:
    """Queue a fetch for ``article_id``; an open job for it is reused."""
    job = new_job(article_id, url, **options)
    job_id, created = store.enqueue(job)
    if created and sink is not None:
        sink(article_id, {"status": PENDING})
    logger.info("dispatch.enqueued", job_id=job_id, created=created, url=url)
    return job_id, created


class JobProcessor:
    def __init__(
        self,
        store: JobStore,
        fetcher: UnifiedFetcher,
        sink: ArticleSink,
        *,
        backoff_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._sink = sink
        self._backoff_seconds = backoff_seconds
        self._clock = clock

    def process(self, job: FetchJob, deadline: Deadline) -> str:
        """Run one claimed job; returns completed, retry, failed or interrupted."""
        ensure_correlation_id()
        bind_job_context(job.id, url=job.url, article_id=job.articleId)
        events.emit(events.job_started, job.id, attempt=job.attempts, url=job.url)
        try:
            events.emit(events.job_progress, job.id, stage="fetching")
            result = self._fetcher.fetch(
                job.url,
                source_id=job.sourceId,
                strategy=job.strategy,
                timeout=job.timeout,
                deadline=deadline,
            )
            if not result.success:
                if deadline.cancelled:
                    return self._interrupted(job)
                code = result.metadata.get("lastErrorType") or result.errorType
                return self._failed_attempt(
                    job,
                    result.error or "fetch failed",
                    code,
                    retry_after=result.metadata.get("retryAfter"),
                )

            events.emit(events.job_progress, job.id, stage="persisting")
            try:
                self._sink(job.articleId, _article_payload(result))
            except FirestoreError as exc:
                return self._failed_attempt(job, str(exc), PERSIST_ERROR)

            self._store.mark_completed(
                job.id, strategy_used=result.strategyUsed, duration_ms=result.durationMs
            )
            logger.info(
                "dispatch.job_completed",
                strategy_used=result.strategyUsed,
                duration_ms=result.durationMs,
                attempt=job.attempts,
            )
            events.emit(
                events.job_completed,
                job.id,
                strategy_used=result.strategyUsed,
                duration_ms=result.durationMs,
                title=result.title,
            )
            return "completed"
        except FirestoreError:
            raise
        except Exception as exc:
            logger.exception("dispatch.job_crashed", error=str(exc))
            if deadline.cancelled:
                return self._interrupted(job)
            return self._failed_attempt(job, str(exc), INTERNAL_ERROR)
        finally:
            clear_correlation_context()

    def _interrupted(self, job: FetchJob) -> str:
        self._store.release(job.id)
        logger.warning("dispatch.job_interrupted", attempt=job.attempts)
        return "interrupted"

    def _failed_attempt(
        self,
        job: FetchJob,
        error: str,
        code: Optional[str],
        *,
        retry_after: Optional[float] = None,
    ) -> str:
        if job.attempts < job.maxAttempts:
            delay = backoff_delay(job.attempts, self._backoff_seconds)
            if retry_after:
                delay = max(delay, float(retry_after))
            run_after = self._clock() + timedelta(seconds=delay)
            self._store.schedule_retry(job.id, error=error, error_code=code, run_after=run_after)
            logger.info(
                "dispatch.retry_scheduled",
                attempt=job.attempts,
                max_attempts=job.maxAttempts,
                delay_seconds=delay,
                error_code=code,
            )
            events.emit(
                events.job_progress,
                job.id,
                stage="retry_scheduled",
                attempt=job.attempts,
                delay_seconds=delay,
                error=error,
            )
            return "retry"

        self._store.mark_failed(job.id, error=error, error_code=code)
        logger.warning(
            "dispatch.job_failed", attempts=job.attempts, error=error, error_code=code
        )
        try:
            self._sink(
                job.articleId, {"status": FAILED, "error": error, "errorCode": code}
            )
        except FirestoreError as exc:
            logger.error("dispatch.failure_not_persisted", error=str(exc))
        events.emit(
            events.job_failed, job.id, attempts=job.attempts, error=error, error_code=code
        )
        return "failed"


class WorkerPool:
    def __init__(
        self,
        store: JobStore,
        processor: JobProcessor,
        *,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        grace_seconds: Optional[float] = None,
        stale_after_seconds: Optional[float] = None,
    ) -> None:
        self._store = store
        self._processor = processor
        self._concurrency = max(1, concurrency or settings.WORKER_CONCURRENCY)
        self._poll_interval = poll_interval or settings.WORKER_POLL_INTERVAL_SECONDS
        self._grace = (
            grace_seconds if grace_seconds is not None else settings.WORKER_SHUTDOWN_GRACE_SECONDS
        )
        self._stale_after = stale_after_seconds or settings.JOB_STALE_AFTER_SECONDS
        self._root = Deadline.unbounded()
        self._stopping = threading.Event()
        self._threads: list[threading.Thread] = []
        self._in_flight: dict[str, Deadline] = {}
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> list[str]:
        with self._lock:
            return list(self._in_flight)

    def start(self) -> None:
        requeued = self._store.requeue_stale(timedelta(seconds=self._stale_after))
        logger.info(
            "dispatch.pool_starting",
            concurrency=self._concurrency,
            stale_requeued=requeued,
        )
        self._stopping.clear()
        self._root = Deadline.unbounded()
        for index in range(self._concurrency):
            thread = threading.Thread(
                target=self._run, name=f"fetch-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def run_once(self) -> Optional[str]:
        """Claim and process one due job on the calling thread."""
        job = self._store.claim_next()
        if job is None:
            return None
        return self._execute(job)

    def _execute(self, job: FetchJob) -> str:
        deadline = self._root.child(job_budget_seconds(job))
        with self._lock:
            self._in_flight[job.id] = deadline
        try:
            return self._processor.process(job, deadline)
        finally:
            with self._lock:
                self._in_flight.pop(job.id, None)

    def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                job = self._store.claim_next()
            except FirestoreError as exc:
                logger.error("dispatch.claim_failed", error=str(exc))
                self._stopping.wait(self._poll_interval)
                continue
            if job is None:
                self._stopping.wait(self._poll_interval)
                continue
            try:
                self._execute(job)
            except FirestoreError as exc:
                logger.error("dispatch.job_bookkeeping_failed", job_id=job.id, error=str(exc))

    def stop(self, grace_seconds: Optional[float] = None) -> None:
        """Stop claiming, let in-flight jobs finish within the grace period, then cancel."""
        grace = self._grace if grace_seconds is None else grace_seconds
        self._stopping.set()
        give_up_at = time.monotonic() + grace
        for thread in self._threads:
            thread.join(max(give_up_at - time.monotonic(), 0.0))

        if any(thread.is_alive() for thread in self._threads):
            logger.warning("dispatch.cancelling_in_flight", jobs=self.in_flight)
            self._root.cancel()
            for thread in self._threads:
                thread.join(self._poll_interval + 5.0)
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        logger.info("dispatch.pool_stopped", still_running=len(self._threads))
