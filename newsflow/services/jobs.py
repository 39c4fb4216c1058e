"""Fetch job persistence.

``FirestoreJobStore`` is the durable queue (collection ``fetch_jobs``);
``MemoryJobStore`` keeps the same contract in process for development and
tests. Due jobs are claimed lowest ``priority`` first, then earliest
``runAfter``.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

import structlog
from google.cloud import firestore  # type: ignore[attr-defined]
from google.cloud.exceptions import GoogleCloudError
from google.cloud.firestore_v1 import FieldFilter

from newsflow.config import CollectionNames, collections as default_collections, settings
from newsflow.models.job import FetchJob, job_id_for_article
from newsflow.services import firestore_client
from newsflow.services.firestore_client import FirestoreError

logger = structlog.get_logger(__name__)

QUEUED = "QUEUED"
PROCESSING = "PROCESSING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

OPEN_STATUSES = {QUEUED, PROCESSING}
STATUS_COUNT_DEFAULTS = [QUEUED, PROCESSING, COMPLETED, FAILED]
CLAIM_BATCH_SIZE = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStore(Protocol):
    def enqueue(self, job: FetchJob) -> tuple[str, bool]: ...

    def claim_next(self, now: Optional[datetime] = None) -> Optional[FetchJob]: ...

    def mark_completed(
        self, job_id: str, *, strategy_used: Optional[str], duration_ms: Optional[int]
    ) -> None: ...

    def schedule_retry(
        self, job_id: str, *, error: str, error_code: Optional[str], run_after: datetime
    ) -> None: ...

    def mark_failed(self, job_id: str, *, error: str, error_code: Optional[str]) -> None: ...

    def release(self, job_id: str) -> None: ...

    def get(self, job_id: str) -> Optional[FetchJob]: ...

    def list_jobs(self, status: str, limit: int = 50) -> list[FetchJob]: ...

    def retry(self, job_id: str) -> bool: ...

    def retry_all_failed(self) -> int: ...

    def remove(self, job_id: str) -> bool: ...

    def stats(self) -> dict[str, int]: ...

    def requeue_stale(self, older_than: timedelta) -> int: ...


class MemoryJobStore:
    def __init__(self) -> None:
        self._jobs: dict[str, FetchJob] = {}
        self._lock = threading.Lock()

    def enqueue(self, job: FetchJob) -> tuple[str, bool]:
        with self._lock:
            existing = self._jobs.get(job.id)
            if existing is not None and existing.status in OPEN_STATUSES:
                return existing.id, False
            self._jobs[job.id] = job
            return job.id, True

    def claim_next(self, now: Optional[datetime] = None) -> Optional[FetchJob]:
        now = now or _now()
        with self._lock:
            due = [
                job
                for job in self._jobs.values()
                if job.status == QUEUED and job.runAfter <= now
            ]
            if not due:
                return None
            job = min(due, key=lambda candidate: (candidate.priority, candidate.runAfter))
            job.status = PROCESSING
            job.attempts += 1
            job.updatedAt = now
            return FetchJob(**job.to_dict())

    def _update(self, job_id: str, **fields: Any) -> Optional[FetchJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            for name, value in fields.items():
                setattr(job, name, value)
            job.updatedAt = _now()
            return job

    def mark_completed(
        self, job_id: str, *, strategy_used: Optional[str], duration_ms: Optional[int]
    ) -> None:
        self._update(
            job_id,
            status=COMPLETED,
            strategyUsed=strategy_used,
            durationMs=duration_ms,
            error=None,
            errorCode=None,
        )

    def schedule_retry(
        self, job_id: str, *, error: str, error_code: Optional[str], run_after: datetime
    ) -> None:
        self._update(job_id, status=QUEUED, error=error, errorCode=error_code, runAfter=run_after)

    def mark_failed(self, job_id: str, *, error: str, error_code: Optional[str]) -> None:
        self._update(job_id, status=FAILED, error=error, errorCode=error_code)

    def release(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != PROCESSING:
                return
            job.status = QUEUED
            job.attempts = max(job.attempts - 1, 0)
            job.updatedAt = _now()

    def get(self, job_id: str) -> Optional[FetchJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return FetchJob(**job.to_dict()) if job else None

    def list_jobs(self, status: str, limit: int = 50) -> list[FetchJob]:
        with self._lock:
            matching = [job for job in self._jobs.values() if job.status == status]
        matching.sort(key=lambda job: job.updatedAt, reverse=True)
        return [FetchJob(**job.to_dict()) for job in matching[:limit]]

    def retry(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != FAILED:
                return False
            job.status = QUEUED
            job.attempts = 0
            job.error = None
            job.errorCode = None
            job.runAfter = _now()
            job.updatedAt = job.runAfter
            return True

    def retry_all_failed(self) -> int:
        with self._lock:
            failed = [job.id for job in self._jobs.values() if job.status == FAILED]
        return sum(1 for job_id in failed if self.retry(job_id))

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop(job_id, None) is not None

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {status: 0 for status in STATUS_COUNT_DEFAULTS}
            for job in self._jobs.values():
                counts[job.status] = counts.get(job.status, 0) + 1
        counts["TOTAL"] = sum(counts.values())
        return counts

    def requeue_stale(self, older_than: timedelta) -> int:
        cutoff = _now() - older_than
        count = 0
        with self._lock:
            for job in self._jobs.values():
                if job.status == PROCESSING and job.updatedAt < cutoff:
                    job.status = QUEUED
                    job.attempts = max(job.attempts - 1, 0)
                    job.updatedAt = _now()
                    count += 1
        return count


def _run_count(query) -> int:
    try:
        results = list(query.count().get())
        if results:
            return int(results[0][0].value)
    except (GoogleCloudError, AttributeError, IndexError, TypeError):
        logger.debug("jobs.count_fallback", reason="aggregation_not_available")
    return sum(1 for _ in query.stream())


class FirestoreJobStore:
    def __init__(self, client: Any = None, *, names: CollectionNames = default_collections) -> None:
        self._client = client
        self._names = names

    @property
    def client(self):
        return self._client or firestore_client.require_client()

    def _collection(self):
        return self.client.collection(self._names.jobs)

    def _ref(self, job_id: str):
        return self._collection().document(job_id)

    def enqueue(self, job: FetchJob) -> tuple[str, bool]:
        ref = self._ref(job.id)

        @firestore.transactional
        def _enqueue(transaction, doc_ref):
            snapshot = doc_ref.get(transaction=transaction)
            if snapshot.exists and (snapshot.to_dict() or {}).get("status") in OPEN_STATUSES:
                return False
            transaction.set(doc_ref, job.to_dict())
            return True

        try:
            created = _enqueue(self.client.transaction(), ref)
        except GoogleCloudError as exc:
            logger.error("jobs.enqueue_failed", job_id=job.id, error=str(exc))
            raise FirestoreError(f"Failed to enqueue job {job.id}.") from exc
        return job.id, created

    def _claim(self, job_id: str, now: datetime) -> Optional[FetchJob]:
        @firestore.transactional
        def _claim_tx(transaction, ref):
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                return None
            job = FetchJob.from_dict(snapshot.id, snapshot.to_dict() or {})
            if job.status != QUEUED:
                return None
            job.status = PROCESSING
            job.attempts += 1
            job.updatedAt = now
            transaction.update(
                ref,
                {"status": PROCESSING, "attempts": job.attempts, "updatedAt": now},
            )
            return job

        return _claim_tx(self.client.transaction(), self._ref(job_id))

    def claim_next(self, now: Optional[datetime] = None) -> Optional[FetchJob]:
        now = now or _now()
        query = (
            self._collection()
            .where(filter=FieldFilter("status", "==", QUEUED))
            .where(filter=FieldFilter("runAfter", "<=", now))
            .order_by("runAfter")
            .limit(CLAIM_BATCH_SIZE)
        )
        try:
            candidates = [
                FetchJob.from_dict(doc.id, doc.to_dict() or {}) for doc in query.stream()
            ]
            # Firestore needs the inequality field first in order_by; rank locally.
            candidates.sort(key=lambda job: (job.priority, job.runAfter))
            for candidate in candidates:
                claimed = self._claim(candidate.id, now)
                if claimed is not None:
                    return claimed
        except GoogleCloudError as exc:
            logger.error("jobs.claim_failed", error=str(exc))
            raise FirestoreError("Failed to claim next fetch job.") from exc
        return None

    def _update(self, job_id: str, fields: dict[str, Any]) -> None:
        fields["updatedAt"] = _now()
        try:
            self._ref(job_id).update(fields)
        except GoogleCloudError as exc:
            logger.error("jobs.update_failed", job_id=job_id, error=str(exc))
            raise FirestoreError(f"Failed to update job {job_id}.") from exc

    def mark_completed(
        self, job_id: str, *, strategy_used: Optional[str], duration_ms: Optional[int]
    ) -> None:
        self._update(
            job_id,
            {
                "status": COMPLETED,
                "strategyUsed": strategy_used,
                "durationMs": duration_ms,
                "error": None,
                "errorCode": None,
            },
        )

    def schedule_retry(
        self, job_id: str, *, error: str, error_code: Optional[str], run_after: datetime
    ) -> None:
        self._update(
            job_id,
            {"status": QUEUED, "error": error, "errorCode": error_code, "runAfter": run_after},
        )

    def mark_failed(self, job_id: str, *, error: str, error_code: Optional[str]) -> None:
        self._update(job_id, {"status": FAILED, "error": error, "errorCode": error_code})

    def release(self, job_id: str) -> None:
        self._update(
            job_id, {"status": QUEUED, "attempts": firestore.Increment(-1)}
        )

    def get(self, job_id: str) -> Optional[FetchJob]:
        try:
            doc = self._ref(job_id).get()
        except GoogleCloudError as exc:
            logger.error("jobs.get_failed", job_id=job_id, error=str(exc))
            raise FirestoreError(f"Failed to get job {job_id}.") from exc
        if not doc.exists:
            return None
        return FetchJob.from_dict(doc.id, doc.to_dict() or {})

    def list_jobs(self, status: str, limit: int = 50) -> list[FetchJob]:
        query = (
            self._collection()
            .where(filter=FieldFilter("status", "==", status))
            .order_by("updatedAt", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        try:
            return [FetchJob.from_dict(doc.id, doc.to_dict() or {}) for doc in query.stream()]
        except GoogleCloudError as exc:
            logger.error("jobs.list_failed", status=status, error=str(exc))
            raise FirestoreError(f"Failed to list {status} jobs.") from exc

    def retry(self, job_id: str) -> bool:
        job = self.get(job_id)
        if job is None or job.status != FAILED:
            return False
        self._update(
            job_id,
            {
                "status": QUEUED,
                "attempts": 0,
                "error": None,
                "errorCode": None,
                "runAfter": _now(),
            },
        )
        return True

    def retry_all_failed(self) -> int:
        count = 0
        while True:
            batch = self.list_jobs(FAILED, limit=100)
            if not batch:
                return count
            for job in batch:
                if self.retry(job.id):
                    count += 1

    def remove(self, job_id: str) -> bool:
        ref = self._ref(job_id)
        try:
            if not ref.get().exists:
                return False
            ref.delete()
        except GoogleCloudError as exc:
            logger.error("jobs.remove_failed", job_id=job_id, error=str(exc))
            raise FirestoreError(f"Failed to remove job {job_id}.") from exc
        return True

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for status in STATUS_COUNT_DEFAULTS:
            query = self._collection().where(filter=FieldFilter("status", "==", status))
            counts[status] = _run_count(query)
        counts["TOTAL"] = sum(counts.values())
        return counts

    def requeue_stale(self, older_than: timedelta) -> int:
        cutoff = _now() - older_than
        query = (
            self._collection()
            .where(filter=FieldFilter("status", "==", PROCESSING))
            .where(filter=FieldFilter("updatedAt", "<", cutoff))
        )
        count = 0
        try:
            for doc in query.stream():
                self.release(doc.id)
                count += 1
        except GoogleCloudError as exc:
            logger.error("jobs.requeue_stale_failed", error=str(exc))
            raise FirestoreError("Failed to requeue stale jobs.") from exc
        if count:
            logger.warning("jobs.stale_requeued", count=count)
        return count


def new_job(
    article_id: str,
    url: str,
    *,
    source_id: Optional[str] = None,
    strategy: Optional[str] = None,
    timeout: Optional[float] = None,
    priority: Optional[int] = None,
) -> FetchJob:
    return FetchJob(
        articleId=article_id,
        url=url,
        sourceId=source_id,
        strategy=strategy,
        timeout=timeout,
        priority=priority if priority is not None else settings.JOB_DEFAULT_PRIORITY,
        maxAttempts=settings.JOB_MAX_ATTEMPTS,
        id=job_id_for_article(article_id),
    )


_store_lock = threading.Lock()
_store: Optional[JobStore] = None


def get_job_store() -> JobStore:
    global _store
    if _store is not None:
        return _store
    with _store_lock:
        if _store is None:
            if settings.JOB_STORE == "memory":
                _store = MemoryJobStore()
            else:
                _store = FirestoreJobStore()
    return _store


def set_job_store(store: Optional[JobStore]) -> None:
    global _store
    with _store_lock:
        _store = store
