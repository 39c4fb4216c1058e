from datetime import datetime, timedelta, timezone

from newsflow.models.job import FetchJob
from newsflow.services.jobs import (
    COMPLETED,
    FAILED,
    PROCESSING,
    QUEUED,
    MemoryJobStore,
    new_job,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _job(article_id, *, priority=5, minutes_ago=1):
    return FetchJob(
        articleId=article_id,
        url=f"https://example.com/{article_id}",
        priority=priority,
        runAfter=NOW - timedelta(minutes=minutes_ago),
    )


def test_claim_orders_by_priority_then_run_after():
    store = MemoryJobStore()
    store.enqueue(_job("late", priority=5, minutes_ago=1))
    store.enqueue(_job("early", priority=5, minutes_ago=10))
    store.enqueue(_job("urgent", priority=1, minutes_ago=0))

    order = [store.claim_next(NOW).articleId for _ in range(3)]

    assert order == ["urgent", "early", "late"]
    assert store.claim_next(NOW) is None


def test_future_jobs_are_not_claimed():
    store = MemoryJobStore()
    store.enqueue(_job("later", minutes_ago=-5))

    assert store.claim_next(NOW) is None


def test_claim_marks_processing_and_counts_attempt():
    store = MemoryJobStore()
    store.enqueue(_job("a"))

    claimed = store.claim_next(NOW)

    assert claimed.status == PROCESSING
    assert claimed.attempts == 1
    assert store.get(claimed.id).status == PROCESSING


def test_enqueue_reuses_open_job_but_replaces_finished_one():
    store = MemoryJobStore()
    job_id, created = store.enqueue(_job("a"))
    again_id, again_created = store.enqueue(_job("a"))

    assert job_id == again_id == "fetch_a"
    assert created and not again_created

    store.claim_next(NOW)
    store.mark_completed(job_id, strategy_used="local", duration_ms=120)
    _, recreated = store.enqueue(_job("a"))

    assert recreated
    assert store.get(job_id).status == QUEUED


def test_release_returns_job_without_consuming_attempt():
    store = MemoryJobStore()
    store.enqueue(_job("a"))
    claimed = store.claim_next(NOW)

    store.release(claimed.id)

    job = store.get(claimed.id)
    assert job.status == QUEUED
    assert job.attempts == 0


def test_failed_job_can_be_retried_once():
    store = MemoryJobStore()
    store.enqueue(_job("a"))
    store.enqueue(_job("b"))
    for _ in range(2):
        claimed = store.claim_next(NOW)
        store.mark_failed(claimed.id, error="boom", error_code="STRATEGY_TIMEOUT")

    assert [job.id for job in store.list_jobs(FAILED)] != []
    assert store.retry("fetch_a")
    assert not store.retry("fetch_a")

    job = store.get("fetch_a")
    assert job.status == QUEUED
    assert job.attempts == 0
    assert job.error is None
    assert store.retry_all_failed() == 1


def test_stats_and_remove():
    store = MemoryJobStore()
    store.enqueue(_job("a"))
    store.enqueue(_job("b"))
    claimed = store.claim_next(NOW)
    store.mark_completed(claimed.id, strategy_used="render", duration_ms=900)

    stats = store.stats()

    assert stats[QUEUED] == 1
    assert stats[COMPLETED] == 1
    assert stats[FAILED] == 0
    assert stats["TOTAL"] == 2
    assert store.remove("fetch_b")
    assert not store.remove("fetch_b")


def test_requeue_stale_processing_jobs():
    store = MemoryJobStore()
    store.enqueue(_job("a"))
    claimed = store.claim_next(datetime.now(timezone.utc))

    assert store.requeue_stale(timedelta(hours=1)) == 0
    assert store.requeue_stale(timedelta(seconds=-1)) == 1
    assert store.get(claimed.id).status == QUEUED


def test_new_job_uses_configured_defaults():
    job = new_job("42", "https://example.com/x", strategy="render")

    assert job.id == "fetch_42"
    assert job.priority == 5
    assert job.maxAttempts == 3
    assert job.status == QUEUED
