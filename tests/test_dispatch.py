import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from newsflow.models.fetch import FetchResult
from newsflow.services import events
from newsflow.services.dispatch import (
    JobProcessor,
    WorkerPool,
    backoff_delay,
    enqueue_fetch,
    job_budget_seconds,
)
from newsflow.services.jobs import COMPLETED, FAILED, QUEUED, MemoryJobStore, new_job
from newsflow.utils.deadline import Deadline

from conftest import FakeFetcher, RecordingSink

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _failure(error_type="STRATEGY_TIMEOUT", **metadata):
    return FetchResult(
        success=False,
        error="timed out",
        errorType="ALL_STRATEGIES_FAILED",
        metadata={"lastErrorType": error_type, **metadata},
    )


@pytest.fixture()
def store():
    return MemoryJobStore()


@pytest.fixture()
def sink():
    return RecordingSink()


def _processor(store, fetcher, sink):
    return JobProcessor(store, fetcher, sink, backoff_seconds=2.0, clock=lambda: NOW)


def _claim(store):
    return store.claim_next(datetime.now(timezone.utc) + timedelta(seconds=1))


def test_backoff_doubles_per_attempt():
    assert [backoff_delay(n, 2.0) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]


def test_job_budget_covers_whole_chain_unless_strategy_pinned():
    auto = new_job("a", "https://example.com/a", timeout=10)
    pinned = new_job("b", "https://example.com/b", timeout=10, strategy="local")

    assert job_budget_seconds(pinned) < job_budget_seconds(auto)


def test_enqueue_marks_article_pending_only_when_created(store, sink):
    first = enqueue_fetch(store, sink, "a1", "https://example.com/a")
    second = enqueue_fetch(store, sink, "a1", "https://example.com/a")

    assert first == ("fetch_a1", True)
    assert second == ("fetch_a1", False)
    assert sink.calls == [("a1", {"status": "pending"})]


def test_success_persists_article_and_completes_job(store, sink):
    fetcher = FakeFetcher(
        [
            FetchResult(
                success=True,
                strategyUsed="render",
                content="<p>body</p>",
                title="Title",
                durationMs=420,
                metadata={"byline": "Jane", "readingTime": 3},
            )
        ]
    )
    enqueue_fetch(store, None, "a1", "https://example.com/a", source_id="src-1")

    outcome = _processor(store, fetcher, sink).process(_claim(store), Deadline.unbounded())

    assert outcome == "completed"
    job = store.get("fetch_a1")
    assert job.status == COMPLETED
    assert job.strategyUsed == "render"
    article_id, payload = sink.calls[-1]
    assert article_id == "a1"
    assert payload["status"] == "completed"
    assert payload["byline"] == "Jane"
    assert fetcher.calls[0][1]["source_id"] == "src-1"


def test_failures_retry_with_backoff_then_fail(store, sink):
    fetcher = FakeFetcher([_failure(), _failure(), _failure()])
    processor = _processor(store, fetcher, sink)
    enqueue_fetch(store, None, "a1", "https://example.com/a")

    assert processor.process(_claim(store), Deadline.unbounded()) == "retry"
    job = store.get("fetch_a1")
    assert job.status == QUEUED
    assert job.runAfter == NOW + timedelta(seconds=2.0)
    assert job.errorCode == "STRATEGY_TIMEOUT"

    second = processor.process(store.claim_next(NOW + timedelta(seconds=3)), Deadline.unbounded())
    assert second == "retry"
    assert store.get("fetch_a1").runAfter == NOW + timedelta(seconds=4.0)

    final = processor.process(store.claim_next(NOW + timedelta(seconds=10)), Deadline.unbounded())

    assert final == "failed"
    assert store.get("fetch_a1").status == FAILED
    assert sink.calls[-1] == (
        "a1",
        {"status": "failed", "error": "timed out", "errorCode": "STRATEGY_TIMEOUT"},
    )


def test_retry_after_hint_extends_backoff(store, sink):
    fetcher = FakeFetcher([_failure("CIRCUIT_OPEN", retryAfter=45.0)])
    enqueue_fetch(store, None, "a1", "https://example.com/a")

    _processor(store, fetcher, sink).process(_claim(store), Deadline.unbounded())

    assert store.get("fetch_a1").runAfter == NOW + timedelta(seconds=45.0)


def test_failed_job_can_be_requeued_manually(store, sink):
    fetcher = FakeFetcher([_failure()] * 3)
    processor = _processor(store, fetcher, sink)
    enqueue_fetch(store, None, "a1", "https://example.com/a")
    processor.process(_claim(store), Deadline.unbounded())
    later = NOW + timedelta(minutes=5)
    for _ in range(2):
        processor.process(store.claim_next(later), Deadline.unbounded())

    assert store.get("fetch_a1").status == FAILED
    assert store.retry("fetch_a1")
    assert store.get("fetch_a1").attempts == 0


def test_cancelled_deadline_releases_job_without_using_attempt(store, sink):
    fetcher = FakeFetcher([_failure("CANCELLED")])
    enqueue_fetch(store, None, "a1", "https://example.com/a")
    deadline = Deadline.unbounded()
    deadline.cancel()

    outcome = _processor(store, fetcher, sink).process(_claim(store), deadline)

    assert outcome == "interrupted"
    job = store.get("fetch_a1")
    assert job.status == QUEUED
    assert job.attempts == 0
    assert sink.calls == []


def test_unexpected_error_counts_as_failed_attempt(store, sink):
    fetcher = FakeFetcher([RuntimeError("parser exploded")])
    enqueue_fetch(store, None, "a1", "https://example.com/a")

    outcome = _processor(store, fetcher, sink).process(_claim(store), Deadline.unbounded())

    assert outcome == "retry"
    assert store.get("fetch_a1").errorCode == "INTERNAL_ERROR"


def test_progress_signals_are_emitted(store, sink):
    seen = []

    def receiver(job_id, **payload):
        seen.append((job_id, payload.get("stage")))

    enqueue_fetch(store, None, "a1", "https://example.com/a")
    with events.job_started.connected_to(receiver), events.job_progress.connected_to(
        receiver
    ), events.job_completed.connected_to(receiver):
        _processor(store, FakeFetcher(), sink).process(_claim(store), Deadline.unbounded())

    assert seen == [
        ("fetch_a1", None),
        ("fetch_a1", "fetching"),
        ("fetch_a1", "persisting"),
        ("fetch_a1", None),
    ]


def test_failing_receiver_does_not_break_the_job(store, sink):
    def broken(job_id, **payload):
        raise ValueError("listener bug")

    enqueue_fetch(store, None, "a1", "https://example.com/a")
    with events.job_started.connected_to(broken):
        outcome = _processor(store, FakeFetcher(), sink).process(
            _claim(store), Deadline.unbounded()
        )

    assert outcome == "completed"


def test_worker_pool_run_once(store, sink):
    pool = WorkerPool(store, _processor(store, FakeFetcher(), sink), concurrency=1)

    assert pool.run_once() is None

    enqueue_fetch(store, None, "a1", "https://example.com/a")

    assert pool.run_once() == "completed"
    assert pool.in_flight == []
    assert store.get("fetch_a1").status == COMPLETED


class WaitingFetcher:
    """Holds the job until its deadline is cancelled or ``finish`` is set."""

    def __init__(self):
        self.started = threading.Event()
        self.finish = threading.Event()
        self.saw_cancel = False

    def fetch(self, url, *, deadline, **kwargs):
        self.started.set()
        while not self.finish.is_set():
            if deadline.remaining() == 0.0:
                self.saw_cancel = deadline.cancelled
                return _failure("CANCELLED")
            time.sleep(0.01)
        return FetchResult(success=True, strategyUsed="local", content="<p>ok</p>")


def _started_pool(store, fetcher, sink):
    pool = WorkerPool(
        store, _processor(store, fetcher, sink), concurrency=1, poll_interval=0.01
    )
    enqueue_fetch(store, None, "a1", "https://example.com/a")
    pool.start()
    assert fetcher.started.wait(5.0)
    return pool


def test_stop_cancels_job_past_grace_and_requeues_it(store, sink):
    fetcher = WaitingFetcher()
    pool = _started_pool(store, fetcher, sink)

    pool.stop(grace_seconds=0.05)

    assert fetcher.saw_cancel
    job = store.get("fetch_a1")
    assert job.status == QUEUED
    assert job.attempts == 0
    assert pool.in_flight == []
    assert sink.calls == []


def test_stop_lets_in_flight_job_finish_within_grace(store, sink):
    fetcher = WaitingFetcher()
    pool = _started_pool(store, fetcher, sink)
    threading.Timer(0.05, fetcher.finish.set).start()

    pool.stop(grace_seconds=5.0)

    assert not fetcher.saw_cancel
    assert store.get("fetch_a1").status == COMPLETED
