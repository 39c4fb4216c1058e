import argparse
import signal
import threading

import structlog
from dotenv import load_dotenv

from newsflow.config import settings
from newsflow.services.articles import FirestoreArticleSink
from newsflow.services.dispatch import JobProcessor, WorkerPool
from newsflow.services.fetch_config import (
    FirestoreConfigRepository,
    config_store,
    reload_from_repository,
)
from newsflow.services.firestore_client import FirestoreError
from newsflow.services.jobs import get_job_store
from newsflow.services.orchestrator import get_fetcher
from newsflow.utils.logging_config import setup_logging

logger = structlog.get_logger("tools.run_workers")


def _start_config_watch(repository: FirestoreConfigRepository):
    def _on_reload(kind: str) -> None:
        try:
            snapshot = reload_from_repository(config_store, repository, kind)
        except FirestoreError as exc:
            logger.error("workers.config_reload_failed", kind=kind, error=str(exc))
            return
        logger.info("workers.config_reloaded", kind=kind, version=snapshot.version)

    return repository.watch(_on_reload)


def run(concurrency: int, grace: float, watch_config: bool) -> None:
    store = get_job_store()
    processor = JobProcessor(store, get_fetcher(), FirestoreArticleSink())
    pool = WorkerPool(store, processor, concurrency=concurrency, grace_seconds=grace)

    watch = None
    if watch_config:
        repository = FirestoreConfigRepository()
        try:
            reload_from_repository(config_store, repository)
            watch = _start_config_watch(repository)
        except FirestoreError as exc:
            logger.error("workers.config_unavailable", error=str(exc))

    stop_requested = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info("workers.signal_received", signal=signum)
        stop_requested.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    pool.start()
    stop_requested.wait()
    pool.stop()
    if watch is not None:
        watch.unsubscribe()


if __name__ == "__main__":
    load_dotenv()
    setup_logging()

    parser = argparse.ArgumentParser(description="Run the fetch job worker pool.")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=settings.WORKER_CONCURRENCY,
        help="Number of worker threads.",
    )
    parser.add_argument(
        "--grace",
        type=float,
        default=settings.WORKER_SHUTDOWN_GRACE_SECONDS,
        help="Seconds in-flight jobs get to finish on shutdown.",
    )
    parser.add_argument(
        "--no-watch-config",
        action="store_true",
        help="Do not follow configuration reloads published by the admin API.",
    )
    args = parser.parse_args()

    run(args.concurrency, args.grace, not args.no_watch_config)
