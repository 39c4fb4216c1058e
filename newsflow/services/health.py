import logging
import threading
from typing import Any, Optional

from cachetools import TTLCache
from google.cloud.exceptions import GoogleCloudError

from newsflow.config import collections
from newsflow.services import firestore_client

logger = logging.getLogger(__name__)

_health_cache: TTLCache = TTLCache(maxsize=4, ttl=15)
_health_lock = threading.Lock()


def check_firestore_health() -> tuple[bool, str]:
    """Checks the health of the Firestore connection."""
    client = firestore_client.get_client()
    if client is None:
        return False, "NotConfigured"
    try:
        list(client.collection(collections.rate_limits).limit(1).stream())
        return True, "OK"
    except GoogleCloudError as e:
        logger.error("Firestore health check failed: %s", e)
        return False, "Error"


def check_strategies_health(fetcher) -> tuple[bool, dict[str, Any]]:
    """A deployment is healthy while at least one configured strategy is."""
    summary = fetcher.health()
    healthy = any(
        entry.get("configured") and entry.get("healthy") for entry in summary.values()
    )
    return healthy, summary


def check_all_services(fetcher, *, use_cache: bool = True) -> tuple[dict[str, Any], bool]:
    """Checks Firestore and every registered strategy.

    Returns:
        A tuple containing:
        - A dictionary with ``firestore`` (status string) and ``strategies``
          (per-strategy health) entries.
        - A boolean indicating the overall health status.
    """
    cached: Optional[tuple[dict[str, Any], bool]] = None
    if use_cache:
        with _health_lock:
            cached = _health_cache.get("all")
    if cached is not None:
        return cached

    firestore_ok, firestore_status = check_firestore_health()
    strategies_ok, strategies = check_strategies_health(fetcher)
    results = {"firestore": firestore_status, "strategies": strategies}
    outcome = (results, firestore_ok and strategies_ok)

    with _health_lock:
        _health_cache["all"] = outcome
    return outcome


def clear_health_cache() -> None:
    with _health_lock:
        _health_cache.clear()
