from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog
from cachetools import TTLCache
from google.cloud.exceptions import GoogleCloudError

from newsflow.config import CollectionNames, collections as default_collections
from newsflow.models.fetch import StrategyName
from newsflow.services import firestore_client

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SourceFetchConfig:
    strategy: Optional[StrategyName] = None
    timeout: Optional[float] = None


def parse_source_config(raw: Any) -> SourceFetchConfig:
    """Read ``fetch.strategy`` and ``fetch.timeout`` from a source config blob.

    Timeouts above 1000 are taken as milliseconds.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return SourceFetchConfig()
    if not isinstance(raw, Mapping):
        return SourceFetchConfig()
    fetch_config = raw.get("fetch")
    if not isinstance(fetch_config, Mapping):
        return SourceFetchConfig()

    strategy = StrategyName.parse(fetch_config.get("strategy"))
    timeout = None
    raw_timeout = fetch_config.get("timeout")
    if raw_timeout is not None:
        try:
            timeout = float(raw_timeout)
        except (TypeError, ValueError):
            timeout = None
        else:
            if timeout <= 0:
                timeout = None
            elif timeout > 1000:
                timeout = timeout / 1000.0
    return SourceFetchConfig(strategy=strategy, timeout=timeout)


class SourceConfigReader:
    """Looks up ``sources/{id}.config`` with a short-lived cache."""

    def __init__(
        self,
        client: Any = None,
        *,
        names: CollectionNames = default_collections,
        ttl_seconds: int = 60,
    ) -> None:
        self._client = client
        self._names = names
        self._cache: TTLCache[str, SourceFetchConfig] = TTLCache(
            maxsize=1024, ttl=ttl_seconds
        )

    def get(self, source_id: Optional[str]) -> SourceFetchConfig:
        if not source_id:
            return SourceFetchConfig()
        cached = self._cache.get(source_id)
        if cached is not None:
            return cached

        client = self._client or firestore_client.get_client()
        if client is None:
            return SourceFetchConfig()
        try:
            doc = client.collection(self._names.sources).document(source_id).get()
        except GoogleCloudError as exc:
            logger.warning("sources.lookup_failed", source_id=source_id, error=str(exc))
            return SourceFetchConfig()

        config = SourceFetchConfig()
        if doc.exists:
            config = parse_source_config((doc.to_dict() or {}).get("config"))
        self._cache[source_id] = config
        return config
