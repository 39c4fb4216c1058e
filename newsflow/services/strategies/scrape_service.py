"""Client for the external scrape service.

The service speaks JSON over HTTP::

    POST /fetch-raw  {url, headers, timeout(ms), strategy} -> {finalUrl, body, statusCode, ...}
    GET  /health     -> {status, concurrency, available, cycleTlsEnabled}

``strategy`` selects the service's TLS mode (``cycletls`` impersonates a
browser TLS fingerprint, ``standard`` uses a plain client, ``auto`` lets the
service decide).
"""

from __future__ import annotations

import os
import time
from typing import Any, Optional

import requests
import structlog
from cachetools import TTLCache

from newsflow.config import settings
from newsflow.models.fetch import FetchRequest, FetchResult, StrategyName
from newsflow.services.exceptions import (
    Non2xx,
    StrategyBlocked,
    StrategyNetworkError,
    StrategyTimeout,
    StrategyUnavailable,
)
from newsflow.services.strategies.base import StrategyHealth, elapsed_ms
from newsflow.services.strategies.rules import looks_like_bot_challenge
from newsflow.utils.deadline import Deadline

logger = structlog.get_logger(__name__)

HEALTH_CACHE_TTL_SECONDS = int(os.getenv("SCRAPER_HEALTH_CACHE_SECONDS", "60"))
HEALTH_TIMEOUT_SECONDS = 5.0


class ScrapeServiceStrategy:
    name = StrategyName.SCRAPE

    def __init__(
        self,
        *,
        endpoint: Optional[str] = None,
        fetch_mode: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        raw_endpoint = endpoint if endpoint is not None else settings.SCRAPER_SERVICE_URL
        self._endpoint = (raw_endpoint or "").rstrip("/")
        self._fetch_mode = fetch_mode or settings.SCRAPER_FETCH_MODE
        self._session = session or requests.Session()
        self._health_cache: TTLCache[str, StrategyHealth] = TTLCache(
            maxsize=1, ttl=HEALTH_CACHE_TTL_SECONDS
        )

    @property
    def configured(self) -> bool:
        return bool(self._endpoint)

    def health(self) -> StrategyHealth:
        if not self._endpoint:
            return StrategyHealth(False, "NotConfigured")
        cached = self._health_cache.get("scrape")
        if cached is not None:
            return cached
        try:
            response = self._session.get(
                f"{self._endpoint}/health", timeout=HEALTH_TIMEOUT_SECONDS
            )
            response.raise_for_status()
            payload = response.json() or {}
        except (requests.RequestException, ValueError) as exc:
            logger.warning("scrape_service.health_probe_failed", error=str(exc))
            health = StrategyHealth(False, "Unreachable")
        else:
            details = {
                "status": payload.get("status"),
                "concurrency": payload.get("concurrency"),
                "available": payload.get("available"),
                "cycleTlsEnabled": payload.get("cycleTlsEnabled"),
            }
            if details["status"] != "ok":
                health = StrategyHealth(False, "Degraded", details)
            elif details["available"] is not None and details["available"] <= 0:
                health = StrategyHealth(False, "Saturated", details)
            else:
                health = StrategyHealth(True, "OK", details)
        self._health_cache["scrape"] = health
        return health

    def _post(self, path: str, request: FetchRequest, deadline: Deadline) -> dict[str, Any]:
        if not self._endpoint:
            raise StrategyUnavailable(
                "Scrape service is not configured",
                url=request.url,
                strategy=self.name.value,
            )
        budget = deadline.bound(request.timeout) or 0.0
        if budget <= 0:
            raise StrategyTimeout(
                "Deadline exhausted before calling scrape service",
                url=request.url,
                strategy=self.name.value,
            )
        body = {
            "url": request.url,
            "headers": request.header_dict(),
            # Leave the service a second to answer before our own timeout fires.
            "timeout": max(int((budget - 1.0) * 1000), 1000),
            "strategy": self._fetch_mode,
        }
        try:
            response = self._session.post(
                f"{self._endpoint}{path}", json=body, timeout=budget
            )
        except requests.Timeout as exc:
            raise StrategyTimeout(
                f"Scrape service timed out: {exc}",
                url=request.url,
                strategy=self.name.value,
            ) from exc
        except requests.RequestException as exc:
            self._health_cache.clear()
            raise StrategyUnavailable(
                f"Scrape service unreachable: {exc}",
                url=request.url,
                strategy=self.name.value,
            ) from exc

        if response.status_code >= 500:
            raise StrategyUnavailable(
                f"Scrape service error: HTTP {response.status_code}",
                url=request.url,
                strategy=self.name.value,
            )
        try:
            payload = response.json() or {}
        except ValueError as exc:
            raise StrategyUnavailable(
                "Scrape service returned invalid JSON",
                url=request.url,
                strategy=self.name.value,
            ) from exc
        return payload

    def fetch(self, request: FetchRequest, deadline: Deadline) -> FetchResult:
        """Raw markup through the service; extraction happens locally."""
        started = time.perf_counter()
        payload = self._post("/fetch-raw", request, deadline)
        self._raise_for_target(payload, request)

        body = payload.get("body") or ""
        if looks_like_bot_challenge(body):
            raise StrategyBlocked(
                "Bot challenge page served", url=request.url, strategy=self.name.value
            )
        return FetchResult(
            success=True,
            strategyUsed=self.name.value,
            content=body,
            finalUrl=payload.get("finalUrl") or request.url,
            statusCode=payload.get("statusCode"),
            durationMs=elapsed_ms(started),
            metadata={"serviceStrategy": payload.get("strategy")},
        )

    def _raise_for_target(self, payload: dict[str, Any], request: FetchRequest) -> None:
        status = payload.get("statusCode")
        error = payload.get("error")
        if isinstance(status, int) and status >= 400:
            raise Non2xx(
                f"Target answered HTTP {status} via scrape service",
                url=request.url,
                strategy=self.name.value,
                status_code=status,
            )
        if error:
            lowered = str(error).lower()
            if "timeout" in lowered or "deadline" in lowered:
                raise StrategyTimeout(str(error), url=request.url, strategy=self.name.value)
            raise StrategyNetworkError(str(error), url=request.url, strategy=self.name.value)
