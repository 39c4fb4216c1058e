from __future__ import annotations

import os
import threading
import time
from typing import Any, Callable, Optional
from urllib.parse import urlencode

import requests
import structlog
from cachetools import TTLCache
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from newsflow.config import settings
from newsflow.models.fetch import FetchRequest, FetchResult, StrategyName
from newsflow.services.exceptions import (
    RenderFailed,
    StrategyBlocked,
    StrategyTimeout,
    StrategyUnavailable,
)
from newsflow.services.strategies.base import StrategyHealth, elapsed_ms
from newsflow.services.strategies.rules import looks_like_bot_challenge
from newsflow.utils.deadline import Deadline

logger = structlog.get_logger(__name__)

WAIT_CONDITIONS = {"domcontentloaded", "load", "networkidle"}
DEFAULT_WAIT_UNTIL = os.getenv("RENDER_WAIT_UNTIL", "domcontentloaded")
BLOCKED_RESOURCE_TYPES = {"font", "media"}
SCROLL_STEPS = int(os.getenv("RENDER_SCROLL_STEPS", "3"))
SCROLL_DELAY_MS = int(os.getenv("RENDER_SCROLL_DELAY_MS", "1000"))
HEALTH_CACHE_TTL_SECONDS = int(os.getenv("RENDER_HEALTH_CACHE_SECONDS", "10"))
HEALTH_TIMEOUT_SECONDS = 5.0


def _ws_endpoint(endpoint: str, token: Optional[str]) -> str:
    url = endpoint
    if url.startswith("http://"):
        url = "ws://" + url[len("http://"):]
    elif url.startswith("https://"):
        url = "wss://" + url[len("https://"):]
    if token:
        url = f"{url}{'&' if '?' in url else '?'}{urlencode({'token': token})}"
    return url


def _http_endpoint(endpoint: str) -> str:
    url = endpoint
    if url.startswith("ws://"):
        url = "http://" + url[len("ws://"):]
    elif url.startswith("wss://"):
        url = "https://" + url[len("wss://"):]
    return url.rstrip("/")


class RenderStrategy:
    """Headless Chromium through Playwright.

    With ``endpoint`` set the browser runs remotely (Browserless over CDP) and
    health comes from its ``/pressure`` endpoint; otherwise a local browser is
    launched per fetch and health is the in-process queue depth.
    """

    name = StrategyName.RENDER

    def __init__(
        self,
        *,
        endpoint: Optional[str] = None,
        token: Optional[str] = None,
        enabled: Optional[bool] = None,
        max_concurrent: Optional[int] = None,
        max_cpu: Optional[float] = None,
        max_memory: Optional[float] = None,
        session: Optional[requests.Session] = None,
        playwright_factory: Callable[[], Any] = sync_playwright,
    ) -> None:
        self._endpoint = endpoint if endpoint is not None else settings.RENDER_ENDPOINT
        self._token = token if token is not None else settings.RENDER_TOKEN
        self._enabled = settings.RENDER_ENABLED if enabled is None else enabled
        self._max_concurrent = max(1, max_concurrent or settings.RENDER_MAX_CONCURRENT)
        self._max_cpu = max_cpu if max_cpu is not None else settings.RENDER_MAX_CPU
        self._max_memory = (
            max_memory if max_memory is not None else settings.RENDER_MAX_MEMORY
        )
        self._session = session or requests.Session()
        self._playwright_factory = playwright_factory
        self._slots = threading.BoundedSemaphore(self._max_concurrent)
        self._counter_lock = threading.Lock()
        self._running = 0
        self._queued = 0
        self._health_cache: TTLCache[str, StrategyHealth] = TTLCache(
            maxsize=1, ttl=HEALTH_CACHE_TTL_SECONDS
        )

    @property
    def configured(self) -> bool:
        return bool(self._enabled)

    def health(self) -> StrategyHealth:
        cached = self._health_cache.get("render")
        if cached is not None:
            return cached
        health = self._remote_health() if self._endpoint else self._local_health()
        self._health_cache["render"] = health
        return health

    def _local_health(self) -> StrategyHealth:
        with self._counter_lock:
            details = {
                "running": self._running,
                "queued": self._queued,
                "maxConcurrent": self._max_concurrent,
            }
        if details["queued"] >= self._max_concurrent:
            return StrategyHealth(False, "QueueFull", details)
        return StrategyHealth(True, "OK", details)

    def _remote_health(self) -> StrategyHealth:
        params = {"token": self._token} if self._token else None
        try:
            response = self._session.get(
                f"{_http_endpoint(self._endpoint)}/pressure",
                params=params,
                timeout=HEALTH_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            pressure = (response.json() or {}).get("pressure") or {}
        except (requests.RequestException, ValueError) as exc:
            logger.warning("render.health_probe_failed", error=str(exc))
            return StrategyHealth(False, "Unreachable")

        details = {
            "cpu": pressure.get("cpu"),
            "memory": pressure.get("memory"),
            "running": pressure.get("running"),
            "queued": pressure.get("queued"),
            "maxConcurrent": pressure.get("maxConcurrent"),
            "isAvailable": pressure.get("isAvailable", True),
        }
        if not details["isAvailable"]:
            return StrategyHealth(False, "Unavailable", details)
        if (details["cpu"] or 0) >= self._max_cpu:
            return StrategyHealth(False, "CpuPressure", details)
        if (details["memory"] or 0) >= self._max_memory:
            return StrategyHealth(False, "MemoryPressure", details)
        max_concurrent = details["maxConcurrent"]
        if max_concurrent and (details["queued"] or 0) >= max_concurrent:
            return StrategyHealth(False, "QueueFull", details)
        return StrategyHealth(True, "OK", details)

    def fetch(self, request: FetchRequest, deadline: Deadline) -> FetchResult:
        started = time.perf_counter()
        with self._counter_lock:
            self._queued += 1
        try:
            acquired = self._slots.acquire(timeout=deadline.bound(request.timeout) or 0)
        finally:
            with self._counter_lock:
                self._queued -= 1
        if not acquired:
            raise StrategyUnavailable(
                "Render backend saturated", url=request.url, strategy=self.name.value
            )

        with self._counter_lock:
            self._running += 1
        try:
            html, final_url, title, partial = self._render(request, deadline)
        finally:
            with self._counter_lock:
                self._running -= 1
            self._slots.release()

        if looks_like_bot_challenge(html):
            raise StrategyBlocked(
                "Bot challenge page served", url=request.url, strategy=self.name.value
            )
        return FetchResult(
            success=True,
            strategyUsed=self.name.value,
            content=html,
            title=title or None,
            finalUrl=final_url,
            durationMs=elapsed_ms(started),
            metadata={"partial": partial} if partial else {},
        )

    def _render(
        self, request: FetchRequest, deadline: Deadline
    ) -> tuple[str, str, str, bool]:
        budget = deadline.bound(request.timeout) or 0.0
        if budget <= 0:
            raise StrategyTimeout(
                "Deadline exhausted before rendering",
                url=request.url,
                strategy=self.name.value,
            )
        wait_until = request.waitUntil or DEFAULT_WAIT_UNTIL
        if wait_until not in WAIT_CONDITIONS:
            wait_until = "domcontentloaded"

        with self._playwright_factory() as playwright:
            try:
                if self._endpoint:
                    browser = playwright.chromium.connect_over_cdp(
                        _ws_endpoint(self._endpoint, self._token),
                        timeout=int(budget * 1000),
                    )
                else:
                    browser = playwright.chromium.launch()
            except PlaywrightError as exc:
                raise StrategyUnavailable(
                    f"Could not start browser: {exc}",
                    url=request.url,
                    strategy=self.name.value,
                ) from exc

            try:
                context = browser.new_context(
                    user_agent=settings.HTTP_USER_AGENT,
                    extra_http_headers=request.header_dict(),
                )
                page = context.new_page()
                page.route("**/*", _block_heavy_resources)
                partial = False
                try:
                    page.goto(
                        request.url,
                        wait_until=wait_until,
                        timeout=int(budget * 1000),
                    )
                except PlaywrightTimeoutError as exc:
                    partial = True
                    if not self._has_body(page):
                        raise StrategyTimeout(
                            f"Navigation timed out: {exc}",
                            url=request.url,
                            strategy=self.name.value,
                        ) from exc

                if request.waitForSelector and not partial:
                    remaining = deadline.bound(request.timeout) or 0.0
                    try:
                        page.wait_for_selector(
                            request.waitForSelector,
                            timeout=max(int(remaining * 1000), 1),
                        )
                    except PlaywrightTimeoutError:
                        partial = True
                        logger.info(
                            "render.selector_timeout",
                            url=request.url,
                            selector=request.waitForSelector,
                        )

                if request.scroll and not partial:
                    self._scroll(page, deadline)

                return page.content(), page.url, page.title(), partial
            except PlaywrightError as exc:
                raise RenderFailed(
                    f"Render failed: {exc}", url=request.url, strategy=self.name.value
                ) from exc
            finally:
                browser.close()

    @staticmethod
    def _has_body(page) -> bool:
        try:
            return bool(page.content().strip())
        except PlaywrightError:
            return False

    @staticmethod
    def _scroll(page, deadline: Deadline) -> None:
        for _ in range(SCROLL_STEPS):
            remaining = deadline.remaining()
            if remaining is not None and remaining * 1000 <= SCROLL_DELAY_MS:
                return
            page.evaluate("window.scrollTo(0, document.body.scrollHeight)")
            page.wait_for_timeout(SCROLL_DELAY_MS)


def _block_heavy_resources(route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        route.abort()
    else:
        route.continue_()
