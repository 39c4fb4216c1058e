"""Local HTTP strategy: one ``requests`` GET with browser-like headers.

Transient statuses (429, 5xx) are retried here, inside the job deadline, so a
``Retry-After`` hint is honoured without sleeping past the budget. Connection
resets are retried once more by urllib3 at the adapter level.
"""

import logging
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from newsflow.config import settings
from newsflow.models.fetch import FetchRequest, FetchResult, StrategyName
from newsflow.services.exceptions import (
    Non2xx,
    StrategyBlocked,
    StrategyError,
    StrategyNetworkError,
    StrategyTimeout,
)
from newsflow.services.strategies.base import StrategyHealth, elapsed_ms
from newsflow.services.strategies.rules import looks_like_bot_challenge
from newsflow.utils.deadline import Deadline

logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Upgrade-Insecure-Requests": "1",
}
RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
AUTH_FAILURE_STATUSES = frozenset({401, 403})

SleepFn = Callable[[float], None]

_session_lock = threading.Lock()
_shared_session: Optional[requests.Session] = None


def shared_session() -> requests.Session:
    """Pooled session reused by every local fetch in the process."""
    global _shared_session
    with _session_lock:
        if _shared_session is None:
            adapter = HTTPAdapter(
                max_retries=Retry(total=1, connect=1, read=0, status=0),
                pool_connections=16,
                pool_maxsize=32,
            )
            session = requests.Session()
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            _shared_session = session
        return _shared_session


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring malformed Retry-After %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _request_headers(extra: Optional[dict[str, str]]) -> dict[str, str]:
    headers = {"User-Agent": settings.HTTP_USER_AGENT, **BROWSER_HEADERS}
    if extra:
        headers.update(extra)
    return headers


def _status_error(url: str, status: int) -> Non2xx:
    return Non2xx(f"HTTP {status} from {url}", url=url, status_code=status)


def fetch_with_resilience(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: Optional[float] = None,
    deadline: Optional[Deadline] = None,
    sleep: SleepFn = time.sleep,
    extra_headers: Optional[dict[str, str]] = None,
    max_retries: Optional[int] = None,
) -> dict:
    """GET ``url``, retrying transient failures while the deadline allows.

    Returns ``{"html", "final_url", "status_code", "attempts", "elapsed_ms"}``
    or raises a ``StrategyError`` subclass.
    """
    session = session or shared_session()
    retries = settings.HTTP_MAX_RETRIES if max_retries is None else max_retries
    per_request = timeout or settings.HTTP_REQUEST_TIMEOUT_SECONDS
    headers = _request_headers(extra_headers)
    delay = settings.HTTP_BACKOFF_SECONDS
    started = time.perf_counter()

    for attempt in range(1, retries + 2):
        request_timeout = deadline.bound(per_request) if deadline else per_request
        if not request_timeout or request_timeout <= 0:
            raise StrategyTimeout(f"No time left to fetch {url}", url=url)

        response = None
        try:
            response = session.get(
                url, headers=headers, timeout=request_timeout, allow_redirects=True
            )
        except requests.Timeout as exc:
            error: StrategyError = StrategyTimeout(f"Timed out fetching {url}: {exc}", url=url)
        except requests.RequestException as exc:
            error = StrategyNetworkError(f"Could not reach {url}: {exc}", url=url)
        else:
            status = response.status_code
            if status < 400:
                return {
                    "html": response.text,
                    "final_url": response.url,
                    "status_code": status,
                    "attempts": attempt,
                    "elapsed_ms": elapsed_ms(started),
                }
            error = _status_error(url, status)
            if status not in RETRYABLE_STATUSES:
                logger.info("GET %s answered %s; not retrying", url, status)
                raise error

        if attempt > retries:
            raise error

        hinted = parse_retry_after(response.headers.get("Retry-After")) if response else None
        wait = min(hinted if hinted is not None else delay, settings.HTTP_MAX_BACKOFF_SECONDS)
        remaining = deadline.remaining() if deadline else None
        if remaining is not None and wait >= remaining:
            raise error
        logger.warning("GET %s failed on attempt %s (%s); retrying in %.2fs", url, attempt, error, wait)
        sleep(wait)
        delay = min(delay * 2, settings.HTTP_MAX_BACKOFF_SECONDS)

    raise StrategyNetworkError(f"Could not fetch {url}", url=url)


class LocalHttpStrategy:
    """Plain GET with browser-like headers; the cheapest strategy."""

    name = StrategyName.LOCAL

    def __init__(
        self,
        *,
        session: Optional[requests.Session] = None,
        sleep: SleepFn = time.sleep,
        max_retries: Optional[int] = None,
    ) -> None:
        self._session = session
        self._sleep = sleep
        self._max_retries = max_retries

    @property
    def configured(self) -> bool:
        return True

    def health(self) -> StrategyHealth:
        return StrategyHealth(True)

    def fetch(self, request: FetchRequest, deadline: Deadline) -> FetchResult:
        started = time.perf_counter()
        headers = request.header_dict()
        try:
            payload = fetch_with_resilience(
                request.url,
                session=self._session,
                timeout=request.timeout,
                deadline=deadline,
                sleep=self._sleep,
                extra_headers=headers,
                max_retries=self._max_retries,
            )
        except StrategyError as exc:
            exc.strategy = self.name.value
            if (
                isinstance(exc, Non2xx)
                and "Cookie" in headers
                and exc.status_code in AUTH_FAILURE_STATUSES
            ):
                logger.warning(
                    "Authenticated GET %s answered %s; stored credentials may have expired",
                    request.url,
                    exc.status_code,
                )
            raise

        html = payload["html"] or ""
        if looks_like_bot_challenge(html):
            raise StrategyBlocked(
                "Bot challenge page served", url=request.url, strategy=self.name.value
            )
        return FetchResult(
            success=True,
            strategyUsed=self.name.value,
            content=html,
            finalUrl=payload["final_url"],
            statusCode=payload["status_code"],
            durationMs=elapsed_ms(started),
        )
