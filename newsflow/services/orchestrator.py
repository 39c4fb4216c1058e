"""Single entry point for fetching an article URL.

Automatic mode walks ``local -> scrape -> render -> ai`` and stops at the
first attempt that yields readable content. Every attempt is admitted by the
domain's circuit breaker and rate limiter first; a rejection there ends the
call at once because every strategy would hit the same domain.
"""

from __future__ import annotations

import dataclasses
import threading
import time
from typing import Any, Callable, Optional

import structlog

from newsflow.config import settings
from newsflow.models.fetch import AUTO_CHAIN, FetchRequest, FetchResult, StrategyName
from newsflow.services.circuit_breaker import BreakerTicket, CircuitBreaker, circuit_breaker
from newsflow.services.credentials import CredentialStore, get_credential_store
from newsflow.services.exceptions import (
    AllStrategiesFailed,
    CircuitOpen,
    ExtractionError,
    InsufficientContent,
    InvalidUrl,
    RateLimited,
    StrategyCrashed,
    StrategyError,
    StrategyTimeout,
    StrategyUnavailable,
    counts_toward_circuit,
)
from newsflow.services.extraction.pipeline import ExtractionResult, extract
from newsflow.services.extraction.readable import STANDARD
from newsflow.services.rate_limiter import DomainRateLimiter, domain_rate_limiter
from newsflow.services.sources import SourceConfigReader, SourceFetchConfig
from newsflow.services.strategies.ai import AiExtractionStrategy
from newsflow.services.strategies.base import Strategy, StrategyRegistry, elapsed_ms
from newsflow.services.strategies.http import LocalHttpStrategy
from newsflow.services.strategies.render import RenderStrategy
from newsflow.services.strategies.rules import is_spa_shell, match_domain_rule
from newsflow.services.strategies.scrape_service import ScrapeServiceStrategy
from newsflow.utils.correlation import bind_request_context, update_context
from newsflow.utils.deadline import Deadline
from newsflow.utils.domains import domain_from_url
from newsflow.utils.text import html_to_text

logger = structlog.get_logger(__name__)

Extractor = Callable[..., ExtractionResult]


def build_default_registry() -> StrategyRegistry:
    return StrategyRegistry(
        [
            LocalHttpStrategy(),
            ScrapeServiceStrategy(),
            RenderStrategy(),
            AiExtractionStrategy(),
        ]
    )


def _failure(
    error: ExtractionError,
    *,
    url: str,
    started: float,
    attempts: list[dict[str, Any]],
    strategy: Optional[str] = None,
    **metadata: Any,
) -> FetchResult:
    return FetchResult(
        success=False,
        strategyUsed=strategy,
        error=str(error),
        errorType=error.code,
        finalUrl=url,
        durationMs=elapsed_ms(started),
        attempts=attempts,
        metadata={key: value for key, value in metadata.items() if value is not None},
    )


class UnifiedFetcher:
    def __init__(
        self,
        registry: StrategyRegistry,
        *,
        breaker: CircuitBreaker = circuit_breaker,
        limiter: DomainRateLimiter = domain_rate_limiter,
        sources: Optional[SourceConfigReader] = None,
        credentials: Optional[CredentialStore] = None,
        extractor: Extractor = extract,
        min_content_length: Optional[int] = None,
        default_timeout: Optional[float] = None,
        admission_wait: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self._breaker = breaker
        self._limiter = limiter
        self._sources = sources
        self._credentials = credentials
        self._extractor = extractor
        self._min_length = min_content_length or settings.FETCH_MIN_CONTENT_LENGTH
        self._default_timeout = default_timeout or settings.FETCH_TIMEOUT_SECONDS
        self._admission_wait = (
            admission_wait if admission_wait is not None else settings.RATE_LIMIT_WAIT_SECONDS
        )

    def _source_config(self, source_id: Optional[str]) -> SourceFetchConfig:
        if not source_id or self._sources is None:
            return SourceFetchConfig()
        return self._sources.get(source_id)

    def _build_request(
        self,
        url: str,
        domain: str,
        timeout: float,
        source_id: Optional[str],
        explicit: Optional[StrategyName],
    ) -> FetchRequest:
        headers: dict[str, str] = {}
        wait_until = None
        scroll = False
        rule = match_domain_rule(url)
        if rule is not None:
            headers.update(rule.headers)
            if rule.render:
                wait_until = "networkidle"
            scroll = rule.needs_scroll
        if self._credentials is not None:
            cookie = self._credentials.get_cookie_for_domain(domain)
            if cookie:
                headers["Cookie"] = cookie
        return FetchRequest(
            url=url,
            timeout=timeout,
            sourceId=source_id,
            explicitStrategy=explicit,
            headers=tuple(headers.items()),
            waitUntil=wait_until,
            scroll=scroll,
        )

    def health(self) -> dict[str, dict[str, Any]]:
        summary: dict[str, dict[str, Any]] = {}
        for strategy in self.registry.all():
            if not strategy.configured:
                summary[strategy.name.value] = {"configured": False, "healthy": False}
                continue
            health = strategy.health()
            summary[strategy.name.value] = {
                "configured": True,
                "healthy": health.healthy,
                "reason": health.reason,
                "details": health.details,
            }
        return summary

    def fetch(
        self,
        url: str,
        *,
        source_id: Optional[str] = None,
        strategy: Optional[str] = None,
        timeout: Optional[float] = None,
        extract_content: bool = True,
        mode: str = STANDARD,
        deadline: Optional[Deadline] = None,
    ) -> FetchResult:
        started = time.perf_counter()
        attempts: list[dict[str, Any]] = []
        domain = domain_from_url(url)
        if not domain:
            error = InvalidUrl(f"Invalid URL: {url!r}", url=url)
            return _failure(error, url=url, started=started, attempts=attempts)

        source_config = self._source_config(source_id)
        explicit = StrategyName.parse(strategy) or source_config.strategy
        attempt_timeout = timeout or source_config.timeout or self._default_timeout
        chain = (explicit,) if explicit else AUTO_CHAIN
        if deadline is None:
            deadline = Deadline(attempt_timeout * len(chain) + self._admission_wait)

        bind_request_context(url=url, domain=domain)
        request = self._build_request(url, domain, attempt_timeout, source_id, explicit)
        logger.info(
            "orchestrator.fetch_started",
            explicit_strategy=explicit.value if explicit else None,
            timeout=attempt_timeout,
        )

        last_error: Optional[ExtractionError] = None
        if explicit is not None and self.registry.get(explicit) is None:
            last_error = StrategyUnavailable(
                f"Strategy {explicit.value} is not registered",
                url=url,
                strategy=explicit.value,
            )
            return self._all_failed(url, started, attempts, last_error, explicit)

        last_html: Optional[str] = None
        partial: Optional[FetchResult] = None

        for candidate in self.registry.ordered(chain):
            name = candidate.name.value
            update_context(strategy=name)
            skip_reason = self._skip_reason(candidate, explicit is not None)
            if skip_reason:
                attempts.append({"strategy": name, "skipped": True, "reason": skip_reason})
                if explicit is not None:
                    last_error = StrategyUnavailable(
                        f"Strategy {name} is {skip_reason}", url=url, strategy=name
                    )
                logger.info("orchestrator.strategy_skipped", reason=skip_reason)
                continue
            if deadline.expired:
                last_error = StrategyTimeout(
                    "Fetch deadline exhausted", url=url, strategy=name
                )
                break

            try:
                ticket = self._breaker.allow(domain)
            except CircuitOpen as exc:
                exc.url = url
                logger.info("orchestrator.circuit_open", retry_after=exc.retry_after)
                return _failure(
                    exc,
                    url=url,
                    started=started,
                    attempts=attempts,
                    retryAfter=exc.retry_after,
                )
            try:
                permit = self._limiter.admit(
                    domain, timeout=self._admission_wait, deadline=deadline
                )
            except RateLimited as exc:
                self._breaker.record_neutral(ticket)
                exc.url = url
                logger.info("orchestrator.rate_limited", retry_after=exc.retry_after)
                return _failure(
                    exc,
                    url=url,
                    started=started,
                    attempts=attempts,
                    retryAfter=exc.retry_after,
                )

            attempt_request = request
            if candidate.name == StrategyName.AI and last_html:
                attempt_request = dataclasses.replace(request, html=last_html)
            attempt_started = time.perf_counter()
            settled = False
            try:
                try:
                    result = candidate.fetch(attempt_request, deadline)
                except StrategyError as exc:
                    exc.url = exc.url or url
                    exc.strategy = exc.strategy or name
                    last_error = exc
                    self._record_outcome(ticket, exc)
                    settled = True
                    attempts.append(self._attempt(name, attempt_started, exc))
                    logger.warning(
                        "orchestrator.attempt_failed",
                        error=str(exc),
                        error_type=exc.code,
                        counted=counts_toward_circuit(exc),
                    )
                    continue
                finally:
                    permit.release()

                if result.contentFormat == "html" and result.content:
                    last_html = result.content
                try:
                    accepted = self._accept(result, url, extract_content, mode)
                except ExtractionError as exc:
                    self._breaker.record_neutral(ticket)
                    settled = True
                    last_error = exc
                    attempts.append(self._attempt(name, attempt_started, exc))
                    logger.info(
                        "orchestrator.content_rejected", error=str(exc), error_type=exc.code
                    )
                    if result.title and partial is None:
                        partial = result
                    continue

                self._breaker.record_success(ticket)
                settled = True
            except Exception as exc:
                if settled:
                    raise
                last_error = StrategyCrashed(
                    f"{type(exc).__name__}: {exc}", url=url, strategy=name
                )
                attempts.append(self._attempt(name, attempt_started, last_error))
                logger.exception("orchestrator.attempt_crashed", error=str(exc))
                continue
            finally:
                # Every ticket is settled, unexpected errors included.
                if not settled:
                    self._breaker.record_neutral(ticket)

            attempts.append(self._attempt(name, attempt_started))
            accepted.attempts = attempts
            logger.info(
                "orchestrator.fetch_succeeded",
                duration_ms=accepted.durationMs,
                attempts=len(attempts),
            )
            return accepted

        return self._all_failed(url, started, attempts, last_error, explicit, partial)

    def _skip_reason(self, strategy: Strategy, explicit: bool) -> Optional[str]:
        if not strategy.configured:
            return "not configured"
        if explicit:
            return None
        health = strategy.health()
        if not health.healthy:
            return f"unhealthy ({health.reason})"
        return None

    def _record_outcome(self, ticket: BreakerTicket, error: StrategyError) -> None:
        if counts_toward_circuit(error):
            self._breaker.record_failure(ticket, str(error))
        else:
            self._breaker.record_neutral(ticket)

    @staticmethod
    def _attempt(
        name: str, started: float, error: Optional[ExtractionError] = None
    ) -> dict[str, Any]:
        return {
            "strategy": name,
            "success": error is None,
            "durationMs": elapsed_ms(started),
            "error": str(error) if error else None,
            "errorType": error.code if error else None,
        }

    def _accept(
        self, result: FetchResult, url: str, extract_content: bool, mode: str
    ) -> FetchResult:
        """Return the result to hand back or raise when the content is unusable."""
        raw = result.content or ""
        if result.contentFormat != "html":
            text = result.textContent or raw
            if len(text.strip()) < self._min_length:
                raise InsufficientContent(
                    f"Only {len(text.strip())} characters of text",
                    url=url,
                    strategy=result.strategyUsed,
                )
            return result

        if extract_content:
            extracted = self._extractor(raw, result.finalUrl or url, mode=mode)
            text = extracted.text_content
        else:
            extracted = None
            text = html_to_text(raw)

        if len(text) < self._min_length or is_spa_shell(raw, len(text), self._min_length):
            raise InsufficientContent(
                f"Only {len(text)} characters of text",
                url=url,
                strategy=result.strategyUsed,
            )

        if extracted is None:
            result.textContent = text
            return result
        metadata = dict(result.metadata)
        metadata.update(
            {
                "excerpt": extracted.excerpt,
                "byline": extracted.byline,
                "readingTime": extracted.reading_time,
                "selector": extracted.selector,
                "matchConfidence": extracted.match_confidence,
                "rawLength": len(raw),
            }
        )
        return dataclasses.replace(
            result,
            content=extracted.content,
            title=extracted.title or result.title,
            textContent=extracted.text_content,
            metadata=metadata,
        )

    def _all_failed(
        self,
        url: str,
        started: float,
        attempts: list[dict[str, Any]],
        last_error: Optional[ExtractionError],
        explicit: Optional[StrategyName],
        partial: Optional[FetchResult] = None,
    ) -> FetchResult:
        if explicit is not None and last_error is not None:
            message = f"Strategy {explicit.value} failed: {last_error}"
        elif attempts:
            message = f"All strategies failed for {url}"
        else:
            message = f"No strategy available for {url}"
        error = AllStrategiesFailed(message, url=url, last_error=last_error)
        logger.warning(
            "orchestrator.all_failed",
            attempts=len(attempts),
            last_error=str(last_error) if last_error else None,
            last_error_type=last_error.code if last_error else None,
        )
        result = _failure(
            error,
            url=url,
            started=started,
            attempts=attempts,
            strategy=explicit.value if explicit else None,
            lastErrorType=last_error.code if last_error else None,
            lastError=str(last_error) if last_error else None,
        )
        if partial is not None:
            result.title = partial.title
            result.metadata["partial"] = True
        return result


_fetcher_lock = threading.Lock()
_fetcher: Optional[UnifiedFetcher] = None


def get_fetcher() -> UnifiedFetcher:
    global _fetcher
    if _fetcher is not None:
        return _fetcher
    with _fetcher_lock:
        if _fetcher is None:
            _fetcher = UnifiedFetcher(
                build_default_registry(),
                sources=SourceConfigReader(),
                credentials=get_credential_store(),
            )
    return _fetcher
