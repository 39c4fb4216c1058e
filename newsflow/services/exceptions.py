from __future__ import annotations


class ExtractionError(Exception):
    """Base class for fetch and extraction pipeline errors."""

    code = "FETCH_ERROR"

    def __init__(self, message: str, *, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class InvalidUrl(ExtractionError):
    """The URL has no http(s) host to fetch from."""

    code = "INVALID_URL"


class RateLimited(ExtractionError):
    """Admission to a domain was denied or timed out."""

    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        domain: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, url=url)
        self.domain = domain
        self.retry_after = retry_after


class CircuitOpen(ExtractionError):
    """The domain's circuit breaker is rejecting requests."""

    code = "CIRCUIT_OPEN"

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        domain: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, url=url)
        self.domain = domain
        self.retry_after = retry_after


class StrategyError(ExtractionError):
    """A single strategy attempt failed."""

    code = "STRATEGY_ERROR"
    counts_toward_circuit = False

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        strategy: str | None = None,
    ) -> None:
        super().__init__(message, url=url)
        self.strategy = strategy


class StrategyTimeout(StrategyError):
    """The strategy did not answer within its deadline."""

    code = "STRATEGY_TIMEOUT"
    counts_toward_circuit = True


class StrategyNetworkError(StrategyError):
    """Connection-level failure talking to the target."""

    code = "NETWORK_ERROR"
    counts_toward_circuit = True


class StrategyBlocked(StrategyError):
    """Target refused the request or served a bot-detection page."""

    code = "STRATEGY_BLOCKED"
    counts_toward_circuit = True


class Non2xx(StrategyBlocked):
    """Target answered with a non-success HTTP status."""

    code = "NON_2XX"

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        strategy: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, url=url, strategy=strategy)
        self.status_code = status_code


class RenderFailed(StrategyError):
    """The headless browser could not produce a rendered page."""

    code = "RENDER_FAILED"


class StrategyUnavailable(StrategyError):
    """The backend behind a strategy is missing, unhealthy or saturated."""

    code = "STRATEGY_UNAVAILABLE"


class InsufficientContent(StrategyError):
    """An attempt returned markup but not enough readable text."""

    code = "INSUFFICIENT_CONTENT"


class StrategyCrashed(StrategyError):
    """A strategy or the content check raised something unexpected."""

    code = "INTERNAL_ERROR"


class NoContentFound(ExtractionError):
    """Readability found no dominant candidate."""

    code = "NO_CONTENT_FOUND"


class RootNotFound(ExtractionError):
    """The readable subtree could not be located in the source document."""

    code = "ROOT_NOT_FOUND"


class AllStrategiesFailed(ExtractionError):
    """Every strategy tried for a URL failed."""

    code = "ALL_STRATEGIES_FAILED"

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        last_error: ExtractionError | None = None,
    ) -> None:
        super().__init__(message, url=url)
        self.last_error = last_error


def counts_toward_circuit(error: BaseException) -> bool:
    return bool(getattr(error, "counts_toward_circuit", False))


__all__ = [
    "ExtractionError",
    "InvalidUrl",
    "RateLimited",
    "CircuitOpen",
    "StrategyError",
    "StrategyTimeout",
    "StrategyNetworkError",
    "StrategyBlocked",
    "Non2xx",
    "RenderFailed",
    "StrategyUnavailable",
    "InsufficientContent",
    "NoContentFound",
    "RootNotFound",
    "AllStrategiesFailed",
    "counts_toward_circuit",
]
