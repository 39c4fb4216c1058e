from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Optional


class StrategyName(str, Enum):
    LOCAL = "local"
    SCRAPE = "scrape"
    RENDER = "render"
    AI = "ai"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["StrategyName"]:
        """Map stored strategy names (and their aliases) onto the enum.

        ``auto``, empty and unknown values return ``None`` which means the
        automatic chain.
        """
        if value is None:
            return None
        if isinstance(value, StrategyName):
            return value
        key = str(value).strip().lower()
        return _STRATEGY_ALIASES.get(key)


_STRATEGY_ALIASES = {
    "local": StrategyName.LOCAL,
    "fetch": StrategyName.LOCAL,
    "http": StrategyName.LOCAL,
    "scrape": StrategyName.SCRAPE,
    "go": StrategyName.SCRAPE,
    "grpc": StrategyName.SCRAPE,
    "render": StrategyName.RENDER,
    "browserless": StrategyName.RENDER,
    "browser": StrategyName.RENDER,
    "ai": StrategyName.AI,
}

AUTO_CHAIN: tuple[StrategyName, ...] = (
    StrategyName.LOCAL,
    StrategyName.SCRAPE,
    StrategyName.RENDER,
    StrategyName.AI,
)


@dataclass(frozen=True)
class FetchRequest:
    url: str
    timeout: float
    sourceId: Optional[str] = None
    explicitStrategy: Optional[StrategyName] = None
    headers: tuple[tuple[str, str], ...] = ()
    html: Optional[str] = None
    waitUntil: Optional[str] = None
    waitForSelector: Optional[str] = None
    scroll: bool = False

    def header_dict(self) -> dict[str, str]:
        return dict(self.headers)


@dataclass
class FetchResult:
    """Outcome of one attempt or of a whole orchestrator call."""

    success: bool
    strategyUsed: Optional[str] = None
    content: Optional[str] = None
    title: Optional[str] = None
    durationMs: int = 0
    error: Optional[str] = None
    errorType: Optional[str] = None
    finalUrl: Optional[str] = None
    statusCode: Optional[int] = None
    contentFormat: str = "html"
    textContent: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    attempts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def summary(self) -> dict[str, Any]:
        return {
            "strategy": self.strategyUsed,
            "success": self.success,
            "durationMs": self.durationMs,
            "error": self.error,
            "errorType": self.errorType,
        }
