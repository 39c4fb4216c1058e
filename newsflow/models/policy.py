from dataclasses import dataclass, asdict
from typing import Any, Mapping

WILDCARD_DOMAIN = "*"


@dataclass(frozen=True)
class DomainPolicy:
    """Rate-limit row for one domain (or ``*`` for the default)."""

    domain: str
    maxConcurrent: int = 10
    requestsPerSecond: float = 10.0
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DomainPolicy":
        return cls(
            domain=str(data["domain"]).strip().lower(),
            maxConcurrent=int(data.get("maxConcurrent", 10)),
            requestsPerSecond=float(
                data.get("requestsPerSecond", data.get("rps", 10.0))
            ),
            description=str(data.get("description") or ""),
        )


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    """Global circuit-breaker thresholds, in seconds."""

    failThreshold: int = 5
    openDurationSeconds: float = 300.0
    initialBackoffSeconds: float = 1.0
    maxBackoffSeconds: float = 60.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CircuitBreakerPolicy":
        defaults = cls()
        return cls(
            failThreshold=int(data.get("failThreshold", defaults.failThreshold)),
            openDurationSeconds=float(
                data.get(
                    "openDurationSeconds",
                    data.get("openDuration", defaults.openDurationSeconds),
                )
            ),
            initialBackoffSeconds=float(
                data.get(
                    "initialBackoffSeconds",
                    data.get("initialBackoff", defaults.initialBackoffSeconds),
                )
            ),
            maxBackoffSeconds=float(
                data.get(
                    "maxBackoffSeconds",
                    data.get("maxBackoff", defaults.maxBackoffSeconds),
                )
            ),
        )


DEFAULT_DOMAIN_POLICIES: tuple[DomainPolicy, ...] = (
    DomainPolicy(WILDCARD_DOMAIN, 10, 10.0, "Default for every other domain"),
    DomainPolicy("medium.com", 2, 1.0, "Medium throttles aggressively"),
    DomainPolicy("twitter.com", 1, 0.5, "Twitter/X"),
    DomainPolicy("x.com", 1, 0.5, "Twitter/X"),
    DomainPolicy("zhihu.com", 3, 2.0, "Zhihu"),
    DomainPolicy("juejin.cn", 3, 2.0, "Juejin"),
    DomainPolicy("segmentfault.com", 3, 2.0, "SegmentFault"),
    DomainPolicy("mp.weixin.qq.com", 5, 5.0, "WeChat articles"),
    DomainPolicy("weixin.qq.com", 5, 5.0, "WeChat"),
    DomainPolicy("github.com", 5, 3.0, "GitHub"),
)
