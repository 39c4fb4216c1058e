from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Optional


def job_id_for_article(article_id: str) -> str:
    return f"fetch_{article_id}"


@dataclass
class FetchJob:
    """A queued fetch for one article."""

    articleId: str
    url: str
    sourceId: Optional[str] = None
    strategy: Optional[str] = None
    timeout: Optional[float] = None
    priority: int = 5
    status: str = "QUEUED"
    attempts: int = 0
    maxAttempts: int = 3
    runAfter: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    createdAt: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updatedAt: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[str] = None
    error: Optional[str] = None
    errorCode: Optional[str] = None
    strategyUsed: Optional[str] = None
    durationMs: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.id:
            self.id = job_id_for_article(self.articleId)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, doc_id: str, data: dict[str, Any]) -> "FetchJob":
        """Create a FetchJob from a Firestore document."""
        data = dict(data)
        for date_field in ("runAfter", "createdAt", "updatedAt"):
            if date_field not in data:
                continue
            value = data[date_field]
            if hasattr(value, "to_datetime"):
                value = value.to_datetime()
            if isinstance(value, datetime) and value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            data[date_field] = value

        data.pop("id", None)
        known = cls.__dataclass_fields__
        return cls(id=doc_id, **{k: v for k, v in data.items() if k in known})
