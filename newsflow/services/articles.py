from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog
from google.cloud.exceptions import GoogleCloudError

from newsflow.config import CollectionNames, collections as default_collections
from newsflow.services import firestore_client
from newsflow.services.firestore_client import FirestoreError

logger = structlog.get_logger(__name__)

PENDING = "pending"
COMPLETED = "completed"
FAILED = "failed"

ArticleSink = Callable[[str, dict[str, Any]], None]

_FIELD_MAP = {
    "content": "content",
    "title": "title",
    "textContent": "textContent",
    "contentFormat": "contentFormat",
    "excerpt": "excerpt",
    "byline": "author",
    "readingTime": "readingTime",
    "finalUrl": "finalUrl",
    "strategyUsed": "fetchStrategy",
    "durationMs": "fetchDurationMs",
    "error": "fetchError",
    "errorCode": "fetchErrorCode",
}


class FirestoreArticleSink:
    """Writes fetch outcomes onto ``articles/{id}``."""

    def __init__(self, client: Any = None, *, names: CollectionNames = default_collections) -> None:
        self._client = client
        self._names = names

    def __call__(self, article_id: str, payload: dict[str, Any]) -> None:
        client = self._client or firestore_client.require_client()
        update: dict[str, Any] = {
            "status": payload.get("status", COMPLETED),
            "updatedAt": datetime.now(timezone.utc),
        }
        for key, field_name in _FIELD_MAP.items():
            value: Optional[Any] = payload.get(key)
            if value is not None:
                update[field_name] = value
        if update["status"] == COMPLETED:
            update["fetchedAt"] = update["updatedAt"]
        try:
            client.collection(self._names.articles).document(article_id).set(
                update, merge=True
            )
        except GoogleCloudError as exc:
            logger.error("articles.update_failed", article_id=article_id, error=str(exc))
            raise FirestoreError(f"Failed to update article {article_id}.") from exc
        logger.info("articles.updated", article_id=article_id, status=update["status"])
