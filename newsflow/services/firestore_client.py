"""Process-wide Firestore client.

Created once at import. Set ``NEWSFLOW_SKIP_FIRESTORE_INIT=1`` to run without
Firestore (tests, one-off tools); callers then get ``None`` from
:func:`get_client` and :class:`FirestoreError` from :func:`require_client`.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from google.cloud import firestore  # type: ignore[attr-defined]

from newsflow.config import settings

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


class FirestoreError(Exception):
    """A Firestore read or write failed, or no client is available."""


def _skip_requested() -> bool:
    return os.getenv("NEWSFLOW_SKIP_FIRESTORE_INIT", "").strip().lower() in _TRUTHY


def _connect() -> Optional[firestore.Client]:
    if _skip_requested():
        logger.debug("Firestore disabled by NEWSFLOW_SKIP_FIRESTORE_INIT.")
        return None

    project = os.getenv("GOOGLE_CLOUD_PROJECT") or settings.GCP_PROJECT_ID
    emulator = os.getenv("FIRESTORE_EMULATOR_HOST")
    try:
        client = firestore.Client(project=project, database=settings.FIRESTORE_DATABASE)
    except Exception as exc:  # pragma: no cover
        logger.critical("Could not create Firestore client for %s: %s", project, exc)
        return None
    logger.info(
        "Firestore client ready (project=%s, database=%s%s)",
        client.project,
        settings.FIRESTORE_DATABASE,
        f", emulator={emulator}" if emulator else "",
    )
    return client


db: Optional[firestore.Client] = _connect()


def get_client() -> Optional[firestore.Client]:
    return db


def require_client() -> firestore.Client:
    if db is None:
        raise FirestoreError("Firestore client is not initialized.")
    return db

