"""Per-site cookies injected into outbound fetches.

The credentials file looks like::

    {"credentials": {
        "medium.com": {"enabled": true, "cookieFile": "medium.cookie",
                       "domains": ["*.medium.com"], "expiresAt": null}}}

``cookieFile`` paths are relative to the credentials file. The core only reads
cookies; rotating them is an operator task.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from cachetools import TTLCache

from newsflow.config import settings
from newsflow.utils.domains import domain_from_url, normalise_domain

logger = structlog.get_logger(__name__)

COOKIE_CACHE_TTL_SECONDS = int(os.getenv("CREDENTIAL_CACHE_TTL_SECONDS", "300"))


class CredentialStore:
    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path or settings.CREDENTIALS_FILE
        self._lock = threading.Lock()
        self._cache: TTLCache[str, Optional[str]] = TTLCache(
            maxsize=512, ttl=COOKIE_CACHE_TTL_SECONDS
        )
        self._config = self._load_config()

    def _load_config(self) -> dict[str, dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except FileNotFoundError:
            logger.debug("credentials.config_missing", path=self.path)
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("credentials.config_unreadable", path=self.path, error=str(exc))
            return {}
        credentials = payload.get("credentials") if isinstance(payload, dict) else None
        return credentials if isinstance(credentials, dict) else {}

    def reload(self) -> None:
        config = self._load_config()
        with self._lock:
            self._config = config
            self._cache.clear()
        logger.info("credentials.reloaded", sites=len(config))

    def _find_entry(self, domain: str) -> Optional[dict[str, Any]]:
        host = (domain or "").strip().lower()
        main = normalise_domain(host)
        config = self._config
        for key in (host, main):
            entry = config.get(key)
            if isinstance(entry, dict):
                return entry

        for entry in config.values():
            if not isinstance(entry, dict):
                continue
            for pattern in entry.get("domains") or []:
                pattern = str(pattern).strip().lower()
                if pattern.startswith("*."):
                    base = pattern[2:]
                    if host == base or host.endswith("." + base):
                        return entry
                elif pattern in {host, main}:
                    return entry
        return None

    def _is_expired(self, entry: dict[str, Any]) -> bool:
        expires_at = entry.get("expiresAt")
        if not expires_at:
            return False
        try:
            parsed = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
        except ValueError:
            return False
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed <= datetime.now(timezone.utc)

    def _load_cookie(self, entry: dict[str, Any]) -> Optional[str]:
        inline = entry.get("cookie")
        if inline:
            return str(inline).strip() or None
        cookie_file = entry.get("cookieFile")
        if not cookie_file:
            return None
        cookie_path = os.path.join(os.path.dirname(self.path), cookie_file)
        try:
            with open(cookie_path, "r", encoding="utf-8") as handle:
                return handle.read().strip() or None
        except OSError as exc:
            logger.warning("credentials.cookie_file_unreadable", path=cookie_path, error=str(exc))
            return None

    def get_cookie_for_domain(self, domain: str) -> Optional[str]:
        key = (domain or "").strip().lower()
        if not key:
            return None
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            entry = self._find_entry(key)
            cookie = None
            if entry and entry.get("enabled", True):
                if self._is_expired(entry):
                    logger.warning("credentials.expired", domain=key)
                else:
                    cookie = self._load_cookie(entry)
            self._cache[key] = cookie
            return cookie

    def get_cookie_for_url(self, url: str) -> Optional[str]:
        domain = domain_from_url(url)
        return self.get_cookie_for_domain(domain) if domain else None

    def requires_auth(self, url: str) -> bool:
        domain = domain_from_url(url)
        entry = self._find_entry(domain) if domain else None
        return bool(entry and entry.get("enabled", True))

    def authenticated_domains(self) -> list[str]:
        domains: list[str] = []
        for key, entry in self._config.items():
            if isinstance(entry, dict) and entry.get("enabled", True):
                domains.append(key)
                domains.extend(str(d) for d in entry.get("domains") or [])
        return sorted(set(domains))


_store_lock = threading.Lock()
_store: Optional[CredentialStore] = None


def get_credential_store() -> CredentialStore:
    global _store
    if _store is not None:
        return _store
    with _store_lock:
        if _store is None:
            _store = CredentialStore()
    return _store
