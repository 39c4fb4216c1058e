"""Runtime fetch configuration: domain rate limits and the breaker policy.

Readers call :meth:`ConfigStore.current` and get an immutable snapshot; writers
build a new snapshot, swap it in and broadcast ``config_reloaded``. Other
processes learn about admin edits through a Firestore document watch that
triggers :func:`reload_from_repository`.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Optional
from uuid import uuid4

import structlog
from blinker import Namespace
from google.cloud.exceptions import GoogleCloudError

from newsflow.config import CollectionNames, collections as default_collections
from newsflow.models.policy import (
    DEFAULT_DOMAIN_POLICIES,
    WILDCARD_DOMAIN,
    CircuitBreakerPolicy,
    DomainPolicy,
)
from newsflow.services import firestore_client
from newsflow.services.firestore_client import FirestoreError
from newsflow.utils.domains import normalise_domain

logger = structlog.get_logger(__name__)

RELOAD_RATE_LIMITS = "rate-limits"
RELOAD_CIRCUIT_BREAKER = "circuit-breaker"
RELOAD_ALL = "all"

BREAKER_DOC_ID = "circuit_breaker"
RELOAD_DOC_ID = "reload"

config_signals = Namespace()
config_reloaded = config_signals.signal("config-reloaded")


@dataclass(frozen=True)
class FetchConfigSnapshot:
    domain_policies: Mapping[str, DomainPolicy]
    breaker_policy: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)
    version: int = 0

    def policy_for(self, domain: str) -> DomainPolicy:
        """Exact match, then the ``www.``-stripped name, then ``*``."""
        key = (domain or "").strip().lower()
        policy = self.domain_policies.get(key)
        if policy is not None:
            return policy
        policy = self.domain_policies.get(normalise_domain(key))
        if policy is not None:
            return policy
        return self.domain_policies[WILDCARD_DOMAIN]


def _policy_map(policies: Iterable[DomainPolicy]) -> Mapping[str, DomainPolicy]:
    mapped = {policy.domain: policy for policy in policies}
    if WILDCARD_DOMAIN not in mapped:
        mapped[WILDCARD_DOMAIN] = DEFAULT_DOMAIN_POLICIES[0]
    return MappingProxyType(mapped)


class ConfigStore:
    def __init__(
        self,
        policies: Iterable[DomainPolicy] = DEFAULT_DOMAIN_POLICIES,
        breaker_policy: Optional[CircuitBreakerPolicy] = None,
    ) -> None:
        self._snapshot = FetchConfigSnapshot(
            domain_policies=_policy_map(policies),
            breaker_policy=breaker_policy or CircuitBreakerPolicy(),
        )
        self._write_lock = threading.Lock()

    def current(self) -> FetchConfigSnapshot:
        return self._snapshot

    def replace(
        self,
        *,
        policies: Optional[Iterable[DomainPolicy]] = None,
        breaker_policy: Optional[CircuitBreakerPolicy] = None,
        kind: str = RELOAD_ALL,
    ) -> FetchConfigSnapshot:
        with self._write_lock:
            snapshot = self._swap(policies, breaker_policy)
        self._broadcast(kind, snapshot)
        return snapshot

    def _swap(
        self,
        policies: Optional[Iterable[DomainPolicy]],
        breaker_policy: Optional[CircuitBreakerPolicy],
    ) -> FetchConfigSnapshot:
        previous = self._snapshot
        snapshot = FetchConfigSnapshot(
            domain_policies=(
                _policy_map(policies) if policies is not None else previous.domain_policies
            ),
            breaker_policy=breaker_policy or previous.breaker_policy,
            version=previous.version + 1,
        )
        self._snapshot = snapshot
        return snapshot

    def upsert_domain_policy(self, policy: DomainPolicy) -> FetchConfigSnapshot:
        with self._write_lock:
            policies = dict(self._snapshot.domain_policies)
            policies[policy.domain] = policy
            snapshot = self._swap(policies.values(), None)
        self._broadcast(RELOAD_RATE_LIMITS, snapshot)
        return snapshot

    def delete_domain_policy(self, domain: str) -> FetchConfigSnapshot:
        key = (domain or "").strip().lower()
        if key == WILDCARD_DOMAIN:
            raise ValueError("The wildcard rate limit cannot be deleted.")
        with self._write_lock:
            policies = dict(self._snapshot.domain_policies)
            if key not in policies:
                raise KeyError(key)
            policies.pop(key)
            snapshot = self._swap(policies.values(), None)
        self._broadcast(RELOAD_RATE_LIMITS, snapshot)
        return snapshot

    def set_breaker_policy(self, policy: CircuitBreakerPolicy) -> FetchConfigSnapshot:
        return self.replace(breaker_policy=policy, kind=RELOAD_CIRCUIT_BREAKER)

    def _broadcast(self, kind: str, snapshot: FetchConfigSnapshot) -> None:
        try:
            config_reloaded.send(self, kind=kind, snapshot=snapshot)
        except Exception as exc:  # pragma: no cover - receivers are best-effort
            logger.error("fetch_config.broadcast_failed", kind=kind, error=str(exc))
        logger.info(
            "fetch_config.reloaded",
            kind=kind,
            version=snapshot.version,
            domains=len(snapshot.domain_policies),
        )


class FirestoreConfigRepository:
    """Persists admin-edited rows and the reload marker document."""

    def __init__(
        self,
        client: Any = None,
        *,
        names: CollectionNames = default_collections,
    ) -> None:
        self._client = client
        self._names = names

    @property
    def client(self):
        client = self._client or firestore_client.get_client()
        if client is None:
            raise FirestoreError("Firestore client is not initialized.")
        return client

    def _rate_limits(self):
        return self.client.collection(self._names.rate_limits)

    def _settings(self):
        return self.client.collection(self._names.settings)

    def load_domain_policies(self) -> list[DomainPolicy]:
        try:
            docs = list(self._rate_limits().stream())
        except GoogleCloudError as exc:
            raise FirestoreError("Failed to load rate limits.") from exc
        policies: list[DomainPolicy] = []
        for doc in docs:
            data = doc.to_dict() or {}
            data.setdefault("domain", doc.id)
            try:
                policies.append(DomainPolicy.from_dict(data))
            except (KeyError, TypeError, ValueError):
                logger.warning("fetch_config.invalid_rate_limit_row", doc_id=doc.id)
        return policies

    def save_domain_policy(self, policy: DomainPolicy) -> None:
        payload = policy.to_dict()
        payload["updatedAt"] = datetime.now(timezone.utc)
        try:
            self._rate_limits().document(policy.domain).set(payload)
        except GoogleCloudError as exc:
            raise FirestoreError(
                f"Failed to save rate limit for {policy.domain}."
            ) from exc

    def delete_domain_policy(self, domain: str) -> None:
        try:
            self._rate_limits().document(domain).delete()
        except GoogleCloudError as exc:
            raise FirestoreError(f"Failed to delete rate limit for {domain}.") from exc

    def seed_defaults(self) -> None:
        for policy in DEFAULT_DOMAIN_POLICIES:
            self.save_domain_policy(policy)

    def load_breaker_policy(self) -> Optional[CircuitBreakerPolicy]:
        try:
            doc = self._settings().document(BREAKER_DOC_ID).get()
        except GoogleCloudError as exc:
            raise FirestoreError("Failed to load circuit breaker policy.") from exc
        if not doc.exists:
            return None
        return CircuitBreakerPolicy.from_dict(doc.to_dict() or {})

    def save_breaker_policy(self, policy: CircuitBreakerPolicy) -> None:
        payload = policy.to_dict()
        payload["updatedAt"] = datetime.now(timezone.utc)
        try:
            self._settings().document(BREAKER_DOC_ID).set(payload)
        except GoogleCloudError as exc:
            raise FirestoreError("Failed to save circuit breaker policy.") from exc

    def publish_reload(self, kind: str) -> None:
        try:
            self._settings().document(RELOAD_DOC_ID).set(
                {
                    "kind": kind,
                    "nonce": uuid4().hex,
                    "publishedAt": datetime.now(timezone.utc),
                }
            )
        except GoogleCloudError as exc:
            logger.warning("fetch_config.publish_reload_failed", kind=kind, error=str(exc))

    def watch(self, callback: Callable[[str], None]):
        """Invoke ``callback(kind)`` whenever another process publishes a reload.

        Returns the Firestore watch handle; call ``unsubscribe()`` to stop.
        """

        def _on_snapshot(docs, changes, read_time):
            for doc in docs:
                data = doc.to_dict() or {}
                callback(data.get("kind") or RELOAD_ALL)

        return self._settings().document(RELOAD_DOC_ID).on_snapshot(_on_snapshot)


def reload_from_repository(
    store: ConfigStore,
    repository: FirestoreConfigRepository,
    kind: str = RELOAD_ALL,
) -> FetchConfigSnapshot:
    policies = None
    breaker_policy = None
    if kind in {RELOAD_ALL, RELOAD_RATE_LIMITS}:
        policies = repository.load_domain_policies() or list(DEFAULT_DOMAIN_POLICIES)
    if kind in {RELOAD_ALL, RELOAD_CIRCUIT_BREAKER}:
        breaker_policy = repository.load_breaker_policy()
    return store.replace(policies=policies, breaker_policy=breaker_policy, kind=kind)


config_store = ConfigStore()
