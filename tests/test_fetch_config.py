import pytest

from newsflow.models.policy import CircuitBreakerPolicy, DomainPolicy
from newsflow.services.fetch_config import (
    RELOAD_CIRCUIT_BREAKER,
    RELOAD_RATE_LIMITS,
    ConfigStore,
    FirestoreConfigRepository,
    config_reloaded,
    reload_from_repository,
)
from newsflow.services.firestore_client import FirestoreError


class FakeSnapshot:
    def __init__(self, doc_id, data):
        self.id = doc_id
        self._data = data
        self.exists = data is not None

    def to_dict(self):
        return dict(self._data) if self._data is not None else None


class FakeDocument:
    def __init__(self, collection, doc_id):
        self._collection = collection
        self.id = doc_id

    def set(self, payload):
        self._collection.docs[self.id] = dict(payload)

    def delete(self):
        self._collection.docs.pop(self.id, None)

    def get(self):
        return FakeSnapshot(self.id, self._collection.docs.get(self.id))


class FakeCollection:
    def __init__(self, docs=None):
        self.docs = dict(docs or {})

    def document(self, doc_id):
        return FakeDocument(self, doc_id)

    def stream(self):
        return iter([FakeSnapshot(doc_id, data) for doc_id, data in self.docs.items()])


class FakeDB:
    def __init__(self, collections):
        self._collections = collections

    def collection(self, name):
        return self._collections.setdefault(name, FakeCollection())


def test_policy_lookup_falls_back_to_www_stripped_and_wildcard():
    store = ConfigStore()
    snapshot = store.current()

    assert snapshot.policy_for("medium.com").maxConcurrent == 2
    assert snapshot.policy_for("www.github.com").domain == "github.com"
    assert snapshot.policy_for("unknown.example").domain == "*"


def test_wildcard_policy_cannot_be_deleted():
    store = ConfigStore()

    with pytest.raises(ValueError):
        store.delete_domain_policy("*")
    with pytest.raises(KeyError):
        store.delete_domain_policy("missing.example")


def test_upsert_swaps_snapshot_and_broadcasts():
    store = ConfigStore()
    received = []

    def receiver(sender, **kwargs):
        received.append(kwargs["kind"])

    config_reloaded.connect(receiver, sender=store)
    try:
        before = store.current()
        after = store.upsert_domain_policy(DomainPolicy("blog.example", 1, 0.5))
    finally:
        config_reloaded.disconnect(receiver, sender=store)

    assert "blog.example" not in before.domain_policies
    assert after.policy_for("blog.example").requestsPerSecond == 0.5
    assert after.version == before.version + 1
    assert received == [RELOAD_RATE_LIMITS]


def test_replacing_policies_keeps_wildcard_default():
    store = ConfigStore()

    snapshot = store.replace(policies=[DomainPolicy("only.example", 1, 1.0)])

    assert set(snapshot.domain_policies) == {"only.example", "*"}


def test_repository_loads_rows_and_skips_invalid_ones():
    db = FakeDB(
        {
            "rate_limits": FakeCollection(
                {
                    "news.example": {"maxConcurrent": 4, "rps": 2},
                    "broken.example": {"maxConcurrent": "lots"},
                }
            )
        }
    )
    repository = FirestoreConfigRepository(db)

    policies = repository.load_domain_policies()

    assert policies == [DomainPolicy("news.example", 4, 2.0, "")]


def test_reload_from_repository_applies_breaker_policy():
    db = FakeDB({})
    repository = FirestoreConfigRepository(db)
    repository.save_breaker_policy(
        CircuitBreakerPolicy(failThreshold=7, openDurationSeconds=120.0)
    )
    store = ConfigStore()

    snapshot = reload_from_repository(store, repository, RELOAD_CIRCUIT_BREAKER)

    assert snapshot.breaker_policy.failThreshold == 7
    assert snapshot.breaker_policy.openDurationSeconds == 120.0
    assert snapshot.policy_for("medium.com").maxConcurrent == 2


def test_breaker_policy_accepts_short_field_names():
    policy = CircuitBreakerPolicy.from_dict(
        {"failThreshold": 2, "openDuration": 30, "initialBackoff": 2, "maxBackoff": 8}
    )

    assert policy == CircuitBreakerPolicy(2, 30.0, 2.0, 8.0)


def test_repository_without_client_raises(monkeypatch):
    from newsflow.services import firestore_client

    monkeypatch.setattr(firestore_client, "db", None)
    repository = FirestoreConfigRepository()

    with pytest.raises(FirestoreError):
        repository.load_domain_policies()


def test_publish_reload_writes_marker_document():
    db = FakeDB({})
    repository = FirestoreConfigRepository(db)

    repository.publish_reload(RELOAD_RATE_LIMITS)

    marker = db.collection("fetch_settings").docs["reload"]
    assert marker["kind"] == RELOAD_RATE_LIMITS
    assert marker["nonce"]
