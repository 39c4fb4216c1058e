import os

os.environ.setdefault("NEWSFLOW_SKIP_FIRESTORE_INIT", "1")
os.environ.setdefault("JOB_STORE", "memory")
os.environ.setdefault("LOG_FORMAT", "plain")

import pytest

from newsflow.config import settings
from newsflow.models.fetch import FetchResult
from newsflow.services import health as health_service
from newsflow.services.circuit_breaker import CircuitBreaker
from newsflow.services.fetch_config import ConfigStore
from newsflow.services.jobs import MemoryJobStore
from newsflow.services.rate_limiter import DomainRateLimiter


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingSink:
    def __init__(self):
        self.calls = []

    def __call__(self, article_id, payload):
        self.calls.append((article_id, dict(payload)))


class FakeFetcher:
    """Stands in for ``UnifiedFetcher`` in route and dispatch tests."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    def fetch(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.results:
            outcome = self.results.pop(0)
        else:
            outcome = FetchResult(success=True, strategyUsed="local", content="<p>ok</p>")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def health(self):
        return {"local": {"configured": True, "healthy": True, "reason": None, "details": {}}}


class FakeConfigRepository:
    def __init__(self):
        self.saved_policies = []
        self.deleted = []
        self.breaker_policies = []
        self.reloads = []
        self.policies = []
        self.breaker_policy = None

    def save_domain_policy(self, policy):
        self.saved_policies.append(policy)

    def delete_domain_policy(self, domain):
        self.deleted.append(domain)

    def save_breaker_policy(self, policy):
        self.breaker_policies.append(policy)

    def load_domain_policies(self):
        return list(self.policies)

    def load_breaker_policy(self):
        return self.breaker_policy

    def publish_reload(self, kind):
        self.reloads.append(kind)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def config_store():
    return ConfigStore()


@pytest.fixture()
def services(config_store):
    health_service.clear_health_cache()
    return {
        "fetcher": FakeFetcher(),
        "job_store": MemoryJobStore(),
        "article_sink": RecordingSink(),
        "config_store": config_store,
        "config_repository": FakeConfigRepository(),
        "circuit_breaker": CircuitBreaker(config_store),
        "rate_limiter": DomainRateLimiter(config_store),
        "load_config": False,
        "config": {"TESTING": True, "RATELIMIT_ENABLED": False},
    }


@pytest.fixture()
def app(services, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", None)
    from newsflow import create_app

    app = create_app(services)
    with app.app_context():
        yield app


@pytest.fixture()
def client(app):
    return app.test_client()
