import pytest

from newsflow.models.fetch import FetchResult


def test_fetch_returns_result(client, services):
    services["fetcher"].results = [
        FetchResult(success=True, strategyUsed="scrape", content="<p>hi</p>", title="Hi")
    ]

    response = client.post(
        "/api/fetch",
        json={"url": "https://example.com/a", "strategy": "scrape", "mode": "enhanced"},
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["strategyUsed"] == "scrape"
    url, kwargs = services["fetcher"].calls[0]
    assert url == "https://example.com/a"
    assert kwargs["strategy"] == "scrape"
    assert kwargs["mode"] == "enhanced"
    assert kwargs["extract_content"] is True


@pytest.mark.parametrize(
    "error_type, last_error_type, status",
    [
        ("INVALID_URL", None, 400),
        ("RATE_LIMITED", None, 429),
        ("CIRCUIT_OPEN", None, 503),
        ("ALL_STRATEGIES_FAILED", "CIRCUIT_OPEN", 503),
        ("ALL_STRATEGIES_FAILED", "STRATEGY_TIMEOUT", 502),
    ],
)
def test_fetch_failure_status(client, services, error_type, last_error_type, status):
    metadata = {"lastErrorType": last_error_type} if last_error_type else {}
    services["fetcher"].results = [
        FetchResult(success=False, error="nope", errorType=error_type, metadata=metadata)
    ]

    response = client.post("/api/fetch", json={"url": "https://example.com/a"})

    assert response.status_code == status
    assert response.get_json()["errorType"] == error_type


def test_fetch_validates_payload(client, services):
    response = client.post("/api/fetch", json={"url": "https://example.com/a", "mode": "deep"})

    assert response.status_code == 400
    assert response.get_json()["code"] == "VALIDATION_ERROR"
    assert services["fetcher"].calls == []


def test_fetch_requires_json_object(client):
    response = client.post("/api/fetch", data="url=x", content_type="text/plain")

    assert response.status_code == 400


def test_create_job_marks_article_pending(client, services):
    payload = {"articleId": "a1", "url": "https://example.com/a", "priority": 1}

    created = client.post("/api/jobs", json=payload)
    duplicate = client.post("/api/jobs", json=payload)

    assert created.status_code == 202
    assert created.get_json() == {"jobId": "fetch_a1", "created": True}
    assert duplicate.status_code == 200
    assert duplicate.get_json()["created"] is False
    assert services["article_sink"].calls == [("a1", {"status": "pending"})]
    assert services["job_store"].get("fetch_a1").priority == 1


def test_get_job(client):
    client.post("/api/jobs", json={"articleId": "a1", "url": "https://example.com/a"})

    found = client.get("/api/jobs/fetch_a1")
    missing = client.get("/api/jobs/fetch_zz")

    assert found.status_code == 200
    assert found.get_json()["status"] == "QUEUED"
    assert missing.status_code == 404
