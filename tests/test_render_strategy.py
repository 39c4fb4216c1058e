import pytest
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from newsflow.models.fetch import FetchRequest
from newsflow.services.exceptions import StrategyTimeout
from newsflow.services.strategies.render import RenderStrategy, _ws_endpoint
from newsflow.utils.deadline import Deadline


class FakePage:
    def __init__(self, html, goto_error=None):
        self._html = html
        self._goto_error = goto_error
        self.url = "https://example.com/rendered"
        self.goto_calls = []
        self.scrolls = 0

    def route(self, pattern, handler):
        self.route_pattern = pattern

    def goto(self, url, wait_until, timeout):
        self.goto_calls.append({"url": url, "wait_until": wait_until, "timeout": timeout})
        if self._goto_error:
            raise self._goto_error

    def content(self):
        return self._html

    def title(self):
        return "Rendered title"

    def evaluate(self, script):
        self.scrolls += 1

    def wait_for_timeout(self, ms):
        pass


class FakeBrowser:
    def __init__(self, page):
        self.page = page
        self.closed = False
        self.context_kwargs = None

    def new_context(self, **kwargs):
        self.context_kwargs = kwargs
        return self

    def new_page(self):
        return self.page

    def close(self):
        self.closed = True


class FakePlaywright:
    def __init__(self, browser):
        self.browser = browser
        self.chromium = self

    def launch(self):
        return self.browser

    def connect_over_cdp(self, endpoint, timeout):
        self.endpoint = endpoint
        return self.browser

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _strategy(page, **kwargs):
    browser = FakeBrowser(page)
    playwright = FakePlaywright(browser)
    strategy = RenderStrategy(
        endpoint=kwargs.pop("endpoint", ""),
        enabled=True,
        max_concurrent=1,
        playwright_factory=lambda: playwright,
        **kwargs,
    )
    return strategy, playwright


def test_render_returns_page_content_and_title():
    page = FakePage("<html><body><p>rendered</p></body></html>")
    strategy, playwright = _strategy(page)
    request = FetchRequest(
        url="https://example.com/a",
        timeout=10,
        headers=(("X-Test", "1"),),
        waitUntil="networkidle",
    )

    result = strategy.fetch(request, Deadline(30))

    assert result.success
    assert result.title == "Rendered title"
    assert result.finalUrl == "https://example.com/rendered"
    assert page.goto_calls[0]["wait_until"] == "networkidle"
    assert playwright.browser.context_kwargs["extra_http_headers"] == {"X-Test": "1"}
    assert playwright.browser.closed


def test_navigation_timeout_with_body_is_partial():
    page = FakePage("<html><body>half</body></html>", PlaywrightTimeoutError("slow"))
    strategy, _ = _strategy(page)

    result = strategy.fetch(FetchRequest(url="https://example.com/a", timeout=5), Deadline(30))

    assert result.metadata["partial"] is True


def test_navigation_timeout_without_body_raises():
    page = FakePage("", PlaywrightTimeoutError("slow"))
    strategy, _ = _strategy(page)

    with pytest.raises(StrategyTimeout):
        strategy.fetch(FetchRequest(url="https://example.com/a", timeout=5), Deadline(30))


def test_scroll_requested_by_domain_rule():
    page = FakePage("<html><body>feed</body></html>")
    strategy, _ = _strategy(page)

    strategy.fetch(
        FetchRequest(url="https://pinterest.com/p", timeout=10, scroll=True), Deadline(30)
    )

    assert page.scrolls > 0


def test_local_health_reports_queue_state():
    strategy, _ = _strategy(FakePage(""))

    health = strategy.health()

    assert health.healthy
    assert health.details == {"running": 0, "queued": 0, "maxConcurrent": 1}


def test_remote_health_reads_pressure():
    class FakeResponse:
        def raise_for_status(self):
            pass

        def json(self):
            return {"pressure": {"cpu": 95, "memory": 10, "isAvailable": True}}

    class FakeSession:
        def get(self, url, params, timeout):
            self.url = url
            self.params = params
            return FakeResponse()

    session = FakeSession()
    strategy, _ = _strategy(
        FakePage(""), endpoint="wss://chrome.example", token="secret", session=session
    )

    health = strategy.health()

    assert not health.healthy
    assert health.reason == "CpuPressure"
    assert session.url == "https://chrome.example/pressure"
    assert session.params == {"token": "secret"}


def test_ws_endpoint_adds_token():
    assert _ws_endpoint("https://chrome.example", "t") == "wss://chrome.example?token=t"
