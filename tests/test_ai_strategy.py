import json
from types import SimpleNamespace

import httpx
import openai
import pytest

from newsflow.models.fetch import FetchRequest, FetchResult
from newsflow.services.exceptions import StrategyTimeout, StrategyUnavailable
from newsflow.services.strategies.ai import AiExtractionStrategy, prepare_markup
from newsflow.utils.deadline import Deadline


class FakeCompletions:
    def __init__(self, content=None, error=None):
        self._content = content
        self._error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error:
            raise self._error
        message = SimpleNamespace(content=self._content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeClient:
    def __init__(self, completions):
        self.chat = SimpleNamespace(completions=completions)


class FakeLocalFetcher:
    def __init__(self, html):
        self.html = html
        self.calls = 0

    def fetch(self, request, deadline):
        self.calls += 1
        return FetchResult(
            success=True, strategyUsed="local", content=self.html, finalUrl=request.url
        )


def _strategy(completions, fetcher=None, api_key="sk-test"):
    return AiExtractionStrategy(
        api_key=api_key,
        model="gpt-test",
        max_chars=1000,
        client_factory=lambda api_key: FakeClient(completions),
        fetcher=fetcher or FakeLocalFetcher("<html><body><p>fetched</p></body></html>"),
    )


def test_reuses_downloaded_markup_and_returns_markdown():
    completions = FakeCompletions(
        json.dumps(
            {
                "title": "A title",
                "author": "Ada",
                "publishedAt": "2024-05-01T00:00:00Z",
                "excerpt": "Short.",
                "markdown": "# A title\n\nBody text.",
            }
        )
    )
    fetcher = FakeLocalFetcher("unused")
    strategy = _strategy(completions, fetcher)
    request = FetchRequest(
        url="https://example.com/a",
        timeout=20,
        html="<html><body><script>x()</script><p>Body text.</p></body></html>",
    )

    result = strategy.fetch(request, Deadline(60))

    assert fetcher.calls == 0
    assert result.contentFormat == "markdown"
    assert result.title == "A title"
    assert result.content.startswith("# A title")
    assert result.metadata["author"] == "Ada"
    call = completions.calls[0]
    assert call["model"] == "gpt-test"
    assert call["response_format"] == {"type": "json_object"}
    assert "x()" not in call["messages"][1]["content"]


def test_fetches_markup_when_none_supplied():
    completions = FakeCompletions(json.dumps({"title": "T", "markdown": "body"}))
    fetcher = FakeLocalFetcher("<p>fetched</p>")

    _strategy(completions, fetcher).fetch(
        FetchRequest(url="https://example.com/a", timeout=20), Deadline(60)
    )

    assert fetcher.calls == 1
    assert "fetched" in completions.calls[0]["messages"][1]["content"]


def test_missing_markdown_marks_result_partial():
    completions = FakeCompletions("not json")

    result = _strategy(completions).fetch(
        FetchRequest(url="https://example.com/a", timeout=20, html="<p>x</p>"), Deadline(60)
    )

    assert result.metadata["partial"] is True
    assert result.content == ""


def test_timeout_maps_to_strategy_timeout():
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    completions = FakeCompletions(error=openai.APITimeoutError(request=request))

    with pytest.raises(StrategyTimeout):
        _strategy(completions).fetch(
            FetchRequest(url="https://example.com/a", timeout=20, html="<p>x</p>"),
            Deadline(60),
        )


def test_unconfigured_strategy_is_unavailable():
    strategy = _strategy(FakeCompletions("{}"), api_key="")

    assert not strategy.configured
    assert strategy.health().reason == "NotConfigured"
    with pytest.raises(StrategyUnavailable):
        strategy.fetch(FetchRequest(url="https://example.com/a", timeout=5), Deadline(10))


def test_prepare_markup_strips_noise_and_clips():
    html = "<html><body><nav>menu</nav><p>" + "a" * 50 + "</p></body></html>"

    cleaned = prepare_markup(html, 20)

    assert "menu" not in cleaned
    assert len(cleaned) == 20
