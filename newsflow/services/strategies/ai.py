from __future__ import annotations

import json
import textwrap
import time
from typing import Any, Callable, Optional

import openai
import structlog
from bs4 import BeautifulSoup

from newsflow.config import settings
from newsflow.models.fetch import FetchRequest, FetchResult, StrategyName
from newsflow.services.exceptions import (
    StrategyError,
    StrategyNetworkError,
    StrategyTimeout,
    StrategyUnavailable,
)
from newsflow.services.strategies.base import StrategyHealth, elapsed_ms
from newsflow.services.strategies.http import LocalHttpStrategy
from newsflow.utils.deadline import Deadline

logger = structlog.get_logger(__name__)

NOISE_TAGS = ("script", "style", "noscript", "nav", "svg", "iframe", "template")
MAX_OUTPUT_TOKENS = 8000

_SYSTEM_PROMPT = textwrap.dedent(
    """
    You extract the main article from web page markup.
    Respond using JSON with keys "title" (string), "author" (string or null),
    "publishedAt" (ISO 8601 string or null), "excerpt" (one or two sentences)
    and "markdown" (the full article body as Markdown, without navigation,
    adverts, comments or related-article lists).
    """
).strip()


def prepare_markup(html: str, max_chars: int) -> str:
    """Drop markup the model never needs and clip to ``max_chars``."""
    soup = BeautifulSoup(html or "", "lxml")
    for tag in soup.find_all(NOISE_TAGS):
        tag.decompose()
    root = soup.body or soup
    cleaned = str(root)
    if len(cleaned) > max_chars:
        cleaned = cleaned[:max_chars]
    return cleaned


def _parse_payload(raw: Optional[str]) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ai_extraction.invalid_json", preview=raw[:200])
        return {}
    return payload if isinstance(payload, dict) else {}


def _text_or_none(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class AiExtractionStrategy:
    """Last-resort extraction by an OpenAI chat model.

    Reuses markup an earlier strategy already downloaded (``request.html``);
    otherwise fetches it with the local HTTP client first.
    """

    name = StrategyName.AI

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_chars: Optional[int] = None,
        client_factory: Optional[Callable[..., Any]] = None,
        fetcher: Optional[LocalHttpStrategy] = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self._model = model or settings.AI_EXTRACTION_MODEL
        self._max_chars = max_chars or settings.AI_EXTRACTION_MAX_CHARS
        self._client_factory = client_factory or openai.OpenAI
        self._fetcher = fetcher or LocalHttpStrategy()
        self._client = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def health(self) -> StrategyHealth:
        if not self._api_key:
            return StrategyHealth(False, "NotConfigured")
        return StrategyHealth(True, "OK", {"model": self._model})

    def _get_client(self):
        if self._client is None:
            self._client = self._client_factory(api_key=self._api_key)
        return self._client

    def fetch(self, request: FetchRequest, deadline: Deadline) -> FetchResult:
        if not self._api_key:
            raise StrategyUnavailable(
                "OpenAI API key is not configured",
                url=request.url,
                strategy=self.name.value,
            )
        started = time.perf_counter()
        html = request.html
        final_url = request.url
        if not html:
            try:
                fetched = self._fetcher.fetch(request, deadline)
            except StrategyError as exc:
                exc.strategy = self.name.value
                raise
            html = fetched.content or ""
            final_url = fetched.finalUrl or request.url

        budget = deadline.bound(request.timeout) or 0.0
        if budget <= 0:
            raise StrategyTimeout(
                "Deadline exhausted before calling the model",
                url=request.url,
                strategy=self.name.value,
            )

        markup = prepare_markup(html, self._max_chars)
        try:
            response = self._get_client().chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": _SYSTEM_PROMPT},
                    {"role": "user", "content": f"URL: {final_url}\n\n{markup}"},
                ],
                temperature=0.1,
                max_tokens=MAX_OUTPUT_TOKENS,
                response_format={"type": "json_object"},
                timeout=budget,
            )
        except openai.APITimeoutError as exc:
            raise StrategyTimeout(
                f"Model call timed out: {exc}", url=request.url, strategy=self.name.value
            ) from exc
        except openai.APIConnectionError as exc:
            raise StrategyNetworkError(
                f"Could not reach the model: {exc}",
                url=request.url,
                strategy=self.name.value,
            ) from exc
        except openai.OpenAIError as exc:
            raise StrategyUnavailable(
                f"Model call failed: {exc}", url=request.url, strategy=self.name.value
            ) from exc

        raw = response.choices[0].message.content if response.choices else None
        payload = _parse_payload(raw)
        title = _text_or_none(payload.get("title"))
        markdown = _text_or_none(payload.get("markdown"))
        metadata = {
            "model": self._model,
            "author": _text_or_none(payload.get("author")),
            "publishedAt": _text_or_none(payload.get("publishedAt")),
            "excerpt": _text_or_none(payload.get("excerpt")),
        }
        if not markdown:
            metadata["partial"] = True
            logger.info(
                "ai_extraction.partial",
                url=request.url,
                has_title=bool(title),
            )
        return FetchResult(
            success=True,
            strategyUsed=self.name.value,
            content=markdown or "",
            title=title,
            finalUrl=final_url,
            contentFormat="markdown",
            textContent=markdown,
            durationMs=elapsed_ms(started),
            metadata=metadata,
        )
