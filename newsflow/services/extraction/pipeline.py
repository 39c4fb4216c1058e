from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import Any, Optional

import structlog
from bs4 import BeautifulSoup

from newsflow.services.exceptions import RootNotFound
from newsflow.services.extraction.readable import STANDARD, parse_readable
from newsflow.services.extraction.root_matching import find_original_root
from newsflow.services.extraction.sanitizer import (
    SanitizeOptions,
    clean_html,
    resolve_lazy_images,
)
from newsflow.utils.text import calculate_reading_time, html_to_text

logger = structlog.get_logger(__name__)

EXCERPT_MAX_CHARS = 280


@dataclass
class ExtractionResult:
    title: str
    content: str
    text_content: str
    excerpt: Optional[str]
    byline: Optional[str]
    reading_time: int
    selector: str
    match_confidence: float
    length: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _meta_content(soup: BeautifulSoup, *candidates: tuple[str, str]) -> Optional[str]:
    for attr, value in candidates:
        node = soup.find("meta", attrs={attr: value})
        content = node.get("content", "").strip() if node else ""
        if content:
            return content
    return None


def _excerpt(soup: BeautifulSoup, text: str) -> Optional[str]:
    described = _meta_content(
        soup, ("name", "description"), ("property", "og:description")
    )
    if described:
        return described
    first_paragraph = next((line for line in text.split("\n") if line.strip()), "")
    return first_paragraph[:EXCERPT_MAX_CHARS] or None


def extract(html: str, url: Optional[str] = None, mode: str = STANDARD) -> ExtractionResult:
    """Readable article body of ``html``, taken from the original markup and sanitized.

    readability decides which region holds the article; the region is then
    located again in the untouched document so that content readability would
    drop (code blocks, card links, figures) survives into sanitization.
    Raises ``NoContentFound`` or ``RootNotFound``.
    """
    started = time.perf_counter()
    source = BeautifulSoup(html or "", "lxml")
    resolve_lazy_images(source)

    article = parse_readable(str(source), url=url, mode=mode)
    matched = find_original_root(article.root, source, url=url)
    if matched is None:
        raise RootNotFound("Could not locate the readable region in the page", url=url)

    content = clean_html(str(matched.element), SanitizeOptions(base_url=url))
    text = html_to_text(content)
    og_title = _meta_content(source, ("property", "og:title"))
    title = article.short_title or og_title or article.title

    result = ExtractionResult(
        title=title,
        content=content,
        text_content=text,
        excerpt=_excerpt(source, text),
        byline=_meta_content(
            source, ("name", "author"), ("property", "article:author")
        ),
        reading_time=calculate_reading_time(text),
        selector=matched.selector,
        match_confidence=matched.confidence,
        length=len(text),
    )
    logger.info(
        "extraction.completed",
        url=url,
        mode=mode,
        selector=matched.selector,
        candidates=matched.candidates,
        match_confidence=round(matched.confidence, 3),
        text_length=result.length,
        elapsed_ms=int((time.perf_counter() - started) * 1000),
    )
    return result
