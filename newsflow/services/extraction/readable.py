"""readability-lxml wrapper returning the dominant content subtree."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog
from bs4 import BeautifulSoup, Tag
from readability import Document
from readability.readability import Unparseable

from newsflow.services.exceptions import NoContentFound

logger = structlog.get_logger(__name__)

STANDARD = "standard"
ENHANCED = "enhanced"

READABILITY_WRAPPER_ID = "readability-page-1"

# Card grids and docs sidebars score low with the stock weights.
ENHANCED_POSITIVE_KEYWORDS = [
    "card",
    "list",
    "docs",
    "documentation",
    "markdown",
    "prose",
    "content",
]

_MODE_OPTIONS = {
    STANDARD: {},
    ENHANCED: {
        "min_text_length": 10,
        "retry_length": 100,
        "positive_keywords": ENHANCED_POSITIVE_KEYWORDS,
    },
}


@dataclass
class ReadableArticle:
    title: str
    short_title: str
    content_html: str
    root: Tag


def _unwrap_summary_root(summary_html: str) -> Optional[Tag]:
    soup = BeautifulSoup(summary_html, "lxml")
    body = soup.body or soup
    first = body.find(True, recursive=False)
    if first is None:
        return None
    # readability wraps its pick in an attribute-less div (or a page div).
    is_wrapper = first.name == "div" and (
        not first.attrs or first.get("id") == READABILITY_WRAPPER_ID
    )
    if is_wrapper:
        inner = first.find(True, recursive=False)
        if inner is not None:
            return inner
    return first


def parse_readable(html: str, url: Optional[str] = None, mode: str = STANDARD) -> ReadableArticle:
    """Run readability over ``html``; raise ``NoContentFound`` when nothing dominates."""
    if not html or not html.strip():
        raise NoContentFound("Document is empty", url=url)
    options = _MODE_OPTIONS.get(mode, _MODE_OPTIONS[STANDARD])
    try:
        document = Document(html, url=url, **options)
        summary_html = document.summary()
    except Unparseable as exc:
        raise NoContentFound(f"Readability could not parse document: {exc}", url=url) from exc

    root = _unwrap_summary_root(summary_html or "")
    if root is None or not root.get_text(strip=True):
        raise NoContentFound("Readability found no content region", url=url)

    logger.debug("extraction.readability_done", url=url, mode=mode, root=root.name)
    return ReadableArticle(
        title=document.title() or "",
        short_title=document.short_title() or "",
        content_html=summary_html,
        root=root,
    )
