"""Helpers to turn extracted markup into plain article text."""

import html
import re
import unicodedata
from typing import Iterable

from bs4 import BeautifulSoup

WORDS_PER_MINUTE = 200

_BOILERPLATE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^advertisement$",
        r"^sponsored content$",
        r"^sign up for our newsletter.*",
        r"^share this (story|article).*",
        r"^follow us on .*",
    )
)

_INVISIBLE_CHARS = ("\u200b", "\u200c", "\u200d", "\ufeff")

_BLOCK_TAGS = (
    "p", "div", "section", "article", "li", "pre", "blockquote",
    "h1", "h2", "h3", "h4", "h5", "h6", "tr", "br",
)


def _drop_boilerplate(lines: Iterable[str]) -> list[str]:
    kept: list[str] = []
    for line in lines:
        stripped = line.strip()
        if stripped and any(p.match(stripped) for p in _BOILERPLATE_PATTERNS):
            continue
        kept.append(stripped)
    return kept


def clean_text(raw_text: str | None) -> str:
    """Normalise whitespace and drop one-line boilerplate."""
    if not raw_text:
        return ""

    text = html.unescape(raw_text)
    text = unicodedata.normalize("NFKC", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\u00a0", " ")
    for char in _INVISIBLE_CHARS:
        text = text.replace(char, "")
    text = re.sub(r"[\t\f ]+", " ", text)

    lines = _drop_boilerplate(text.split("\n"))
    text = "\n".join(lines).strip()
    return re.sub(r"\n{3,}", "\n\n", text)


def html_to_text(fragment: str | None) -> str:
    """Plain text of an HTML fragment with block boundaries kept as newlines."""
    if not fragment:
        return ""
    soup = BeautifulSoup(fragment, "lxml")
    for tag in soup.find_all(["script", "style", "noscript", "template"]):
        tag.decompose()
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.insert_before("\n")
        tag.insert_after("\n")
    return clean_text(soup.get_text())


def calculate_reading_time(text: str, words_per_minute: int = WORDS_PER_MINUTE) -> int:
    """Calculates the estimated reading time in minutes for a given text."""
    words = text.split()
    return max(1, int(round(len(words) / words_per_minute)))
