"""Locate, in the original document, the element readability picked.

readability rewrites the subtree it returns, so the untouched original is
found again by building a CSS locator from the picked element and narrowing
multiple hits with fingerprints taken from its descendants.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import soupsieve
import structlog
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from newsflow.services.extraction.readable import READABILITY_WRAPPER_ID

logger = structlog.get_logger(__name__)

MAX_FEATURES = 5
MIN_STRUCTURAL_FEATURES = 3
MAX_TEXT_FEATURES = 3
TEXT_FEATURE_MIN = 10
TEXT_FEATURE_MAX = 100
LOW_CONFIDENCE = 0.5

_INVALID_CLASS_CHARS = ("[", "]", ":", "/")
_SKIPPED_ATTRS = {"id", "class", "style"}


@dataclass(frozen=True)
class Feature:
    kind: str  # "selector" or "text"
    value: str


@dataclass
class MatchedRoot:
    element: Tag
    selector: str
    candidates: int
    relaxed: bool
    confidence: float


def _quote_free(value: str) -> bool:
    return bool(value) and '"' not in value and "'" not in value


def _attr_text(value) -> str:
    if isinstance(value, (list, tuple)):
        return " ".join(value)
    return str(value)


def valid_classes(el: Tag) -> list[str]:
    return [
        cls
        for cls in el.get("class") or []
        if cls and not any(ch in cls for ch in _INVALID_CLASS_CHARS)
    ]


def data_attributes(el: Tag) -> list[tuple[str, str]]:
    return [
        (name, _attr_text(value))
        for name, value in el.attrs.items()
        if name.startswith("data-") and _quote_free(_attr_text(value))
    ]


def other_attributes(el: Tag) -> list[tuple[str, str]]:
    return [
        (name, _attr_text(value))
        for name, value in el.attrs.items()
        if name not in _SKIPPED_ATTRS
        and not name.startswith("data-")
        and _quote_free(_attr_text(value))
    ]


def _usable_id(el: Tag) -> Optional[str]:
    element_id = el.get("id")
    if element_id and element_id != READABILITY_WRAPPER_ID:
        return element_id
    return None


def build_selector(el: Tag) -> str:
    """Tag-less locator from id, valid classes and quote-free data attributes."""
    parts: list[str] = []
    element_id = _usable_id(el)
    if element_id:
        parts.append(f"#{element_id}")
    classes = valid_classes(el)
    if classes:
        parts.append("".join(f".{cls}" for cls in classes))
    for name, value in data_attributes(el):
        parts.append(f'[{name}="{value}"]')
    if not parts:
        for name, value in other_attributes(el)[:2]:
            parts.append(f'[{name}="{value}"]')
    return "".join(parts)


def _select(scope: Tag, selector: str) -> list[Tag]:
    if not selector:
        return []
    try:
        return scope.select(selector)
    except soupsieve.SelectorSyntaxError:
        logger.debug("root_matching.invalid_selector", selector=selector)
        return []


def relaxed_matches(source: Tag, el: Tag) -> list[Tag]:
    element_id = _usable_id(el)
    if element_id:
        matches = _select(source, f"#{element_id}")
        if matches:
            return matches
    classes = valid_classes(el)
    if classes:
        matches = _select(source, "".join(f".{cls}" for cls in classes))
        if matches:
            return matches
        for cls in classes:
            matches = _select(source, f".{cls}")
            if matches:
                return matches
    data_attrs = data_attributes(el)
    if data_attrs:
        name, value = data_attrs[0]
        return _select(source, f'[{name}="{value}"]')
    return []


def sample_features(el: Tag) -> list[Feature]:
    scored: list[tuple[int, Tag]] = []
    for child in el.find_all(True):
        score = 0
        if child.get("id"):
            score += 10
        score += min(len(valid_classes(child)), 3) * 2
        score += min(len(data_attributes(child)), 2)
        if score > 0:
            scored.append((score, child))
    scored.sort(key=lambda item: item[0], reverse=True)

    features: list[Feature] = []
    for _, child in scored[:MAX_FEATURES]:
        selector = build_selector(child)
        if selector:
            features.append(Feature("selector", selector))

    if len(features) < MIN_STRUCTURAL_FEATURES:
        texts: list[str] = []
        for node in el.find_all(string=True):
            if isinstance(node, Comment) or not isinstance(node, NavigableString):
                continue
            text = node.strip()
            if TEXT_FEATURE_MIN <= len(text) <= TEXT_FEATURE_MAX:
                texts.append(text)
        features.extend(Feature("text", text) for text in texts[:MAX_TEXT_FEATURES])
    return features


def has_feature(candidate: Tag, feature: Feature) -> bool:
    if feature.kind == "selector":
        try:
            return candidate.select_one(feature.value) is not None
        except soupsieve.SelectorSyntaxError:
            return False
    return feature.value in candidate.get_text()


def filter_by_features(candidates: list[Tag], features: list[Feature]) -> list[Tag]:
    if len(candidates) <= 1 or not features:
        return candidates
    filtered = list(candidates)
    for feature in features:
        matched = [candidate for candidate in filtered if has_feature(candidate, feature)]
        if 0 < len(matched) < len(filtered):
            filtered = matched
        if len(filtered) == 1:
            break
    return filtered


def find_original_root(
    readable_root: Tag, source: BeautifulSoup, *, url: Optional[str] = None
) -> Optional[MatchedRoot]:
    """Return the element of ``source`` matching ``readable_root`` or ``None``."""
    selector = build_selector(readable_root)
    matches = _select(source, selector)
    relaxed = False
    if not matches:
        relaxed = True
        matches = relaxed_matches(source, readable_root)
    if not matches:
        return None

    if len(matches) == 1:
        remaining = matches
    else:
        remaining = filter_by_features(matches, sample_features(readable_root))

    element = remaining[0] if remaining else matches[0]
    confidence = 1.0 / len(matches)
    if relaxed:
        confidence /= 2
    if confidence < LOW_CONFIDENCE:
        logger.warning(
            "root_matching.low_confidence",
            url=url,
            selector=selector,
            candidates=len(matches),
            remaining=len(remaining),
            relaxed=relaxed,
            confidence=round(confidence, 3),
        )
    return MatchedRoot(
        element=element,
        selector=selector,
        candidates=len(matches),
        relaxed=relaxed,
        confidence=confidence,
    )
