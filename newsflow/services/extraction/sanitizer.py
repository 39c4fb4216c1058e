from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import urljoin

import soupsieve
import structlog
from bs4 import BeautifulSoup, Tag

logger = structlog.get_logger(__name__)

LAZY_IMAGE_ATTRIBUTES = (
    "data-src",
    "data-lazy-src",
    "data-original",
    "data-actualsrc",
    "data-hi-res-src",
    "data-lazy",
    "data-echo",
)

DEFAULT_ALLOWED_ATTRIBUTES: Mapping[str, frozenset[str]] = {
    "a": frozenset({"href", "title", "target", "rel"}),
    "img": frozenset({"src", "srcset", "sizes", "alt", "title", "width", "height"}),
    "source": frozenset({"src", "srcset", "type", "media"}),
    "td": frozenset({"colspan", "rowspan"}),
    "th": frozenset({"colspan", "rowspan", "scope"}),
    "time": frozenset({"datetime"}),
    "abbr": frozenset({"title"}),
    "blockquote": frozenset({"cite"}),
    "q": frozenset({"cite"}),
    "code": frozenset({"class"}),
    "*": frozenset({"id"}),
}

DEFAULT_REMOVE_SELECTORS: tuple[str, ...] = (
    "button",
    '[role="button"]',
    "svg",
    "[data-floating-buttons]",
    '[data-testid*="copy"]',
    '[aria-label*="Copy"]',
    '[aria-label*="复制"]',
    '[aria-label*="询问"]',
    '.absolute a[aria-label*="导航"]',
    'a[aria-label*="Navigate to header"]',
    'a[aria-label*="导航到标题"]',
    '[aria-hidden="true"]',
    '[role="tablist"]',
    '[role="tabpanel"].hidden',
    "[data-fade-overlay]",
    "script",
    "style",
    "noscript",
    "iframe",
)

URL_ATTRIBUTES = ("href", "src")
SAFE_SCHEMES = frozenset({"http", "https", "mailto"})
MAX_CLEANUP_PASSES = 3

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_SCHEME = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")

_BLOCK = r"h[1-6]|p|ul|ol|li|pre|blockquote|div|section|article"
_BLOCK_NO_LI = r"h[1-6]|p|ul|ol|pre|blockquote|div|section|article"
_AROUND_BLOCK = re.compile(rf"\s*(</?(?:{_BLOCK})\b[^>]*>)\s*")
_BLOCK_CLOSE = re.compile(rf"(</(?:{_BLOCK})>)")
_BLOCK_OPEN = re.compile(rf"(<(?:{_BLOCK_NO_LI})\b)")


@dataclass
class SanitizeOptions:
    base_url: Optional[str] = None
    remove_selectors: tuple[str, ...] = DEFAULT_REMOVE_SELECTORS
    allowed_attributes: Mapping[str, frozenset[str]] = field(
        default_factory=lambda: dict(DEFAULT_ALLOWED_ATTRIBUTES)
    )


def resolve_lazy_images(scope: Tag) -> int:
    """Promote lazy-load attributes to ``src``/``srcset``; returns images fixed."""
    count = 0
    for img in scope.find_all("img"):
        for attr in LAZY_IMAGE_ATTRIBUTES:
            value = img.get(attr)
            if value and (value.startswith("http") or value.startswith("/")):
                img["src"] = value
                count += 1
                break
        srcset = img.get("data-srcset")
        if srcset:
            img["srcset"] = srcset
    return count


def _attached(tag: Tag, root: Tag) -> bool:
    return any(parent is root for parent in tag.parents)


def _select(root: Tag, selector: str) -> list[Tag]:
    try:
        return root.select(selector)
    except soupsieve.SelectorSyntaxError:
        logger.debug("sanitizer.invalid_selector", selector=selector)
        return []


def _remove_blocked(root: Tag, selectors: tuple[str, ...]) -> None:
    for selector in selectors:
        for tag in _select(root, selector):
            if _attached(tag, root):
                tag.decompose()


def _paragraph_spans(root: Tag) -> None:
    for span in root.select('span[data-as="p"]'):
        span.name = "p"
        del span["data-as"]


def _code_text(code: Tag) -> str:
    lines = code.select(".line")
    if lines:
        return "\n".join(line.get_text() for line in lines)
    return code.get_text()


def _code_language(block: Tag, code: Tag) -> str:
    language = code.get("language") or code.get("data-language") or block.get("data-language")
    if language:
        return language
    for cls in code.get("class") or []:
        if cls.startswith("language-"):
            return cls[len("language-"):]
    return ""


def _rewrite_code_blocks(soup: BeautifulSoup, root: Tag) -> None:
    for block in _select(root, '.code-block, [class*="code-block"]'):
        if not _attached(block, root):
            continue
        code = block.find("code")
        if code is None:
            continue
        language = _code_language(block, code)
        pre = soup.new_tag("pre")
        new_code = soup.new_tag("code")
        if language:
            new_code["class"] = f"language-{language}"
        new_code.string = _code_text(code)
        pre.append(new_code)
        block.replace_with(pre)


def _collapse_tabs(soup: BeautifulSoup, root: Tag) -> None:
    for container in _select(root, '.tabs, [class*="tab-container"]'):
        if not _attached(container, root):
            continue
        panel = container.select_one('[role="tabpanel"]:not(.hidden)')
        if panel is None:
            continue
        replacement = soup.new_tag("div")
        for child in list(panel.contents):
            replacement.append(child.extract())
        container.replace_with(replacement)


def _simplify_card_links(soup: BeautifulSoup, root: Tag) -> None:
    for link in root.select("a[href]"):
        if not _attached(link, root):
            continue
        heading = link.select_one("h2, h3")
        description = link.find("p")
        if heading is None or description is None:
            continue
        card = soup.new_tag("a", href=link.get("href", ""))
        for attr in ("target", "rel"):
            value = link.get(attr)
            if value:
                card[attr] = value
        title = soup.new_tag("h3")
        title.string = heading.get_text().strip()
        summary = soup.new_tag("p")
        summary.string = description.get_text().strip()
        card.append(title)
        card.append(summary)
        link.replace_with(card)


def safe_url(value: str, base_url: Optional[str] = None) -> Optional[str]:
    """Resolve ``value`` against ``base_url``; ``None`` when it is unsafe or malformed.

    Control characters are removed before the scheme is read, since browsers
    drop them when parsing. Only http, https, mailto, fragment and relative
    URLs survive.
    """
    stripped = _CONTROL_CHARS.sub("", value).strip()
    if not stripped or stripped.startswith("#"):
        return stripped
    match = _SCHEME.match(stripped)
    if match and match.group(1).lower() not in SAFE_SCHEMES:
        return None
    if not base_url:
        return stripped
    try:
        return urljoin(base_url, stripped)
    except ValueError:
        logger.debug("sanitizer.malformed_url", url=stripped)
        return None


def _safe_srcset(value: str, base_url: Optional[str]) -> Optional[str]:
    candidates = []
    for candidate in value.split(","):
        parts = candidate.split()
        if not parts:
            continue
        url = safe_url(parts[0], base_url)
        if url:
            candidates.append(" ".join([url, *parts[1:]]))
    return ", ".join(candidates) or None


def _clean_attributes(root: Tag, allowed: Mapping[str, frozenset[str]], base_url: Optional[str]) -> None:
    allowed_global = allowed.get("*", frozenset())
    for tag in root.find_all(True):
        permitted = allowed.get(tag.name, frozenset()) | allowed_global
        tag.attrs = {name: value for name, value in tag.attrs.items() if name in permitted}
        for name in URL_ATTRIBUTES:
            value = tag.get(name)
            if value is None:
                continue
            resolved = safe_url(value, base_url)
            if resolved is None:
                del tag[name]
            else:
                tag[name] = resolved
        srcset = tag.get("srcset")
        if srcset is not None:
            resolved = _safe_srcset(srcset, base_url)
            if resolved is None:
                del tag["srcset"]
            else:
                tag["srcset"] = resolved


def _is_empty(tag: Tag) -> bool:
    if tag.find(True) is not None:
        return False
    if tag.name == "div":
        return not tag.get_text(strip=True)
    return not tag.get_text()


def _remove_empty(root: Tag) -> bool:
    changed = False
    for tag in reversed(root.find_all(["div", "span"])):
        if _is_empty(tag):
            tag.decompose()
            changed = True
    return changed


def _flatten_wrappers(root: Tag) -> bool:
    changed = False
    for inner in reversed(root.find_all("div")):
        parent = inner.parent
        if parent is None or parent is root or parent.name != "div" or parent.get("id"):
            continue
        siblings = [node for node in parent.contents if node is not inner]
        if any(isinstance(node, Tag) or node.strip() for node in siblings):
            continue
        inner.unwrap()
        changed = True
    return changed


def sanitize_html(html: str, options: Optional[SanitizeOptions] = None) -> str:
    """Reduce article markup to a small, safe subset of tags and attributes."""
    options = options or SanitizeOptions()
    soup = BeautifulSoup(html or "", "lxml")
    root = soup.body
    if root is None:
        return ""

    resolve_lazy_images(root)
    _remove_blocked(root, options.remove_selectors)
    _paragraph_spans(root)
    _rewrite_code_blocks(soup, root)
    _collapse_tabs(soup, root)
    _simplify_card_links(soup, root)
    _clean_attributes(root, options.allowed_attributes, options.base_url)

    for _ in range(MAX_CLEANUP_PASSES):
        removed = _remove_empty(root)
        flattened = _flatten_wrappers(root)
        if not (removed or flattened):
            break
    return root.decode_contents()


def format_html(html: str) -> str:
    """Put block-level elements on their own lines."""
    text = _AROUND_BLOCK.sub(r"\1", html)
    text = _BLOCK_CLOSE.sub("\\1\n", text)
    text = _BLOCK_OPEN.sub("\n\\1", text)
    text = re.sub(r"\n{2,}", "\n\n", text)
    return text.strip()


def clean_html(html: str, options: Optional[SanitizeOptions] = None) -> str:
    return format_html(sanitize_html(html, options))
