"""Domain hints and page-shape checks shared by the strategies."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from newsflow.utils.domains import domain_from_url


@dataclass(frozen=True)
class DomainRule:
    pattern: str
    render: bool = False
    needs_scroll: bool = False
    headers: dict[str, str] = field(default_factory=dict)
    note: str = ""

    def matches(self, hostname: str) -> bool:
        if self.pattern == hostname:
            return True
        if self.pattern.startswith("*."):
            base = self.pattern[2:]
            return hostname == base or hostname.endswith("." + base)
        return False


KNOWN_DOMAIN_RULES: tuple[DomainRule, ...] = (
    DomainRule("*.twitter.com", render=True, note="Twitter/X SPA"),
    DomainRule("*.x.com", render=True, note="Twitter/X SPA"),
    DomainRule("*.facebook.com", render=True, note="Facebook SPA"),
    DomainRule("*.instagram.com", render=True, note="Instagram SPA"),
    DomainRule("*.linkedin.com", render=True, note="LinkedIn SPA"),
    DomainRule("*.medium.com", render=True, note="Medium lazy loading"),
    DomainRule("*.substack.com", note="Substack serves full text"),
    DomainRule("*.dev.to", note="Static rendering"),
    DomainRule("*.bloomberg.com", render=True, note="Paywall + SPA"),
    DomainRule("*.wsj.com", render=True, note="Paywall"),
    DomainRule("*.nytimes.com", render=True, note="Paywall"),
    DomainRule("*.weixin.qq.com", render=True, note="WeChat articles"),
    DomainRule("*.zhihu.com", render=True, note="Zhihu SPA"),
    DomainRule("*.bilibili.com", render=True, note="Bilibili SPA"),
    DomainRule("*.juejin.cn", render=True, note="Juejin SPA"),
    DomainRule("*.pinterest.com", render=True, needs_scroll=True, note="Masonry feed"),
    DomainRule("*.tumblr.com", render=True, needs_scroll=True, note="Infinite scroll"),
)

SPA_INDICATORS: tuple[str, ...] = (
    '<div id="root"></div>',
    '<div id="app"></div>',
    '<div id="__next"></div>',
    "<app-root></app-root>",
    "window.__INITIAL_STATE__",
    "window.__NUXT__",
)

BOT_CHALLENGE_MARKERS: tuple[str, ...] = (
    "cf-browser-verification",
    "challenge-platform",
    "just a moment...",
    "attention required! | cloudflare",
    "px-captcha",
    "are you a robot",
    "verify you are human",
)


def match_domain_rule(url: str) -> Optional[DomainRule]:
    hostname = domain_from_url(url)
    if not hostname:
        return None
    for rule in KNOWN_DOMAIN_RULES:
        if rule.matches(hostname):
            return rule
    return None


def is_spa_shell(html: str, text_length: int, min_length: int) -> bool:
    """A page that ships a framework mount point and almost no text."""
    if text_length >= min_length:
        return False
    return any(indicator in html for indicator in SPA_INDICATORS)


def looks_like_bot_challenge(html: str) -> bool:
    head = (html or "")[:20000].lower()
    return any(marker in head for marker in BOT_CHALLENGE_MARKERS)
