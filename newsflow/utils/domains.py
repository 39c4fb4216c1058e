"""Hostname helpers shared by the limiter, breaker and credential lookup."""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse


def domain_from_url(url: str) -> Optional[str]:
    """Return the lower-cased hostname for ``url`` or ``None`` when absent."""
    if not url:
        return None
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return None
    if parsed.scheme not in {"http", "https"}:
        return None
    hostname = (parsed.hostname or "").strip(".").lower()
    return hostname or None


def normalise_domain(domain: str) -> str:
    domain = (domain or "").strip().lower()
    if domain.startswith("www."):
        return domain[4:]
    return domain
