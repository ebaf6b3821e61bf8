"""
Shared utility functions for ID generation, URL handling, and date parsing.
"""

import hashlib
import re
from datetime import date, datetime
from typing import Iterable, Optional
from urllib.parse import urlparse, urlunparse, parse_qsl, urlencode

from dateutil import parser as dateparser


# Query parameters that never change the page being served
_TRACKING_PARAMS = {
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "gclid", "fbclid", "mc_cid", "mc_eid", "ref",
}


def stable_id_from_url(url: str, prefix: str = "ai-web-") -> str:
    """
    Generate a stable, short identifier from a URL.

    The URL is normalised first so that trivially different spellings of the
    same page map to the same id.

    Args:
        url: Full URL to hash
        prefix: Optional prefix

    Returns:
        Stable ID like "ai-web-a1b2c3d4e5f6"

    Examples:
        >>> stable_id_from_url("https://example.org/grant")
        'ai-web-...'
    """
    h = hashlib.md5(normalize_url(url).encode("utf-8")).hexdigest()[:12]
    return f"{prefix}{h}" if prefix else h


def normalize_url(url: str) -> str:
    """
    Normalise a URL for de-duplication.

    Lowercases scheme and host, strips "www.", drops fragments, tracking
    parameters and trailing slashes. Query parameter order is sorted.

    Examples:
        >>> normalize_url("HTTPS://www.Example.org/Grants/?utm_source=x#top")
        'https://example.org/Grants'
    """
    url = (url or "").strip()
    if not url:
        return ""

    parsed = urlparse(url)
    scheme = (parsed.scheme or "https").lower()
    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    if parsed.port and parsed.port not in (80, 443):
        host = f"{host}:{parsed.port}"

    path = parsed.path.rstrip("/")
    query = urlencode(sorted(
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k.lower() not in _TRACKING_PARAMS
    ))

    return urlunparse((scheme, host, path, "", query, ""))


def host_of(url: str) -> str:
    """Lowercased hostname of a URL without a leading "www."."""
    host = (urlparse(url or "").hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def host_matches(url: str, domains: Iterable[str]) -> bool:
    """
    True if the URL's host equals one of the domains or is a subdomain of one.

    Examples:
        >>> host_matches("https://apply.grants.gov/x", {"grants.gov"})
        True
        >>> host_matches("https://notgrants.gov/x", {"grants.gov"})
        False
    """
    host = host_of(url)
    if not host:
        return False

    for domain in domains:
        domain = domain.lower().strip().lstrip(".")
        if domain.startswith("www."):
            domain = domain[4:]
        if not domain:
            continue
        if host == domain or host.endswith("." + domain):
            return True
    return False


def parse_date_maybe(text) -> Optional[date]:
    """
    Attempt to parse a deadline, returning None on failure.

    Accepts date/datetime objects as-is. Rolling or open-ended deadlines
    ("rolling", "ongoing", "TBD") return None.

    Examples:
        >>> parse_date_maybe("March 15, 2026")
        datetime.date(2026, 3, 15)
        >>> parse_date_maybe("rolling")
        None
    """
    if text is None:
        return None
    if isinstance(text, datetime):
        return text.date()
    if isinstance(text, date):
        return text

    text = str(text).strip()
    if not text or text.lower() in {"rolling", "ongoing", "tbd", "n/a", "none", "null", "open"}:
        return None

    try:
        return dateparser.parse(text, fuzzy=True).date()
    except (ValueError, TypeError, OverflowError, AttributeError):
        return None


def clean_text(text: str) -> str:
    """
    Clean text by normalizing whitespace and removing extra newlines.

    Args:
        text: Raw text

    Returns:
        Cleaned text
    """
    text = re.sub(r'[ \t]+', ' ', text)
    text = re.sub(r'\n\s*\n+', '\n\n', text)
    return text.strip()


def truncate(text: str, limit: int) -> str:
    """Cut text to at most `limit` characters, preferring a word boundary."""
    if len(text) <= limit:
        return text
    cut = text[:limit]
    space = cut.rfind(" ")
    if space > limit * 0.8:
        cut = cut[:space]
    return cut.rstrip()
