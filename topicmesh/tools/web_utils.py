from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlparse, urlsplit, urlunsplit

TRACKING_PARAMS = {"utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content", "fbclid", "gclid", "ref"}


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def clean_content(text: str, max_length: int = 2000) -> str:
    """Collapse whitespace and trim to max length."""
    text = re.sub(r"\s+", " ", text or "").strip()
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def normalize_url(url: str) -> str:
    """Canonical form used as a dedup key.

    Lowercases scheme and host, drops a leading ``www.``, the fragment,
    tracking params and a trailing slash, and sorts the query string.
    """
    parsed = urlsplit((url or "").strip())
    scheme = (parsed.scheme or "https").lower()
    if scheme == "http":
        scheme = "https"
    netloc = parsed.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]
    path = parsed.path.rstrip("/") or "/"
    params = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k.lower() not in TRACKING_PARAMS]
    query = urlencode(sorted(params))
    return urlunsplit((scheme, netloc, path, query, ""))


def extract_domain(url: str) -> str:
    """Host without ``www.``; empty string when the URL has none."""
    try:
        netloc = urlparse(url).netloc.lower()
    except ValueError:
        return ""
    return netloc[4:] if netloc.startswith("www.") else netloc


def slugify(text: str) -> str:
    """URL-safe id segment: runs of anything but ``[a-z0-9]`` become ``-``."""
    return re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-") or "topic"


def tokenize(text: str, min_length: int = 3) -> set[str]:
    return {t for t in re.findall(r"[a-z0-9]+", (text or "").lower()) if len(t) >= min_length}


_COUNT_SUFFIX = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def parse_count(value: object) -> int | None:
    """Parse counts like ``1,234``, ``12K`` or ``3.4M``."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value)
    match = re.search(r"(\d+(?:[.,]\d+)*)\s*([kmb])?\b", str(value).lower())
    if not match:
        return None
    number, suffix = match.groups()
    if suffix:
        number = number.replace(",", ".")
        try:
            return int(float(number) * _COUNT_SUFFIX[suffix])
        except ValueError:
            return None
    return int(number.replace(",", "").replace(".", ""))
