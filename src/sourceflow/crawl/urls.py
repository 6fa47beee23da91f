"""URL rules for the crawler: normalization, domain scoping, link filtering."""

from __future__ import annotations

import fnmatch
import ipaddress
import re
from collections.abc import Sequence
from urllib.parse import urljoin, urlsplit, urlunsplit

_ALLOWED_SCHEMES = {"http", "https"}
_DISCARDED_PREFIXES = ("mailto:", "tel:", "javascript:", "#")

# Linked files the HTML extractor cannot use.
_SKIP_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".ico",
    ".zip", ".gz", ".tar", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx",
    ".mp4", ".mp3", ".wav", ".avi", ".mov", ".css", ".js", ".json", ".xml",
)

# Third-party platforms that pages link to but never belong to the site.
_EXTERNAL_PLATFORMS = (
    "facebook.com", "twitter.com", "x.com", "instagram.com", "linkedin.com",
    "youtube.com", "tiktok.com", "pinterest.com", "wa.me", "t.me",
)

# Path prefixes that lead to account, cart, feed, API or asset paths rather than content.
_NON_CONTENT_PREFIXES = (
    "/api", "/assets", "/static", "/download", "/files",
    "/wp-admin", "/wp-login", "/login", "/logout", "/signin", "/signup",
    "/register", "/account", "/cart", "/checkout", "/feed", "/cdn-cgi",
)

_HOST_RE = re.compile(
    r"^[a-z0-9_]([a-z0-9_-]*[a-z0-9])?(\.[a-z0-9_]([a-z0-9_-]*[a-z0-9])?)*\.?$",
    re.IGNORECASE,
)


class InvalidUrlError(ValueError):
    """Raised when a seed URL cannot be crawled."""


def normalize_seed(raw: str) -> str:
    """Turn user input into a crawlable absolute URL.

    Prepends ``https://`` when no scheme is given.

    Raises:
        InvalidUrlError: If the result has no host or a non-HTTP scheme.
    """
    value = raw.strip()
    if not value:
        raise InvalidUrlError("URL is empty")
    if "://" not in value:
        value = f"https://{value}"
    try:
        parts = urlsplit(value)
        parts.port  # raises ValueError for a bad port
    except ValueError as exc:
        raise InvalidUrlError(f"Malformed URL '{raw}': {exc}") from exc
    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        raise InvalidUrlError(f"Unsupported URL scheme '{parts.scheme}' in '{raw}'")
    if not _valid_host(parts.hostname or ""):
        raise InvalidUrlError(f"Malformed URL '{raw}': missing or invalid host")
    return normalize_url(value)


def _valid_host(host: str) -> bool:
    if _HOST_RE.match(host):
        return True
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def normalize_url(url: str) -> str:
    """Lowercase scheme and host, drop the fragment and any trailing slash."""
    parts = urlsplit(url)
    netloc = parts.netloc.lower()
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), netloc, path, parts.query, ""))


def base_domain(url: str) -> str:
    """Return the host of *url* without a leading ``www.``."""
    host = (urlsplit(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def resolve_link(href: str, page_url: str) -> str | None:
    """Resolve *href* against *page_url*; None for non-navigational links."""
    href = href.strip()
    if not href or href.lower().startswith(_DISCARDED_PREFIXES):
        return None
    try:
        resolved = urljoin(page_url, href)
        parts = urlsplit(resolved)
    except ValueError:
        return None
    if parts.scheme not in _ALLOWED_SCHEMES or not parts.hostname:
        return None
    return normalize_url(resolved)


def is_crawlable_url(url: str) -> bool:
    """Return False for files, social platforms and account/cart pages."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme not in _ALLOWED_SCHEMES or not parts.hostname:
        return False
    host = parts.hostname.lower()
    if any(host == p or host.endswith(f".{p}") for p in _EXTERNAL_PLATFORMS):
        return False
    path = parts.path.lower()
    if path.endswith(_SKIP_EXTENSIONS):
        return False
    return not any(
        path == prefix or path.startswith(f"{prefix}/") or path.startswith(f"{prefix}.")
        for prefix in _NON_CONTENT_PREFIXES
    )


def same_domain(url: str, domain: str) -> bool:
    """True when *url*'s host, minus ``www.``, equals *domain*."""
    return base_domain(url) == domain


def _path_matches(path: str, pattern: str) -> bool:
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatch(path, pattern)
    return path.startswith(pattern)


def passes_path_filters(
    url: str,
    include_paths: Sequence[str] = (),
    exclude_paths: Sequence[str] = (),
) -> bool:
    """Apply include/exclude filters to the URL path.

    Patterns containing glob characters are matched with fnmatch; plain
    values match as path prefixes. An empty include list admits every path.
    """
    path = urlsplit(url).path or "/"
    if any(_path_matches(path, p) for p in exclude_paths):
        return False
    if include_paths:
        return any(_path_matches(path, p) for p in include_paths)
    return True
