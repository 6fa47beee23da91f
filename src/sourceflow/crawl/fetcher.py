"""Page fetcher — HTTP download and HTML text extraction with SSRF protection.

Security requirements:
- SSRF guard: hostnames are resolved and private/loopback/link-local/reserved
  ranges are refused before any connection is made, for the requested URL
  and for every redirect hop (unless explicitly allowed for local development).
- Redirects followed manually, at most 3.
- Allowed URL schemes: https:// and http:// only.
- Content-Type whitelist: text/html and application/xhtml+xml.
- Max response body: 5 MB, enforced while streaming.

A fetch never raises: every failure is reported on ``PageResult.error``.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

from sourceflow.crawl.urls import normalize_url, resolve_link

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
MAX_PAGE_CHARS = 50_000
_MAX_BYTES = 5 * 1024 * 1024
_MAX_REDIRECTS = 3
_MIN_SELECTED_CHARS = 100
_ALLOWED_SCHEMES = {"https", "http"}
_HTML_CONTENT_TYPES = {"text/html", "application/xhtml+xml"}
_CONTENT_SELECTORS = (
    "main",
    "article",
    "[role=main]",
    ".content",
    "#content",
    ".main-content",
    "#main-content",
)
_WHITESPACE_RE = re.compile(r"\s+")


class SsrfError(ValueError):
    """Raised when a URL resolves to a private or reserved address."""


@dataclass
class PageResult:
    """Outcome of fetching one page. ``error`` is set instead of raising."""

    url: str
    title: str = ""
    content: str = ""
    links: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    depth: int = 0
    error: str | None = None
    fetched_with: str = "http"

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.content)


class PageFetcher(Protocol):
    async def fetch(self, url: str, depth: int = 0) -> PageResult: ...


# ------------------------------------------------------------------
# SSRF guard
# ------------------------------------------------------------------

def _is_blocked_address(addr: str) -> bool:
    try:
        ip = ipaddress.ip_address(addr)
    except ValueError:
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


async def check_ssrf(url: str) -> None:
    """Resolve the hostname and block private/reserved IP ranges.

    Raises:
        ValueError: If the scheme is not http(s), the URL has no host, or
            DNS resolution fails.
        SsrfError: If any resolved address is private, loopback,
            link-local, or otherwise reserved.
    """
    parsed = urlsplit(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        raise ValueError(
            f"Unsupported URL scheme '{parsed.scheme}'. Only https:// and http:// are allowed."
        )
    hostname = parsed.hostname
    if not hostname:
        raise ValueError(f"URL has no hostname: {url}")

    loop = asyncio.get_running_loop()
    try:
        addrinfos = await loop.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise ValueError(f"DNS resolution failed for '{hostname}': {exc}") from exc

    for addrinfo in addrinfos:
        addr = addrinfo[4][0]
        if _is_blocked_address(addr):
            raise SsrfError(
                f"URL resolves to private address ({addr}). "
                "Access to internal network addresses is not allowed."
            )


# ------------------------------------------------------------------
# HTML extraction
# ------------------------------------------------------------------

def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def extract_page(html: str, url: str, *, full_page_content: bool = False) -> PageResult:
    """Extract title, main text, links and images from an HTML document.

    Args:
        html: Raw HTML.
        url: Final page URL, used to resolve relative links.
        full_page_content: Use the whole body instead of searching for a
            main-content container.

    Returns:
        PageResult with content capped at MAX_PAGE_CHARS characters.
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(["script", "style", "noscript"]):
        tag.decompose()

    title = ""
    if soup.title and soup.title.get_text(strip=True):
        title = _collapse(soup.title.get_text())
    else:
        h1 = soup.find("h1")
        if h1:
            title = _collapse(h1.get_text())

    content = ""
    if not full_page_content:
        for selector in _CONTENT_SELECTORS:
            element = soup.select_one(selector)
            if element is None:
                continue
            text = _collapse(element.get_text(" "))
            if len(text) > _MIN_SELECTED_CHARS:
                content = text
                break
    if not content:
        root = soup.body or soup
        content = _collapse(root.get_text(" "))

    links: list[str] = []
    seen: set[str] = set()
    for a in soup.find_all("a", href=True):
        link = resolve_link(a["href"], url)
        if link and link not in seen:
            seen.add(link)
            links.append(link)

    images: list[str] = []
    seen_images: set[str] = set()
    for img in soup.find_all("img", src=True):
        src = resolve_link(img["src"], url)
        if src and src not in seen_images:
            seen_images.add(src)
            images.append(src)

    return PageResult(
        url=url,
        title=title,
        content=content[:MAX_PAGE_CHARS],
        links=links,
        images=images,
    )


# ------------------------------------------------------------------
# HTTP fetcher
# ------------------------------------------------------------------

class ContentFetcher:
    """Fetch pages over HTTP with httpx and extract their text.

    Args:
        client: Pre-built AsyncClient (tests pass one with a MockTransport).
        timeout: Request timeout in seconds.
        user_agent: Browser-like User-Agent header.
        allow_private_addresses: Disable the SSRF guard.
        full_page_content: Skip the main-content selector search.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        allow_private_addresses: bool = False,
        full_page_content: bool = False,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            max_redirects=_MAX_REDIRECTS,
            headers={
                "User-Agent": user_agent,
                "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.9",
            },
        )
        self.allow_private_addresses = allow_private_addresses
        self.full_page_content = full_page_content

    async def __aenter__(self) -> ContentFetcher:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch(self, url: str, depth: int = 0) -> PageResult:
        """Download *url* and extract its content; failures land on ``error``."""
        try:
            result = await self._fetch(url)
        except ValueError as exc:
            result = PageResult(url=url, error=str(exc))
        except httpx.HTTPError as exc:
            result = PageResult(url=url, error=str(exc) or type(exc).__name__)
        except Exception as exc:
            logger.exception("Unexpected error fetching %s", url)
            result = PageResult(url=url, error=str(exc) or type(exc).__name__)
        result.depth = depth
        if result.error:
            logger.info("Fetch of %s failed: %s", url, result.error)
        return result

    async def _fetch(self, url: str) -> PageResult:
        target = url
        for _ in range(_MAX_REDIRECTS + 1):
            if not self.allow_private_addresses:
                await check_ssrf(target)
            async with self._client.stream("GET", target, follow_redirects=False) as response:
                if response.next_request is not None:
                    target = str(response.next_request.url)
                    continue
                return await self._read_page(url, response)
        raise ValueError(f"Too many redirects (>{_MAX_REDIRECTS}) for URL '{url}'.")

    async def _read_page(self, url: str, response: httpx.Response) -> PageResult:
        if not response.is_success:
            return PageResult(url=url, error=f"HTTP {response.status_code}")

        content_type = response.headers.get("content-type", "text/html")
        if content_type.split(";")[0].strip().lower() not in _HTML_CONTENT_TYPES:
            return PageResult(url=url, error="Not an HTML page")

        # Read with size cap
        body = bytearray()
        async for chunk in response.aiter_bytes():
            body.extend(chunk)
            if len(body) > _MAX_BYTES:
                return PageResult(
                    url=url,
                    error=f"Response body exceeds {_MAX_BYTES // (1024 * 1024)} MB limit",
                )

        try:
            html = body.decode(response.charset_encoding or "utf-8", errors="replace")
        except LookupError:
            html = body.decode("utf-8", errors="replace")

        final_url = normalize_url(str(response.url))
        page = extract_page(html, final_url, full_page_content=self.full_page_content)
        page.url = url
        return page
