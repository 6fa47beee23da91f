"""Headless-browser fallback for pages that only render with JavaScript.

``BrowserPool`` caps the number of live Chromium instances; ``acquire()``
hands out an idle browser or launches a new one while under the cap, and
waits otherwise. ``BrowserFetcher`` renders a page with a pooled browser and
reuses the HTTP fetcher's HTML extraction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from playwright.async_api import async_playwright

from sourceflow.crawl.fetcher import (
    DEFAULT_USER_AGENT,
    PageResult,
    check_ssrf,
    extract_page,
)

logger = logging.getLogger(__name__)

_BLOCKED_RESOURCE_TYPES = {"image", "media", "font"}
_LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-extensions",
]

Launcher = Callable[[], Awaitable[Any]]


class BrowserPool:
    """Bounded pool of playwright Chromium browsers.

    Args:
        max_browsers: Hard cap on concurrently live browsers.
        launcher: Coroutine factory returning a browser. Defaults to a
            headless Chromium started through playwright.
    """

    def __init__(self, max_browsers: int = 2, launcher: Launcher | None = None) -> None:
        if max_browsers < 1:
            raise ValueError("max_browsers must be >= 1")
        self.max_browsers = max_browsers
        self._launcher = launcher
        self._semaphore = asyncio.Semaphore(max_browsers)
        self._idle: list[Any] = []
        self._browsers: list[Any] = []
        self._playwright: Any = None
        self._closed = False
        self.in_use = 0

    @property
    def size(self) -> int:
        """Number of live browsers (idle and in use)."""
        return len(self._browsers)

    async def _launch(self) -> Any:
        if self._launcher is not None:
            return await self._launcher()
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return await self._playwright.chromium.launch(headless=True, args=_LAUNCH_ARGS)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Any]:
        """Borrow a browser for the duration of the ``async with`` block.

        Raises:
            RuntimeError: If the pool has been closed.
        """
        if self._closed:
            raise RuntimeError("BrowserPool is closed")
        async with self._semaphore:
            browser = None
            while self._idle:
                candidate = self._idle.pop()
                if candidate.is_connected():
                    browser = candidate
                    break
                self._browsers.remove(candidate)
            if browser is None:
                browser = await self._launch()
                self._browsers.append(browser)
                logger.debug("Launched browser (%d/%d)", len(self._browsers), self.max_browsers)
            self.in_use += 1
            try:
                yield browser
            finally:
                self.in_use -= 1
                if self._closed or not browser.is_connected():
                    if browser in self._browsers:
                        self._browsers.remove(browser)
                    await _close_quietly(browser)
                else:
                    self._idle.append(browser)

    async def close(self) -> None:
        """Close every browser and stop playwright. Safe to call twice."""
        self._closed = True
        for browser in list(self._idle):
            await _close_quietly(browser)
            self._browsers.remove(browser)
        self._idle.clear()
        if self._playwright is not None and not self.in_use:
            await self._playwright.stop()
            self._playwright = None


async def _close_quietly(browser: Any) -> None:
    try:
        await browser.close()
    except Exception:
        logger.warning("Error while closing browser", exc_info=True)


async def _block_heavy_resources(route: Any) -> None:
    if route.request.resource_type in _BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class BrowserFetcher:
    """Render pages in a pooled headless browser.

    Args:
        pool: Browser pool to borrow from.
        timeout: Navigation timeout in seconds.
        user_agent: User-Agent for the browser context.
        allow_private_addresses: Disable the SSRF guard.
        full_page_content: Skip the main-content selector search.
    """

    def __init__(
        self,
        pool: BrowserPool,
        *,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        allow_private_addresses: bool = False,
        full_page_content: bool = False,
    ) -> None:
        self._pool = pool
        self.timeout = timeout
        self.user_agent = user_agent
        self.allow_private_addresses = allow_private_addresses
        self.full_page_content = full_page_content

    async def fetch(self, url: str, depth: int = 0) -> PageResult:
        """Render *url* and extract its content; failures land on ``error``."""
        try:
            result = await self._render(url)
        except Exception as exc:
            logger.info("Browser fetch of %s failed: %s", url, exc)
            result = PageResult(url=url, error=str(exc) or type(exc).__name__)
        result.depth = depth
        result.fetched_with = "browser"
        return result

    async def _render(self, url: str) -> PageResult:
        if not self.allow_private_addresses:
            await check_ssrf(url)
        async with self._pool.acquire() as browser:
            context = await browser.new_context(
                user_agent=self.user_agent,
                viewport={"width": 1280, "height": 800},
            )
            try:
                page = await context.new_page()
                await page.route("**/*", _block_heavy_resources)
                response = await page.goto(
                    url, wait_until="networkidle", timeout=self.timeout * 1000
                )
                if response is not None and response.status >= 400:
                    return PageResult(url=url, error=f"HTTP {response.status}")
                html = await page.content()
            finally:
                await context.close()
        return extract_page(html, url, full_page_content=self.full_page_content)


@asynccontextmanager
async def browser_session(
    *,
    max_browsers: int = 2,
    timeout: float = 30.0,
    user_agent: str = DEFAULT_USER_AGENT,
    allow_private_addresses: bool = False,
    full_page_content: bool = False,
    launcher: Launcher | None = None,
) -> AsyncIterator[BrowserFetcher]:
    """Open a pool for one fallback pass and close it afterwards."""
    pool = BrowserPool(max_browsers=max_browsers, launcher=launcher)
    try:
        yield BrowserFetcher(
            pool,
            timeout=timeout,
            user_agent=user_agent,
            allow_private_addresses=allow_private_addresses,
            full_page_content=full_page_content,
        )
    finally:
        await pool.close()
