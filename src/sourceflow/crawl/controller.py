"""Breadth-first crawl of one site, reported as a stream of progress events.

``CrawlController.crawl()`` is an async generator: the consumer pulls one
``CrawlProgress`` at a time, so the crawl never runs ahead of persistence.

Event order for one attempt:
  discovering → (processing, processing+completed_page)* → completed
A malformed seed yields a single ``failed`` event and raises CrawlFailedError.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field

from sourceflow.config import CrawlCfg
from sourceflow.crawl.fetcher import PageFetcher, PageResult
from sourceflow.crawl.urls import (
    InvalidUrlError,
    base_domain,
    is_crawlable_url,
    normalize_seed,
    passes_path_filters,
    same_domain,
)
from sourceflow.db.metadata import CrawlProgress

logger = logging.getLogger(__name__)

BrowserSession = Callable[[], AbstractAsyncContextManager[PageFetcher]]
Sleep = Callable[[float], Awaitable[None]]


class CrawlFailedError(RuntimeError):
    """The crawl cannot run at all (e.g. malformed seed URL). Not retried."""

    retryable = False


@dataclass
class CrawlOptions:
    """Per-crawl settings, built from a job plus the crawl config section."""

    max_pages: int = 10
    crawl_subpages: bool = True
    include_paths: list[str] = field(default_factory=list)
    exclude_paths: list[str] = field(default_factory=list)
    slow: bool = False
    delay: float = 1.0
    slow_delay: float = 3.0
    browser_fallback: bool = True
    min_content_chars: int = 500
    fallback_weak_ratio: float = 0.5

    @classmethod
    def from_config(cls, cfg: CrawlCfg, **overrides: object) -> CrawlOptions:
        opts = cls(
            max_pages=cfg.max_pages,
            delay=cfg.delay,
            slow_delay=cfg.slow_delay,
            browser_fallback=cfg.browser_fallback,
            min_content_chars=cfg.min_content_chars,
            fallback_weak_ratio=cfg.fallback_weak_ratio,
        )
        for key, value in overrides.items():
            setattr(opts, key, value)
        return opts

    @property
    def page_delay(self) -> float:
        return self.slow_delay if self.slow else self.delay


class CrawlController:
    """Fetch pages of one site in BFS order within a page budget.

    Args:
        fetcher: HTTP fetcher used for the main pass.
        options: Crawl settings.
        browser_session: Factory for an async context manager yielding a
            browser-backed fetcher. Entered once, only if the fallback pass
            runs. None disables the fallback.
        sleep: Politeness-delay coroutine (tests pass a no-op).
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        options: CrawlOptions,
        *,
        browser_session: BrowserSession | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if not 1 <= options.max_pages <= 10_000:
            raise ValueError("max_pages must be in [1, 10000]")
        self._fetcher = fetcher
        self.options = options
        self._browser_session = browser_session
        self._sleep = sleep

        self.pages: dict[str, PageResult] = {}
        self.used_browser_fallback = False
        self.pages_processed = 0
        self._frontier: deque[tuple[str, int]] = deque()
        self._seen: set[str] = set()
        self._discovered: dict[str, None] = {}
        self._domain = ""
        self._fetches = 0

    @property
    def discovered_links(self) -> int:
        """Count of distinct in-scope links found so far, fetched or not."""
        return len(self._discovered)

    @property
    def discovered_urls(self) -> list[str]:
        """Distinct in-scope links in the order they were first seen."""
        return list(self._discovered)

    def _event(self, phase: str, **fields: object) -> CrawlProgress:
        return CrawlProgress(
            phase=phase,
            pages_processed=self.pages_processed,
            total=self.options.max_pages,
            discovered_links=self.discovered_links,
            **fields,
        )

    async def crawl(self, root_url: str) -> AsyncIterator[CrawlProgress]:
        """Crawl from *root_url*, yielding progress before and after each page.

        Raises:
            CrawlFailedError: If *root_url* is not a crawlable URL.
        """
        try:
            root = normalize_seed(root_url)
        except InvalidUrlError as exc:
            logger.error("Cannot crawl %r: %s", root_url, exc)
            yield self._event("failed", current_url=root_url, error=str(exc))
            raise CrawlFailedError(str(exc)) from exc

        self._domain = base_domain(root)
        self._frontier.append((root, 0))
        self._seen.add(root)
        self._discovered.setdefault(root)
        yield self._event("discovering", current_url=root)

        weak: list[str] = []
        async for event in self._drain(self._fetcher, weak):
            yield event

        if self._should_fall_back(weak):
            logger.info(
                "%d of %d pages on %s were weak over HTTP; retrying with a browser",
                len(weak),
                len(self.pages),
                self._domain,
            )
            self.used_browser_fallback = True
            assert self._browser_session is not None
            async with self._browser_session() as browser:
                for url in weak:
                    async for event in self._revisit(browser, url):
                        yield event
                async for event in self._drain(browser, None):
                    yield event

        yield self._event("completed")

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def _drain(
        self, fetcher: PageFetcher, weak: list[str] | None
    ) -> AsyncIterator[CrawlProgress]:
        """Fetch frontier URLs until it is empty or the budget is spent."""
        while self._frontier and self.pages_processed < self.options.max_pages:
            url, depth = self._frontier.popleft()
            await self._politeness_delay()
            yield self._event("processing", current_url=url)

            page = await fetcher.fetch(url, depth)
            self.pages_processed += 1
            self.pages[url] = page
            if weak is not None and self._is_weak(page):
                weak.append(url)
            self._expand(page)
            yield self._event("processing", current_url=url, completed_page=page)

    async def _revisit(self, browser: PageFetcher, url: str) -> AsyncIterator[CrawlProgress]:
        """Re-render a weak page; does not count against the page budget."""
        previous = self.pages[url]
        await self._politeness_delay()
        yield self._event("processing", current_url=url)

        page = await browser.fetch(url, previous.depth)
        if page.ok and len(page.content) > len(previous.content):
            self.pages[url] = page
            self._expand(page)
            yield self._event("processing", current_url=url, completed_page=page)
        else:
            yield self._event("processing", current_url=url)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _politeness_delay(self) -> None:
        if self._fetches:
            await self._sleep(self.options.page_delay)
        self._fetches += 1

    def _is_weak(self, page: PageResult) -> bool:
        return page.error is not None or len(page.content) < self.options.min_content_chars

    def _should_fall_back(self, weak: list[str]) -> bool:
        if not (self.options.browser_fallback and self._browser_session and self.pages):
            return False
        return len(weak) / len(self.pages) >= self.options.fallback_weak_ratio

    def _expand(self, page: PageResult) -> None:
        """Queue in-scope links of *page*, never exceeding the page budget."""
        if not self.options.crawl_subpages or page.error:
            return
        for link in page.links:
            if not same_domain(link, self._domain) or not is_crawlable_url(link):
                continue
            if not passes_path_filters(
                link, self.options.include_paths, self.options.exclude_paths
            ):
                continue
            self._discovered.setdefault(link)
            if link in self._seen:
                continue
            if self.pages_processed + len(self._frontier) >= self.options.max_pages:
                continue
            self._seen.add(link)
            self._frontier.append((link, page.depth + 1))
