"""Fixtures for crawl tests: an in-memory site behind the PageFetcher protocol."""

from __future__ import annotations

from contextlib import asynccontextmanager

import pytest

from sourceflow.crawl.fetcher import PageResult

LONG_TEXT = "Real page content with enough words to count. " * 12


class FakeFetcher:
    """Serves pages from a dict of url → (content, links); unknown URLs 404."""

    def __init__(self, site, errors=None, fetched_with="http"):
        self.site = site
        self.errors = errors or {}
        self.fetched_with = fetched_with
        self.calls: list[str] = []

    async def fetch(self, url, depth=0):
        self.calls.append(url)
        if url in self.errors:
            return PageResult(url=url, depth=depth, error=self.errors[url], fetched_with=self.fetched_with)
        if url not in self.site:
            return PageResult(url=url, depth=depth, error="HTTP 404", fetched_with=self.fetched_with)
        content, links = self.site[url]
        return PageResult(
            url=url,
            title=f"Title of {url}",
            content=content,
            links=list(links),
            depth=depth,
            fetched_with=self.fetched_with,
        )


@pytest.fixture
def make_fetcher():
    return FakeFetcher


@pytest.fixture
def make_browser_session():
    """Build a browser_session factory around a FakeFetcher; records entries."""

    def _make(site, errors=None):
        fetcher = FakeFetcher(site, errors, fetched_with="browser")
        fetcher.sessions = 0

        @asynccontextmanager
        async def session():
            fetcher.sessions += 1
            yield fetcher

        return session, fetcher

    return _make


@pytest.fixture
def no_sleep():
    """Politeness-delay stand-in that records requested delays."""
    delays: list[float] = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


def star_site(n_children: int, content: str = LONG_TEXT) -> dict:
    """Home page linking to n children; children link back home."""
    root = "https://example.com"
    children = [f"{root}/page-{i}" for i in range(1, n_children + 1)]
    site = {root: (content, children)}
    for child in children:
        site[child] = (content, [root])
    return site


@pytest.fixture
def make_star_site():
    return star_site
