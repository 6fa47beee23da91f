"""Tests for CrawlController — BFS order, page budget, events, fallback."""

from __future__ import annotations

import pytest

from sourceflow.config import CrawlCfg
from sourceflow.crawl.controller import CrawlController, CrawlFailedError, CrawlOptions

ROOT = "https://example.com"


async def _collect(controller, url=ROOT):
    events = []
    async for event in controller.crawl(url):
        events.append(event)
    return events


def _options(**kwargs) -> CrawlOptions:
    kwargs.setdefault("browser_fallback", False)
    return CrawlOptions(**kwargs)


# ------------------------------------------------------------------
# Options
# ------------------------------------------------------------------

def test_options_from_config_with_overrides():
    cfg = CrawlCfg(max_pages=25, delay=0.5, slow_delay=4.0, min_content_chars=300)
    opts = CrawlOptions.from_config(cfg, max_pages=5, slow=True)
    assert opts.max_pages == 5
    assert opts.min_content_chars == 300
    assert opts.page_delay == 4.0


@pytest.mark.parametrize("max_pages", [0, 10_001])
def test_max_pages_bounds(make_fetcher, max_pages):
    with pytest.raises(ValueError):
        CrawlController(make_fetcher({}), _options(max_pages=max_pages))


# ------------------------------------------------------------------
# Traversal
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_page_budget_caps_fetches(make_fetcher, make_star_site, no_sleep):
    fetcher = make_fetcher(make_star_site(5))
    controller = CrawlController(fetcher, _options(max_pages=3), sleep=no_sleep)
    await _collect(controller)

    assert fetcher.calls == [ROOT, f"{ROOT}/page-1", f"{ROOT}/page-2"]
    assert controller.pages_processed == 3
    assert len(controller.pages) == 3
    assert controller.discovered_links == 6
    assert controller.discovered_urls == [ROOT] + [f"{ROOT}/page-{i}" for i in range(1, 6)]


@pytest.mark.asyncio
async def test_each_url_fetched_once(make_fetcher, no_sleep):
    site = {
        ROOT: ("home", [f"{ROOT}/a", f"{ROOT}/b", f"{ROOT}/a"]),
        f"{ROOT}/a": ("a", [ROOT, f"{ROOT}/b"]),
        f"{ROOT}/b": ("b", [f"{ROOT}/a", ROOT]),
    }
    fetcher = make_fetcher(site)
    controller = CrawlController(fetcher, _options(max_pages=50), sleep=no_sleep)
    await _collect(controller)
    assert sorted(fetcher.calls) == sorted(site)


@pytest.mark.asyncio
async def test_bfs_depths(make_fetcher, no_sleep):
    site = {
        ROOT: ("home", [f"{ROOT}/a"]),
        f"{ROOT}/a": ("a", [f"{ROOT}/a/b"]),
        f"{ROOT}/a/b": ("b", []),
    }
    controller = CrawlController(make_fetcher(site), _options(max_pages=10), sleep=no_sleep)
    await _collect(controller)
    assert {url: p.depth for url, p in controller.pages.items()} == {
        ROOT: 0,
        f"{ROOT}/a": 1,
        f"{ROOT}/a/b": 2,
    }


@pytest.mark.asyncio
async def test_no_subpages_fetches_root_only(make_fetcher, make_star_site, no_sleep):
    fetcher = make_fetcher(make_star_site(5))
    controller = CrawlController(fetcher, _options(crawl_subpages=False), sleep=no_sleep)
    await _collect(controller)
    assert fetcher.calls == [ROOT]


@pytest.mark.asyncio
async def test_scope_and_path_filters(make_fetcher, no_sleep):
    site = {
        ROOT: (
            "home",
            [
                f"{ROOT}/docs/intro",
                f"{ROOT}/docs/archive/old",
                f"{ROOT}/blog/post",
                "https://www.example.com/docs/www",
                "https://other.org/docs/x",
                f"{ROOT}/docs/manual.pdf",
                "https://twitter.com/example",
            ],
        ),
        f"{ROOT}/docs/intro": ("intro", []),
        "https://www.example.com/docs/www": ("www", []),
    }
    fetcher = make_fetcher(site)
    opts = _options(max_pages=20, include_paths=["/docs"], exclude_paths=["/docs/archive/*"])
    await _collect(CrawlController(fetcher, opts, sleep=no_sleep))
    assert fetcher.calls == [ROOT, f"{ROOT}/docs/intro", "https://www.example.com/docs/www"]


@pytest.mark.asyncio
async def test_failed_page_is_recorded_and_not_expanded(make_fetcher, make_star_site, no_sleep):
    site = make_star_site(3)
    fetcher = make_fetcher(site, errors={f"{ROOT}/page-2": "HTTP 500"})
    controller = CrawlController(fetcher, _options(max_pages=10), sleep=no_sleep)
    events = await _collect(controller)

    assert controller.pages[f"{ROOT}/page-2"].error == "HTTP 500"
    assert controller.pages_processed == 4
    assert events[-1].phase == "completed"


@pytest.mark.asyncio
async def test_politeness_delay_between_fetches(make_fetcher, make_star_site, no_sleep):
    fetcher = make_fetcher(make_star_site(2))
    controller = CrawlController(fetcher, _options(delay=0.25), sleep=no_sleep)
    await _collect(controller)
    assert no_sleep.delays == [0.25, 0.25]


@pytest.mark.asyncio
async def test_slow_mode_uses_slow_delay(make_fetcher, make_star_site, no_sleep):
    controller = CrawlController(
        make_fetcher(make_star_site(1)), _options(slow=True, slow_delay=3.0), sleep=no_sleep
    )
    await _collect(controller)
    assert no_sleep.delays == [3.0]


# ------------------------------------------------------------------
# Events
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_event_sequence(make_fetcher, make_star_site, no_sleep):
    controller = CrawlController(
        make_fetcher(make_star_site(1)), _options(max_pages=5), sleep=no_sleep
    )
    events = await _collect(controller)

    assert [e.phase for e in events] == [
        "discovering",
        "processing",
        "processing",
        "processing",
        "processing",
        "completed",
    ]
    assert events[0].current_url == ROOT
    assert events[1].completed_page is None
    assert events[2].completed_page.url == ROOT
    assert events[2].pages_processed == 1
    assert events[4].completed_page.url == f"{ROOT}/page-1"
    assert all(e.total == 5 for e in events)
    assert events[-1].pages_processed == 2


@pytest.mark.asyncio
async def test_invalid_seed_fails_without_fetching(make_fetcher, no_sleep):
    fetcher = make_fetcher({})
    controller = CrawlController(fetcher, _options(), sleep=no_sleep)
    events = []
    with pytest.raises(CrawlFailedError):
        async for event in controller.crawl("ftp://example.com"):
            events.append(event)

    assert [e.phase for e in events] == ["failed"]
    assert "scheme" in events[0].error
    assert fetcher.calls == []


# ------------------------------------------------------------------
# Browser fallback
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_fallback_revisits_weak_pages(make_fetcher, make_browser_session, no_sleep):
    links = [f"{ROOT}/a", f"{ROOT}/b"]
    http = make_fetcher({ROOT: ("Loading…", links), f"{ROOT}/a": ("Loading…", [])})
    rendered = "Rendered text. " * 50
    session, browser = make_browser_session(
        {ROOT: (rendered, links), f"{ROOT}/a": (rendered, [])}
    )
    controller = CrawlController(
        http,
        _options(max_pages=2, browser_fallback=True),
        browser_session=session,
        sleep=no_sleep,
    )
    events = await _collect(controller)

    assert controller.used_browser_fallback is True
    assert browser.sessions == 1
    assert browser.calls == [ROOT, f"{ROOT}/a"]
    assert controller.pages_processed == 2
    assert all(p.fetched_with == "browser" for p in controller.pages.values())
    completed = [e.completed_page for e in events if e.completed_page is not None]
    assert [p.fetched_with for p in completed] == ["http", "http", "browser", "browser"]


@pytest.mark.asyncio
async def test_fallback_continues_bfs_within_budget(make_fetcher, make_browser_session, no_sleep):
    http = make_fetcher({ROOT: ("", [])})
    session, browser = make_browser_session(
        {ROOT: ("Rendered. " * 60, [f"{ROOT}/js-only"]), f"{ROOT}/js-only": ("JS page. " * 60, [])}
    )
    controller = CrawlController(
        http, _options(max_pages=3, browser_fallback=True), browser_session=session, sleep=no_sleep
    )
    await _collect(controller)
    assert browser.calls == [ROOT, f"{ROOT}/js-only"]
    assert controller.pages_processed == 2


@pytest.mark.asyncio
async def test_no_fallback_when_most_pages_are_fine(make_fetcher, make_star_site, make_browser_session, no_sleep):
    site = make_star_site(3)
    site[f"{ROOT}/page-1"] = ("tiny", [])
    session, browser = make_browser_session(site)
    controller = CrawlController(
        make_fetcher(site),
        _options(max_pages=10, browser_fallback=True),
        browser_session=session,
        sleep=no_sleep,
    )
    await _collect(controller)
    assert controller.used_browser_fallback is False
    assert browser.sessions == 0


@pytest.mark.asyncio
async def test_fallback_keeps_http_result_when_browser_is_not_better(make_fetcher, make_browser_session, no_sleep):
    http = make_fetcher({ROOT: ("short http text", [])})
    session, browser = make_browser_session({}, errors={ROOT: "Timeout"})
    controller = CrawlController(
        http, _options(browser_fallback=True), browser_session=session, sleep=no_sleep
    )
    await _collect(controller)
    assert controller.used_browser_fallback is True
    assert controller.pages[ROOT].fetched_with == "http"
    assert controller.pages[ROOT].content == "short http text"
