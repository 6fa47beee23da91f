"""Tests for the crawl job queue, rate limiter, and crawl worker."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from pydantic import ValidationError

from sourceflow.config import CrawlCfg, QueueCfg, SourceflowConfig
from sourceflow.crawl.fetcher import ContentFetcher
from sourceflow.events import ProgressChannel, crawl_topic
from sourceflow.jobs import (
    NO_CONTENT_MESSAGE,
    CrawlJob,
    CrawlWorker,
    JobConflictError,
    JobQueue,
    JobStatus,
    RateLimiter,
    SourceNotFoundError,
    build_crawl_queue,
    start_crawl,
)

ROOT = "https://example.com"


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _job(source_id: str = "src-1", **kwargs) -> CrawlJob:
    return CrawlJob(source_id=source_id, agent_id="agent-1", project_id="proj-1", url=ROOT, **kwargs)


class Recorder:
    """Sleep stand-in that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Flaky(Exception):
    pass


class Fatal(Exception):
    retryable = False


def _html(title: str, body: str, links: list[str]) -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><main><p>{body}</p></main>{anchors}</body></html>"
    )


def _site_handler(n_children: int, failing: frozenset[str] = frozenset()):
    """MockTransport handler for a home page linking to /page-1..n."""
    children = [f"/page-{i}" for i in range(1, n_children + 1)]

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path in failing:
            return httpx.Response(500, text="server error")
        if path == "/":
            return httpx.Response(200, html=_html("Home", "Welcome home. " * 20, children))
        if path in children:
            return httpx.Response(200, html=_html(path, f"Content of {path}. " * 20, ["/"]))
        return httpx.Response(404)

    return handler


def _config(**queue) -> SourceflowConfig:
    return SourceflowConfig(
        crawl=CrawlCfg(browser_fallback=False, allow_private_addresses=True, delay=0),
        queue=QueueCfg(backoff_base=0.01, **queue),
    )


def _fetcher_factory(handler):
    def factory(job):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ContentFetcher(client=client, allow_private_addresses=True)

    return factory


# ------------------------------------------------------------------
# Models
# ------------------------------------------------------------------


def test_crawl_job_id_and_bounds():
    assert _job("abc").job_id == "crawl-abc"
    with pytest.raises(ValidationError):
        _job(max_pages=0)
    with pytest.raises(ValidationError):
        _job(max_pages=10_001)


# ------------------------------------------------------------------
# JobQueue
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_queue_runs_job_to_completion():
    async def handler(job):
        return {"url": job.url}

    queue = JobQueue(handler)
    await queue.start()
    job_id = await queue.enqueue(_job())
    record = await queue.wait(job_id, timeout=5)
    await queue.shutdown()

    assert record.status == JobStatus.COMPLETED
    assert record.result == {"url": ROOT}
    assert record.attempts == 1
    assert record.finished_at is not None
    assert not queue.running


@pytest.mark.asyncio
async def test_queue_retries_with_exponential_backoff():
    calls = 0

    async def handler(job):
        nonlocal calls
        calls += 1
        if calls < 3:
            raise Flaky("temporary")
        return "ok"

    sleep = Recorder()
    queue = JobQueue(handler, max_attempts=3, backoff_base=2.0, sleep=sleep)
    await queue.start()
    record = await queue.wait(await queue.enqueue(_job()), timeout=5)
    await queue.shutdown()

    assert record.status == JobStatus.COMPLETED
    assert record.attempts == 3
    assert record.error is None
    assert sleep.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_queue_fails_after_max_attempts_and_notifies_once():
    failures = []

    async def handler(job):
        raise Flaky("still down")

    async def on_failed(job, exc):
        failures.append((job.source_id, str(exc)))

    sleep = Recorder()
    queue = JobQueue(handler, max_attempts=3, backoff_base=1.0, on_failed=on_failed, sleep=sleep)
    await queue.start()
    record = await queue.wait(await queue.enqueue(_job()), timeout=5)
    await queue.shutdown()

    assert record.status == JobStatus.FAILED
    assert record.attempts == 3
    assert record.error == "still down"
    assert sleep.delays == [1.0, 2.0]
    assert failures == [("src-1", "still down")]


@pytest.mark.asyncio
async def test_queue_non_retryable_fails_immediately():
    async def handler(job):
        raise Fatal("bad seed")

    sleep = Recorder()
    queue = JobQueue(handler, max_attempts=5, sleep=sleep)
    await queue.start()
    record = await queue.wait(await queue.enqueue(_job()), timeout=5)
    await queue.shutdown()

    assert record.status == JobStatus.FAILED
    assert record.attempts == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_queue_rejects_duplicate_source():
    async def handler(job):
        return None

    queue = JobQueue(handler)
    await queue.enqueue(_job())
    assert queue.is_active("src-1")
    with pytest.raises(JobConflictError):
        await queue.enqueue(_job())

    await queue.start()
    await queue.wait("crawl-src-1", timeout=5)
    assert not queue.is_active("src-1")
    await queue.enqueue(_job())  # allowed again once finished
    await queue.shutdown()


@pytest.mark.asyncio
async def test_queue_wait_unknown_job():
    queue = JobQueue(lambda job: None)
    with pytest.raises(KeyError):
        await queue.wait("crawl-missing")


@pytest.mark.asyncio
async def test_queue_concurrency_limit():
    active = 0
    peak = 0
    release = asyncio.Event()

    async def handler(job):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1

    queue = JobQueue(handler, concurrency=2)
    await queue.start()
    ids = [await queue.enqueue(_job(f"s{i}")) for i in range(4)]
    await asyncio.sleep(0.05)
    assert peak == 2
    release.set()
    for job_id in ids:
        await queue.wait(job_id, timeout=5)
    await queue.shutdown()
    assert peak == 2


def test_queue_rejects_bad_settings():
    with pytest.raises(ValueError):
        JobQueue(lambda job: None, concurrency=0)
    with pytest.raises(ValueError):
        JobQueue(lambda job: None, max_attempts=0)


# ------------------------------------------------------------------
# RateLimiter
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rate_limiter_waits_for_window():
    now = [100.0]
    waits = []

    async def sleep(seconds):
        waits.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(2, 1.0, clock=lambda: now[0], sleep=sleep)
    await limiter.acquire()
    await limiter.acquire()
    assert waits == []
    await limiter.acquire()
    assert waits == [1.0]


def test_rate_limiter_rejects_bad_settings():
    with pytest.raises(ValueError):
        RateLimiter(0)
    with pytest.raises(ValueError):
        RateLimiter(1, per_seconds=0)


# ------------------------------------------------------------------
# CrawlWorker end to end
# ------------------------------------------------------------------


async def _crawl(storage, source, handler, config=None, channel=None, **options):
    queue, _worker = build_crawl_queue(
        storage,
        config or _config(),
        channel=channel,
        fetcher_factory=_fetcher_factory(handler),
        sleep=Recorder(),
    )
    job_id = await start_crawl(queue, storage, source, ROOT, **options)
    queued = await storage.get_source(source.id)
    await queue.start()
    try:
        record = await queue.wait(job_id, timeout=10)
    finally:
        await queue.shutdown()
    return record, queued


@pytest.mark.asyncio
async def test_crawl_respects_max_pages(storage, make_source):
    source = make_source()
    record, queued = await _crawl(storage, source, _site_handler(5), max_pages=3)

    stored = await storage.get_source(source.id)
    assert queued.status == "queued"
    assert record.status == JobStatus.COMPLETED
    assert stored.status == "ready"
    assert stored.chunk_count > 0
    assert stored.metadata["pages_crawled"] == 3
    assert stored.metadata["crawled_pages"] == [ROOT, f"{ROOT}/page-1", f"{ROOT}/page-2"]
    assert stored.metadata["discovered_links"] == [ROOT] + [f"{ROOT}/page-{i}" for i in range(1, 6)]
    assert stored.metadata["crawl_completed_at"]
    assert stored.metadata["used_browser_fallback"] is False


@pytest.mark.asyncio
async def test_crawl_page_failure_is_not_fatal(storage, make_source):
    source = make_source()
    handler = _site_handler(4, failing=frozenset({"/page-2"}))
    record, _ = await _crawl(storage, source, handler, max_pages=5)

    stored = await storage.get_source(source.id)
    chunks = await storage.list_chunks(source.id)
    assert record.status == JobStatus.COMPLETED
    assert stored.status == "ready"
    assert stored.metadata["crawl_errors"] == [{"url": f"{ROOT}/page-2", "error": "HTTP 500"}]
    assert {c.metadata["page_url"] for c in chunks} == {
        ROOT,
        f"{ROOT}/page-1",
        f"{ROOT}/page-3",
        f"{ROOT}/page-4",
    }
    assert stored.metadata["processed_pages"] == 4
    assert stored.metadata["pages_crawled"] == 5


@pytest.mark.asyncio
async def test_crawl_without_content_fails_after_retries(storage, make_source):
    source = make_source()
    handler = _site_handler(2, failing=frozenset({"/"}))
    record, _ = await _crawl(storage, source, handler, config=_config(max_attempts=2))

    stored = await storage.get_source(source.id)
    assert record.status == JobStatus.FAILED
    assert record.attempts == 2
    assert stored.status == "error"
    assert stored.error_message == NO_CONTENT_MESSAGE
    assert stored.metadata["crawl_progress"]["phase"] == "failed"


@pytest.mark.asyncio
async def test_crawl_invalid_seed_fails_without_retry(storage, make_source):
    source = make_source(origin="ftp://example.com")
    queue, _worker = build_crawl_queue(
        storage, _config(), fetcher_factory=_fetcher_factory(_site_handler(0)), sleep=Recorder()
    )
    job_id = await start_crawl(queue, storage, source, "ftp://example.com")
    await queue.start()
    record = await queue.wait(job_id, timeout=10)
    await queue.shutdown()

    stored = await storage.get_source(source.id)
    assert record.status == JobStatus.FAILED
    assert record.attempts == 1
    assert stored.status == "error"
    assert "scheme" in stored.error_message


@pytest.mark.asyncio
async def test_recrawl_is_idempotent(storage, make_source):
    source = make_source()
    await _crawl(storage, source, _site_handler(3), max_pages=10)
    first = await storage.list_chunks(source.id)
    await _crawl(storage, source, _site_handler(3), max_pages=10)
    second = await storage.list_chunks(source.id)

    assert len(first) == len(second)
    assert [c.content for c in first] == [c.content for c in second]
    assert [c.position for c in second] == list(range(len(second)))


@pytest.mark.asyncio
async def test_crawl_publishes_final_status(storage, make_source):
    source = make_source()
    channel = ProgressChannel()
    sub = channel.subscribe(crawl_topic(source.id))
    await _crawl(storage, source, _site_handler(1), channel=channel)
    sub.close()
    events = [event async for event in sub]

    assert events[0]["phase"] == "discovering"
    assert events[-1]["phase"] == "completed"
    assert events[-1]["status"] == "ready"
    assert events[-1]["total_chunks"] > 0


@pytest.mark.asyncio
async def test_worker_missing_source(storage):
    worker = CrawlWorker(storage, _config())
    with pytest.raises(SourceNotFoundError):
        await worker.process(_job("gone"))


@pytest.mark.asyncio
async def test_start_crawl_conflict(storage, make_source):
    source = make_source()
    queue = JobQueue(lambda job: None)
    await start_crawl(queue, storage, source, ROOT, max_pages=4, include_paths=["/docs"])
    with pytest.raises(JobConflictError):
        await start_crawl(queue, storage, source, ROOT)

    stored = await storage.get_source(source.id)
    assert stored.status == "queued"
    assert stored.metadata["max_pages"] == 4
    assert stored.metadata["include_paths"] == ["/docs"]
