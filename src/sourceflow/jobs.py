"""Crawl job queue and worker.

Jobs are keyed by source id: at most one job per source is queued or active
at any time. Failed attempts are retried with exponential backoff unless the
exception carries ``retryable = False``; a retry re-runs the whole crawl.

The queue is an explicit object: the entry point constructs it, calls
``start()`` and, on the way out, ``shutdown()``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from sourceflow.config import SourceflowConfig
from sourceflow.crawl.browser import browser_session
from sourceflow.crawl.controller import BrowserSession, CrawlOptions, Sleep
from sourceflow.crawl.fetcher import ContentFetcher, PageFetcher
from sourceflow.crawl.orchestrator import PageHook, ProgressiveCrawlOrchestrator
from sourceflow.db.metadata import CrawlProgress
from sourceflow.db.models import Source, utc_now
from sourceflow.db.storage import Storage
from sourceflow.events import ProgressChannel, crawl_topic
from sourceflow.ingest.persistence import PersistenceError, chunker_for

logger = logging.getLogger(__name__)

NO_CONTENT_MESSAGE = "No valid pages found to process"


# ------------------------------------------------------------------
# Exceptions
# ------------------------------------------------------------------


class JobConflictError(RuntimeError):
    """A job for the same source is already queued or running."""


class NoContentError(RuntimeError):
    """The crawl finished but no page produced any content."""

    retryable = True

    def __init__(self, message: str = NO_CONTENT_MESSAGE) -> None:
        super().__init__(message)


class SourceNotFoundError(LookupError):
    """The job's source row no longer exists."""

    retryable = False


# ------------------------------------------------------------------
# Models
# ------------------------------------------------------------------


class JobStatus(str, Enum):
    """Lifecycle state of a crawl job."""

    ENQUEUED = "enqueued"
    ACTIVE = "active"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class CrawlJob(BaseModel):
    """Everything a worker needs to crawl one website source."""

    source_id: str
    agent_id: str
    project_id: str
    url: str
    crawl_subpages: bool = True
    max_pages: int = Field(default=10, ge=1, le=10_000)
    include_paths: list[str] = Field(default_factory=list)
    exclude_paths: list[str] = Field(default_factory=list)
    slow: bool = False
    full_page_content: bool = False

    @property
    def job_id(self) -> str:
        return f"crawl-{self.source_id}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord(BaseModel):
    """Queue-side view of a job and its attempts."""

    id: str
    job: CrawlJob
    status: JobStatus = JobStatus.ENQUEUED
    attempts: int = 0
    error: str | None = None
    result: Any = None
    created_at: datetime = Field(default_factory=_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def done(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


# ------------------------------------------------------------------
# Rate limiting
# ------------------------------------------------------------------


class RateLimiter:
    """Allow at most *max_starts* acquisitions per sliding *per_seconds* window."""

    def __init__(
        self,
        max_starts: int,
        per_seconds: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_starts < 1:
            raise ValueError("max_starts must be >= 1")
        if per_seconds <= 0:
            raise ValueError("per_seconds must be > 0")
        self.max_starts = max_starts
        self.per_seconds = per_seconds
        self._clock = clock
        self._sleep = sleep
        self._starts: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._starts and now - self._starts[0] >= self.per_seconds:
                    self._starts.popleft()
                if len(self._starts) < self.max_starts:
                    self._starts.append(now)
                    return
                await self._sleep(self.per_seconds - (now - self._starts[0]))


# ------------------------------------------------------------------
# Queue
# ------------------------------------------------------------------

Handler = Callable[[CrawlJob], Awaitable[Any]]
FailureHandler = Callable[[CrawlJob, BaseException], Awaitable[None]]


class JobQueue:
    """In-memory async job queue with a fixed pool of worker tasks.

    Args:
        handler: Coroutine run for each attempt of a job.
        concurrency: Number of jobs processed at once.
        max_attempts: Attempts per job before it fails for good.
        backoff_base: Delay before the first retry, in seconds; doubles for
            each further retry.
        rate_limiter: Optional cap on how fast attempts may start.
        on_failed: Coroutine called once when a job fails terminally.
        sleep: Backoff sleep coroutine (tests pass a recorder).
    """

    def __init__(
        self,
        handler: Handler,
        *,
        concurrency: int = 2,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        rate_limiter: RateLimiter | None = None,
        on_failed: FailureHandler | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._handler = handler
        self.concurrency = concurrency
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self._rate_limiter = rate_limiter
        self._on_failed = on_failed
        self._sleep = sleep

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._records: dict[str, JobRecord] = {}
        self._done_events: dict[str, asyncio.Event] = {}
        self._workers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        """Spawn the worker tasks. Calling twice is a no-op."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"crawl-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("JobQueue started with %d workers", self.concurrency)

    async def shutdown(self, *, wait: bool = True) -> None:
        """Stop the workers, first letting queued jobs finish when *wait*."""
        if wait:
            await self._queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("JobQueue stopped")

    def is_active(self, source_id: str) -> bool:
        """True if a job for *source_id* is queued, running, or backing off."""
        record = self._records.get(f"crawl-{source_id}")
        return record is not None and not record.done

    async def enqueue(self, job: CrawlJob) -> str:
        """Queue *job* and return its id.

        Raises:
            JobConflictError: If a job for the same source is not finished.
        """
        if self.is_active(job.source_id):
            raise JobConflictError(f"A crawl for source {job.source_id} is already in progress")
        record = JobRecord(id=job.job_id, job=job)
        self._records[record.id] = record
        self._done_events[record.id] = asyncio.Event()
        self._queue.put_nowait(record.id)
        logger.info("Job %s enqueued for %s", record.id, job.url)
        return record.id

    def get(self, job_id: str) -> JobRecord | None:
        return self._records.get(job_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> JobRecord:
        """Wait until *job_id* completes or fails for good.

        Raises:
            KeyError: If the job is unknown.
            TimeoutError: If *timeout* elapses first.
        """
        if job_id not in self._records:
            raise KeyError(job_id)
        await asyncio.wait_for(self._done_events[job_id].wait(), timeout)
        return self._records[job_id]

    async def _worker(self, index: int) -> None:
        while True:
            job_id = await self._queue.get()
            record = self._records[job_id]
            try:
                await self._run(record)
            except Exception as exc:
                logger.exception("Worker %d crashed on job %s", index, job_id)
                record.status = JobStatus.FAILED
                record.error = record.error or str(exc)
                record.finished_at = _now()
            finally:
                self._done_events[job_id].set()
                self._queue.task_done()

    async def _run(self, record: JobRecord) -> None:
        while True:
            if self._rate_limiter is not None:
                await self._rate_limiter.acquire()
            record.attempts += 1
            record.status = JobStatus.ACTIVE
            record.started_at = _now()
            logger.info("Job %s attempt %d/%d", record.id, record.attempts, self.max_attempts)
            try:
                record.result = await self._handler(record.job)
            except Exception as exc:
                record.error = str(exc) or type(exc).__name__
                retryable = getattr(exc, "retryable", True)
                if not retryable or record.attempts >= self.max_attempts:
                    record.status = JobStatus.FAILED
                    record.finished_at = _now()
                    logger.error(
                        "Job %s failed after %d attempt(s): %s",
                        record.id,
                        record.attempts,
                        record.error,
                    )
                    await self._notify_failed(record, exc)
                    return
                delay = self.backoff_base * 2 ** (record.attempts - 1)
                record.status = JobStatus.RETRYING
                logger.warning(
                    "Job %s attempt %d failed (%s); retrying in %.1fs",
                    record.id,
                    record.attempts,
                    record.error,
                    delay,
                )
                await self._sleep(delay)
                continue
            record.status = JobStatus.COMPLETED
            record.error = None
            record.finished_at = _now()
            logger.info("Job %s completed", record.id)
            return

    async def _notify_failed(self, record: JobRecord, exc: BaseException) -> None:
        if self._on_failed is None:
            return
        try:
            await self._on_failed(record.job, exc)
        except Exception:
            logger.exception("Failure handler raised for job %s", record.id)


# ------------------------------------------------------------------
# Worker
# ------------------------------------------------------------------

FetcherFactory = Callable[[CrawlJob], AbstractAsyncContextManager[PageFetcher]]


class CrawlWorker:
    """Run one crawl job end to end and keep the source row in step.

    Args:
        storage: Async storage.
        config: Loaded configuration (crawl + chunker settings).
        channel: Progress channel; optional.
        fetcher_factory: Builds the HTTP fetcher for a job. Defaults to a
            ContentFetcher configured from ``config.crawl``.
        browser_session_factory: Builds the browser fallback session for a
            job. Defaults to a playwright pool; None-returning factories
            disable the fallback.
        on_page_complete: Hook passed to the orchestrator.
        sleep: Politeness-delay coroutine.
    """

    def __init__(
        self,
        storage: Storage,
        config: SourceflowConfig,
        *,
        channel: ProgressChannel | None = None,
        fetcher_factory: FetcherFactory | None = None,
        browser_session_factory: Callable[[CrawlJob], BrowserSession | None] | None = None,
        on_page_complete: PageHook | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._config = config
        self._channel = channel
        self._fetcher_factory = fetcher_factory or self._default_fetcher
        self._browser_session_factory = browser_session_factory or self._default_browser_session
        self._on_page_complete = on_page_complete
        self._sleep = sleep

    def _default_fetcher(self, job: CrawlJob) -> ContentFetcher:
        crawl = self._config.crawl
        return ContentFetcher(
            timeout=crawl.timeout,
            user_agent=crawl.user_agent,
            allow_private_addresses=crawl.allow_private_addresses,
            full_page_content=job.full_page_content,
        )

    def _default_browser_session(self, job: CrawlJob) -> BrowserSession | None:
        crawl = self._config.crawl
        if not crawl.browser_fallback:
            return None

        def factory() -> AbstractAsyncContextManager[PageFetcher]:
            return browser_session(
                max_browsers=crawl.max_browsers,
                timeout=crawl.timeout,
                user_agent=crawl.user_agent,
                allow_private_addresses=crawl.allow_private_addresses,
                full_page_content=job.full_page_content,
            )

        return factory

    async def process(self, job: CrawlJob) -> dict[str, Any]:
        """Crawl the job's site into its source. Returns the final metadata.

        Raises:
            SourceNotFoundError: If the source row is gone.
            CrawlFailedError: If the seed URL is unusable.
            PersistenceError: If chunks cannot be written.
            NoContentError: If no page yielded content.
        """
        source = await self._storage.get_source(job.source_id)
        if source is None:
            raise SourceNotFoundError(f"Source {job.source_id} not found")

        options = CrawlOptions.from_config(
            self._config.crawl,
            max_pages=job.max_pages,
            crawl_subpages=job.crawl_subpages,
            include_paths=list(job.include_paths),
            exclude_paths=list(job.exclude_paths),
            slow=job.slow,
        )
        await self._begin(source, job)

        async with self._fetcher_factory(job) as fetcher:
            orchestrator = ProgressiveCrawlOrchestrator(
                self._storage,
                source,
                fetcher,
                browser_session=self._browser_session_factory(job),
                chunker=chunker_for("website", self._config.chunkers),
                channel=self._channel,
                on_page_complete=self._on_page_complete,
                sleep=self._sleep,
            )
            totals = await orchestrator.run(job.url, options)

        controller = orchestrator.controller
        assert controller is not None
        if not totals.processed_urls:
            raise NoContentError()

        crawl_errors = [
            {"url": page.url, "error": page.error}
            for page in controller.pages.values()
            if page.error
        ]
        final = {
            "url": job.url,
            "crawl_subpages": job.crawl_subpages,
            "max_pages": job.max_pages,
            "pages_crawled": len(controller.pages),
            "crawled_pages": list(totals.processed_urls),
            "discovered_links": controller.discovered_urls,
            "crawl_errors": crawl_errors,
            "total_chunks": totals.chunks,
            "processed_pages": len(totals.processed_urls),
            "used_browser_fallback": controller.used_browser_fallback,
            "crawl_completed_at": utc_now(),
        }
        await self._best_effort_update(
            source.id,
            status="ready",
            error_message=None,
            size_kb=totals.size_kb,
            metadata=final,
        )
        self._publish(
            source.id,
            {
                "phase": "completed",
                "status": "ready",
                "pages_processed": totals.pages_processed,
                "total_chunks": totals.chunks,
            },
        )
        logger.info(
            "Crawl of %s finished: %d pages, %d chunks, %d errors",
            job.url,
            len(controller.pages),
            totals.chunks,
            len(crawl_errors),
        )
        return final

    async def fail(self, job: CrawlJob, exc: BaseException) -> None:
        """Record a terminal failure on the source and announce it."""
        message = str(exc) or type(exc).__name__
        progress = CrawlProgress(phase="failed", total=job.max_pages, error=message)
        await self._best_effort_update(
            job.source_id,
            status="error",
            error_message=message,
            metadata={"crawl_progress": progress.model_dump(mode="json")},
        )
        self._publish(job.source_id, {"phase": "failed", "status": "error", "error": message})

    async def _begin(self, source: Source, job: CrawlJob) -> None:
        """Move the source to processing, reset progress and clear old chunks."""
        progress = CrawlProgress(phase="discovering", total=job.max_pages, current_url=job.url)
        await self._best_effort_update(
            source.id,
            status="processing",
            error_message=None,
            metadata={
                "url": job.url,
                "crawl_subpages": job.crawl_subpages,
                "max_pages": job.max_pages,
                "include_paths": list(job.include_paths),
                "exclude_paths": list(job.exclude_paths),
                "crawl_progress": progress.model_dump(mode="json"),
                "crawl_started_at": utc_now(),
                "crawl_errors": [],
                "crawled_pages": [],
                "processed_pages": 0,
                "total_chunks": 0,
            },
        )
        try:
            await self._storage.delete_chunks(source.id)
            await self._storage.update_source(source.id, chunk_count=0, size_kb=0.0)
        except Exception as exc:
            raise PersistenceError(f"Failed to clear chunks of source {source.id}: {exc}") from exc

    async def _best_effort_update(self, source_id: str, **fields: Any) -> None:
        try:
            await self._storage.update_source(source_id, **fields)
        except Exception:
            logger.warning("Status update for source %s failed", source_id, exc_info=True)

    def _publish(self, source_id: str, payload: dict[str, Any]) -> None:
        if self._channel is not None:
            self._channel.publish(crawl_topic(source_id), {"source_id": source_id, **payload})


# ------------------------------------------------------------------
# Entry points
# ------------------------------------------------------------------


def build_crawl_queue(
    storage: Storage,
    config: SourceflowConfig,
    *,
    channel: ProgressChannel | None = None,
    **worker_kwargs: Any,
) -> tuple[JobQueue, CrawlWorker]:
    """Wire a CrawlWorker into a JobQueue configured from ``config.queue``."""
    worker = CrawlWorker(storage, config, channel=channel, **worker_kwargs)
    q = config.queue
    queue = JobQueue(
        worker.process,
        concurrency=q.concurrency,
        max_attempts=q.max_attempts,
        backoff_base=q.backoff_base,
        rate_limiter=RateLimiter(q.max_starts_per_second, 1.0),
        on_failed=worker.fail,
    )
    return queue, worker


async def start_crawl(
    queue: JobQueue,
    storage: Storage,
    source: Source,
    url: str,
    *,
    crawl_subpages: bool = True,
    max_pages: int = 10,
    include_paths: Sequence[str] = (),
    exclude_paths: Sequence[str] = (),
    slow: bool = False,
    full_page_content: bool = False,
) -> str:
    """Mark *source* as queued and enqueue a crawl of *url* for it.

    Returns:
        The job id (``crawl-<source_id>``).

    Raises:
        JobConflictError: If a crawl for this source is already pending.
        pydantic.ValidationError: If *max_pages* is outside 1..10000.
    """
    job = CrawlJob(
        source_id=source.id,
        agent_id=source.agent_id,
        project_id=source.project_id,
        url=url,
        crawl_subpages=crawl_subpages,
        max_pages=max_pages,
        include_paths=list(include_paths),
        exclude_paths=list(exclude_paths),
        slow=slow,
        full_page_content=full_page_content,
    )
    if queue.is_active(source.id):
        raise JobConflictError(f"A crawl for source {source.id} is already in progress")
    await storage.update_source(
        source.id,
        status="queued",
        error_message=None,
        metadata={
            "url": url,
            "crawl_subpages": crawl_subpages,
            "max_pages": max_pages,
            "include_paths": list(include_paths),
            "exclude_paths": list(exclude_paths),
            "slow": slow,
            "full_page_content": full_page_content,
        },
    )
    return await queue.enqueue(job)
