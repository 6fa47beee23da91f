"""Progressive crawl: persist each page's chunks as soon as it is fetched.

The orchestrator consumes the controller's event stream. For every event it
publishes a progress payload and mirrors the snapshot into the source's
``metadata.crawl_progress``; for every completed page with content it appends
chunks, so a crawl that later fails still leaves its earlier pages queryable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sourceflow.crawl.controller import BrowserSession, CrawlController, CrawlOptions, Sleep
from sourceflow.crawl.fetcher import PageFetcher, PageResult
from sourceflow.db.metadata import CrawlProgress
from sourceflow.db.models import Source, utc_now
from sourceflow.db.storage import Storage
from sourceflow.events import ProgressChannel, crawl_topic
from sourceflow.ingest.chunker import TextChunker
from sourceflow.ingest.persistence import ChunkWriter, chunker_for

logger = logging.getLogger(__name__)

PageHook = Callable[[PageResult, int], Awaitable[Any]]


@dataclass
class CrawlTotals:
    chunks: int = 0
    size_kb: float = 0.0
    pages_processed: int = 0
    processed_urls: list[str] = field(default_factory=list)


class ProgressiveCrawlOrchestrator:
    """Crawl a site for *source* and append chunks page by page.

    Args:
        storage: Async storage for chunks and source updates.
        source: The website source being crawled.
        fetcher: HTTP page fetcher.
        browser_session: Optional browser fallback factory (see CrawlController).
        chunker: Chunker for page text; defaults to the website chunker.
        writer: Chunk writer; defaults to one over *storage*.
        channel: Progress pub/sub channel; events are dropped when None.
        on_page_complete: Coroutine called with (page, chunk_count) after a
            page's chunks are stored. Runs in the background; failures are
            logged and never abort the crawl.
        sleep: Politeness-delay coroutine passed to the controller.
    """

    def __init__(
        self,
        storage: Storage,
        source: Source,
        fetcher: PageFetcher,
        *,
        browser_session: BrowserSession | None = None,
        chunker: TextChunker | None = None,
        writer: ChunkWriter | None = None,
        channel: ProgressChannel | None = None,
        on_page_complete: PageHook | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self.source = source
        self._fetcher = fetcher
        self._browser_session = browser_session
        self._chunker = chunker or chunker_for("website")
        self._writer = writer or ChunkWriter(storage)
        self._channel = channel
        self._on_page_complete = on_page_complete
        self._sleep = sleep
        self.controller: CrawlController | None = None

        self._page_positions: dict[str, list[int]] = {}
        self._page_bytes: dict[str, int] = {}
        self._hook_tasks: list[asyncio.Task[None]] = []

    async def run(self, root_url: str, options: CrawlOptions) -> CrawlTotals:
        """Crawl *root_url* and return running totals at the end.

        Raises:
            CrawlFailedError: If the controller cannot start the crawl.
            PersistenceError: If storing a page's chunks fails.
        """
        self.controller = CrawlController(
            self._fetcher,
            options,
            browser_session=self._browser_session,
            sleep=self._sleep,
        )
        totals = CrawlTotals()
        try:
            async for event in self.controller.crawl(root_url):
                page = event.completed_page
                if page is not None and page.ok:
                    await self._store_page(page, root_url, totals)
                totals.pages_processed = event.pages_processed
                await self._report(event)
        finally:
            await self._drain_hooks()
        return totals

    async def _store_page(self, page: PageResult, root_url: str, totals: CrawlTotals) -> None:
        previous = self._page_positions.pop(page.url, None)
        if previous:
            # A browser re-render supersedes the page's earlier chunks.
            await self._writer.remove_positions(self.source, previous)

        positions = await self._writer.append_positions(
            self.source,
            page.content,
            self._chunker,
            {
                "page_url": page.url,
                "page_title": page.title or None,
                "root_url": root_url,
                "depth": page.depth,
                "crawl_timestamp": utc_now(),
            },
        )
        self._page_positions[page.url] = positions
        self._page_bytes[page.url] = len(page.content.encode("utf-8"))
        if page.url not in totals.processed_urls:
            totals.processed_urls.append(page.url)

        totals.chunks = sum(len(p) for p in self._page_positions.values())
        totals.size_kb = round(sum(self._page_bytes.values()) / 1024, 2)
        logger.info("Stored %d chunks for %s", len(positions), page.url)

        await self._best_effort_update(
            size_kb=totals.size_kb,
            metadata={
                "processed_pages": len(totals.processed_urls),
                "total_chunks": totals.chunks,
            },
        )
        if self._on_page_complete is not None:
            self._hook_tasks.append(
                asyncio.create_task(self._run_hook(page, len(positions)))
            )

    async def _report(self, event: CrawlProgress) -> None:
        snapshot = event.model_dump(mode="json")
        if self._channel is not None:
            self._channel.publish(
                crawl_topic(self.source.id), {"source_id": self.source.id, **snapshot}
            )
        await self._best_effort_update(metadata={"crawl_progress": snapshot})

    async def _best_effort_update(self, **fields: Any) -> None:
        try:
            await self._storage.update_source(self.source.id, **fields)
        except Exception:
            logger.warning("Progress update for source %s failed", self.source.id, exc_info=True)

    async def _run_hook(self, page: PageResult, chunk_count: int) -> None:
        assert self._on_page_complete is not None
        try:
            await self._on_page_complete(page, chunk_count)
        except Exception:
            logger.exception("on_page_complete hook failed for %s", page.url)

    async def _drain_hooks(self) -> None:
        if self._hook_tasks:
            await asyncio.gather(*self._hook_tasks, return_exceptions=True)
            self._hook_tasks.clear()
