"""
Crawl Scheduler
===============
Bounded-concurrency batch loop over the ``Frontier``.

Loop:

1. ``dispatch(max_concurrent)`` from the frontier
2. Run every item of the batch concurrently (``asyncio.gather``)
3. Periodic snapshot, inter-batch delay, repeat
4. Stop when the frontier is empty (``stop_when_empty``) or on shutdown;
   otherwise idle and re-read the on-disk snapshot every ``idle_poll_interval``

Per item:

- HTTP 200/304 → extract, term-match, stage for AI, admit links at depth+1
- HTTP 403/404/429/502/503/504, timeouts, ``net::`` and navigation
  errors → marked visited, no retry
- Anything else → retried with a linear delay, then marked visited

Only ``PersistenceError`` escapes a page task; it ends the run.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional
from urllib.parse import urlsplit

from playwright.async_api import TimeoutError as PlaywrightTimeout

from .ai_queue import AIQueueStore
from .browser import PageLoadConfig
from .errors import CrawlerError, NavigationError, PageSkip, PersistenceError
from .extractor import ContentExtractor
from .frontier import Frontier, URLItem
from .monitor import CrawlMetrics, CrawlMonitor
from .terms import TermMatcher
from .utils import clean_error_message, linear_delay

logger = logging.getLogger(__name__)

OK_STATUSES = frozenset([200, 304])
SKIP_STATUSES = frozenset([403, 404, 429, 502, 503, 504])

_TRANSIENT_MARKERS = ("timeout", "net::", "navigation")


def is_transient_error(exc: BaseException) -> bool:
    """Timeout, network and navigation failures: skip the URL, do not retry."""
    if isinstance(exc, (PlaywrightTimeout, NavigationError, asyncio.TimeoutError)):
        return True
    if isinstance(exc, CrawlerError):
        return False
    message = clean_error_message(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class CrawlScheduler:
    """
    Usage::

        scheduler = CrawlScheduler(frontier, browser, ContentExtractor(),
                                   TermMatcher(), ai_queue, max_depth=3)
        metrics = await scheduler.run(start_url="https://example.edu/")

    ``browser`` is anything with ``start()``, ``close()`` and an async
    ``session(config)`` context manager yielding a ``BrowserSession``-like
    object (``load``, ``content``, ``title``, ``extract_links``).
    """

    def __init__(
        self,
        frontier: Frontier,
        browser,
        extractor: ContentExtractor,
        matcher: TermMatcher,
        ai_queue: AIQueueStore,
        *,
        max_depth: int = 3,
        max_concurrent: int = 3,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        batch_delay: float = 1.0,
        stop_when_empty: bool = True,
        idle_poll_interval: float = 30.0,
        page_config_for: Optional[Callable[[str], PageLoadConfig]] = None,
        monitor: Optional[CrawlMonitor] = None,
    ):
        self.frontier = frontier
        self.browser = browser
        self.extractor = extractor
        self.matcher = matcher
        self.ai_queue = ai_queue

        self.max_depth = max_depth
        self.max_concurrent = max(1, max_concurrent)
        self.max_retries = max(0, max_retries)
        self.retry_delay = retry_delay
        self.batch_delay = batch_delay
        self.stop_when_empty = stop_when_empty
        self.idle_poll_interval = idle_poll_interval
        self.page_config_for = page_config_for or (lambda host: PageLoadConfig())
        self.monitor = monitor or CrawlMonitor(frontier.stats)

        self._stopping = False
        self._shutdown_done = False
        self._wake = asyncio.Event()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Finish the in-flight batch, then stop. Repeated calls are harmless."""
        if not self._stopping:
            logger.info("[CRAWL] Shutdown requested, draining current batch")
        self._stopping = True
        self._wake.set()

    @property
    def stopping(self) -> bool:
        return self._stopping

    async def _sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self, start_url: Optional[str] = None) -> CrawlMetrics:
        """
        Restore the frontier, seed *start_url* on a fresh start, and crawl.

        Raises:
            PersistenceError: a snapshot could not be written.
        """
        self.frontier.restore()
        if start_url and not self.frontier.has_pending():
            if self.frontier.admit(start_url, 0):
                logger.info(f"[CRAWL] Seeded start URL: {start_url}")

        await self.monitor.start()
        stop_reason = "completed"
        try:
            stop_reason = await self._loop()
        except PersistenceError as e:
            stop_reason = f"Persistence failure: {e}"
            raise
        finally:
            await self.shutdown(stop_reason)

        metrics = await self.monitor.snapshot()
        logger.info("\n" + self.monitor.format_summary(metrics))
        return metrics

    async def _loop(self) -> str:
        while not self._stopping:
            if not self.frontier.has_pending():
                if self.stop_when_empty:
                    logger.info("[CRAWL] Queue is empty, stopping crawler")
                    return "Queue exhausted"
                await self._idle()
                continue

            batch = self.frontier.dispatch(self.max_concurrent)
            logger.info(f"[CRAWL] Processing batch of {len(batch)} URLs")
            results = await asyncio.gather(
                *(self._process_item(item) for item in batch),
                return_exceptions=True,
            )
            for item, result in zip(batch, results):
                if isinstance(result, PersistenceError):
                    raise result
                if isinstance(result, BaseException):
                    logger.error(f"[CRAWL] Unexpected error on {item.url}: {clean_error_message(result)}")
                    self.frontier.fail(item.url)

            await self.monitor.record_batch()
            self.frontier.maybe_persist()
            logger.info(f"[CRAWL] Batch complete. Queue size: {len(self.frontier)}")

            if not self._stopping:
                await self._sleep(self.batch_delay)
        return "Shutdown requested"

    async def _idle(self) -> None:
        """Nothing queued: persist, wait, then pick up any externally re-seeded snapshot."""
        self.frontier.persist()
        logger.info(f"[CRAWL] Queue is empty, polling again in {self.idle_poll_interval}s")
        await self._sleep(self.idle_poll_interval)
        if not self._stopping:
            self.frontier.restore()

    # ------------------------------------------------------------------
    # Per-item processing
    # ------------------------------------------------------------------

    async def _process_item(self, item: URLItem) -> None:
        url = item.url
        if self.frontier.is_visited(url):
            logger.debug(f"[CRAWL] Skipping already visited URL: {url}")
            self.frontier.fail(url)
            return
        if self._stopping:
            # left in progress; restore() re-queues it next run
            return

        config = self.page_config_for(urlsplit(url).hostname or "")
        attempt = 0
        while True:
            try:
                await self._crawl_page(item, config)
                await self.monitor.record_page("ok")
                return
            except PageSkip as e:
                logger.warning(f"[CRAWL] Received status {e.status} for {url}, marking as visited to skip")
                self.frontier.complete(url)
                await self.monitor.record_page("skipped")
                return
            except PersistenceError:
                raise
            except Exception as e:
                message = clean_error_message(e)
                if is_transient_error(e):
                    logger.warning(f"[CRAWL] {message} on {url}, marking as visited to skip")
                    self.frontier.complete(url)
                    await self.monitor.record_page("skipped")
                    return
                if attempt < self.max_retries and not self._stopping:
                    attempt += 1
                    logger.warning(f"[CRAWL] Error processing {url}: {message}. Retrying (attempt {attempt})")
                    await self.monitor.record_retry()
                    await self._sleep(linear_delay(self.retry_delay, attempt))
                    continue
                if self._stopping:
                    logger.info(f"[CRAWL] Leaving {url} for the next run")
                    return
                logger.error(f"[CRAWL] Failed to process {url} after {attempt} retries: {message}")
                self.frontier.complete(url)
                await self.monitor.record_page("failed")
                return

    async def _crawl_page(self, item: URLItem, config: PageLoadConfig) -> None:
        url = item.url
        logger.debug(f"[CRAWL] Processing page: {url} at depth {item.depth}")
        async with self.browser.session(config) as session:
            result = await session.load(url)
            logger.debug(f"[CRAWL] Received HTTP {result.status} from {url}")
            if result.status in SKIP_STATUSES:
                raise PageSkip(url, result.status)
            if result.status not in OK_STATUSES:
                raise CrawlerError(f"HTTP {result.status} received for {url}")

            html = await session.content()
            title = await session.title()
            content = self.extractor.extract(html)
            logger.debug(
                f"[CRAWL] Extracted {content.length} chars from {url} "
                f"(title={title!r}, preview={content.preview!r})"
            )

            matches = self.matcher.search(content.text)
            if matches:
                if self.ai_queue.stage(url, content.text, title, matches):
                    await self.monitor.record_staged()

            if item.depth < self.max_depth:
                links: List[str] = await session.extract_links()
                admitted = sum(1 for link in links if self.frontier.admit(link, item.depth + 1))
                await self.monitor.record_links(admitted)
                logger.debug(f"[CRAWL] Queued {admitted} of {len(links)} links from {url}")

        self.frontier.complete(url)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def shutdown(self, reason: str = "completed") -> None:
        """Final snapshot, release the browser once, stop the monitor."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self._stopping = True
        logger.info("[CRAWL] Shutting down crawler...")
        await self.monitor.stop(reason)
        try:
            logger.info("[CRAWL] Saving final crawler state...")
            self.frontier.persist()
        finally:
            try:
                await self.browser.close()
            except Exception as e:
                logger.error(f"[CRAWL] Error closing browser: {clean_error_message(e)}")
        logger.info("[CRAWL] Crawler shutdown complete")
