"""
Crawl Monitor
=============
Counters for the crawl scheduler plus a periodic state-size reporter.

Tracks:
- Pages ok / skipped / failed / retried
- Links admitted to the frontier, pages staged for AI review
- Frontier sizes (visited, queued, in progress) every ``report_interval`` seconds

All counter updates take an asyncio.Lock so page tasks in one batch can
record concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

_REPORT_INTERVAL_SEC = 10.0


@dataclass
class CrawlMetrics:
    """Snapshot of the crawl counters at a point in time."""
    pages_ok: int = 0
    pages_skipped: int = 0
    pages_failed: int = 0
    pages_retried: int = 0
    links_admitted: int = 0
    pages_staged: int = 0
    batches: int = 0

    visited: int = 0
    queued: int = 0
    in_progress: int = 0

    elapsed_sec: float = 0.0
    stop_reason: str = ""


class CrawlMonitor:
    """
    Usage::

        monitor = CrawlMonitor(frontier.stats)
        await monitor.start()
        await monitor.record_page("ok")
        ...
        await monitor.stop("completed")
        logger.info(monitor.format_summary(await monitor.snapshot()))
    """

    def __init__(self, frontier_stats: Optional[Callable[[], dict]] = None,
                 report_interval: float = _REPORT_INTERVAL_SEC):
        self._lock = asyncio.Lock()
        self._frontier_stats = frontier_stats
        self._report_interval = report_interval
        self._start_time: float = 0.0

        self._pages_ok = 0
        self._pages_skipped = 0
        self._pages_failed = 0
        self._pages_retried = 0
        self._links_admitted = 0
        self._pages_staged = 0
        self._batches = 0

        self._reporter_task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_reason = ""

    async def start(self) -> None:
        """Start the clock and the periodic reporter."""
        self._start_time = time.monotonic()
        self._running = True
        if self._report_interval > 0:
            self._reporter_task = asyncio.create_task(self._reporter_loop())

    async def stop(self, reason: str = "completed") -> None:
        self._running = False
        self._stop_reason = reason
        if self._reporter_task:
            self._reporter_task.cancel()
            try:
                await self._reporter_task
            except asyncio.CancelledError:
                pass
            self._reporter_task = None

    async def record_page(self, status: str) -> None:
        """*status* is one of ``ok``, ``skipped``, ``failed``."""
        async with self._lock:
            if status == "ok":
                self._pages_ok += 1
            elif status == "skipped":
                self._pages_skipped += 1
            else:
                self._pages_failed += 1

    async def record_retry(self) -> None:
        async with self._lock:
            self._pages_retried += 1

    async def record_links(self, count: int) -> None:
        async with self._lock:
            self._links_admitted += count

    async def record_staged(self) -> None:
        async with self._lock:
            self._pages_staged += 1

    async def record_batch(self) -> None:
        async with self._lock:
            self._batches += 1

    async def snapshot(self) -> CrawlMetrics:
        async with self._lock:
            elapsed = time.monotonic() - self._start_time if self._start_time else 0.0
            sizes = self._frontier_stats() if self._frontier_stats else {}
            return CrawlMetrics(
                pages_ok=self._pages_ok,
                pages_skipped=self._pages_skipped,
                pages_failed=self._pages_failed,
                pages_retried=self._pages_retried,
                links_admitted=self._links_admitted,
                pages_staged=self._pages_staged,
                batches=self._batches,
                visited=sizes.get("visited", 0),
                queued=sizes.get("queued", 0),
                in_progress=sizes.get("in_progress", 0),
                elapsed_sec=round(elapsed, 2),
                stop_reason=self._stop_reason,
            )

    async def _reporter_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._report_interval)
            if not self._running:
                break
            try:
                m = await self.snapshot()
                logger.info(
                    f"[MONITOR] "
                    f"state: {m.visited} visited, {m.queued} queued, {m.in_progress} in progress | "
                    f"ok={m.pages_ok} skip={m.pages_skipped} fail={m.pages_failed} "
                    f"staged={m.pages_staged} elapsed={m.elapsed_sec:.0f}s"
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.debug(f"[MONITOR] Reporter error: {e}")

    def format_summary(self, metrics: CrawlMetrics) -> str:
        """Human-readable end-of-run summary."""
        lines = [
            "=" * 65,
            "  CRAWL SUMMARY",
            "=" * 65,
            f"  Pages crawled:       {metrics.pages_ok}",
            f"  Pages skipped:       {metrics.pages_skipped} (blocked status/timeout/network)",
            f"  Pages failed:        {metrics.pages_failed}",
            f"  Retries:             {metrics.pages_retried}",
            f"  Batches:             {metrics.batches}",
            "-" * 65,
            f"  Links admitted:      {metrics.links_admitted}",
            f"  Staged for AI:       {metrics.pages_staged}",
            "-" * 65,
            f"  Visited:             {metrics.visited}",
            f"  Still queued:        {metrics.queued}",
            "-" * 65,
            f"  Elapsed time:        {metrics.elapsed_sec:.1f} s",
            f"  Stop reason:         {metrics.stop_reason}",
            "=" * 65,
        ]
        return "\n".join(lines)
