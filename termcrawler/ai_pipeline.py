"""
AI Queue Pipeline
=================
Sequential consumer of ``ai_queue.json``: one classification call in
flight at a time.

Per item:

1. Record it as ``lastProcessed`` (crash-safe resume point)
2. Classify, pacing requests ``request_delay`` seconds apart
3. Positive → MatchRecorder + processed; negative → processed;
   other failure → ``retry_count += 1``, permanently failed past the budget

Rate limits take a separate path and never consume an item's retry budget:

- In-call: bounded exponential backoff (``max_retries`` attempts, capped)
- Each one bumps a pipeline-wide consecutive counter; at the threshold the
  call escalates straight away
- Escalation pauses the whole pipeline for an exponentially growing cooldown
- When the cooldown budget runs out the pipeline saves its state and raises
  ``PipelineHalted`` instead of retrying forever
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .ai_queue import AIProcessingState, AIQueueItem, AIQueueStore
from .errors import ClassifierError, PipelineHalted, RateLimitError
from .match_recorder import MatchRecord, MatchRecorder
from .utils import Backoff, clean_error_message

logger = logging.getLogger(__name__)

_DEFAULTS = {
    "request_delay": 2.0,
    "max_retries": 3,
    "backoff_base": 1.0,
    "backoff_cap": 30.0,
    "rate_limit_threshold": 3,
    "cooldown_base": 60.0,
    "cooldown_cap": 900.0,
    "max_cooldown_attempts": 3,
    "max_queue_retries": 3,
    "poll_interval": 30.0,
}


def backoff_delay(attempt: int, base: float = _DEFAULTS["backoff_base"],
                  cap: float = _DEFAULTS["backoff_cap"]) -> float:
    """In-call wait before retry *attempt* (0-indexed): ``base * 2**attempt``, capped."""
    return Backoff(base=base, factor=2.0, cap=cap).delay(attempt)


def cooldown_delay(n: int, base: float = _DEFAULTS["cooldown_base"],
                   cap: float = _DEFAULTS["cooldown_cap"]) -> float:
    """Pipeline pause for the *n*-th cooldown (1-indexed): ``base * 2**(n-1)``, capped."""
    return Backoff(base=base, factor=2.0, cap=cap).delay(n - 1)


class AIPipeline:
    """
    Usage::

        pipeline = AIPipeline(store, state, classifier, recorder)
        await pipeline.run()          # until empty / shutdown / PipelineHalted
    """

    def __init__(
        self,
        store: AIQueueStore,
        state: AIProcessingState,
        classifier,
        recorder: MatchRecorder,
        *,
        request_delay: float = _DEFAULTS["request_delay"],
        max_retries: int = _DEFAULTS["max_retries"],
        backoff_base: float = _DEFAULTS["backoff_base"],
        backoff_cap: float = _DEFAULTS["backoff_cap"],
        rate_limit_threshold: int = _DEFAULTS["rate_limit_threshold"],
        cooldown_base: float = _DEFAULTS["cooldown_base"],
        cooldown_cap: float = _DEFAULTS["cooldown_cap"],
        max_cooldown_attempts: int = _DEFAULTS["max_cooldown_attempts"],
        max_queue_retries: int = _DEFAULTS["max_queue_retries"],
        poll_interval: float = _DEFAULTS["poll_interval"],
        stop_when_empty: bool = True,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.store = store
        self.state = state
        self.classifier = classifier
        self.recorder = recorder

        self.request_delay = request_delay
        self.max_retries = max(0, max_retries)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.rate_limit_threshold = max(1, rate_limit_threshold)
        self.cooldown_base = cooldown_base
        self.cooldown_cap = cooldown_cap
        self.max_cooldown_attempts = max(1, max_cooldown_attempts)
        self.max_queue_retries = max(1, max_queue_retries)
        self.poll_interval = poll_interval
        self.stop_when_empty = stop_when_empty
        self._sleep = sleep or self._interruptible_sleep

        self._last_request: Optional[float] = None
        self._consecutive_rate_limits = 0
        self._cooldown_attempts = 0
        self._stopping = False
        self._closed = False
        self._idle = False
        self._wake = asyncio.Event()

        # counters for the end-of-run summary
        self.classified = 0
        self.positives = 0
        self.failures = 0

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def request_shutdown(self) -> None:
        """Stop after the in-flight item; interrupts pacing and cooldown sleeps."""
        if not self._stopping:
            logger.info("[AI] Shutdown requested")
        self._stopping = True
        self._wake.set()

    def finish_when_drained(self) -> None:
        """
        Exit once the queue is empty instead of polling forever.

        Only cuts an idle poll short; pacing, backoff and cooldown waits run
        to completion.
        """
        self.stop_when_empty = True
        if self._idle:
            self._wake.set()

    async def _interruptible_sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        if not self._stopping:
            self._wake.clear()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """
        Poll and process until the queue is empty (``stop_when_empty``) or
        shutdown is requested.

        Raises:
            PipelineHalted: the cooldown budget was exhausted.
        """
        logger.info("[AI] Pipeline started")
        try:
            while not self._stopping:
                cooled_down = await self.run_once()
                if self._stopping:
                    break
                if cooled_down:
                    continue
                if not self.store.pending(skip=self.state.processed_urls):
                    if self.stop_when_empty:
                        logger.info("[AI] Queue is empty and STOP_WHEN_EMPTY is set, stopping")
                        break
                    logger.debug(f"[AI] Queue empty, polling again in {self.poll_interval}s")
                self._idle = True
                try:
                    await self._sleep(self.poll_interval)
                finally:
                    self._idle = False
        finally:
            await self.shutdown()

    async def run_once(self) -> bool:
        """
        Process every pending item once.

        Returns True if the pass ended early in a cooldown.
        """
        items = self.store.pending(skip=self.state.processed_urls)
        if not items:
            logger.debug("[AI] No pending items in queue")
            return False
        logger.info(f"[AI] Found {len(items)} pending items to process")

        for item in items:
            if self._stopping:
                break
            if self.state.is_processed(item.url):
                continue
            if not await self._process(item):
                return True
        return False

    async def _process(self, item: AIQueueItem) -> bool:
        """Handle one item. Returns False if the pipeline went into cooldown."""
        logger.info(f"[AI] Processing: {item.url}")
        if self.recorder.contains(item.url):
            # recorded before a crash, finish the bookkeeping without a second call
            logger.info(f"[AI] Already recorded, skipping classification: {item.url}")
            self.state.mark_processed(item.url)
            self.store.remove(item.url)
            return True
        self.state.begin(item.url)

        try:
            verdict = await self._classify(item)
        except RateLimitError as e:
            await self._cool_down(item, e)
            return False
        except ClassifierError as e:
            self._item_failed(item, e)
            return True
        if verdict is None:
            # shutdown interrupted the backoff; item stays pending
            return True

        self._cooldown_attempts = 0
        self.classified += 1
        if verdict.positive:
            self.positives += 1
            logger.info(f"[AI] Content Found: {item.url}")
            self.recorder.record(MatchRecord(
                url=item.url, title=item.title, terms=item.terms, analysis=verdict.analysis,
            ))
        else:
            logger.info(f"[AI] No Content Found in: {item.url}")
        self.state.mark_processed(item.url)
        self.store.remove(item.url)
        return True

    # ------------------------------------------------------------------
    # Classification with pacing and in-call backoff
    # ------------------------------------------------------------------

    async def _pace(self) -> None:
        if self._last_request is not None:
            wait = self.request_delay - (time.monotonic() - self._last_request)
            if wait > 0:
                logger.debug(f"[AI] Rate limiting: waiting {wait:.2f}s before next request")
                await self._sleep(wait)
        self._last_request = time.monotonic()

    async def _classify(self, item: AIQueueItem):
        """Verdict for *item*, or None if shutdown arrived during a backoff."""
        attempt = 0
        while True:
            await self._pace()
            try:
                verdict = await self.classifier.classify(item.content, item.url)
            except RateLimitError:
                self._consecutive_rate_limits += 1
                if (self._consecutive_rate_limits >= self.rate_limit_threshold
                        or attempt >= self.max_retries):
                    raise
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_cap)
                logger.warning(
                    f"[AI] Quota exceeded for {item.url}, retrying in {delay:.0f}s "
                    f"(consecutive: {self._consecutive_rate_limits})"
                )
                await self._sleep(delay)
                attempt += 1
                if self._stopping:
                    return None
                continue
            self._consecutive_rate_limits = 0
            return verdict

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------

    async def _cool_down(self, item: AIQueueItem, error: RateLimitError) -> None:
        self._cooldown_attempts += 1
        if self._cooldown_attempts >= self.max_cooldown_attempts:
            logger.error(
                f"[AI] Quota exceeded {self._cooldown_attempts} times, stopping. "
                f"{item.url} stays pending"
            )
            self.state.save()
            raise PipelineHalted(
                f"Classifier rate-limited through {self._cooldown_attempts} cooldowns"
            ) from error

        delay = cooldown_delay(self._cooldown_attempts, self.cooldown_base, self.cooldown_cap)
        logger.warning(
            f"[AI] Quota exceeded, cooldown attempt "
            f"{self._cooldown_attempts}/{self.max_cooldown_attempts}. Waiting {delay:.0f}s"
        )
        await self._sleep(delay)
        logger.info("[AI] Cooldown complete, resuming")

    def _item_failed(self, item: AIQueueItem, error: Exception) -> None:
        self.failures += 1
        retries = self.store.record_failure(item.url)
        message = clean_error_message(error)
        if retries >= self.max_queue_retries:
            logger.error(f"[AI] Failed to process {item.url} after {retries} attempts: {message}")
            self.state.mark_failed(item.url)
            self.store.remove(item.url)
        else:
            logger.warning(
                f"[AI] Error processing {item.url} "
                f"(attempt {retries}/{self.max_queue_retries}): {message}"
            )

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Persist state and release the classifier. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        self._stopping = True
        self.state.save()
        close = getattr(self.classifier, "close", None)
        if close is not None:
            try:
                await close()
            except Exception as e:
                logger.debug(f"[AI] Classifier close failed: {e}")
        logger.info(
            f"[AI] Shutdown complete. Classified: {self.classified}, "
            f"positive: {self.positives}, failures: {self.failures}"
        )
