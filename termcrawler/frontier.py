"""
Crawl Frontier
==============
Queue, visited set and in-progress set for one crawl domain, persisted to
``state/crawler-state.json``.

Snapshot format::

    {
      "visited":    ["https://example.edu/a", ...],
      "queue":      [{"url": "...", "depth": 1, "added": 1700000000000}, ...],
      "inProgress": ["https://example.edu/b", ...],
      "timestamp":  "2024-01-01T00:00:00+00:00"
    }

Guarantees:

- A URL is in at most one of queue / in-progress / visited at a time.
- ``dispatch`` hands out lowest depth first, discovery order within a depth.
- ``restore`` folds every in-progress URL back into the queue, so a crash
  never loses a discovered URL.
- Snapshots are written to a temp file and renamed into place.

Every mutating method takes ``self._lock``; the frontier may be shared by
concurrent page tasks or threads.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .scope_filter import normalize_url
from .utils import atomic_write_json, estimate_depth, now_ms, read_json

logger = logging.getLogger(__name__)

# Returns the cleaned URL when admissible, else None.
AdmissionFn = Callable[[str], Optional[str]]

_DEFAULT_MAX_VISITED = 10000
_DEFAULT_EVICTION_BATCH = 1000
_DEFAULT_SAVE_INTERVAL_S = 30.0


@dataclass
class URLItem:
    """A discovered URL waiting to be (or being) crawled."""
    url: str
    depth: int = 0
    added: int = 0   # epoch ms

    def to_dict(self) -> dict:
        return {"url": self.url, "depth": self.depth, "added": self.added}

    @classmethod
    def from_dict(cls, data: dict) -> "URLItem":
        return cls(
            url=str(data["url"]),
            depth=max(0, int(data.get("depth", 0))),
            added=int(data.get("added", 0) or 0),
        )


class Frontier:
    """
    Crash-safe crawl frontier.

    Usage::

        frontier = Frontier(state_path, admission=scope_filter, max_depth=3)
        frontier.restore()
        frontier.admit("https://example.edu/", 0)
        for item in frontier.dispatch(3):
            ...
            frontier.complete(item.url)
        frontier.persist()
    """

    def __init__(
        self,
        state_path: Path,
        admission: Optional[AdmissionFn] = None,
        *,
        max_depth: int = 3,
        max_visited: int = _DEFAULT_MAX_VISITED,
        eviction_batch: int = _DEFAULT_EVICTION_BATCH,
        save_interval: float = _DEFAULT_SAVE_INTERVAL_S,
    ):
        """
        Args:
            state_path: Snapshot file location
            admission: Normalise + filter callable; defaults to plain normalisation
            max_depth: Upper bound used when estimating depth on recovery
            max_visited: Visited-set cap before a batch eviction
            eviction_batch: Number of oldest visited URLs dropped per eviction
            save_interval: Minimum seconds between periodic snapshots
        """
        self.state_path = Path(state_path)
        self._admission: AdmissionFn = admission or normalize_url
        self.max_depth = max_depth
        self.max_visited = max_visited
        self.eviction_batch = max(1, eviction_batch)
        self.save_interval = save_interval

        self._lock = threading.RLock()
        self._seq = itertools.count()
        # heap of (depth, seq, url); _queued maps url -> URLItem
        self._heap: List[Tuple[int, int, str]] = []
        self._queued: Dict[str, URLItem] = {}
        self._in_progress: Dict[str, URLItem] = {}
        # dict preserves insertion order for oldest-first eviction
        self._visited: Dict[str, None] = {}
        self._last_save = time.monotonic()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._queued)

    def is_visited(self, url: str) -> bool:
        with self._lock:
            return url in self._visited

    def is_queued(self, url: str) -> bool:
        with self._lock:
            return url in self._queued

    def is_in_progress(self, url: str) -> bool:
        with self._lock:
            return url in self._in_progress

    def __len__(self) -> int:
        with self._lock:
            return len(self._queued)

    def queued_items(self) -> List[URLItem]:
        """Queue contents in dispatch order."""
        with self._lock:
            return [self._queued[url] for _, _, url in sorted(self._heap)]

    def visited_urls(self) -> List[str]:
        with self._lock:
            return list(self._visited)

    def in_progress_urls(self) -> List[str]:
        with self._lock:
            return list(self._in_progress)

    def stats(self) -> dict:
        with self._lock:
            return {
                "visited": len(self._visited),
                "queued": len(self._queued),
                "in_progress": len(self._in_progress),
            }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def admit(self, url: str, depth: int) -> bool:
        """
        Normalise, filter and enqueue *url* at *depth*.

        Returns True if the URL was added. Filtered, malformed and
        already-known URLs are a silent no-op.
        """
        clean = self._admission(url)
        if not clean:
            return False
        with self._lock:
            return self._push(URLItem(url=clean, depth=max(0, int(depth)), added=now_ms()))

    def dispatch(self, n: int) -> List[URLItem]:
        """Remove up to *n* lowest-depth items and mark them in progress."""
        batch: List[URLItem] = []
        with self._lock:
            while self._heap and len(batch) < n:
                _, _, url = heapq.heappop(self._heap)
                item = self._queued.pop(url)
                self._in_progress[url] = item
                batch.append(item)
        if batch:
            logger.debug(f"[FRONTIER] Dispatched {len(batch)} URLs, {len(self)} remaining")
        return batch

    def complete(self, url: str) -> None:
        """Mark *url* visited, evicting the oldest visited batch past the cap."""
        with self._lock:
            self._in_progress.pop(url, None)
            self._visited.pop(url, None)
            self._visited[url] = None
            if len(self._visited) > self.max_visited:
                self._evict_visited()

    def fail(self, url: str) -> None:
        """Drop *url* from in-progress without marking it visited."""
        with self._lock:
            self._in_progress.pop(url, None)

    def _push(self, item: URLItem) -> bool:
        url = item.url
        if url in self._visited or url in self._queued or url in self._in_progress:
            return False
        self._queued[url] = item
        heapq.heappush(self._heap, (item.depth, next(self._seq), url))
        return True

    def _evict_visited(self) -> None:
        count = min(self.eviction_batch, len(self._visited))
        oldest = list(itertools.islice(self._visited, count))
        for url in oldest:
            del self._visited[url]
        logger.debug(f"[FRONTIER] Evicted {len(oldest)} oldest visited URLs")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "visited": list(self._visited),
                "queue": [item.to_dict() for item in self.queued_items()],
                "inProgress": list(self._in_progress),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    def persist(self) -> None:
        """
        Write the snapshot atomically.

        Raises:
            PersistenceError: the frontier cannot continue without durable state.
        """
        state = self.snapshot()
        logger.info(
            f"[FRONTIER] Saving state: {len(state['visited'])} visited, "
            f"{len(state['queue'])} queued, {len(state['inProgress'])} in progress"
        )
        atomic_write_json(self.state_path, state)
        self._last_save = time.monotonic()

    def maybe_persist(self) -> bool:
        """Persist if ``save_interval`` has elapsed since the last save."""
        if time.monotonic() - self._last_save < self.save_interval:
            return False
        self.persist()
        return True

    def restore(self) -> None:
        """
        Replace in-memory state with the on-disk snapshot.

        Missing or corrupt snapshots fall back to an empty frontier.
        In-progress URLs are re-queued, keeping their depth when the snapshot
        still lists them in the queue and estimating it otherwise.
        """
        data = read_json(self.state_path, default=None)
        with self._lock:
            self._reset()
            if data is None:
                logger.info("[FRONTIER] No previous state found, starting fresh")
                return
            if not isinstance(data, dict):
                logger.error("[FRONTIER] Snapshot is not an object, starting fresh")
                return
            try:
                self._load(data)
            except (KeyError, TypeError, ValueError) as exc:
                logger.error(f"[FRONTIER] Corrupt snapshot ({exc}), starting fresh")
                self._reset()
                return

        stats = self.stats()
        logger.info(
            f"[FRONTIER] Loaded state: {stats['visited']} visited, "
            f"{stats['queued']} queued"
        )

    def _reset(self) -> None:
        self._heap = []
        self._queued = {}
        self._in_progress = {}
        self._visited = {}
        self._seq = itertools.count()

    def _load(self, data: dict) -> None:
        for url in data.get("visited") or []:
            self._visited[str(url)] = None

        for raw in data.get("queue") or []:
            item = URLItem.from_dict(raw)
            if item.url in self._visited:
                continue
            self._push(item)

        in_progress: Iterable[str] = data.get("inProgress") or []
        recovered = 0
        for url in in_progress:
            url = str(url)
            if url in self._queued or url in self._visited:
                continue
            depth = estimate_depth(url, self.max_depth)
            if self._push(URLItem(url=url, depth=depth, added=now_ms())):
                recovered += 1
        if recovered:
            logger.info(f"[FRONTIER] Recovered {recovered} in-progress URLs back to queue")
