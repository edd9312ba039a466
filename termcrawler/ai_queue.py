"""
AI Queue Store
==============
Persisted hand-off between the crawler (producer) and the AI pipeline
(consumer).

Files under ``<root>/state/``:

- ``ai_queue.json``  array of queue items (see ``AIQueueItem.to_dict``)
- ``ai-state.json``  ``{processed, failed, lastProcessed}``

Both sides write the queue through ``AIQueueStore``. Every write is a
read-modify-write of the on-disk file under one lock followed by an atomic
rename, so an item staged by the crawler while the consumer is working is
never overwritten.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Set

from .terms import TermMatch
from .utils import atomic_write_json, now_ms, read_json

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass
class MatchedTerm:
    """A term match as stored in the queue file."""
    category: str
    term: str
    matched_text: str
    context: str
    position: int

    @classmethod
    def from_match(cls, match: TermMatch) -> "MatchedTerm":
        return cls(
            category=match.category,
            term=match.term,
            matched_text=match.matched_text,
            context=match.context,
            position=match.position,
        )

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "term": self.term,
            "matchedText": self.matched_text,
            "context": self.context,
            "position": self.position,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MatchedTerm":
        return cls(
            category=str(data.get("category", "")),
            term=str(data.get("term", "")),
            matched_text=str(data.get("matchedText", "")),
            context=str(data.get("context", "")),
            position=int(data.get("position", 0) or 0),
        )

    def label(self) -> str:
        return f"{self.category}: {self.term}"


@dataclass
class AIQueueItem:
    url: str
    content: str
    title: str = ""
    added: int = 0
    terms: List[MatchedTerm] = field(default_factory=list)
    status: str = STATUS_PENDING
    retry_count: int = 0

    @property
    def is_pending(self) -> bool:
        return self.status == STATUS_PENDING

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "content": self.content,
            "title": self.title,
            "added": self.added,
            "terms": [t.to_dict() for t in self.terms],
            "status": self.status,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AIQueueItem":
        return cls(
            url=str(data["url"]),
            content=str(data.get("content") or ""),
            title=str(data.get("title") or ""),
            added=int(data.get("added", 0) or 0),
            terms=[MatchedTerm.from_dict(t) for t in data.get("terms") or []],
            # items written before statuses existed are pending
            status=data.get("status") or STATUS_PENDING,
            retry_count=int(data.get("retry_count", 0) or 0),
        )


class AIQueueStore:
    """
    Read-modify-write access to ``ai_queue.json``.

    Args:
        path: Queue file location
        already_recorded: Returns True for URLs the match recorder has
            already confirmed; those are never staged again.
    """

    def __init__(self, path: Path, already_recorded: Optional[Callable[[str], bool]] = None):
        self.path = Path(path)
        self._already_recorded = already_recorded
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def load(self) -> List[AIQueueItem]:
        with self._lock:
            return self._read()

    def _read(self) -> List[AIQueueItem]:
        raw = read_json(self.path, default=[])
        if not isinstance(raw, list):
            logger.error(f"[AI-QUEUE] {self.path} is not a list, treating as empty")
            return []
        items: List[AIQueueItem] = []
        for entry in raw:
            try:
                items.append(AIQueueItem.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[AI-QUEUE] Dropping malformed queue entry: {e}")
        return items

    def _write(self, items: Iterable[AIQueueItem]) -> None:
        atomic_write_json(self.path, [item.to_dict() for item in items])

    def pending(self, skip: Optional[Set[str]] = None) -> List[AIQueueItem]:
        """Pending items in queue order, minus any URL in *skip*."""
        skip = skip or set()
        return [i for i in self.load() if i.is_pending and i.url not in skip]

    def __len__(self) -> int:
        return len(self.load())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def stage(self, url: str, content: str, title: str, matches: List[TermMatch]) -> bool:
        """
        Append a matched page. Returns False if the URL is already queued
        or already recorded as a confirmed match.
        """
        if self._already_recorded is not None and self._already_recorded(url):
            logger.debug(f"[AI-QUEUE] Already recorded, not staging: {url}")
            return False
        with self._lock:
            items = self._read()
            if any(item.url == url for item in items):
                logger.debug(f"[AI-QUEUE] Already queued: {url}")
                return False
            items.append(AIQueueItem(
                url=url,
                content=content,
                title=title,
                added=now_ms(),
                terms=[MatchedTerm.from_match(m) for m in matches],
            ))
            self._write(items)
        logger.info(f"[AI-QUEUE] Added to AI queue: {url} with {len(matches)} terms")
        return True

    def remove(self, url: str) -> bool:
        """Drop *url* from the queue. Returns True if it was present."""
        with self._lock:
            items = self._read()
            kept = [item for item in items if item.url != url]
            if len(kept) == len(items):
                return False
            self._write(kept)
            return True

    def record_failure(self, url: str) -> int:
        """Increment and return the stored ``retry_count`` of *url* (0 if absent)."""
        with self._lock:
            items = self._read()
            for item in items:
                if item.url == url:
                    item.retry_count += 1
                    self._write(items)
                    return item.retry_count
            return 0


@dataclass
class AIProcessingState:
    """Consumer progress, persisted to ``ai-state.json``."""
    path: Path
    processed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    last_processed: Optional[str] = None

    _processed_set: Set[str] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self):
        self.path = Path(self.path)
        self._processed_set = set(self.processed)

    @classmethod
    def load(cls, path: Path) -> "AIProcessingState":
        data = read_json(path, default=None)
        if not isinstance(data, dict):
            return cls(path=path)
        state = cls(
            path=path,
            processed=[str(u) for u in data.get("processed") or []],
            failed=[str(u) for u in data.get("failed") or []],
            last_processed=data.get("lastProcessed"),
        )
        if state.last_processed:
            logger.info(f"[AI] Resuming from last processed URL: {state.last_processed}")
        return state

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "lastProcessed": self.last_processed,
        }

    def save(self) -> None:
        atomic_write_json(self.path, self.to_dict())

    def is_processed(self, url: str) -> bool:
        return url in self._processed_set

    @property
    def processed_urls(self) -> Set[str]:
        return set(self._processed_set)

    def begin(self, url: str) -> None:
        self.last_processed = url
        self.save()

    def mark_processed(self, url: str) -> None:
        if url not in self._processed_set:
            self._processed_set.add(url)
            self.processed.append(url)
        self.save()

    def mark_failed(self, url: str) -> None:
        if url not in self.failed:
            self.failed.append(url)
        self.save()
