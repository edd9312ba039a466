"""
Match Recorder
==============
Append-only sinks for AI-confirmed matches, under ``<root>/logs/ai/matches/``:

- ``ai_matches.csv``   one row per match, header written once
- ``ai_matches.json``  array of match records, rewritten atomically
- ``ai_matches.log``   one JSON line per match (via the ``termcrawler.matches`` logger)
"""

from __future__ import annotations

import csv
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Set

from .ai_queue import MatchedTerm
from .errors import PersistenceError
from .utils import atomic_write_json, read_json

logger = logging.getLogger(__name__)

# JSON-lines match log; RunContext attaches its file handler
match_logger = logging.getLogger("termcrawler.matches")

CSV_NAME = "ai_matches.csv"
JSON_NAME = "ai_matches.json"
CSV_COLUMNS = ["Date", "Time", "URL", "Title", "Matched Terms", "AI Analysis", "Timestamp"]


@dataclass
class MatchRecord:
    url: str
    title: str
    terms: List[MatchedTerm]
    analysis: str
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    )

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "title": self.title,
            "terms": [t.to_dict() for t in self.terms],
            "aiAnalysis": self.analysis,
            "timestamp": self.timestamp,
        }

    def csv_row(self) -> List[str]:
        found = datetime.now()
        return [
            found.strftime("%m/%d/%Y"),
            found.strftime("%I:%M:%S %p"),
            self.url,
            self.title or "No Title",
            "; ".join(t.label() for t in self.terms),
            " ".join(self.analysis.splitlines()),
            self.timestamp,
        ]


class MatchRecorder:
    """Writes ``MatchRecord`` objects to the CSV, JSON and log sinks."""

    def __init__(self, matches_dir: Path):
        self.matches_dir = Path(matches_dir)
        self.csv_path = self.matches_dir / CSV_NAME
        self.json_path = self.matches_dir / JSON_NAME
        self._lock = threading.Lock()
        self._known: Set[str] = set()
        self._known_mtime: Optional[float] = None

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def contains(self, url: str) -> bool:
        """True if *url* already appears in the CSV's URL column."""
        with self._lock:
            self._refresh_known()
            return url in self._known

    def _refresh_known(self) -> None:
        try:
            mtime = os.stat(self.csv_path).st_mtime
        except FileNotFoundError:
            self._known = set()
            self._known_mtime = None
            return
        if mtime == self._known_mtime:
            return
        known: Set[str] = set()
        with open(self.csv_path, "r", encoding="utf-8", newline="") as fh:
            for row in csv.DictReader(fh):
                if row.get("URL"):
                    known.add(row["URL"])
        self._known = known
        self._known_mtime = mtime

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def record(self, record: MatchRecord) -> None:
        """
        Append *record* to every sink.

        Raises:
            PersistenceError: a sink could not be written.
        """
        with self._lock:
            try:
                self.matches_dir.mkdir(parents=True, exist_ok=True)
                self._append_csv(record)
            except OSError as e:
                raise PersistenceError(f"Could not append to {self.csv_path}: {e}") from e
            self._append_json(record)
            self._known.add(record.url)

        match_logger.info(json.dumps({"message": "Match Found", **record.to_dict()}, ensure_ascii=False))
        logger.info(f"[MATCH] Recorded {record.url}")

    def _append_csv(self, record: MatchRecord) -> None:
        write_header = not self.csv_path.exists() or self.csv_path.stat().st_size == 0
        with open(self.csv_path, "a", encoding="utf-8", newline="") as fh:
            writer = csv.writer(fh)
            if write_header:
                writer.writerow(CSV_COLUMNS)
            writer.writerow(record.csv_row())

    def _append_json(self, record: MatchRecord) -> None:
        matches = read_json(self.json_path, default=None)
        if not isinstance(matches, list) and self.json_path.exists():
            # unreadable: keep the old file instead of overwriting it
            backup = self.json_path.with_name(f"{JSON_NAME}.corrupt-{int(time.time())}")
            try:
                os.replace(self.json_path, backup)
            except OSError as e:
                raise PersistenceError(f"Could not move aside {self.json_path}: {e}") from e
            logger.error(f"[MATCH] Moved unreadable {self.json_path} to {backup}")
        if not isinstance(matches, list):
            matches = []
        matches.append(record.to_dict())
        atomic_write_json(self.json_path, matches)
