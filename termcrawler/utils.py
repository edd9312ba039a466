"""
Utility Functions
Atomic JSON persistence, backoff schedules, and small URL/text helpers.
"""

import json
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlsplit

from .errors import PersistenceError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Atomic persistence
# ---------------------------------------------------------------------------

def atomic_write_json(path: Path, data: Any) -> None:
    """
    Serialize *data* to *path* via a temp file in the same directory and
    ``os.replace``. A crash mid-write leaves the previous file intact.

    Raises:
        PersistenceError: if the directory cannot be created or the write fails.
    """
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w", encoding="utf-8", dir=str(path.parent),
            prefix=f".{path.name}.", suffix=".tmp", delete=False,
        ) as tmp:
            tmp_name = tmp.name
            json.dump(data, tmp, indent=2, ensure_ascii=False)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except (OSError, TypeError, ValueError) as exc:
        if tmp_name and os.path.exists(tmp_name):
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
        raise PersistenceError(f"Could not write {path}: {exc}") from exc


def read_json(path: Path, default: Any = None) -> Any:
    """
    Load JSON from *path*.

    Returns *default* when the file is missing. A corrupt file is logged and
    also yields *default*; callers decide whether that is acceptable.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return default
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as exc:
        logger.error(f"Unreadable JSON in {path}: {exc}")
        return default


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds (the on-disk timestamp unit)."""
    return int(time.time() * 1000)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

class Backoff:
    """
    Capped exponential delay schedule.

    ``delay(attempt)`` = ``min(base * factor ** attempt, cap)`` for a
    0-indexed attempt.
    """

    def __init__(self, base: float = 1.0, factor: float = 2.0, cap: float = 60.0):
        """
        Args:
            base: Delay for the first attempt, in seconds
            factor: Growth per attempt
            cap: Upper bound on any single delay
        """
        self.base = base
        self.factor = factor
        self.cap = cap

    def delay(self, attempt: int) -> float:
        return min(self.base * (self.factor ** max(0, attempt)), self.cap)


def linear_delay(base: float, attempt: int) -> float:
    """Linearly increasing retry delay: ``base * attempt`` (1-indexed attempt)."""
    return base * max(1, attempt)


# ---------------------------------------------------------------------------
# URL / text helpers
# ---------------------------------------------------------------------------

def strip_www(host: str) -> str:
    """Drop every leading ``www.`` label, so ``www.www.x`` and ``x`` agree."""
    while host.startswith("www."):
        host = host[4:]
    return host


def extract_domain(url: str) -> str:
    """Host of *url*, lower-cased, without a leading ``www.``."""
    try:
        host = urlsplit(url).hostname or ""
    except ValueError:
        return ""
    return strip_www(host.lower())


def estimate_depth(url: str, max_depth: int) -> int:
    """
    Estimate crawl depth from the number of path segments, clamped to
    ``[0, max_depth]``. Used for URLs recovered without a depth.
    """
    try:
        path = urlsplit(url).path
    except ValueError:
        return max_depth
    segments = [s for s in path.split("/") if s]
    return max(0, min(len(segments), max_depth))


_STACK_FRAME_RE = re.compile(r"at [A-Za-z_.<>]+ \(.*?\)")


def clean_error_message(exc: BaseException) -> str:
    """One-line error summary suitable for log lines."""
    message = str(exc) or type(exc).__name__
    message = message.split("\n", 1)[0]
    message = _STACK_FRAME_RE.sub("", message)
    message = re.sub(r"\s+", " ", message)
    message = re.sub(r"^\s*Error:\s*", "", message, flags=re.IGNORECASE)
    return message.strip() or type(exc).__name__


def clean_text(text: Optional[str]) -> str:
    """Collapse runs of whitespace and trim."""
    if not text:
        return ""
    return re.sub(r"\s+", " ", text).strip()
