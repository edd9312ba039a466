"""
Run Context
===========
Per-domain directory layout and log sinks for one process.

Layout under ``<output_dir>/<domain>/``::

    state/crawler-state.json
    state/ai_queue.json
    state/ai-state.json
    logs/system.log, logs/error.log                 (crawler)
    logs/ai/system.log, logs/ai/error.log           (analyzer)
    logs/ai/matches/ai_matches.{csv,json,log}

A ``RunContext`` is built once by the CLI, handed to the components that
need paths, and closed explicitly; ``close()`` detaches every handler it
installed and is safe to call twice.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .utils import strip_www

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
LOG_DATEFMT = "%H:%M:%S"
FILE_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

_PACKAGE_LOGGER = "termcrawler"
_MATCH_LOGGER = "termcrawler.matches"


def parse_log_level(name: str) -> int:
    """``"info"``/``"DEBUG"``/``"warn"`` → logging level, INFO when unknown."""
    name = (name or "").strip().upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


class RunContext:
    """
    Usage::

        ctx = RunContext(cfg.output_dir, cfg.domain, log_level=cfg.log_level)
        ctx.ensure_dirs()
        ctx.install_logging(crawler=True, analyzer=False)
        try:
            ...
        finally:
            ctx.close()
    """

    def __init__(self, output_dir: str, domain: str, log_level: str = "info"):
        self.domain = strip_www(domain.strip().lower())
        self.root = Path(output_dir) / self.domain
        self.state_dir = self.root / "state"
        self.logs_dir = self.root / "logs"
        self.ai_logs_dir = self.logs_dir / "ai"
        self.matches_dir = self.ai_logs_dir / "matches"
        self.level = parse_log_level(log_level)

        self._handlers: List[tuple] = []   # (logger, handler)
        self._match_propagate: Optional[bool] = None
        self._closed = False

    # ---- state files ----
    @property
    def frontier_path(self) -> Path:
        return self.state_dir / "crawler-state.json"

    @property
    def ai_queue_path(self) -> Path:
        return self.state_dir / "ai_queue.json"

    @property
    def ai_state_path(self) -> Path:
        return self.state_dir / "ai-state.json"

    def ensure_dirs(self) -> None:
        for directory in (self.state_dir, self.logs_dir, self.matches_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def install_logging(self, crawler: bool = True, analyzer: bool = False,
                        console: bool = True) -> None:
        """
        Attach file sinks (and optionally the console) to the package logger.

        Crawler and analyzer each get a ``system.log`` (>= configured level)
        and an ``error.log`` (>= ERROR). The analyzer also gets the JSON-lines
        ``ai_matches.log``.
        """
        self.ensure_dirs()
        package_logger = logging.getLogger(_PACKAGE_LOGGER)
        package_logger.setLevel(self.level)
        file_fmt = logging.Formatter(FILE_LOG_FORMAT)

        if console:
            stream = logging.StreamHandler()
            stream.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
            stream.setLevel(self.level)
            self._attach(package_logger, stream)

        dirs = []
        if crawler:
            dirs.append(self.logs_dir)
        if analyzer:
            dirs.append(self.ai_logs_dir)
        for directory in dirs:
            directory.mkdir(parents=True, exist_ok=True)
            system = logging.FileHandler(directory / "system.log", encoding="utf-8")
            system.setLevel(self.level)
            system.setFormatter(file_fmt)
            self._attach(package_logger, system)

            errors = logging.FileHandler(directory / "error.log", encoding="utf-8")
            errors.setLevel(logging.ERROR)
            errors.setFormatter(file_fmt)
            self._attach(package_logger, errors)

        if analyzer:
            match_logger = logging.getLogger(_MATCH_LOGGER)
            match_logger.setLevel(logging.INFO)
            self._match_propagate = match_logger.propagate
            match_logger.propagate = False
            matches = logging.FileHandler(self.matches_dir / "ai_matches.log", encoding="utf-8")
            matches.setFormatter(logging.Formatter("%(message)s"))
            self._attach(match_logger, matches)

        logger.debug(f"[CONTEXT] Logging to {self.logs_dir}")

    def _attach(self, target: logging.Logger, handler: logging.Handler) -> None:
        target.addHandler(handler)
        self._handlers.append((target, handler))

    def close(self) -> None:
        """Detach and close every handler this context installed."""
        if self._closed:
            return
        self._closed = True
        for target, handler in reversed(self._handlers):
            target.removeHandler(handler)
            handler.close()
        self._handlers.clear()
        if self._match_propagate is not None:
            logging.getLogger(_MATCH_LOGGER).propagate = self._match_propagate

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
