"""
Error Types
===========
Exception hierarchy shared by the crawler and the AI pipeline.

Only ``PersistenceError`` and ``PipelineHalted`` are allowed to end a run;
everything else is handled at the page or item boundary.
"""

from __future__ import annotations


class CrawlerError(Exception):
    """Base class for all termcrawler errors."""


class ConfigError(CrawlerError):
    """Missing or invalid run configuration."""


class PersistenceError(CrawlerError):
    """A state snapshot could not be written. Always fatal."""


class PageSkip(CrawlerError):
    """Non-retryable page outcome (blocked status code). The URL is marked visited."""

    def __init__(self, url: str, status: int):
        super().__init__(f"HTTP {status} for {url}")
        self.url = url
        self.status = status


class NavigationError(CrawlerError):
    """Navigation produced no usable response."""


class ClassifierError(CrawlerError):
    """The external classifier failed for a reason other than quota."""


class RateLimitError(ClassifierError):
    """The external classifier rejected the request for quota reasons."""


class PipelineHalted(CrawlerError):
    """The AI pipeline tripped its circuit breaker and shut down."""
