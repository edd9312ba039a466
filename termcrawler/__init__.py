"""
termcrawler
A focused domain crawler: discovers pages on one allow-listed domain, matches
their text against curated term lists, and hands matched pages to an AI
classifier through a persisted, rate-limit-aware queue.

CLI Usage:
    python -m termcrawler crawl   [--url URL] [--depth N] [--concurrency N]
    python -m termcrawler analyze [--model NAME]
    python -m termcrawler run     (both, in one process)

    Settings are read from .env / the environment first; see run_config.py.
"""

from .errors import (
    CrawlerError,
    ConfigError,
    PersistenceError,
    PageSkip,
    NavigationError,
    ClassifierError,
    RateLimitError,
    PipelineHalted,
)
from .filters import FilterRules, DEFAULT_RULES, is_excluded
from .scope_filter import ScopeFilter, normalize_url
from .frontier import Frontier, URLItem
from .terms import DEFAULT_TERMS, TermMatch, TermMatcher, load_terms
from .extractor import ContentExtractor, ExtractedContent
from .ai_queue import AIQueueItem, AIQueueStore, AIProcessingState, MatchedTerm
from .match_recorder import MatchRecord, MatchRecorder
from .ai_pipeline import AIPipeline
from .run_config import CrawlerRunConfig
from .context import RunContext

__version__ = "0.1.0"

__all__ = [
    # Errors
    'CrawlerError',
    'ConfigError',
    'PersistenceError',
    'PageSkip',
    'NavigationError',
    'ClassifierError',
    'RateLimitError',
    'PipelineHalted',
    # Admission
    'FilterRules',
    'DEFAULT_RULES',
    'is_excluded',
    'ScopeFilter',
    'normalize_url',
    # Crawl state
    'Frontier',
    'URLItem',
    # Content
    'DEFAULT_TERMS',
    'TermMatch',
    'TermMatcher',
    'load_terms',
    'ContentExtractor',
    'ExtractedContent',
    # AI queue
    'AIQueueItem',
    'AIQueueStore',
    'AIProcessingState',
    'MatchedTerm',
    'MatchRecord',
    'MatchRecorder',
    'AIPipeline',
    # Config
    'CrawlerRunConfig',
    'RunContext',
]
