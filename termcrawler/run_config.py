"""
Unified Run Configuration
=========================
Single source of truth for every crawler and AI-pipeline default.

Values come from, in increasing priority:

1. ``_DEFAULTS`` below
2. Environment variables (``.env`` is loaded by the CLI via python-dotenv)
3. CLI flags (``apply_cli_args``)

Components never read the environment themselves; they receive plain
arguments built from this object.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from .browser import PageLoadConfig
from .errors import ConfigError
from .utils import extract_domain, strip_www

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "output_dir": "crawl-output",
    "max_concurrent": 3,
    "max_depth": 3,
    "max_retries": 3,
    "max_urls": 10000,
    "eviction_batch": 1000,
    "stop_when_empty": True,
    "page_timeout_ms": 30000,
    "wait_until": "networkidle0",
    "log_level": "info",
    "headless": True,
    "batch_delay": 1.0,             # seconds between crawl batches
    "retry_delay": 1.0,             # seconds, multiplied by the attempt number
    "save_interval": 30.0,          # seconds between periodic frontier snapshots
    "idle_poll_interval": 30.0,     # seconds between snapshot re-reads when idling
    "ai_model": "gemini-2.0-flash-lite",
    "ai_request_delay_ms": 2000,
    "ai_max_retries": 3,
    "ai_poll_interval": 30.0,
    "max_cooldown_attempts": 3,
    "max_queue_retries": 3,
}

# Hosts that need gentler page loading than the defaults
_DEFAULT_HOST_OVERRIDES: Dict[str, dict] = {
    "studentrecords.umaine.edu": {
        "intercept_requests": False, "wait_until": "domcontentloaded", "timeout": 45000,
    },
    "mitchellcenter.umaine.edu": {
        "intercept_requests": False, "wait_until": "domcontentloaded", "timeout": 45000,
    },
    "owls.umpi.edu": {
        "timeout": 60000, "wait_until": "domcontentloaded",
    },
    "catalog.umpi.edu": {
        "intercept_requests": False, "wait_until": "domcontentloaded", "timeout": 45000,
    },
    "online.umpi.edu": {
        "ignore_tls_errors": True, "timeout": 45000,
    },
}

_OVERRIDE_KEYS = frozenset(["timeout", "wait_until", "intercept_requests", "ignore_tls_errors"])


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"[CONFIG] {name}={raw!r} is not an integer, using {default}")
        return default
    return value if value > 0 else default


def load_host_overrides(path: Path) -> Dict[str, dict]:
    """
    Read a ``{host: {timeout, wait_until, intercept_requests, ignore_tls_errors}}``
    JSON table.

    Raises:
        ConfigError: unreadable file or unknown keys.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read host overrides {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Host overrides in {path} must be an object keyed by host")
    table: Dict[str, dict] = {}
    for host, settings in data.items():
        if not isinstance(settings, dict):
            raise ConfigError(f"Overrides for {host!r} must be an object")
        unknown = set(settings) - _OVERRIDE_KEYS
        if unknown:
            raise ConfigError(f"Unknown override keys for {host!r}: {sorted(unknown)}")
        table[host.strip().lower()] = dict(settings)
    return table


@dataclass
class CrawlerRunConfig:
    """
    Configuration consumed by the CLI, the scheduler and the AI pipeline.

    Populate via:
      - ``CrawlerRunConfig()``                    → all defaults
      - ``CrawlerRunConfig.from_env()``           → environment / ``.env``
      - ``cfg.apply_cli_args(ns)``                → argparse overrides
    """

    # ---- Target ----
    start_url: Optional[str] = None
    allowed_domain: Optional[str] = None
    output_dir: str = _DEFAULTS["output_dir"]

    # ---- Crawl limits ----
    max_concurrent: int = _DEFAULTS["max_concurrent"]
    max_depth: int = _DEFAULTS["max_depth"]
    max_retries: int = _DEFAULTS["max_retries"]
    max_urls: int = _DEFAULTS["max_urls"]
    eviction_batch: int = _DEFAULTS["eviction_batch"]
    stop_when_empty: bool = _DEFAULTS["stop_when_empty"]

    # ---- Page loading ----
    page_timeout_ms: int = _DEFAULTS["page_timeout_ms"]
    wait_until: str = _DEFAULTS["wait_until"]
    headless: bool = _DEFAULTS["headless"]
    host_overrides: Dict[str, dict] = field(default_factory=lambda: dict(_DEFAULT_HOST_OVERRIDES))

    # ---- Pacing ----
    batch_delay: float = _DEFAULTS["batch_delay"]
    retry_delay: float = _DEFAULTS["retry_delay"]
    save_interval: float = _DEFAULTS["save_interval"]
    idle_poll_interval: float = _DEFAULTS["idle_poll_interval"]

    # ---- Terms ----
    terms_file: Optional[str] = None

    # ---- AI pipeline ----
    google_api_key: Optional[str] = None
    ai_model: str = _DEFAULTS["ai_model"]
    ai_request_delay_ms: int = _DEFAULTS["ai_request_delay_ms"]
    ai_max_retries: int = _DEFAULTS["ai_max_retries"]
    ai_poll_interval: float = _DEFAULTS["ai_poll_interval"]
    max_cooldown_attempts: int = _DEFAULTS["max_cooldown_attempts"]
    max_queue_retries: int = _DEFAULTS["max_queue_retries"]

    # ---- Logging ----
    log_level: str = _DEFAULTS["log_level"]

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CrawlerRunConfig":
        """Build config from environment variables (``os.environ`` by default)."""
        env = os.environ if environ is None else environ

        cfg = cls(
            start_url=(env.get("START_URL") or "").strip() or None,
            allowed_domain=(env.get("ALLOWED_DOMAIN") or "").strip() or None,
            output_dir=(env.get("CRAWL_OUTPUT_DIR") or "").strip() or _DEFAULTS["output_dir"],
            max_concurrent=_env_int(env, "MAX_CONCURRENT", _DEFAULTS["max_concurrent"]),
            max_depth=_env_int(env, "MAX_DEPTH", _DEFAULTS["max_depth"]),
            max_retries=_env_int(env, "MAX_RETRIES", _DEFAULTS["max_retries"]),
            max_urls=_env_int(env, "MAX_URLS", _DEFAULTS["max_urls"]),
            # anything but an explicit "false" keeps the default
            stop_when_empty=(env.get("STOP_WHEN_EMPTY") or "").strip().lower() != "false",
            page_timeout_ms=_env_int(env, "PAGE_TIMEOUT", _DEFAULTS["page_timeout_ms"]),
            wait_until=(env.get("WAIT_UNTIL") or "").strip() or _DEFAULTS["wait_until"],
            log_level=(env.get("LOG_LEVEL") or "").strip() or _DEFAULTS["log_level"],
            google_api_key=(env.get("GOOGLE_API_KEY") or "").strip() or None,
            ai_model=(env.get("AI_MODEL") or "").strip() or _DEFAULTS["ai_model"],
            ai_request_delay_ms=_env_int(env, "AI_REQUEST_DELAY", _DEFAULTS["ai_request_delay_ms"]),
            ai_max_retries=_env_int(env, "AI_MAX_RETRIES", _DEFAULTS["ai_max_retries"]),
            terms_file=(env.get("TERMS_FILE") or "").strip() or None,
        )
        overrides_file = (env.get("HOST_OVERRIDES_FILE") or "").strip()
        if overrides_file:
            cfg.host_overrides = load_host_overrides(Path(overrides_file))
        return cfg

    def apply_cli_args(self, args) -> "CrawlerRunConfig":
        """Overlay argparse values that were actually given (``None`` = not given)."""
        mapping = {
            "url": "start_url",
            "domain": "allowed_domain",
            "output_dir": "output_dir",
            "concurrency": "max_concurrent",
            "depth": "max_depth",
            "retries": "max_retries",
            "max_urls": "max_urls",
            "timeout": "page_timeout_ms",
            "wait_until": "wait_until",
            "terms_file": "terms_file",
            "model": "ai_model",
            "log_level": "log_level",
        }
        for arg_name, attr in mapping.items():
            value = getattr(args, arg_name, None)
            if value is not None:
                setattr(self, attr, value)

        if getattr(args, "keep_running", False):
            self.stop_when_empty = False
        if getattr(args, "headful", False):
            self.headless = False
        overrides_file = getattr(args, "host_overrides", None)
        if overrides_file:
            self.host_overrides = load_host_overrides(Path(overrides_file))
        return self

    @classmethod
    def from_cli_args(cls, args, environ: Optional[Mapping[str, str]] = None) -> "CrawlerRunConfig":
        """Environment first, then argparse flags on top."""
        return cls.from_env(environ).apply_cli_args(args)

    # -----------------------------------------------------------------------
    # Derived values
    # -----------------------------------------------------------------------
    @property
    def domain(self) -> str:
        """Allowed domain without ``www.``; falls back to the start URL host."""
        if self.allowed_domain:
            return strip_www(self.allowed_domain.strip().lower())
        return extract_domain(self.start_url or "")

    @property
    def ai_request_delay(self) -> float:
        return self.ai_request_delay_ms / 1000.0

    def page_config_for(self, host: str) -> PageLoadConfig:
        """Per-host page load settings, falling back to the run defaults."""
        host = (host or "").lower()
        settings = self.host_overrides.get(host) or self.host_overrides.get(strip_www(host)) or {}
        return PageLoadConfig(
            timeout_ms=int(settings.get("timeout", self.page_timeout_ms)),
            wait_until=settings.get("wait_until", self.wait_until),
            intercept_subresources=bool(settings.get("intercept_requests", True)),
            ignore_tls_errors=bool(settings.get("ignore_tls_errors", False)),
        )

    def validate(self, command: str) -> None:
        """
        Raises:
            ConfigError: a value required by *command* is missing or invalid.
        """
        if command in ("crawl", "run"):
            if not self.start_url:
                raise ConfigError("START_URL is required (set it in .env or pass --url)")
            if not self.start_url.startswith(("http://", "https://")):
                raise ConfigError("Invalid START_URL. Must start with http:// or https://")
        if command in ("analyze", "run") and not self.google_api_key:
            raise ConfigError("GOOGLE_API_KEY is required for AI analysis")
        if not self.domain:
            raise ConfigError("ALLOWED_DOMAIN is required when START_URL is not set")

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self) -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info("CRAWL RUN CONFIG")
        logger.info("=" * 60)
        logger.info(f"  Start URL:        {self.start_url or '(resume only)'}")
        logger.info(f"  Domain:           {self.domain}")
        logger.info(f"  Output Dir:       {self.output_dir}")
        logger.info(f"  Max Concurrent:   {self.max_concurrent}")
        logger.info(f"  Max Depth:        {self.max_depth}")
        logger.info(f"  Max Retries:      {self.max_retries}")
        logger.info(f"  Visited Cap:      {self.max_urls}")
        logger.info(f"  Page Timeout:     {self.page_timeout_ms}ms ({self.wait_until})")
        logger.info(f"  Stop When Empty:  {self.stop_when_empty}")
        logger.info(f"  Host Overrides:   {len(self.host_overrides)} configured")
        if self.terms_file:
            logger.info(f"  Terms File:       {self.terms_file}")
        logger.info(f"  AI Model:         {self.ai_model}")
        logger.info(f"  AI Request Delay: {self.ai_request_delay_ms}ms")
        logger.info(f"  AI Key:           {'set' if self.google_api_key else 'missing'}")
        logger.info("=" * 60)
