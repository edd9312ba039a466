#!/usr/bin/env python3
"""
Command-line entry point
========================
::

    python -m termcrawler crawl   [--url URL] [--depth N] ...
    python -m termcrawler analyze [--model NAME] ...
    python -m termcrawler run     # crawl and analyze in one event loop

All configuration flows through ``CrawlerRunConfig``: ``.env`` / environment
first, flags on top.

Exit codes: 0 on a normal or signalled stop, 1 on a configuration error,
a persistence failure, or a halted AI pipeline.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .ai_pipeline import AIPipeline
from .ai_queue import AIProcessingState, AIQueueStore
from .browser import PlaywrightBrowser
from .classifier import GeminiClassifier
from .context import LOG_DATEFMT, LOG_FORMAT, RunContext
from .errors import ConfigError, PersistenceError, PipelineHalted
from .extractor import ContentExtractor
from .frontier import Frontier
from .match_recorder import MatchRecorder
from .run_config import CrawlerRunConfig
from .scheduler import CrawlScheduler
from .scope_filter import ScopeFilter
from .terms import DEFAULT_TERMS, TermMatcher, load_terms

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------

def build_scheduler(cfg: CrawlerRunConfig, ctx: RunContext, store: AIQueueStore) -> CrawlScheduler:
    scope = ScopeFilter(allowed_domain=cfg.domain)
    scope.log_scope()
    frontier = Frontier(
        ctx.frontier_path,
        admission=scope,
        max_depth=cfg.max_depth,
        max_visited=cfg.max_urls,
        eviction_batch=cfg.eviction_batch,
        save_interval=cfg.save_interval,
    )
    terms = load_terms(Path(cfg.terms_file)) if cfg.terms_file else DEFAULT_TERMS
    return CrawlScheduler(
        frontier,
        PlaywrightBrowser(headless=cfg.headless),
        ContentExtractor(),
        TermMatcher(terms),
        store,
        max_depth=cfg.max_depth,
        max_concurrent=cfg.max_concurrent,
        max_retries=cfg.max_retries,
        retry_delay=cfg.retry_delay,
        batch_delay=cfg.batch_delay,
        stop_when_empty=cfg.stop_when_empty,
        idle_poll_interval=cfg.idle_poll_interval,
        page_config_for=cfg.page_config_for,
    )


def build_pipeline(cfg: CrawlerRunConfig, ctx: RunContext, store: AIQueueStore,
                   recorder: MatchRecorder) -> AIPipeline:
    return AIPipeline(
        store,
        AIProcessingState.load(ctx.ai_state_path),
        GeminiClassifier(api_key=cfg.google_api_key, model=cfg.ai_model),
        recorder,
        request_delay=cfg.ai_request_delay,
        max_retries=cfg.ai_max_retries,
        max_cooldown_attempts=cfg.max_cooldown_attempts,
        max_queue_retries=cfg.max_queue_retries,
        poll_interval=cfg.ai_poll_interval,
        stop_when_empty=cfg.stop_when_empty,
    )


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, targets: List) -> None:
    def _handle(name: str) -> None:
        logger.info(f"Received {name} signal")
        for target in targets:
            target.request_shutdown()

    for name in _SHUTDOWN_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, _handle, name)
        except (NotImplementedError, RuntimeError):
            logger.debug(f"Signal handler for {name} not supported on this platform")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _run_command(command: str, cfg: CrawlerRunConfig, ctx: RunContext) -> None:
    recorder = MatchRecorder(ctx.matches_dir)
    store = AIQueueStore(ctx.ai_queue_path, already_recorded=recorder.contains)
    loop = asyncio.get_running_loop()

    if command == "crawl":
        scheduler = build_scheduler(cfg, ctx, store)
        _install_signal_handlers(loop, [scheduler])
        await scheduler.run(cfg.start_url)
        return

    if command == "analyze":
        pipeline = build_pipeline(cfg, ctx, store, recorder)
        _install_signal_handlers(loop, [pipeline])
        await pipeline.run()
        return

    # run: both in one loop; the consumer keeps polling until the crawl ends
    scheduler = build_scheduler(cfg, ctx, store)
    pipeline = build_pipeline(cfg, ctx, store, recorder)
    pipeline.stop_when_empty = False
    _install_signal_handlers(loop, [scheduler, pipeline])

    ai_task = asyncio.create_task(pipeline.run())

    def _on_ai_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            scheduler.request_shutdown()

    ai_task.add_done_callback(_on_ai_done)

    try:
        await scheduler.run(cfg.start_url)
    except BaseException:
        pipeline.request_shutdown()
        await asyncio.gather(ai_task, return_exceptions=True)
        raise

    # a signal has already stopped the pipeline; otherwise let it drain the queue
    if not ai_task.done():
        pipeline.finish_when_drained()
    await ai_task


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--url", help="Start URL (env: START_URL)")
    common.add_argument("--domain", help="Allowed domain (env: ALLOWED_DOMAIN, default: start URL host)")
    common.add_argument("--output-dir", help="Output root (env: CRAWL_OUTPUT_DIR, default: crawl-output)")
    common.add_argument("--log-level", help="debug | info | warning | error (env: LOG_LEVEL)")
    common.add_argument("--keep-running", action="store_true",
                        help="Idle instead of exiting when the queue is empty (env: STOP_WHEN_EMPTY=false)")

    crawl = argparse.ArgumentParser(add_help=False)
    crawl_group = crawl.add_argument_group("Crawl")
    crawl_group.add_argument("--depth", type=int, help="Maximum crawl depth (env: MAX_DEPTH, default: 3)")
    crawl_group.add_argument("--concurrency", type=int, help="Pages per batch (env: MAX_CONCURRENT, default: 3)")
    crawl_group.add_argument("--retries", type=int, help="Retries per page (env: MAX_RETRIES, default: 3)")
    crawl_group.add_argument("--max-urls", type=int, help="Visited-set cap (env: MAX_URLS, default: 10000)")
    crawl_group.add_argument("--timeout", type=int, help="Page timeout in ms (env: PAGE_TIMEOUT, default: 30000)")
    crawl_group.add_argument("--wait-until", help="load | domcontentloaded | networkidle (env: WAIT_UNTIL)")
    crawl_group.add_argument("--terms-file", help="JSON {category: [terms]} (env: TERMS_FILE)")
    crawl_group.add_argument("--host-overrides", help="JSON per-host page settings (env: HOST_OVERRIDES_FILE)")
    crawl_group.add_argument("--headful", action="store_true", help="Show the browser window")

    analyze = argparse.ArgumentParser(add_help=False)
    analyze_group = analyze.add_argument_group("AI analysis")
    analyze_group.add_argument("--model", help="Gemini model name (env: AI_MODEL)")

    parser = argparse.ArgumentParser(
        prog="termcrawler",
        description="Domain crawler with term matching and AI review of matched pages.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("crawl", parents=[common, crawl], help="Crawl the domain and stage matched pages")
    sub.add_parser("analyze", parents=[common, analyze], help="Classify staged pages")
    sub.add_parser("run", parents=[common, crawl, analyze], help="Crawl and analyze concurrently")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)

    args = build_parser().parse_args(argv)
    try:
        cfg = CrawlerRunConfig.from_cli_args(args)
        cfg.validate(args.command)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    ctx = RunContext(cfg.output_dir, cfg.domain, log_level=cfg.log_level)
    try:
        ctx.install_logging(
            crawler=args.command in ("crawl", "run"),
            analyzer=args.command in ("analyze", "run"),
            console=False,
        )
        cfg.log_summary()
        asyncio.run(_run_command(args.command, cfg, ctx))
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except PersistenceError as e:
        logger.error(f"Fatal persistence error: {e}")
        return 1
    except PipelineHalted as e:
        logger.error(f"AI pipeline halted: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        ctx.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
