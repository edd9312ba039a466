"""
Browser Automation
==================
Playwright-backed page loading for the crawl scheduler.

- One Chromium instance per run, shared by every page task
- One page per ``session()``; pages are always closed on exit
- Per-host ``PageLoadConfig`` (timeout, wait strategy, sub-resource
  interception, TLS-error tolerance)
- TLS-tolerant browser context created lazily, only for hosts that need it

Usage::

    browser = PlaywrightBrowser(headless=True)
    await browser.start()
    async with browser.session(PageLoadConfig(timeout_ms=45000)) as session:
        result = await session.load("https://example.edu/")
        html = await session.content()
        links = await session.extract_links()
    await browser.close()
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional

from playwright.async_api import Browser, BrowserContext, Page, Route, async_playwright

from .errors import NavigationError

logger = logging.getLogger(__name__)

# Sub-resources aborted when interception is on
_BLOCKED_RESOURCE_TYPES = frozenset(["image", "stylesheet", "font", "media"])

_NO_CACHE_HEADERS = {"Cache-Control": "no-cache", "Pragma": "no-cache"}

# Puppeteer-style wait names map onto Playwright's
_WAIT_UNTIL_ALIASES = {
    "networkidle0": "networkidle",
    "networkidle2": "networkidle",
}
_WAIT_UNTIL_VALUES = frozenset(["load", "domcontentloaded", "networkidle", "commit"])

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_LAUNCH_ARGS = [
    "--disable-gpu",
    "--no-sandbox",
    "--disable-dev-shm-usage",
    "--disable-background-networking",
    "--disable-extensions",
    "--no-first-run",
]


def normalize_wait_until(value: str) -> str:
    """Map a navigation wait name onto one Playwright accepts (default ``load``)."""
    value = (value or "").strip().lower()
    value = _WAIT_UNTIL_ALIASES.get(value, value)
    return value if value in _WAIT_UNTIL_VALUES else "load"


@dataclass
class PageLoadConfig:
    """How a single page is loaded."""
    timeout_ms: int = 30000
    wait_until: str = "networkidle"
    intercept_subresources: bool = True
    ignore_tls_errors: bool = False

    def __post_init__(self):
        self.wait_until = normalize_wait_until(self.wait_until)


@dataclass
class LoadResult:
    """Outcome of a navigation: HTTP status and the URL after redirects."""
    status: int
    final_url: str


class BrowserSession:
    """One open page, bound to the ``PageLoadConfig`` it was opened with."""

    def __init__(self, page: Page, config: PageLoadConfig):
        self.page = page
        self.config = config

    async def load(self, url: str) -> LoadResult:
        """
        Navigate to *url*.

        Raises:
            NavigationError: navigation returned no response.
            playwright.async_api.TimeoutError: navigation timed out.
        """
        response = await self.page.goto(
            url,
            wait_until=self.config.wait_until,
            timeout=self.config.timeout_ms,
        )
        if response is None:
            raise NavigationError(f"Failed to get response from {url}")
        return LoadResult(status=response.status, final_url=self.page.url)

    async def content(self) -> str:
        return await self.page.content()

    async def title(self) -> str:
        try:
            return await self.page.title()
        except Exception as e:
            logger.debug(f"[BROWSER] Could not read title of {self.page.url}: {e}")
            return ""

    async def extract_links(self) -> List[str]:
        """Absolute http(s) targets of every ``a[href]`` on the page."""
        hrefs: List[str] = await self.page.eval_on_selector_all(
            "a[href]", "els => els.map(a => a.href)"
        )
        return [h for h in hrefs if isinstance(h, str) and h.startswith(("http://", "https://"))]


class PlaywrightBrowser:
    """
    Owner of the Playwright driver and the Chromium instance.

    ``start()`` and ``close()`` are both idempotent.
    """

    def __init__(self, headless: bool = True, user_agent: str = _USER_AGENT):
        self.headless = headless
        self.user_agent = user_agent
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._tls_context: Optional[BrowserContext] = None
        self._lock = asyncio.Lock()

    @property
    def started(self) -> bool:
        return self._browser is not None

    async def start(self) -> None:
        """Launch headless Chromium."""
        async with self._lock:
            if self._browser is not None:
                return
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless, args=_LAUNCH_ARGS,
            )
            self._context = await self._browser.new_context(user_agent=self.user_agent)
            logger.info(f"[BROWSER] Chromium launched (headless={self.headless})")

    async def _context_for(self, config: PageLoadConfig) -> BrowserContext:
        if not config.ignore_tls_errors:
            return self._context
        async with self._lock:
            if self._tls_context is None:
                self._tls_context = await self._browser.new_context(
                    user_agent=self.user_agent, ignore_https_errors=True,
                )
                logger.debug("[BROWSER] Created TLS-tolerant context")
            return self._tls_context

    @asynccontextmanager
    async def session(self, config: PageLoadConfig) -> AsyncIterator[BrowserSession]:
        """Open a fresh page configured by *config*; the page is closed on exit."""
        if self._browser is None:
            await self.start()
        context = await self._context_for(config)
        page = await context.new_page()
        try:
            page.set_default_timeout(config.timeout_ms)
            page.set_default_navigation_timeout(config.timeout_ms)
            if config.intercept_subresources:
                await page.route("**/*", _route_handler)
            yield BrowserSession(page, config)
        finally:
            try:
                await page.close()
            except Exception as e:
                logger.debug(f"[BROWSER] Page close failed: {e}")

    async def close(self) -> None:
        """Release the browser and the Playwright driver."""
        async with self._lock:
            for ctx in (self._tls_context, self._context):
                if ctx is None:
                    continue
                try:
                    await ctx.close()
                except Exception as e:
                    logger.debug(f"[BROWSER] Context close failed: {e}")
            self._tls_context = None
            self._context = None
            if self._browser is not None:
                try:
                    await self._browser.close()
                except Exception as e:
                    logger.debug(f"[BROWSER] Browser close failed: {e}")
                self._browser = None
                logger.info("[BROWSER] Chromium closed")
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


async def _route_handler(route: Route) -> None:
    """Abort heavy sub-resources; let everything else through uncached."""
    request = route.request
    if request.resource_type in _BLOCKED_RESOURCE_TYPES:
        await route.abort()
        return
    headers = {**request.headers, **_NO_CACHE_HEADERS}
    await route.continue_(headers=headers)
