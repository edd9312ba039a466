"""
Content Extraction
==================
Rendered HTML → main-content text, using BeautifulSoup with lxml.

The first main-content selector that matches wins. Without one, the body
is used with navigation, footer and legal boilerplate removed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from bs4 import BeautifulSoup

from .utils import clean_text

logger = logging.getLogger(__name__)

_PARSER = "lxml"

MAIN_SELECTORS = (
    "main",
    "article",
    "#main-content",
    ".main-content",
    '[role="main"]',
    ".entry-content",
    ".post-content",
    ".page-content",
)

# Stripped from the body fallback only
CHROME_SELECTORS = (
    "nav", "header", "footer",
    ".navigation", ".nav", ".footer",
    ".menu", "#menu", ".sidebar", "#sidebar",
    '[role="navigation"]', '[role="complementary"]',
    ".nondiscrimination", "#nondiscrimination",
    ".copyright", ".legal",
    "iframe",
    ".tertiary-navigation-container",
    ".tribe-events-after-html",
)

_PREVIEW_CHARS = 100


@dataclass
class ExtractedContent:
    text: str
    length: int
    preview: str

    @classmethod
    def from_text(cls, text: str) -> "ExtractedContent":
        return cls(text=text, length=len(text), preview=text[:_PREVIEW_CHARS])


class ContentExtractor:
    """Pull the readable text out of a rendered page."""

    def __init__(
        self,
        main_selectors: Sequence[str] = MAIN_SELECTORS,
        chrome_selectors: Sequence[str] = CHROME_SELECTORS,
    ):
        self.main_selectors = tuple(main_selectors)
        self.chrome_selectors = tuple(chrome_selectors)

    def extract(self, html: str) -> ExtractedContent:
        if not html:
            return ExtractedContent.from_text("")
        soup = BeautifulSoup(html, _PARSER)
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        root = None
        for selector in self.main_selectors:
            root = soup.select_one(selector)
            if root is not None:
                break

        if root is None:
            root = soup.body or soup
            for selector in self.chrome_selectors:
                for tag in root.select(selector):
                    # nested matches die with their ancestor
                    if not tag.decomposed:
                        tag.decompose()

        text = clean_text(root.get_text(separator=" "))
        return ExtractedContent.from_text(text)
