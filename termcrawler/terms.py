"""
Term Matching
=============
Category/term lists and the case-insensitive scanner run over every
extracted page.

A page matches when any configured term occurs anywhere in its text. For
each (category, term) pair only the first occurrence is reported, together
with a ±50 character context window wrapped in ``...``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Sequence, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)

_CONTEXT_CHARS = 50


DEFAULT_TERMS: Dict[str, List[str]] = {
    "dei_programs": [
        "dei program", "dei initiative", "dei training", "dei office",
        "diversity equity inclusion", "dei statement", "dei policy",
        "diversity statement", "discrimination", "equity statement",
        "diversity and inclusion", "diversity, equity and inclusion",
        "diversity, equity, and inclusion",
        "diversity training", "equity training", "inclusion training",
        "cultural competency", "cultural sensitivity training",
        "implicit bias training", "unconscious bias training",
        "dei office", "diversity office", "equity office",
        "multicultural affairs", "multicultural resources",
        "diversity resources", "equity resources",
    ],
    "race_based_programs": [
        "race-conscious", "race-based", "racial preference",
        "racial equity", "racial justice", "racial balance",
        "systemic racism", "structural racism", "institutional racism",
        "anti-racism", "anti racist", "antiracist",
        "white privilege", "white supremacy",
        "racial equity initiative", "racial justice program",
        "race-based admission", "racial preference policy",
        "race conscious policy", "race sensitive policy",
    ],
    "segregation_indicators": [
        "affinity group", "identity group", "multicultural space",
        "cultural center", "race-specific", "minority-only",
        "black space", "poc space", "bipoc space",
        "minority space", "identity space",
        "race-specific program", "identity-based program",
        "minority-only event", "affinity celebration",
        "cultural graduation",
    ],
    "proxy_terms": [
        "holistic review", "holistic assessment",
        "lived experience", "diverse perspective",
        "cultural competency", "cultural awareness",
        "implicit bias", "unconscious bias",
        "microaggression", "microaggressions",
        "inclusive excellence", "inclusive policy",
        "equity-minded", "equity minded",
        "cultural sensitivity",
    ],
    "training_programs": [
        "bias training", "diversity training",
        "equity training", "inclusion training",
        "cultural competency training",
        "anti-racism training", "antiracist training",
        "dei workshop", "diversity workshop",
        "equity workshop", "inclusion workshop",
        "cultural sensitivity workshop",
    ],
}


@dataclass
class TermMatch:
    """First occurrence of one configured term in a page's text."""
    category: str
    term: str
    matched_text: str    # the text as it appears on the page
    context: str         # "...<window>..."
    position: int        # character offset into the text


def _lower_with_offsets(text: str) -> Tuple[str, List[int]]:
    """
    Lower-case *text* and map every lowered character back to its source index.

    ``str.lower`` can change length (``"\u0130"`` lowers to two characters), so
    offsets found in the lowered string cannot slice the original directly.
    """
    parts: List[str] = []
    origin: List[int] = []
    for i, char in enumerate(text):
        low = char.lower()
        parts.append(low)
        origin.extend([i] * len(low))
    return "".join(parts), origin


def load_terms(path: Path) -> Dict[str, List[str]]:
    """
    Read a ``{category: [term, ...]}`` JSON file.

    Raises:
        ConfigError: if the file is missing, unreadable or not shaped as above.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read terms file {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Terms file {path} must contain an object of category lists")
    terms: Dict[str, List[str]] = {}
    for category, values in data.items():
        if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
            raise ConfigError(f"Category {category!r} in {path} must be a list of strings")
        terms[str(category)] = values
    logger.info(f"[TERMS] Loaded {sum(len(v) for v in terms.values())} terms "
                f"in {len(terms)} categories from {path}")
    return terms


class TermMatcher:
    """
    Case-insensitive multi-category scanner.

    Usage::

        matcher = TermMatcher(DEFAULT_TERMS)
        for match in matcher.search(text):
            print(match.category, match.term, match.context)
    """

    def __init__(self, terms: Mapping[str, Sequence[str]] = None, context_chars: int = _CONTEXT_CHARS):
        self.context_chars = context_chars
        self._terms: List[Tuple[str, str, str]] = []
        for category, values in (terms if terms is not None else DEFAULT_TERMS).items():
            seen = set()
            for term in values:
                lowered = term.strip().lower()
                if not lowered or lowered in seen:
                    continue
                seen.add(lowered)
                self._terms.append((category, term.strip(), lowered))

    @property
    def categories(self) -> List[str]:
        return list(dict.fromkeys(category for category, _, _ in self._terms))

    def __len__(self) -> int:
        return len(self._terms)

    def search(self, text: str) -> List[TermMatch]:
        """Return one ``TermMatch`` per configured term found in *text*, in configuration order."""
        if not text:
            return []
        lowered, origin = _lower_with_offsets(text)
        matches: List[TermMatch] = []
        for category, term, needle in self._terms:
            index = lowered.find(needle)
            if index < 0:
                continue
            first = origin[index]
            last = origin[index + len(needle) - 1] + 1
            start = max(0, first - self.context_chars)
            end = min(len(text), last + self.context_chars)
            matches.append(TermMatch(
                category=category,
                term=term,
                matched_text=text[first:last],
                context=f"...{text[start:end]}...",
                position=first,
            ))
        return matches
