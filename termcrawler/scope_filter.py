"""
Scope Filter
=============
URL canonicalisation and admission for a single allow-listed domain.

All URL comparisons go through ``_canonicalize()`` so the frontier keys,
the visited set and the AI queue all agree on one spelling per page:

- Fragment removal
- Host case normalisation, ``www.`` stripping, default-port stripping
- Percent-encoding normalisation (decode unreserved, no double-decode)
- Dot-segment resolution (``/a/../b`` → ``/b``)
- Trailing-slash stripping (root ``/`` is kept)
- Query parameters sorted by name (stable for repeated names)
- Path case is **preserved** (servers are case-sensitive)

Public API
----------
- ``normalize_url(url)``                  canonical string or ``None``
- ``ScopeFilter``                         normalise + block-list + domain check
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import NamedTuple, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .filters import DEFAULT_RULES, FilterRules, is_excluded
from .utils import strip_www

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------
# Canonical URL representation
# -----------------------------------------------------------------------

class _CanonURL(NamedTuple):
    """Immutable, fully-normalised URL components."""
    scheme: str
    hostname: str    # lower-cased, www-stripped, no port
    netloc: str      # hostname plus any non-default port
    path: str        # dot-segments resolved, trailing-slash stripped, case preserved
    query: str       # parameters sorted by name
    raw: str         # reconstructed full URL string


# RFC 3986 §2.3: unreserved characters that should be decoded
_UNRESERVED_RE = re.compile(r"%([0-9A-Fa-f]{2})")

_UNRESERVED_CHARS = frozenset(
    "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
    "0123456789-._~"
)

_DEFAULT_PORTS = {"http": 80, "https": 443}


def _decode_unreserved(path: str) -> str:
    """
    Decode percent-encoded *unreserved* characters only (RFC 3986 §2.3).

    Encoded reserved characters (``/``, ``?``, ``&`` ...) keep their
    encoding, with the hex digits upper-cased.
    """

    def _replace(m: re.Match) -> str:
        char = chr(int(m.group(1), 16))
        if char in _UNRESERVED_CHARS:
            return char
        return f"%{m.group(1).upper()}"

    return _UNRESERVED_RE.sub(_replace, path)


def _sort_query(query: str) -> str:
    if not query:
        return ""
    params = parse_qsl(query, keep_blank_values=True)
    params.sort(key=lambda kv: kv[0])
    return urlencode(params)


def _canonicalize(url: str) -> Optional[_CanonURL]:
    """
    Produce a canonical ``_CanonURL`` from a raw URL string, or ``None``.

    Rejects empty strings, non-HTTP(S) schemes, URLs without a host and
    URLs whose port cannot be parsed.
    """
    if not url:
        return None
    url = url.strip()
    if url.lower().startswith(("javascript:", "mailto:", "tel:", "data:", "#")):
        return None

    try:
        p = urlsplit(url)
        port = p.port
    except ValueError:
        return None

    scheme = p.scheme.lower()
    if scheme not in _DEFAULT_PORTS:
        return None

    hostname = strip_www((p.hostname or "").lower()).rstrip(".")
    if not hostname:
        return None

    netloc = hostname
    if ":" in hostname:
        netloc = f"[{hostname}]"
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"

    # --- path normalisation ---
    raw_path = _decode_unreserved(p.path or "/")
    raw_path = posixpath.normpath(raw_path)
    # normpath turns "" into "." and keeps a leading "//"
    if not raw_path.startswith("/"):
        raw_path = "/" + raw_path.lstrip(".")
    if raw_path != "/":
        raw_path = raw_path.rstrip("/") or "/"

    query = _sort_query(p.query)

    raw = urlunsplit((scheme, netloc, raw_path, query, ""))
    return _CanonURL(
        scheme=scheme, hostname=hostname, netloc=netloc,
        path=raw_path, query=query, raw=raw,
    )


def normalize_url(url: str) -> Optional[str]:
    """Return the canonical spelling of *url*, or ``None`` if it is not crawlable.

    ``normalize_url(normalize_url(u)) == normalize_url(u)`` for every ``u``.
    """
    canon = _canonicalize(url)
    return canon.raw if canon is not None else None


def _host_in_domain(hostname: str, domain: str) -> bool:
    return hostname == domain or hostname.endswith("." + domain)


# -----------------------------------------------------------------------
# ScopeFilter: the frontier's admission callable
# -----------------------------------------------------------------------

@dataclass
class ScopeFilter:
    """
    Admission policy for one crawl domain.

    Parameters
    ----------
    allowed_domain : str
        Registrable domain the crawl is confined to (subdomains included).
    rules : FilterRules
        Block-lists passed to ``filters.is_excluded``.
    """

    allowed_domain: str = ""
    rules: FilterRules = field(default_factory=lambda: DEFAULT_RULES)

    _domain: str = field(init=False, repr=False, default="")

    def __post_init__(self):
        self._domain = strip_www(self.allowed_domain.strip().lower())
        if not self._domain:
            logger.warning("[SCOPE] No allowed domain configured, every URL will be rejected")

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    def filter_and_clean(self, candidate_url: str) -> Optional[str]:
        """
        Normalise, then scope-check and block-list the result.

        Returns the cleaned URL if it passes all checks, else ``None``.
        """
        canon = _canonicalize(candidate_url)
        if canon is None or not self._domain:
            return None
        if not _host_in_domain(canon.hostname, self._domain):
            logger.debug(f"[SCOPE] Off-domain: {canon.raw}")
            return None
        if is_excluded(canon.raw, self.rules):
            logger.debug(f"[SCOPE] Filtered: {canon.raw}")
            return None
        return canon.raw

    __call__ = filter_and_clean

    # ------------------------------------------------------------------
    # Logging / introspection
    # ------------------------------------------------------------------

    @property
    def scope_description(self) -> str:
        if not self._domain:
            return "No domain (rejects all)"
        return f"Domain: {self._domain} (+ subdomains)"

    def log_scope(self) -> None:
        """Emit scope information to the logger."""
        logger.info(f"[SCOPE] {self.scope_description}")
        logger.info(
            f"[SCOPE] Block-lists: {len(self.rules.skip_hosts)} hosts, "
            f"{len(self.rules.skip_url_patterns)} url patterns, "
            f"{len(self.rules.skip_file_patterns)} file patterns, "
            f"{len(self.rules.skip_extensions)} extensions"
        )
