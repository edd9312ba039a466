"""
URL Filters
===========
Block-lists that keep the crawler away from calendars, feeds, downloads,
media and other low-value or infinite URL spaces.

``is_excluded()`` is a pure predicate: no I/O, no logging, no state.
Checks run in a fixed order and stop at the first hit:

1. Host block-list
2. Path extension block-list
3. Substring patterns over ``host + path`` and the query string
4. File / download / media path patterns
5. Query-parameter names and values

Anything that cannot be parsed as an http(s) URL with a host is excluded.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass
from typing import FrozenSet, Tuple
from urllib.parse import parse_qsl, urlsplit


SKIP_HOSTS: Tuple[str, ...] = (
    "catalog.",
    "cloudfront.net",
    "cdn.",
    "static.",
    "library.",
    "libguides.",
    "calendar.",
    "gradcatalog.",
    "digitalcommons.",
    "archives.",
    "lib.",
    "umaine.edu/citl",
    "bookstore.umaine.edu",
    "composites-archive.",
    "go.umaine.edu",
    "astro.umaine.edu",
    "shop.usm.maine.edu",
    "libanswers.usm.maine.edu",
    "owls.umpi.edu",
    "wp.umpi.edu",
    "umalibguides.uma.edu",
    "intermedia.umaine.edu",
)

SKIP_URL_PATTERNS: Tuple[str, ...] = (
    "/events/month/",
    "/news/tag",
    "/directories/",
    "/directory/",
    "/events/week/",
    "/events/day/",
    "/calendar/",
    "/special-collections/",
    "/calendar-of-events/",
    "outlook-ical=",
    "ical=",
    "vcalendar=",
    ".ics",
    "/feed/",
    "/rss/",
    "/atom/",
    "/events/category/",
    "eventdisplay=",
    "tribe-bar-date=",
    "/news/blog",
    "/wp-admin",
    "/events/",
    "/senate-minutes",
    "/exhibits/",
    "/resource/",
    "/ipm/ipddl",
    "/event$",
    "/blog/",
    "business/events",
    "campusrecreation/events",
    "mlandc/events",
    "graduate/events",
    "facultysenate/senate-minutes",
    "hudsonmuseum/exhibits",
    "research-development/events",
    "research-compliance/resource",
    "mitchellcenter/event",
    "marketingandcommunications/resource",
)

SKIP_FILE_PATTERNS: Tuple[str, ...] = (
    "/download_file",
    "/download.",
    "/download/",
    "/downloads/",
    ".ashx",
    "/services/download",
    "/file/",
    "/files/",
    "/getfile",
    "/get-file",
    "/serve-file",
    "/stream/",
    "/media/",
    "/assets/",
    "/cdn-cgi/",
)

SKIP_QUERY_PARAMS: Tuple[str, ...] = (
    "file",
    "download",
    "attachment",
    "doc",
    "document",
    "pdf",
)

SKIP_EXTENSIONS: FrozenSet[str] = frozenset({
    # Documents
    ".pdf", ".doc", ".docx", ".ppt", ".pptx", ".xls", ".xlsx",
    ".txt", ".rtf", ".csv", ".xml", ".json", ".ashx",
    # Media
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".svg", ".ico",
    ".mp3", ".mp4", ".wav", ".avi", ".mov", ".wmv", ".webm",
    ".ogg", ".flv", ".mkv", ".m4v", ".m4a",
    # Web assets
    ".css", ".js", ".map", ".woff", ".woff2", ".ttf", ".eot",
    ".less", ".scss", ".sass",
    # Archives
    ".zip", ".rar", ".tar", ".gz", ".7z", ".bz2", ".iso",
    # Other
    ".exe", ".dll", ".bin", ".dat", ".log", ".bak", ".tmp",
    ".cache", ".swf",
})


@dataclass(frozen=True)
class FilterRules:
    """Immutable block-list bundle consumed by ``is_excluded``."""
    skip_hosts: Tuple[str, ...] = SKIP_HOSTS
    skip_extensions: FrozenSet[str] = SKIP_EXTENSIONS
    skip_url_patterns: Tuple[str, ...] = SKIP_URL_PATTERNS
    skip_file_patterns: Tuple[str, ...] = SKIP_FILE_PATTERNS
    skip_query_params: Tuple[str, ...] = SKIP_QUERY_PARAMS


DEFAULT_RULES = FilterRules()


def _host_blocked(host: str, host_path: str, entries: Tuple[str, ...]) -> bool:
    for entry in entries:
        entry = entry.lower()
        if "/" in entry:
            # host + path prefix, e.g. "umaine.edu/citl"
            entry_host, _, entry_path = entry.partition("/")
            if (host == entry_host or host.endswith("." + entry_host)) \
                    and host_path[len(host):].startswith("/" + entry_path):
                return True
        elif entry.endswith("."):
            # leading label(s), e.g. "calendar."
            if host.startswith(entry):
                return True
        elif host == entry or host.endswith("." + entry):
            return True
    return False


def _pattern_hit(pattern: str, host_path: str, query: str) -> bool:
    if pattern.endswith("$"):
        return host_path.endswith(pattern[:-1])
    return pattern in host_path or pattern in query


def is_excluded(url: str, rules: FilterRules = DEFAULT_RULES) -> bool:
    """
    Return True if *url* must not enter the frontier.

    Deterministic and side-effect free. Malformed URLs are excluded.
    """
    try:
        parts = urlsplit(url.strip())
        host = (parts.hostname or "").lower()
        _ = parts.port  # raises ValueError on a bad port
    except (ValueError, AttributeError):
        return True

    if parts.scheme.lower() not in ("http", "https") or not host:
        return True

    path = (parts.path or "/").lower()
    query = parts.query.lower()
    host_path = host + path

    if _host_blocked(host, host_path, rules.skip_hosts):
        return True

    ext = posixpath.splitext(path)[1]
    if ext and ext in rules.skip_extensions:
        return True

    for pattern in rules.skip_url_patterns:
        if _pattern_hit(pattern.lower(), host_path, query):
            return True

    for pattern in rules.skip_file_patterns:
        pattern = pattern.lower()
        if pattern in path or pattern in query or pattern in host:
            return True

    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        key, value = key.lower(), value.lower()
        for token in rules.skip_query_params:
            if token in key or token in value:
                return True

    return False
