"""
Tests for scope_filter.py.

Covers:
  1. Canonical normalisation (fragments, www, ports, dot-segments, query order)
  2. Idempotence of normalize_url
  3. Domain scope (subdomains included, look-alike hosts rejected)
  4. ScopeFilter as the frontier admission callable
  5. RFC 3986 decode_unreserved edge cases
"""

import pytest

from termcrawler.scope_filter import (
    ScopeFilter,
    _canonicalize,
    _decode_unreserved,
    normalize_url,
)


# ====================================================================
# 1. Canonical normalisation
# ====================================================================

class TestCanonicalise:

    def test_fragment_removed(self):
        assert normalize_url("https://example.edu/a#section") == "https://example.edu/a"

    def test_www_stripped_and_host_lowercased(self):
        c = _canonicalize("HTTPS://WWW.Example.EDU/Path")
        assert c is not None
        assert c.hostname == "example.edu"
        assert c.scheme == "https"
        # path case is preserved
        assert c.path == "/Path"

    def test_default_port_http(self):
        c = _canonicalize("http://example.edu:80/path")
        assert c is not None
        assert ":80" not in c.raw

    def test_default_port_https(self):
        assert normalize_url("https://example.edu:443/x") == "https://example.edu/x"

    def test_non_default_port_kept(self):
        assert normalize_url("https://example.edu:8443/x") == "https://example.edu:8443/x"

    def test_trailing_slash_stripped(self):
        assert normalize_url("https://example.edu/about/") == "https://example.edu/about"
        assert normalize_url("https://example.edu/about///") == "https://example.edu/about"

    def test_root_slash_kept(self):
        assert normalize_url("https://example.edu") == "https://example.edu/"
        assert normalize_url("https://example.edu/") == "https://example.edu/"

    def test_query_sorted_by_name(self):
        assert (normalize_url("https://example.edu/p?b=2&a=1")
                == "https://example.edu/p?a=1&b=2")

    def test_query_sort_is_stable_for_repeated_names(self):
        assert (normalize_url("https://example.edu/p?tag=z&id=1&tag=a")
                == "https://example.edu/p?id=1&tag=z&tag=a")

    def test_dot_segment_resolution(self):
        c = _canonicalize("https://example.edu/a/b/../c")
        assert c is not None
        assert c.path == "/a/c"

    def test_single_dot_segment(self):
        assert normalize_url("https://example.edu/a/./b") == "https://example.edu/a/b"

    def test_percent_encoding_parity(self):
        assert normalize_url("https://example.edu/p%61th") == normalize_url("https://example.edu/path")

    def test_reserved_chars_preserved(self):
        c = _canonicalize("https://example.edu/a%2Fb")
        assert c is not None
        assert "%2F" in c.path

    @pytest.mark.parametrize("url", [
        "",
        "javascript:void(0)",
        "mailto:dean@example.edu",
        "tel:+12075551234",
        "#top",
        "ftp://example.edu/x",
        "https://example.edu:notaport/",
    ])
    def test_uncrawlable_returns_none(self, url):
        assert normalize_url(url) is None


# ====================================================================
# 2. Idempotence
# ====================================================================

class TestIdempotence:

    @pytest.mark.parametrize("url", [
        "https://WWW.example.edu:443/a/../b/?z=1&a=2#frag",
        "http://example.edu/%7Euser/",
        "https://example.edu/p?flag&x=1",
        "https://sub.example.edu:8080/A/B/",
        "https://example.edu",
        "https://www.www.example.edu/a",
    ])
    def test_normalize_twice_is_normalize_once(self, url):
        once = normalize_url(url)
        assert once is not None
        assert normalize_url(once) == once

    def test_repeated_www_collapses_to_one_key(self):
        assert normalize_url("https://www.www.example.edu/a") == "https://example.edu/a"
        assert normalize_url("https://www./a") is None


# ====================================================================
# 3. Domain scope
# ====================================================================

class TestDomainScope:

    def test_same_domain(self):
        assert ScopeFilter(allowed_domain="example.edu")("https://example.edu/a") is not None

    def test_www_ignored_on_both_sides(self):
        assert ScopeFilter(allowed_domain="example.edu")("https://www.example.edu/a") == "https://example.edu/a"
        assert ScopeFilter(allowed_domain="www.example.edu")("https://example.edu/a") == "https://example.edu/a"

    def test_subdomain_included(self):
        assert ScopeFilter(allowed_domain="example.edu")("https://dept.example.edu/") is not None

    @pytest.mark.parametrize("url", [
        "https://notexample.edu/",
        "https://example.edu.evil.com/",
    ])
    def test_lookalike_host_rejected(self, url):
        assert ScopeFilter(allowed_domain="example.edu")(url) is None


# ====================================================================
# 4. ScopeFilter
# ====================================================================

class TestScopeFilter:

    def test_filter_and_clean_returns_canonical_url(self):
        sf = ScopeFilter(allowed_domain="example.edu")
        assert sf.filter_and_clean("https://www.example.edu/b/#x") == "https://example.edu/b"

    def test_callable_alias(self):
        sf = ScopeFilter(allowed_domain="example.edu")
        assert sf("https://example.edu/b") == "https://example.edu/b"

    def test_off_domain_rejected(self):
        sf = ScopeFilter(allowed_domain="example.edu")
        assert sf.filter_and_clean("https://other.org/b") is None

    @pytest.mark.parametrize("url", [
        "https://example.edu/brochure.pdf",
        "https://calendar.example.edu/",
        "https://example.edu/events/week/1",
    ])
    def test_block_lists_applied(self, url):
        assert ScopeFilter(allowed_domain="example.edu").filter_and_clean(url) is None

    def test_empty_domain_rejects_all(self):
        sf = ScopeFilter(allowed_domain="")
        assert sf.filter_and_clean("https://example.edu/page") is None
        assert "rejects all" in sf.scope_description

    def test_scope_description(self):
        sf = ScopeFilter(allowed_domain="WWW.Example.edu")
        assert "example.edu" in sf.scope_description


# ====================================================================
# 5. RFC 3986 decode_unreserved edge cases
# ====================================================================

class TestDecodeUnreserved:

    def test_unreserved_decoded(self):
        assert _decode_unreserved("%7E") == "~"

    def test_reserved_kept(self):
        assert _decode_unreserved("%2F") == "%2F"

    def test_mixed(self):
        assert _decode_unreserved("/p%61th/%2Fsub") == "/path/%2Fsub"

    def test_hex_uppercased(self):
        assert _decode_unreserved("%2f") == "%2F"
