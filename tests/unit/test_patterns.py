"""Unit tests for endpoint pattern matching."""

import re

import pytest

from secure_fetch.patterns import compile_placeholder_pattern, matches, pattern_matches


class TestSinglePattern:
    """Test each pattern shape on its own."""

    @pytest.mark.parametrize(
        "url",
        ["/v1/anything", "https://api.example.com/x?y=1", ""],
    )
    def test_wildcard_matches_everything(self, url: str) -> None:
        """'*' matches unconditionally."""
        assert pattern_matches(url, "*")

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("/insurance/quote", True),
            ("https://api.example.com/insurance/quote?x=1", True),
            ("/v2/insurance", True),  # containment, not prefix-anchored
            ("/insur/quote", False),
        ],
    )
    def test_glob_is_containment_of_stripped_prefix(self, url: str, expected: bool) -> None:
        """'prefix/*' matches iff the URL contains 'prefix'."""
        assert pattern_matches(url, "/insurance/*") is expected

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("/api/orders", True),
            ("https://host/api/orders/42", True),
            ("/api/order", False),
        ],
    )
    def test_literal_is_substring(self, url: str, expected: bool) -> None:
        """Plain patterns are substring containment tests."""
        assert pattern_matches(url, "/api/orders") is expected

    def test_placeholder_matches_one_segment(self) -> None:
        """'{ignore}' stands for exactly one non-empty path segment."""
        pattern = "v1/{ignore}/users"

        assert pattern_matches("v1/MT1/users", pattern)
        assert pattern_matches("v1/MT2/users", pattern)
        assert not pattern_matches("v1/users", pattern)
        assert not pattern_matches("v1/a/b/users", pattern)

    def test_placeholder_is_search_not_fullmatch(self) -> None:
        """Placeholder patterns match anywhere inside the URL."""
        assert pattern_matches("https://host/api/v1/MT1/users?page=2", "v1/{ignore}/users")

    def test_multiple_placeholders_replaced_independently(self) -> None:
        """Every placeholder occurrence is replaced."""
        pattern = "/api/{ignore}/items/{ignore}/details"

        assert pattern_matches("/api/shop1/items/99/details", pattern)
        assert not pattern_matches("/api/shop1/items/details", pattern)

    def test_placeholder_literals_are_escaped(self) -> None:
        """Regex metacharacters in the literal parts match literally."""
        pattern = "/v1.0/{ignore}/a+b"

        assert pattern_matches("/v1.0/x/a+b", pattern)
        assert not pattern_matches("/v1x0/x/a+b", pattern)
        assert not pattern_matches("/v1.0/x/aab", pattern)

    def test_compile_placeholder_pattern(self) -> None:
        """Compiled regex replaces placeholders with a non-slash run."""
        compiled = compile_placeholder_pattern("v1/{ignore}/users")

        assert isinstance(compiled, re.Pattern)
        assert compiled.pattern == "v1/[^/]+/users"


class TestMatches:
    """Test include/skip combination."""

    def test_skip_wins_over_wildcard(self) -> None:
        """Skip-patterns take precedence over include-patterns."""
        assert not matches("/v1/public/data", ["*"], ["/v1/public/*"])
        assert matches("/v1/private/data", ["*"], ["/v1/public/*"])

    def test_skip_wins_over_exact_include(self) -> None:
        """A URL matching both sets is never encrypted."""
        assert not matches("/api/orders", ["/api/orders"], ["/api/orders"])

    def test_empty_include_never_matches(self) -> None:
        """No include-patterns means nothing is encrypted."""
        assert not matches("/anything", [], [])

    def test_skip_only_without_include(self) -> None:
        """Skip-patterns alone do not enable anything."""
        assert not matches("/private", [], ["/public/*"])

    def test_any_include_suffices(self) -> None:
        """One matching include-pattern is enough."""
        assert matches("/b/x", ["/a/*", "/b/*"], [])

    def test_skip_placeholder(self) -> None:
        """Skip-patterns support placeholders too."""
        assert not matches("/v1/t1/health", ["*"], ["/v1/{ignore}/health"])
        assert matches("/v1/t1/orders", ["*"], ["/v1/{ignore}/health"])

    def test_accepts_tuples_and_generators(self) -> None:
        """Pattern sets may be any iterable."""
        assert matches("/a/b", ("/a/*",), (p for p in ["/c/*"]))
