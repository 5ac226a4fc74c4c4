"""Tests for the soft-failure detector."""

import pytest

from pagewatch.softfailure import (
    DEFAULT_SOFT_FAILURE_PATTERNS,
    MAX_BODY_BYTES,
    is_error_path,
    is_soft_failure,
    matches_content,
)


class TestIsErrorPath:
    """Tests for the URL path heuristic."""

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com/404",
            "https://example.com/site/404",
            "https://example.com/site/404/",
            "https://example.com/not-found",
            "https://example.com/blog/notfound?x=1",
            "https://example.com/page-not-found.html",
            "https://example.com/pagina-nao-encontrada",
            "https://example.com/erro-404",
            "https://example.com/error-404",
            "https://example.com/error",
            "https://example.com/app/error/",
            "https://example.com/NOT-FOUND",
        ],
    )
    def test_detects_error_paths(self, url: str) -> None:
        """Error-looking paths are flagged."""
        assert is_error_path(url) is True

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com/",
            "https://example.com/products/4040",
            "https://example.com/errors-and-fixes",
            "https://example.com/error-handling/guide",
            "https://example.com/?q=/404",
        ],
    )
    def test_ignores_regular_paths(self, url: str) -> None:
        """Ordinary paths, and query strings, are not flagged."""
        assert is_error_path(url) is False


class TestMatchesContent:
    """Tests for the body phrase heuristic."""

    def test_builtin_phrase_case_insensitive(self) -> None:
        """Built-in phrases match regardless of case."""
        assert matches_content("<h1>Page Not Found</h1>") is True

    def test_portuguese_phrase(self) -> None:
        """Portuguese phrases with accents match."""
        assert matches_content("<p>Página não encontrada</p>") is True

    def test_custom_pattern(self) -> None:
        """Custom patterns are unioned with the built-in list."""
        body = "<div>Produto indisponível no momento</div>"
        assert matches_content(body) is False
        assert matches_content(body, ["PRODUTO INDISPONÍVEL"]) is True

    def test_healthy_page(self) -> None:
        """A normal page does not match."""
        assert matches_content("<html><body>Welcome to our store</body></html>") is False

    def test_empty_custom_patterns_are_ignored(self) -> None:
        """An empty custom pattern never matches everything."""
        assert matches_content("hello", [""]) is False

    def test_builtin_list_is_lowercase(self) -> None:
        """Built-in patterns are stored lowercase for direct substring search."""
        assert all(p == p.lower() for p in DEFAULT_SOFT_FAILURE_PATTERNS)


class TestIsSoftFailure:
    """Tests for the combined detector."""

    def test_url_signal_alone_is_sufficient(self) -> None:
        """An error path fires even with a healthy-looking body."""
        assert is_soft_failure("https://example.com/404", "<h1>Welcome</h1>") is True

    def test_content_signal_alone_is_sufficient(self) -> None:
        """A phrase hit fires on an ordinary path."""
        assert is_soft_failure("https://example.com/shop", "Sorry, this page does not exist") is True

    def test_neither_signal(self) -> None:
        """No signal means not a soft failure."""
        assert is_soft_failure("https://example.com/shop", "<h1>Shop</h1>") is False

    def test_only_first_bytes_are_inspected(self) -> None:
        """A phrase beyond the inspected prefix is ignored."""
        body = "x" * MAX_BODY_BYTES + "page not found"
        assert is_soft_failure("https://example.com/", body) is False
