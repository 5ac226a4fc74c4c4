"""Detection of pages that answer 200 but are really "not found" pages."""

from collections.abc import Iterable
from urllib.parse import urlsplit

# Only this many bytes of a 200 body are inspected.
MAX_BODY_BYTES = 50_000

# Built-in phrases, English then Portuguese. Matched as lowercase substrings.
DEFAULT_SOFT_FAILURE_PATTERNS = (
    "not found",
    "page not found",
    "404 error",
    "404 not found",
    "error 404",
    "page does not exist",
    "content not found",
    "resource not found",
    "the page you requested",
    "could not be found",
    "does not exist",
    "no longer available",
    "page is missing",
    "page has been removed",
    "pagina nao encontrada",
    "página não encontrada",
    "nao encontrado",
    "não encontrado",
    "erro 404",
    "pagina nao existe",
    "página não existe",
    "pagina inexistente",
    "página inexistente",
    "conteudo nao encontrado",
    "conteúdo não encontrado",
    "recurso nao encontrado",
    "recurso não encontrado",
    "esta pagina nao existe",
    "esta página não existe",
    "pagina removida",
    "página removida",
    "pagina excluida",
    "página excluída",
    "nao foi possivel encontrar",
    "não foi possível encontrar",
)

_ERROR_PATH_SLUGS = (
    "/not-found",
    "/notfound",
    "/page-not-found",
    "/pagina-nao-encontrada",
    "/erro-404",
    "/error-404",
)


def is_error_path(url: str) -> bool:
    """Return True if the URL path itself names an error page."""
    path = urlsplit(url).path.lower()
    if path == "/404" or path.endswith(("/404", "/404/")):
        return True
    if any(slug in path for slug in _ERROR_PATH_SLUGS):
        return True
    return path == "/error" or path.endswith(("/error", "/error/"))


def matches_content(body: str, custom_patterns: Iterable[str] = ()) -> bool:
    """Return True if any built-in or custom phrase occurs in the body."""
    text = body.lower()
    if any(pattern in text for pattern in DEFAULT_SOFT_FAILURE_PATTERNS):
        return True
    return any(pattern.lower() in text for pattern in custom_patterns if pattern)


def is_soft_failure(url: str, body: str, custom_patterns: Iterable[str] = ()) -> bool:
    """Classify a 200 response as a soft failure.

    Either signal is enough: an error-looking URL path, or a single phrase hit in
    the first MAX_BODY_BYTES characters of the body. There is no scoring and no
    negation handling.
    """
    if is_error_path(url):
        return True
    return matches_content(body[:MAX_BODY_BYTES], custom_patterns)
