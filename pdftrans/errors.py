from typing import Optional


class PdfTranslateError(Exception):
    """Base class for all errors raised by pdftrans."""


class ConfigurationError(PdfTranslateError):
    """Invalid or incomplete configuration."""


class UnsupportedLanguageError(ConfigurationError):
    """No bundled font covers the requested target language."""

    def __init__(self, lang: str, supported):
        self.lang = lang
        self.supported = sorted(supported)
        super().__init__(
            f"unsupported target language '{lang}' (supported: {', '.join(self.supported)})"
        )


class DocumentError(PdfTranslateError):
    """The document could not be opened or read."""


class InvalidPageError(DocumentError):
    def __init__(self, page: int, total: int):
        self.page = page
        self.total = total
        super().__init__(f"invalid page index {page} (document has {total} pages)")


class ExtractionError(PdfTranslateError):
    """The glyph stream of a page is structurally malformed."""

    def __init__(self, page: int, reason: str):
        self.page = page
        self.reason = reason
        super().__init__(f"failed to extract text from page {page}: {reason}")


class TranslationError(PdfTranslateError):
    """Base class for translation failures.

    ``retryable`` tells the client's retry loop whether another attempt may
    succeed.
    """

    retryable = False


class TransientTranslationError(TranslationError):
    """Timeout, connection reset or 5xx response."""

    retryable = True


class RateLimitedError(TranslationError):
    retryable = True

    def __init__(self, message: str = "translation rate limited", retry_after: Optional[float] = None):
        self.retry_after = retry_after
        if retry_after is not None:
            message = f"{message}, retry after {retry_after:g} seconds"
        super().__init__(message)


class ProtocolError(TranslationError):
    """The far end violated the response format (segment count or order)."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        self.raw_response = raw_response
        super().__init__(message)


class AuthenticationFailedError(TranslationError):
    """401/403 from the translation endpoint."""


class RequestRejectedError(TranslationError):
    """Any other 4xx: bad request, unknown model, content filter."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CompositionError(PdfTranslateError):
    pass


class UnfittableTextError(CompositionError):
    """Text did not fit even at the minimum font size; ``fit`` holds the clipped layout."""

    def __init__(self, fit, message: str = "translated text does not fit its box at the minimum font size"):
        self.fit = fit
        super().__init__(message)


class CacheError(PdfTranslateError):
    """The cache backing store failed an I/O operation."""


class PageCancelledError(PdfTranslateError):
    def __init__(self, page: int):
        self.page = page
        super().__init__(f"page {page} request was cancelled")
