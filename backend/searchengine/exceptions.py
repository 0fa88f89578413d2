"""Domain errors.

Services raise these internally and turn them into ``{"result": false,
"error": ...}`` responses at their public boundary.
"""


class SearchEngineError(Exception):
    """Base class; ``str(exc)`` is the message shown to API clients."""

    message = "Search engine error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


class AlreadyRunning(SearchEngineError):
    message = "already running"


class NotRunning(SearchEngineError):
    message = "not running"


class OutOfScope(SearchEngineError):
    message = "This page is outside the sites listed in the configuration"


class FetchError(SearchEngineError):
    def __init__(self, http_code: int):
        self.http_code = http_code
        super().__init__(f"Failed to index page: HTTP {http_code}")


class UnsupportedContentType(SearchEngineError):
    def __init__(self, content_type: str | None):
        self.content_type = content_type
        super().__init__(
            f"Failed to index page: unsupported Content-Type {content_type or 'unknown'}"
        )


class EmptyQuery(SearchEngineError):
    message = "Empty search query"


class InvalidRange(SearchEngineError):
    message = "Invalid offset or limit"


class UnknownSite(SearchEngineError):
    message = "This site is not listed in the configuration"


class NotIndexed(SearchEngineError):
    message = "No indexed sites to search"
