"""
Exception hierarchy for the crawl core.

Per-URL errors are caught by the dispatcher and reported on the FetchResult.
Only RenderPoolError (no renderer at all) and SessionAborted reach the host.
"""

from typing import Optional


class CrawlError(Exception):
    """Base crawl exception."""
    pass


class NetworkError(CrawlError):
    """DNS failure, connection reset/refused or timeout. Retryable."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class RequestError(CrawlError):
    """Malformed URL, unsupported scheme or redirect loop. Not retryable."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class BlockedError(CrawlError):
    """403/429 or an anti-bot challenge page. Triggers the render fallback."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.retry_after = retry_after


class RenderError(CrawlError):
    """Base rendering exception."""
    pass


class RenderTimeoutError(RenderError):
    """Raised when a render call exceeds its time limit."""
    pass


class RenderExecutionError(RenderError):
    """Raised on page-level browser/script execution failures."""
    pass


class RendererCrashedError(RenderError):
    """The browser instance died or disconnected. Its handle must be recycled."""
    pass


class CacheIOError(CrawlError):
    """Filesystem failure inside the cache store. Always treated as a miss."""
    pass


class RenderPoolError(CrawlError):
    """No renderer instance could be launched."""
    pass


class PoolShutdownError(RenderPoolError):
    """The pool is shutting down and cannot hand out renderers."""
    pass


class SessionAborted(CrawlError):
    """The user chose to quit the session from a compliance prompt."""

    def __init__(self, message: str = "Session aborted by user", url: Optional[str] = None):
        super().__init__(message)
        self.url = url
