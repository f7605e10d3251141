"""
FILE DESCRIPTION: Per-URL fetch pipeline.
KEY FUNCTIONS/CLASSES: FetchDispatcher

FLOW: Compliance gate -> Cache lookup (+ staleness) -> Direct fetch with retries ->
Render fallback on block/exhaustion -> Cache write -> FetchResult.
Per-URL failures are reported on the FetchResult, never raised.
"""

import time
from typing import Callable, Dict, Optional, Tuple

from auditcrawler.core import CrawlConfig, logger
from auditcrawler.errors import (
    BlockedError,
    CacheIOError,
    NetworkError,
    RenderError,
    RenderPoolError,
    RenderTimeoutError,
    RequestError,
)
from auditcrawler.metrics import CrawlerMetrics
from auditcrawler.models import CacheEntry, ErrorKind, FetchResult, RenderedVia, UrlTask
from auditcrawler.processor import LinkExtractor
from auditcrawler.throttle import RATE_LIMIT_STATUSES


class _Fetched:
    """Successful fetch from either path, before it becomes a cache entry / result."""

    def __init__(self, body: bytes, status_code: int, headers: Dict[str, str], final_url: str,
                 via: RenderedVia, console_errors: Tuple[str, ...] = ()):
        self.body = body
        self.status_code = status_code
        self.headers = headers
        self.final_url = final_url
        self.via = via
        self.console_errors = console_errors


class FetchDispatcher:

    def __init__(self, config: CrawlConfig, gate, cache=None, fetcher=None, render_pool=None,
                 metrics: Optional[CrawlerMetrics] = None, traffic=None, limiter=None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.gate = gate
        self.cache = cache
        self.fetcher = fetcher
        self.render_pool = render_pool
        self.metrics = metrics or CrawlerMetrics()
        self.traffic = traffic
        self.limiter = limiter
        self._sleep = sleep

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': 'dispatch'})

    @property
    def can_render(self) -> bool:
        return self.render_pool is not None and self.config.use_renderer

    @property
    def can_fetch_direct(self) -> bool:
        return self.fetcher is not None

    # === ENTRY POINT ===

    def dispatch(self, task: UrlTask) -> FetchResult:
        url = task.url

        outcome = self.gate.check(url)
        if not outcome.proceed:
            self.metrics.incr("compliance_quits" if outcome.quit else "compliance_skips")
            return FetchResult(url=url, skipped=True, quit=outcome.quit, reason=outcome.reason, depth=task.depth)

        cached = self._from_cache(task)
        if cached is not None:
            return cached

        if self.config.cache_only:
            self.log("info", f"Not in cache (cache-only mode): {url}")
            return FetchResult(url=url, error=ErrorKind.NOT_CACHED, error_message="not in cache",
                               depth=task.depth)

        fetched, failure, attempts = self._fetch(url)
        if fetched is None:
            kind, message = failure
            self.log("error", f"Failed {url}: [{kind.value}] {message}")
            return FetchResult(url=url, error=kind, error_message=message, attempts=attempts, depth=task.depth)

        metadata = self._metadata(fetched)
        self._store(url, fetched, metadata)

        return FetchResult(
            url=url,
            body=fetched.body,
            status_code=fetched.status_code,
            headers=fetched.headers,
            rendered_via=fetched.via,
            final_url=fetched.final_url,
            extracted_metadata=metadata,
            attempts=attempts,
            depth=task.depth,
        )

    # === CACHE ===

    def _from_cache(self, task: UrlTask) -> Optional[FetchResult]:
        if self.cache is None or self.config.no_cache:
            return None

        url = task.url
        try:
            entry = self.cache.get(url)
        except CacheIOError as e:
            self.log("warning", f"Cache read failed for {url} ({e}); treating as miss")
            self.metrics.incr("cache_io_errors")
            entry = None

        if entry is None:
            self.metrics.incr("cache_misses")
            return None

        # nothing could replace a stale copy in cache-only mode
        if not self.config.cache_only and self.cache.is_stale(url, task.last_modified, entry=entry):
            self.metrics.incr("cache_stale")
            try:
                self.cache.invalidate(url)
            except CacheIOError as e:
                self.log("warning", f"Cache invalidation failed for {url}: {e}")
            return None

        self.metrics.incr("cache_hits")
        self.log("debug", f"Cache hit: {url}")
        return self._result_from_entry(entry, task)

    @staticmethod
    def _result_from_entry(entry: CacheEntry, task: UrlTask) -> FetchResult:
        return FetchResult(
            url=task.url,
            body=entry.body,
            status_code=entry.status_code,
            headers=dict(entry.response_headers),
            rendered_via=RenderedVia.CACHE,
            final_url=entry.extracted_metadata.get("final_url") or entry.url,
            extracted_metadata=dict(entry.extracted_metadata),
            depth=task.depth,
        )

    def _store(self, url: str, fetched: _Fetched, metadata: Dict) -> None:
        if self.cache is None or self.config.no_cache:
            return
        entry = CacheEntry(
            key="",
            url=url,
            body=fetched.body,
            status_code=fetched.status_code,
            response_headers=fetched.headers,
            extracted_metadata=metadata,
            rendered_via=fetched.via,
            console_errors=fetched.console_errors,
        )
        try:
            self.cache.put(url, entry)
        except CacheIOError as e:
            self.log("warning", f"Cache write failed for {url}: {e}")
            self.metrics.incr("cache_io_errors")

    # === FETCH PATHS ===

    def _fetch(self, url: str):
        """Returns (fetched, (error_kind, message), attempts)."""
        if not self.config.prefer_direct_fetch and self.can_render:
            fetched, failure = self._render(url)
            if fetched is not None or not self.can_fetch_direct:
                return fetched, failure, 1
            self.log("warning", f"Render failed for {url}; trying direct fetch")
            fetched, failure, attempts = self._direct_with_retries(url)
            return fetched, failure, attempts + 1

        if not self.can_fetch_direct:
            if not self.can_render:
                return None, (ErrorKind.INTERNAL, "no fetch path available"), 0
            fetched, failure = self._render(url)
            return fetched, failure, 1

        fetched, failure, attempts = self._direct_with_retries(url)
        if fetched is not None:
            return fetched, None, attempts

        if not self.can_render or failure[0] is ErrorKind.REQUEST:
            return None, failure, attempts

        self.metrics.incr("render_fallbacks")
        self.log("info", f"Falling back to renderer for {url} ({failure[1]})")
        rendered, render_failure = self._render(url)
        return rendered, render_failure, attempts + 1

    def _direct_with_retries(self, url: str):
        """
        Up to max_retries direct attempts with backoff_base * 2**attempt between them.
        A blocked response stops immediately so the renderer can take over.
        A rejected request (malformed URL, redirect loop) is final.
        """
        failure = None
        attempts = 0
        for attempt in range(self.config.max_retries):
            attempts += 1
            try:
                response = self.fetcher.fetch(url)
            except BlockedError as e:
                self._note_status(url, e.status_code, e.retry_after)
                self.metrics.incr("blocked")
                self.log("warning", f"Blocked on {url}: {e}")
                return None, (ErrorKind.BLOCKED, str(e)), attempts
            except RequestError as e:
                self.log("error", f"Request rejected for {url}: {e}")
                return None, (ErrorKind.REQUEST, str(e)), attempts
            except NetworkError as e:
                failure = (ErrorKind.NETWORK, str(e))
                if attempt + 1 < self.config.max_retries:
                    delay = self.config.backoff_base * (2 ** attempt)
                    self.metrics.incr("retries")
                    self.log("warning", f"Network error on {url} ({e}); retry {attempt + 1}/{self.config.max_retries - 1} in {delay:.1f}s")
                    self._sleep(delay)
                continue

            self._note_status(url, response.status_code)
            return _Fetched(
                body=response.body,
                status_code=response.status_code,
                headers=response.headers,
                final_url=response.final_url,
                via=RenderedVia.DIRECT_FETCH,
            ), None, attempts

        self.log("warning", f"Retries exhausted for {url}")
        return None, failure, attempts

    def _render(self, url: str):
        timeout = self.config.render_timeout
        try:
            page = self.render_pool.execute(lambda renderer: renderer.render(url, timeout))
        except RenderTimeoutError as e:
            return None, (ErrorKind.NETWORK, f"render timeout: {e}")
        except RenderError as e:
            return None, (ErrorKind.RENDER, str(e))
        except RenderPoolError as e:
            return None, (ErrorKind.RENDER, f"renderer unavailable: {e}")

        self._note_status(url, page.status_code)
        self.metrics.incr("rendered")
        return _Fetched(
            body=page.html.encode("utf-8"),
            status_code=page.status_code,
            headers=dict(page.headers),
            final_url=page.final_url or url,
            via=RenderedVia.RENDER,
            console_errors=tuple(page.console_errors),
        ), None

    # === HELPERS ===

    def _note_status(self, url: str, status_code: Optional[int], retry_after: Optional[float] = None) -> None:
        if self.limiter is not None:
            self.limiter.on_response(status_code)
        if self.traffic is not None and status_code in RATE_LIMIT_STATUSES:
            self.traffic.set_pause(url, retry_after)

    @staticmethod
    def _metadata(fetched: _Fetched) -> Dict:
        content_type = {k.lower(): v for k, v in fetched.headers.items()}.get("content-type", "")
        html = ""
        if not content_type or "html" in content_type.lower():
            html = fetched.body.decode("utf-8", errors="replace")
        return LinkExtractor.page_metadata(html, fetched.headers, fetched.final_url)
