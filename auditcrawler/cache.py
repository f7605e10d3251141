"""
FILE DESCRIPTION: Filesystem cache of fetched pages with staleness probing.
KEY FUNCTIONS/CLASSES: cache_key, HeadProbe, CacheStore

Layout under cache_dir (one key = sha256 of the normalized URL):
    <key>.json            record: status, headers, metadata, fetched_at, body (base64)
    served/<key>.html     body obtained by direct fetch
    rendered/<key>.html   body obtained from the renderer
    logs/<key>.log        renderer console errors
"""

import base64
import hashlib
import json
import os
import shutil
import tempfile
import threading
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

from auditcrawler.core import logger
from auditcrawler.errors import CacheIOError, CrawlError
from auditcrawler.models import CacheEntry, RenderedVia
from auditcrawler.processor import LinkUtility

ARTIFACT_DIRS = ("served", "rendered", "logs")


def cache_key(url: str) -> str:
    return hashlib.sha256(LinkUtility.normalize_url(url).encode("utf-8")).hexdigest()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """RFC 7231 dates (Last-Modified) and ISO-8601 strings -> aware datetime, None if unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        return _as_utc(parsedate_to_datetime(value))
    except (TypeError, ValueError, IndexError):
        pass
    try:
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


class HeadProbe:
    """
    Header-only request returning the origin's Last-Modified time.
    Returns None when the header is missing; raises CrawlError subclasses on network failure.
    """

    def __init__(self, fetcher, timeout: float = 10):
        self.fetcher = fetcher
        self.timeout = timeout

    def __call__(self, url: str) -> Optional[datetime]:
        headers = self.fetcher.head(url, timeout=self.timeout)
        lowered = {k.lower(): v for k, v in headers.items()}
        return parse_http_date(lowered.get("last-modified"))


class CacheStore:
    """
    FLOW: get(url) reads <key>.json -> is_stale(url, hint) compares hint/probe against fetched_at ->
    put(url, entry) writes the record atomically plus its body artifact -> invalidate(url) removes everything for the key.
    """

    def __init__(self, cache_dir: str = ".cache", probe: Optional[Callable[[str], Optional[datetime]]] = None,
                 strict_staleness: bool = False):
        self.cache_dir = cache_dir
        self.probe = probe
        self.strict_staleness = strict_staleness
        self._lock = threading.Lock()
        self._ensure_dirs()

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': 'cache'})

    def _ensure_dirs(self):
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
            for name in ARTIFACT_DIRS:
                os.makedirs(os.path.join(self.cache_dir, name), exist_ok=True)
        except OSError as e:
            raise CacheIOError(f"cannot create cache directory {self.cache_dir}: {e}") from e

    # === PATHS ===

    def record_path(self, key: str) -> str:
        return os.path.join(self.cache_dir, f"{key}.json")

    def artifact_paths(self, key: str):
        return (
            os.path.join(self.cache_dir, "served", f"{key}.html"),
            os.path.join(self.cache_dir, "rendered", f"{key}.html"),
            os.path.join(self.cache_dir, "logs", f"{key}.log"),
        )

    def _write_atomic(self, path: str, data: bytes) -> None:
        directory = os.path.dirname(path)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    # === CONTRACT ===

    def get(self, url: str) -> Optional[CacheEntry]:
        key = cache_key(url)
        path = self.record_path(key)
        with self._lock:
            if not os.path.exists(path):
                return None
            try:
                with open(path, "r", encoding="utf-8") as f:
                    record = json.load(f)
                return CacheEntry(
                    key=key,
                    url=record["url"],
                    body=base64.b64decode(record["body"]),
                    status_code=int(record["status_code"]),
                    response_headers=dict(record.get("response_headers") or {}),
                    extracted_metadata=dict(record.get("extracted_metadata") or {}),
                    fetched_at=_as_utc(datetime.fromisoformat(record["fetched_at"])),
                    rendered_via=RenderedVia(record.get("rendered_via", RenderedVia.DIRECT_FETCH.value)),
                    console_errors=tuple(record.get("console_errors") or ()),
                )
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise CacheIOError(f"unreadable cache record {path}: {e}") from e

    def put(self, url: str, entry: CacheEntry) -> None:
        key = cache_key(url)
        record = {
            "url": entry.url,
            "status_code": entry.status_code,
            "response_headers": dict(entry.response_headers),
            "extracted_metadata": dict(entry.extracted_metadata),
            "fetched_at": _as_utc(entry.fetched_at).isoformat(),
            "rendered_via": entry.rendered_via.value,
            "console_errors": list(entry.console_errors),
            "body": base64.b64encode(entry.body).decode("ascii"),
        }
        served, rendered, log_path = self.artifact_paths(key)
        with self._lock:
            try:
                self._ensure_dirs()
                body_path = rendered if entry.rendered_via is RenderedVia.RENDER else served
                self._write_atomic(body_path, entry.body)
                if entry.console_errors:
                    self._write_atomic(log_path, "\n".join(entry.console_errors).encode("utf-8"))
                # record last: a readable record implies its artifacts exist
                self._write_atomic(self.record_path(key), json.dumps(record).encode("utf-8"))
            except OSError as e:
                raise CacheIOError(f"cannot write cache entry for {url}: {e}") from e
        self.log("debug", f"Cached {url} ({key[:12]})")

    def is_stale(self, url: str, origin_hint: Optional[datetime] = None,
                 entry: Optional[CacheEntry] = None) -> bool:
        """
        Stale when the origin's content is newer than the entry's fetched_at.
        A hint newer than fetched_at decides without probing. A failed probe or a missing
        Last-Modified keeps the entry (unless strict_staleness is on).
        """
        entry = entry or self.get(url)
        if entry is None:
            return True
        fetched_at = _as_utc(entry.fetched_at)

        if origin_hint is not None and _as_utc(origin_hint) > fetched_at:
            self.log("info", f"Cache stale for {url}: hint {origin_hint.isoformat()} newer than fetch")
            return True

        if self.probe is None:
            return False

        try:
            remote_modified = self.probe(url)
        except CrawlError as e:
            if self.strict_staleness:
                self.log("warning", f"Staleness probe failed for {url} ({e}); treating as stale")
                return True
            self.log("warning", f"Staleness probe failed for {url} ({e}); keeping cached copy")
            return False

        if remote_modified is None:
            return self.strict_staleness

        stale = remote_modified > fetched_at
        if stale:
            self.log("info", f"Cache stale for {url}: origin modified {remote_modified.isoformat()}")
        return stale

    def invalidate(self, url: str) -> None:
        key = cache_key(url)
        with self._lock:
            for path in (self.record_path(key),) + self.artifact_paths(key):
                try:
                    os.remove(path)
                except FileNotFoundError:
                    continue
                except OSError as e:
                    raise CacheIOError(f"cannot remove {path}: {e}") from e
        self.log("info", f"Invalidated cache for {url}")

    def clear(self) -> None:
        """Deletes the whole cache directory and recreates the empty layout."""
        with self._lock:
            try:
                if os.path.isdir(self.cache_dir):
                    shutil.rmtree(self.cache_dir)
            except OSError as e:
                raise CacheIOError(f"cannot delete cache directory {self.cache_dir}: {e}") from e
            self._ensure_dirs()
        self.log("warning", f"Cache directory {self.cache_dir} wiped")
