import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from auditcrawler.cache import CacheStore, HeadProbe, cache_key, parse_http_date
from auditcrawler.errors import CacheIOError, NetworkError
from auditcrawler.models import CacheEntry, RenderedVia

URL = "https://example.com/page"
FETCHED_AT = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def entry(via=RenderedVia.DIRECT_FETCH, console_errors=()):
    return CacheEntry(
        key="",
        url=URL,
        body=b"<html><title>x</title>\xff</html>",
        status_code=200,
        response_headers={"Content-Type": "text/html"},
        extracted_metadata={"title": "x", "final_url": URL},
        fetched_at=FETCHED_AT,
        rendered_via=via,
        console_errors=console_errors,
    )


class CacheTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.cache_dir = os.path.join(self.tmp, "cache")

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)


class TestCacheStore(CacheTestCase):

    def test_key_is_hash_of_normalized_url(self):
        self.assertEqual(cache_key("https://Example.com/page/"), cache_key(URL))
        self.assertEqual(len(cache_key(URL)), 64)
        self.assertNotEqual(cache_key(URL), cache_key(URL + "?a=1"))

    def test_put_then_get(self):
        store = CacheStore(self.cache_dir)
        store.put(URL, entry())
        got = store.get(URL)
        self.assertEqual(got.key, cache_key(URL))
        self.assertEqual(got.body, entry().body)
        self.assertEqual(got.status_code, 200)
        self.assertEqual(got.response_headers, {"Content-Type": "text/html"})
        self.assertEqual(got.extracted_metadata["title"], "x")
        self.assertEqual(got.fetched_at, FETCHED_AT)
        self.assertEqual(got.rendered_via, RenderedVia.DIRECT_FETCH)

    def test_miss(self):
        self.assertIsNone(CacheStore(self.cache_dir).get(URL))

    def test_artifacts_and_invalidate(self):
        store = CacheStore(self.cache_dir)
        store.put(URL, entry(via=RenderedVia.RENDER, console_errors=("boom",)))
        key = cache_key(URL)
        served, rendered, log_path = store.artifact_paths(key)
        self.assertFalse(os.path.exists(served))
        self.assertTrue(os.path.exists(rendered))
        with open(log_path, encoding="utf-8") as f:
            self.assertEqual(f.read(), "boom")

        store.invalidate(URL)
        self.assertIsNone(store.get(URL))
        for path in (store.record_path(key), served, rendered, log_path):
            self.assertFalse(os.path.exists(path))

        # absent artifacts are not an error
        store.invalidate(URL)

    def test_corrupt_record_raises_cache_io_error(self):
        store = CacheStore(self.cache_dir)
        with open(store.record_path(cache_key(URL)), "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertRaises(CacheIOError):
            store.get(URL)

    def test_clear(self):
        store = CacheStore(self.cache_dir)
        store.put(URL, entry())
        store.clear()
        self.assertIsNone(store.get(URL))
        self.assertTrue(os.path.isdir(os.path.join(self.cache_dir, "rendered")))


class TestStaleness(CacheTestCase):

    def store(self, probe=None, strict=False):
        store = CacheStore(self.cache_dir, probe=probe, strict_staleness=strict)
        store.put(URL, entry())
        return store

    def test_no_probe_no_hint_is_fresh(self):
        self.assertFalse(self.store().is_stale(URL))

    def test_newer_hint_is_stale_without_probe(self):
        probe = MagicMock()
        store = self.store(probe)
        self.assertTrue(store.is_stale(URL, FETCHED_AT + timedelta(days=1)))
        probe.assert_not_called()

    def test_older_hint_defers_to_probe(self):
        probe = MagicMock(return_value=FETCHED_AT - timedelta(days=3))
        self.assertFalse(self.store(probe).is_stale(URL, FETCHED_AT - timedelta(days=1)))
        probe.assert_called_once_with(URL)

    def test_probe_newer_is_stale(self):
        probe = MagicMock(return_value=FETCHED_AT + timedelta(seconds=1))
        self.assertTrue(self.store(probe).is_stale(URL))

    def test_probe_failure_is_fail_open(self):
        probe = MagicMock(side_effect=NetworkError("down", url=URL))
        self.assertFalse(self.store(probe).is_stale(URL))

    def test_missing_header_is_fail_open(self):
        self.assertFalse(self.store(MagicMock(return_value=None)).is_stale(URL))

    def test_strict_mode(self):
        failing = MagicMock(side_effect=NetworkError("down", url=URL))
        self.assertTrue(self.store(failing, strict=True).is_stale(URL))
        self.assertTrue(self.store(MagicMock(return_value=None), strict=True).is_stale(URL))

    def test_missing_entry_is_stale(self):
        self.assertTrue(CacheStore(self.cache_dir).is_stale("https://example.com/other"))


class TestHeadProbe(unittest.TestCase):

    def test_reads_last_modified(self):
        fetcher = MagicMock()
        fetcher.head.return_value = {"Last-Modified": "Wed, 10 Jan 2024 13:00:00 GMT"}
        modified = HeadProbe(fetcher, timeout=5)(URL)
        self.assertEqual(modified, datetime(2024, 1, 10, 13, 0, tzinfo=timezone.utc))
        fetcher.head.assert_called_once_with(URL, timeout=5)

    def test_missing_header(self):
        fetcher = MagicMock()
        fetcher.head.return_value = {}
        self.assertIsNone(HeadProbe(fetcher)(URL))

    def test_parse_http_date_formats(self):
        self.assertEqual(parse_http_date("2024-01-10T12:00:00Z"), FETCHED_AT)
        self.assertEqual(parse_http_date("2024-01-10"), datetime(2024, 1, 10, tzinfo=timezone.utc))
        self.assertIsNone(parse_http_date("yesterday"))
        self.assertIsNone(parse_http_date(None))


if __name__ == "__main__":
    unittest.main()
