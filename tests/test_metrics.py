import unittest

from auditcrawler.metrics import CrawlerMetrics
from auditcrawler.models import ErrorKind, FetchResult, RenderedVia


class TestCrawlerMetrics(unittest.TestCase):

    def test_outcomes_and_summary(self):
        metrics = CrawlerMetrics()
        metrics.record_result(FetchResult(url="https://example.com/a", body=b"12345", status_code=200,
                                          rendered_via=RenderedVia.CACHE), 0.1, "CrawlerWorker_0")
        metrics.record_result(FetchResult(url="https://example.com/b", skipped=True, reason="robots"))
        metrics.record_result(FetchResult(url="https://example.com/c", error=ErrorKind.NETWORK,
                                          error_message="timeout"))
        metrics.incr("cache_hits")

        snap = metrics.snapshot()
        self.assertEqual(snap["total_urls"], 3)
        self.assertEqual(snap["success_count"], 1)
        self.assertEqual(snap["skipped_count"], 1)
        self.assertEqual(snap["failed_count"], 1)
        self.assertEqual(snap["total_size_bytes"], 5)
        self.assertEqual(snap["via"], {"cache": 1})
        self.assertEqual(snap["failures"], [("https://example.com/c", "network", "timeout")])
        self.assertEqual(metrics.domain_stats["example.com"]["total_urls"], 3)

        summary = metrics.render_summary(pool_stats={"recycles": 2})
        self.assertIn("FINAL SUMMARY", summary)
        self.assertIn("cache_hits", summary)
        self.assertIn("recycles", summary)
        self.assertIn("https://example.com/c", summary)


if __name__ == "__main__":
    unittest.main()
