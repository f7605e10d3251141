import unittest
from unittest.mock import MagicMock

from auditcrawler.errors import BlockedError, NetworkError, RenderExecutionError, RequestError
from auditcrawler.models import DirectResponse, RenderedPage
from auditcrawler.robots.fetcher import RobotsFetcher

ROBOTS_URL = "https://example.com/robots.txt"
BODY = b"User-agent: *\nDisallow: /admin\nSitemap: https://example.com/sitemap.xml\n"


def response(status, body=b""):
    return DirectResponse(url=ROBOTS_URL, final_url=ROBOTS_URL, status_code=status, headers={}, body=body)


class InlinePool:

    def __init__(self, renderer):
        self.renderer = renderer

    def execute(self, fn, timeout=None):
        return fn(self.renderer)


class TestRobotsFetcher(unittest.TestCase):

    def test_fetches_site_root_document(self):
        fetcher = MagicMock()
        fetcher.fetch.return_value = response(200, BODY)
        rule_set = RobotsFetcher(fetcher).fetch("https://example.com/deep/page?x=1")
        fetcher.fetch.assert_called_once_with(ROBOTS_URL)
        self.assertEqual(rule_set.rule_count, 1)
        self.assertEqual(rule_set.sitemaps, ("https://example.com/sitemap.xml",))

    def test_not_found_allows_all(self):
        fetcher = MagicMock()
        fetcher.fetch.return_value = response(404)
        self.assertEqual(RobotsFetcher(fetcher).fetch("https://example.com/").rule_count, 0)

    def test_server_error_allows_all(self):
        fetcher = MagicMock()
        fetcher.fetch.return_value = response(500, b"Disallow: /")
        self.assertEqual(RobotsFetcher(fetcher).fetch("https://example.com/").rule_count, 0)

    def test_blocked_falls_back_to_renderer(self):
        fetcher = MagicMock()
        fetcher.fetch.side_effect = BlockedError("http 403", url=ROBOTS_URL, status_code=403)
        renderer = MagicMock()
        renderer.render.return_value = RenderedPage(
            url=ROBOTS_URL, final_url=ROBOTS_URL, status_code=200,
            html="<html><head></head><body><pre>User-agent: *\nDisallow: /private\n</pre></body></html>",
        )
        rule_set = RobotsFetcher(fetcher, InlinePool(renderer), render_timeout=7).fetch("https://example.com/")
        renderer.render.assert_called_once_with(ROBOTS_URL, 7)
        self.assertEqual(rule_set.user_agent_rules["*"][0].path_pattern, "/private")

    def test_rejected_request_allows_all_without_rendering(self):
        fetcher = MagicMock()
        fetcher.fetch.side_effect = RequestError("too many redirects", url=ROBOTS_URL)
        renderer = MagicMock()
        rule_set = RobotsFetcher(fetcher, InlinePool(renderer)).fetch("https://example.com/")
        self.assertEqual(rule_set.rule_count, 0)
        renderer.render.assert_not_called()

    def test_total_failure_is_fail_open(self):
        fetcher = MagicMock()
        fetcher.fetch.side_effect = NetworkError("dns", url=ROBOTS_URL)
        self.assertEqual(RobotsFetcher(fetcher).fetch("https://example.com/").rule_count, 0)

        renderer = MagicMock()
        renderer.render.side_effect = RenderExecutionError("boom")
        rule_set = RobotsFetcher(fetcher, InlinePool(renderer)).fetch("https://example.com/")
        self.assertEqual(rule_set.rule_count, 0)


if __name__ == "__main__":
    unittest.main()
