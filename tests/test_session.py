"""
Session wiring, configuration and CLI exit codes, with fetcher and renderer injected.
"""

import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import MagicMock, patch

import main as cli
from auditcrawler.core import CrawlConfig
from auditcrawler.errors import RenderPoolError
from auditcrawler.models import (
    DirectResponse,
    Directive,
    ErrorKind,
    FetchResult,
    RenderedVia,
    Rule,
    RuleSet,
    UrlTask,
)
from auditcrawler.rendering.backend import Renderer
from auditcrawler.robots.compliance import FixedDecisionProvider, OverrideChoice
from auditcrawler.session import CrawlSession, SessionReport


class NullRenderer(Renderer):

    def __init__(self, seq):
        self.closed = False

    def render(self, url, timeout):
        raise AssertionError("renderer should not be used")

    def close(self):
        self.closed = True


def failing_launcher(seq):
    raise RuntimeError("no browser installed")


def page_fetcher():
    fetcher = MagicMock()
    fetcher.fetch.side_effect = lambda url, referer=None: DirectResponse(
        url=url, final_url=url, status_code=200, headers={"Content-Type": "text/html"},
        body=b"<html><a href='/next'>next</a></html>")
    return fetcher


class TestCrawlConfig(unittest.TestCase):

    def test_from_env(self):
        env = {"POOL_SIZE": "2", "CONCURRENCY": "5", "NO_RECURSIVE": "1", "FORCE_SCRAPE": "true",
               "LIMIT": "10", "LOG_LEVEL": "debug"}
        with patch.dict(os.environ, env, clear=True):
            config = CrawlConfig.from_env(env_file=os.devnull)
        self.assertEqual(config.pool_size, 2)
        self.assertEqual(config.concurrency_limit, 5)
        self.assertFalse(config.recursive)
        self.assertTrue(config.force_bypass)
        self.assertEqual(config.max_pages, 10)
        self.assertEqual(config.log_level, "DEBUG")

    def test_defaults(self):
        config = CrawlConfig()
        self.assertEqual((config.pool_size, config.concurrency_limit, config.recycle_threshold), (3, 3, 50))
        self.assertTrue(config.recursive)
        self.assertFalse(config.force_bypass)

    def test_validation(self):
        with self.assertRaises(ValueError):
            CrawlConfig().with_overrides(no_cache=True, cache_only=True)
        with self.assertRaises(ValueError):
            CrawlConfig().with_overrides(pool_size=0)
        self.assertEqual(CrawlConfig().with_overrides(pool_size=None).pool_size, 3)


class TestCrawlSession(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def config(self, **changes):
        return CrawlConfig(cache_dir=os.path.join(self.tmp, "cache"), **changes)

    def test_recursive_crawl_with_cache(self):
        session = CrawlSession(self.config(), FixedDecisionProvider(), fetcher=page_fetcher(),
                               renderer_launcher=NullRenderer, rule_set=RuleSet.empty(), sleep=lambda s: None)
        with session:
            report = session.run([UrlTask("https://example.com/")])
        self.assertEqual([r.url for r in report.results], ["https://example.com/", "https://example.com/next"])
        self.assertEqual(report.exit_code, 0)
        self.assertEqual(report.pool_stats["shutting_down"], 0)
        self.assertIsNotNone(session.cache.get("https://example.com/next"))

    def test_renderer_failure_degrades_to_direct_only(self):
        session = CrawlSession(self.config(recursive=False), FixedDecisionProvider(), fetcher=page_fetcher(),
                               renderer_launcher=failing_launcher, rule_set=RuleSet.empty())
        with session:
            self.assertIsNone(session.render_pool)
            report = session.run([UrlTask("https://example.com/")])
        self.assertTrue(report.results[0].ok)
        self.assertIsNone(report.pool_stats)

    def test_renderer_failure_is_fatal_when_rendering_is_required(self):
        session = CrawlSession(self.config(prefer_direct_fetch=False), FixedDecisionProvider(),
                               fetcher=page_fetcher(), renderer_launcher=failing_launcher)
        with self.assertRaises(RenderPoolError):
            session.open()

    def test_quit_sets_exit_code(self):
        rules = RuleSet(user_agent_rules={"*": (Rule(Directive.DENY, "/"),)})
        session = CrawlSession(self.config(use_renderer=False, concurrency_limit=1),
                               FixedDecisionProvider(OverrideChoice.QUIT),
                               fetcher=page_fetcher(), rule_set=rules)
        with session:
            report = session.run([UrlTask("https://example.com/a"), UrlTask("https://example.com/b")])
        self.assertTrue(report.aborted)
        self.assertEqual(len(report.results), 1)
        self.assertEqual(report.exit_code, 3)
        self.assertEqual(session.metrics.counters["compliance_denials"], 1)

    def test_robots_loaded_once_from_first_url(self):
        fetcher = page_fetcher()
        robots = DirectResponse(url="https://example.com/robots.txt", final_url="https://example.com/robots.txt",
                                status_code=200, headers={}, body=b"User-agent: *\nDisallow: /private\n")
        pages = fetcher.fetch.side_effect
        fetcher.fetch.side_effect = lambda url, referer=None: robots if url.endswith("/robots.txt") else pages(url)
        session = CrawlSession(self.config(use_renderer=False, recursive=False), FixedDecisionProvider(),
                               fetcher=fetcher)
        with session:
            report = session.run([UrlTask("https://example.com/a"), UrlTask("https://example.com/private/b")])
        self.assertTrue(report.results[0].ok)
        self.assertTrue(report.results[1].skipped)
        robots_calls = [c for c in fetcher.fetch.call_args_list if c.args[0].endswith("/robots.txt")]
        self.assertEqual(len(robots_calls), 1)

    def test_cache_only_makes_no_requests(self):
        with CrawlSession(self.config(use_renderer=False, recursive=False), FixedDecisionProvider(),
                          fetcher=page_fetcher()) as session:
            session.run([UrlTask("https://example.com/")])

        offline = MagicMock()
        session = CrawlSession(self.config(cache_only=True, recursive=False), FixedDecisionProvider(),
                               fetcher=offline, renderer_launcher=NullRenderer)
        with session:
            self.assertIsNone(session.render_pool)
            report = session.run([UrlTask("https://example.com/"), UrlTask("https://example.com/other")])
        self.assertEqual(report.results[0].rendered_via, RenderedVia.CACHE)
        self.assertEqual(report.results[1].error, ErrorKind.NOT_CACHED)
        offline.fetch.assert_not_called()
        offline.head.assert_not_called()

    def test_rejected_seed_makes_run_partial(self):
        session = CrawlSession(self.config(use_renderer=False, recursive=False), FixedDecisionProvider(),
                               fetcher=page_fetcher(), rule_set=RuleSet.empty())
        with session:
            report = session.run([UrlTask("https://example.com/"), UrlTask("ftp://example.com/file")])
        self.assertEqual(len(report.failed), 1)
        self.assertEqual(report.failed[0].error, ErrorKind.INVALID_URL)
        self.assertEqual(report.exit_code, 2)


class TestSessionReport(unittest.TestCase):

    def test_exit_codes(self):
        ok = FetchResult(url="a", body=b"x")
        bad = FetchResult(url="b", error=MagicMock())
        self.assertEqual(SessionReport([ok]).exit_code, 0)
        self.assertEqual(SessionReport([ok, bad]).exit_code, 2)
        self.assertEqual(SessionReport([ok], interrupted=True).exit_code, 130)
        self.assertEqual(SessionReport([ok], aborted=True, interrupted=True).exit_code, 3)


class TestCli(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_flags_override_config(self):
        args = cli.build_parser().parse_args(
            ["https://example.com", "--concurrency", "4", "--no-recursive", "--render-first", "--cache-dir", "x"])
        with patch.dict(os.environ, {}, clear=True):
            config = cli.config_from_args(args)
        self.assertEqual(config.concurrency_limit, 4)
        self.assertFalse(config.recursive)
        self.assertFalse(config.prefer_direct_fetch)
        self.assertEqual(config.cache_dir, "x")
        self.assertEqual(config.pool_size, 3)

    def test_urls_file(self):
        path = os.path.join(self.tmp, "urls.txt")
        with open(path, "w", encoding="utf-8") as f:
            f.write("https://example.com/a\t2024-01-01T00:00:00Z\n# comment\n\nhttps://example.com/b\n")
        args = cli.build_parser().parse_args(["https://example.com/", "--urls-file", path])
        tasks = cli.load_tasks(args)
        self.assertEqual([t.url for t in tasks],
                         ["https://example.com/", "https://example.com/a", "https://example.com/b"])
        self.assertEqual(tasks[1].last_modified.year, 2024)
        self.assertIsNone(tasks[2].last_modified)

    def test_no_urls_is_fatal(self):
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(cli.main([]), 1)

    def test_exit_code_and_output_from_session(self):
        output = os.path.join(self.tmp, "out.jsonl")
        report = SessionReport([FetchResult(url="https://example.com/", body=b"x", status_code=200)])

        class FakeSession:
            def __init__(self, config, provider, shutdown=None, on_result=None):
                self.on_result = on_result

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def run(self, tasks):
                for result in report.results:
                    self.on_result(result)
                return report

            def print_summary(self, report):
                pass

        with patch.dict(os.environ, {}, clear=True), patch.object(cli, "CrawlSession", FakeSession):
            code = cli.main(["https://example.com/", "--non-interactive", "--output", output])
        self.assertEqual(code, 0)
        with open(output, encoding="utf-8") as f:
            record = json.loads(f.readline())
        self.assertEqual(record["url"], "https://example.com/")
        self.assertEqual(record["status_code"], 200)

    def test_user_quit_exit_code(self):
        report = SessionReport([FetchResult(url="https://example.com/", skipped=True, quit=True)], aborted=True)
        session = MagicMock()
        session.__enter__.return_value.run.return_value = report
        with patch.dict(os.environ, {}, clear=True), patch.object(cli, "CrawlSession", return_value=session):
            self.assertEqual(cli.main(["https://example.com/", "--non-interactive"]), 3)


if __name__ == "__main__":
    unittest.main()
