"""
Entry point for the audit crawler.
Builds the session config (env + flags), crawls the given URLs, writes result metadata
as JSON lines and exits with a code the auditing pipeline can act on:
0 all fetched, 2 partial success, 3 user quit, 130 interrupted, 1 fatal.
"""

import argparse
import json
import sys
from datetime import datetime

from auditcrawler.cache import parse_http_date
from auditcrawler.core import CrawlConfig, logger
from auditcrawler.errors import CrawlError, RenderPoolError, SessionAborted
from auditcrawler.models import UrlTask
from auditcrawler.processor import split_url_line
from auditcrawler.robots.compliance import FixedDecisionProvider, OverrideChoice, TerminalDecisionProvider
from auditcrawler.session import (
    EXIT_FATAL,
    EXIT_INTERRUPTED,
    EXIT_USER_QUIT,
    CrawlSession,
)
from auditcrawler.shutdown import ShutdownCoordinator


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Audit crawler: polite, cached page fetching")
    parser.add_argument("urls", nargs="*", help="URLs to crawl (first URL's site supplies robots.txt)")
    parser.add_argument("--urls-file", help="File with one URL per line, optionally followed by an ISO lastmod")
    parser.add_argument("--output", help="Write result metadata as JSON lines to this file")
    parser.add_argument("--env-file", help="Load settings from this .env file")

    parser.add_argument("--pool-size", type=int, help="Renderer instances (default 3)")
    parser.add_argument("--concurrency", type=int, help="Simultaneous fetches per batch (default 3)")
    parser.add_argument("--recycle-threshold", type=int, help="Pages per renderer before relaunch (default 50)")
    parser.add_argument("--limit", type=int, help="Maximum URLs to dispatch (-1 = unlimited)")
    parser.add_argument("--no-recursive", action="store_true", help="Do not follow same-domain links")
    parser.add_argument("--force-scrape", action="store_true", help="Bypass robots.txt for the whole session")

    parser.add_argument("--no-cache", action="store_true", help="Neither read nor write the cache")
    parser.add_argument("--cache-only", action="store_true", help="Serve from cache only; never fetch")
    parser.add_argument("--force-delete-cache", action="store_true", help="Wipe the cache before crawling")
    parser.add_argument("--cache-dir", help="Cache directory (default .cache)")
    parser.add_argument("--strict-staleness", action="store_true", help="Treat failed staleness probes as stale")

    parser.add_argument("--timeout", type=float, help="Direct fetch timeout in seconds")
    parser.add_argument("--render-timeout", type=float, help="Render timeout in seconds")
    parser.add_argument("--max-retries", type=int, help="Direct fetch attempts per URL")
    parser.add_argument("--no-renderer", action="store_true", help="Direct fetching only")
    parser.add_argument("--render-first", action="store_true", help="Render every URL; direct fetch is the fallback")
    parser.add_argument("--crawl-delay", type=float, help="Seconds to wait between batches")

    parser.add_argument("--non-interactive", action="store_true",
                        help="Never prompt on robots.txt denials; skip denied URLs")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--log-file")
    return parser


def config_from_args(args) -> CrawlConfig:
    base = CrawlConfig.from_env(args.env_file)
    return base.with_overrides(
        pool_size=args.pool_size,
        concurrency_limit=args.concurrency,
        recycle_threshold=args.recycle_threshold,
        max_pages=args.limit,
        recursive=False if args.no_recursive else None,
        force_bypass=True if args.force_scrape else None,
        no_cache=True if args.no_cache else None,
        cache_only=True if args.cache_only else None,
        force_delete_cache=True if args.force_delete_cache else None,
        cache_dir=args.cache_dir,
        strict_staleness=True if args.strict_staleness else None,
        request_timeout=args.timeout,
        render_timeout=args.render_timeout,
        max_retries=args.max_retries,
        use_renderer=False if args.no_renderer else None,
        prefer_direct_fetch=False if args.render_first else None,
        crawl_delay=args.crawl_delay,
        log_level=args.log_level,
        log_file=args.log_file,
    )


def _task_from_line(line: str):
    url, lastmod = split_url_line(line)
    if not url or url.startswith("#"):
        return None
    hint = parse_http_date(lastmod) if lastmod else None
    return UrlTask(url=url, last_modified=hint)


def load_tasks(args):
    tasks = [UrlTask(url=u) for u in args.urls]
    if args.urls_file:
        with open(args.urls_file, "r", encoding="utf-8") as f:
            for line in f:
                task = _task_from_line(line)
                if task is not None:
                    tasks.append(task)
    return tasks


class JsonLinesSink:
    """Result sink writing one metadata object per line; the body is never written."""

    def __init__(self, path):
        self.path = path
        self._file = open(path, "w", encoding="utf-8") if path else None

    def __call__(self, result):
        if self._file is None:
            return
        record = result.summary()
        record["written_at"] = datetime.now().isoformat()
        self._file.write(json.dumps(record) + "\n")
        self._file.flush()

    def close(self):
        if self._file is not None:
            self._file.close()


def decision_provider_for(args):
    if args.non_interactive or not sys.stdin.isatty():
        return FixedDecisionProvider(OverrideChoice.SKIP)
    return TerminalDecisionProvider()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = config_from_args(args)
        tasks = load_tasks(args)
    except (ValueError, OSError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_FATAL

    if not tasks:
        logger.error("No URLs given (positional URLs or --urls-file)")
        return EXIT_FATAL

    shutdown = ShutdownCoordinator()
    shutdown.install_signal_handlers()
    sink = JsonLinesSink(args.output)
    try:
        with CrawlSession(config, decision_provider_for(args), shutdown=shutdown, on_result=sink) as session:
            report = session.run(tasks)
            session.print_summary(report)
        report.raise_for_abort()
        return report.exit_code
    except SessionAborted as e:
        logger.warning(f"Crawl stopped by user at {e.url}")
        return EXIT_USER_QUIT
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return EXIT_INTERRUPTED
    except RenderPoolError as e:
        logger.error(f"FATAL: no fetch path available: {e}")
        return EXIT_FATAL
    except CrawlError as e:
        logger.error(f"FATAL: {e}")
        return EXIT_FATAL
    finally:
        shutdown.run_callbacks()
        shutdown.restore_signal_handlers()
        sink.close()


if __name__ == "__main__":
    sys.exit(main())
