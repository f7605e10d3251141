"""
FILE DESCRIPTION: One crawl session, wired from an explicit CrawlConfig.
KEY FUNCTIONS/CLASSES: CrawlSession, SessionReport

FLOW: __enter__ builds cache, fetcher and render pool (direct-only if no renderer launches) ->
run() fetches robots.txt once, builds gate/dispatcher/scheduler and crawls -> __exit__ shuts the pool down.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from auditcrawler.cache import CacheStore, HeadProbe
from auditcrawler.core import CrawlConfig, logger, setup_logger
from auditcrawler.dispatcher import FetchDispatcher
from auditcrawler.engine import ConcurrencyScheduler
from auditcrawler.errors import RenderPoolError, SessionAborted
from auditcrawler.metrics import CrawlerMetrics
from auditcrawler.models import FetchResult, RuleSet, SessionPolicyState, UrlTask
from auditcrawler.processor import PageFetcher
from auditcrawler.rendering.backend import Renderer
from auditcrawler.rendering.playwright_backend import PlaywrightRenderer
from auditcrawler.rendering.pool import RenderPool
from auditcrawler.robots.compliance import ComplianceGate, DecisionProvider
from auditcrawler.robots.fetcher import RobotsFetcher
from auditcrawler.shutdown import ShutdownCoordinator
from auditcrawler.throttle import AdaptiveRateLimiter, TrafficControl

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2
EXIT_USER_QUIT = 3
EXIT_INTERRUPTED = 130


@dataclass
class SessionReport:
    results: List[FetchResult]
    aborted: bool = False
    interrupted: bool = False
    policy: Dict[str, bool] = field(default_factory=dict)
    pool_stats: Optional[Dict[str, int]] = None

    @property
    def succeeded(self) -> List[FetchResult]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[FetchResult]:
        return [r for r in self.results if r.error is not None]

    @property
    def skipped(self) -> List[FetchResult]:
        return [r for r in self.results if r.skipped]

    @property
    def exit_code(self) -> int:
        if self.aborted:
            return EXIT_USER_QUIT
        if self.interrupted:
            return EXIT_INTERRUPTED
        if self.failed:
            return EXIT_PARTIAL
        return EXIT_OK

    def raise_for_abort(self) -> None:
        if self.aborted:
            quit_url = next((r.url for r in self.results if r.quit), None)
            raise SessionAborted(url=quit_url)


class CrawlSession:

    def __init__(self, config: CrawlConfig, decision_provider: DecisionProvider,
                 fetcher: Optional[PageFetcher] = None,
                 renderer_launcher: Optional[Callable[[int], Renderer]] = None,
                 rule_set: Optional[RuleSet] = None,
                 shutdown: Optional[ShutdownCoordinator] = None,
                 on_result: Optional[Callable[[FetchResult], None]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self.decision_provider = decision_provider
        self.renderer_launcher = renderer_launcher or PlaywrightRenderer.launch
        self.rule_set = rule_set
        self.shutdown = shutdown or ShutdownCoordinator()
        self.on_result = on_result
        self._sleep = sleep
        self._owns_fetcher = fetcher is None
        self.fetcher = fetcher
        self.policy_state = SessionPolicyState(force_bypass=config.force_bypass)
        self.metrics = CrawlerMetrics()
        self.traffic = TrafficControl()
        self.limiter = AdaptiveRateLimiter(config.concurrency_limit)
        self.cache: Optional[CacheStore] = None
        self.render_pool: Optional[RenderPool] = None
        self._opened = False

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': 'session'})

    # === LIFECYCLE ===

    def open(self) -> "CrawlSession":
        if self._opened:
            return self
        setup_logger("auditcrawler", log_file=self.config.log_file, level=self.config.log_level)

        if self.fetcher is None:
            self.fetcher = PageFetcher(
                user_agent=self.config.user_agent,
                timeout=self.config.request_timeout,
                pool_size=max(10, self.config.concurrency_limit),
            )

        if not self.config.no_cache:
            probe = HeadProbe(self.fetcher, timeout=self.config.probe_timeout)
            self.cache = CacheStore(self.config.cache_dir, probe=probe,
                                    strict_staleness=self.config.strict_staleness)
            if self.config.force_delete_cache:
                self.cache.clear()
        elif self.config.force_delete_cache:
            CacheStore(self.config.cache_dir).clear()

        if self.config.use_renderer and not self.config.cache_only:
            self.render_pool = self._open_pool()

        self.shutdown.on_shutdown(self.close)
        self._opened = True
        return self

    def _open_pool(self) -> Optional[RenderPool]:
        pool = RenderPool(self.renderer_launcher, self.config.pool_size, self.config.recycle_threshold)
        try:
            return pool.initialize()
        except RenderPoolError as e:
            if not self.config.prefer_direct_fetch:
                raise
            self.log("error", f"Rendering unavailable ({e}); continuing with direct fetching only")
            return None

    def close(self) -> None:
        if self.render_pool is not None:
            self.render_pool.shutdown()
        if self._owns_fetcher and self.fetcher is not None:
            self.fetcher.close()

    def __enter__(self) -> "CrawlSession":
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # === CRAWL ===

    def load_rules(self, site_url: str) -> RuleSet:
        if self.rule_set is None:
            self.rule_set = RobotsFetcher(self.fetcher, self.render_pool, self.config.render_timeout).fetch(site_url)
        return self.rule_set

    def run(self, tasks: Iterable[UrlTask]) -> SessionReport:
        self.open()
        tasks = list(tasks)
        if not tasks:
            self.log("warning", "No URLs to crawl")
            return SessionReport(results=[], policy=self.policy_state.snapshot())

        if self.policy_state.force_bypass:
            self.log("warning", "Force-scrape mode: robots.txt restrictions will be bypassed")
            rule_set = self.rule_set or RuleSet.empty()
        elif self.config.cache_only and self.rule_set is None:
            self.log("info", "Cache-only mode: robots.txt is not fetched; all cached URLs allowed")
            rule_set = RuleSet.empty()
        else:
            rule_set = self.load_rules(tasks[0].url)

        gate = ComplianceGate(rule_set, self.policy_state, self.decision_provider, self.config.robots_agent)
        dispatcher = FetchDispatcher(
            self.config, gate,
            cache=self.cache,
            fetcher=self.fetcher,
            render_pool=self.render_pool,
            metrics=self.metrics,
            traffic=self.traffic,
            limiter=self.limiter,
            sleep=self._sleep,
        )
        scheduler = ConcurrencyScheduler(
            dispatcher, self.policy_state,
            shutdown=self.shutdown,
            metrics=self.metrics,
            limiter=self.limiter,
            traffic=self.traffic,
            on_result=self.on_result,
            crawl_delay=self.config.crawl_delay,
            max_pages=self.config.max_pages,
            sleep=self._sleep,
        )
        results = scheduler.run(tasks, self.config.concurrency_limit, self.config.recursive)
        self.metrics.incr("compliance_denials", gate.denials)

        return SessionReport(
            results=results,
            aborted=self.policy_state.aborted,
            interrupted=self.shutdown.is_requested(),
            policy=self.policy_state.snapshot(),
            pool_stats=self.render_pool.get_stats() if self.render_pool is not None else None,
        )

    def print_summary(self, report: SessionReport) -> None:
        self.metrics.print_final_summary(pool_stats=report.pool_stats, limiter_stats=self.limiter.get_stats())
