"""
FILE DESCRIPTION: Crawl orchestration: the deduplicating frontier and the batch scheduler.
KEY FUNCTIONS/CLASSES: Frontier, ConcurrencyScheduler

Batches of up to `concurrency_limit` tasks run in parallel on a thread pool; batch N+1 starts only
after every task of batch N has produced a FetchResult. Abort and shutdown are checked between batches.
"""

import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

from auditcrawler.core import logger
from auditcrawler.metrics import CrawlerMetrics
from auditcrawler.models import ErrorKind, FetchResult, SessionPolicyState, UrlTask
from auditcrawler.processor import LinkExtractor, LinkUtility


# === FRONTIER MANAGEMENT ===

class Frontier:
    """
    FLOW: Normalizes each URL -> Rejects duplicates against the visited-set (under lock) ->
    Queues new tasks in arrival order -> Hands out batches.
    A URL enters the visited-set when it is queued, so it is dispatched at most once.
    Queued tasks carry the normalized URL, so the gate, cache and fetchers all see the same string.
    """

    def __init__(self, max_pages: int = -1):
        self.queue = deque()
        self.visited = set()
        self.lock = threading.Lock()
        self.max_pages = max_pages
        self.duplicates = 0
        self.rejected = 0

    def add(self, task: UrlTask) -> str:
        """
        Returns:
        - "enqueued" if queued
        - "duplicate" if the normalized URL was already seen
        - "invalid" for non-http(s) URLs
        - "limit" once max_pages URLs have been accepted
        """
        normalized = LinkUtility.normalize_url(task.url)
        if not normalized or not LinkUtility.is_http(normalized):
            with self.lock:
                self.rejected += 1
            return "invalid"

        with self.lock:
            if normalized in self.visited:
                self.duplicates += 1
                return "duplicate"
            if 0 <= self.max_pages <= len(self.visited):
                self.rejected += 1
                return "limit"
            self.visited.add(normalized)
            self.queue.append(replace(task, url=normalized))
        return "enqueued"

    def extend(self, tasks: Iterable[UrlTask]) -> int:
        return sum(1 for task in tasks if self.add(task) == "enqueued")

    def next_batch(self, size: int) -> List[UrlTask]:
        with self.lock:
            batch = []
            while self.queue and len(batch) < size:
                batch.append(self.queue.popleft())
            return batch

    def pending(self) -> int:
        with self.lock:
            return len(self.queue)

    def get_stats(self) -> Dict[str, int]:
        with self.lock:
            return {
                "queued": len(self.queue),
                "visited_count": len(self.visited),
                "duplicates": self.duplicates,
                "rejected": self.rejected,
            }


def discover_same_domain_links(result: FetchResult, seed_url: str) -> List[str]:
    """Same-domain links of an HTML result."""
    content_type = {k.lower(): v for k, v in result.headers.items()}.get("content-type", "")
    if content_type and "html" not in content_type.lower():
        return []
    return LinkExtractor.extract_same_domain(result.text, result.final_url or result.url, seed_url)


# === SCHEDULER ===

class ConcurrencyScheduler:
    """
    FLOW: Seeds the frontier -> [abort/shutdown check -> politeness pause -> dispatch one batch in
    parallel -> wait for all -> collect results -> merge discovered links] until the frontier drains.
    """

    def __init__(self, dispatcher, policy_state: SessionPolicyState, shutdown=None,
                 metrics: Optional[CrawlerMetrics] = None, limiter=None, traffic=None,
                 discover: Callable[[FetchResult, str], List[str]] = discover_same_domain_links,
                 on_result: Optional[Callable[[FetchResult], None]] = None,
                 crawl_delay: float = 0.0, max_pages: int = -1,
                 sleep: Callable[[float], None] = time.sleep):
        self.dispatcher = dispatcher
        self.policy_state = policy_state
        self.shutdown = shutdown
        self.metrics = metrics or CrawlerMetrics()
        self.limiter = limiter
        self.traffic = traffic
        self.discover = discover
        self.on_result = on_result
        self.crawl_delay = crawl_delay
        self.max_pages = max_pages
        self._sleep = sleep
        self.frontier: Optional[Frontier] = None
        self.batches_run = 0

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': 'scheduler'})

    def _should_stop(self) -> bool:
        if self.policy_state.aborted:
            self.log("warning", "Session aborted; no further batches will be started")
            return True
        if self.shutdown is not None and self.shutdown.is_requested():
            self.log("warning", "Shutdown requested; no further batches will be started")
            return True
        return False

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self.shutdown is not None:
            self.shutdown.wait(seconds)
        else:
            self._sleep(seconds)

    def _pace(self) -> None:
        if self.batches_run and self.crawl_delay > 0:
            self._pause(self.crawl_delay)
        if self.traffic is not None:
            remaining = self.traffic.get_remaining_pause()
            if remaining > 0:
                self.log("info", f"Host paused by rate limiting; waiting {remaining:.1f}s")
                self._pause(remaining)

    def _batch_size(self, concurrency_limit: int) -> int:
        if self.limiter is None:
            return concurrency_limit
        return max(1, min(concurrency_limit, self.limiter.concurrency))

    def _dispatch_one(self, task: UrlTask) -> FetchResult:
        start_time = time.time()
        try:
            result = self.dispatcher.dispatch(task)
        except Exception as e:
            self.log("error", f"Unexpected error dispatching {task.url}: {e}")
            logger.debug("dispatch traceback", exc_info=True, extra={'context': 'scheduler'})
            result = FetchResult(url=task.url, error=ErrorKind.INTERNAL, error_message=str(e), depth=task.depth)
        self.metrics.record_result(result, time.time() - start_time, threading.current_thread().name)
        return result

    def _invalid_seed(self, task: UrlTask) -> FetchResult:
        self.log("warning", f"Rejected seed URL (not an http(s) URL): {task.url}")
        result = FetchResult(url=task.url, error=ErrorKind.INVALID_URL, error_message="not an http(s) URL",
                             depth=task.depth)
        self.metrics.record_result(result)
        return result

    def _report(self, result: FetchResult, results: List[FetchResult]) -> None:
        results.append(result)
        if self.on_result is not None:
            self.on_result(result)

    def _merge_discoveries(self, result: FetchResult, task: UrlTask, seed_url: str) -> None:
        try:
            links = self.discover(result, seed_url)
        except Exception as e:
            self.log("warning", f"Link discovery failed for {result.url}: {e}")
            return
        added = self.frontier.extend(
            UrlTask(url=link, discovered=True, discovered_from=task.url, depth=task.depth + 1)
            for link in links
        )
        if added:
            self.log("debug", f"Discovered {added} new URL(s) on {result.url}")

    def run(self, initial_frontier: Iterable[UrlTask], concurrency_limit: int,
            recursive: bool = True) -> List[FetchResult]:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")

        tasks = list(initial_frontier)
        self.frontier = Frontier(self.max_pages)
        results: List[FetchResult] = []
        for task in tasks:
            if self.frontier.add(task) == "invalid":
                self._report(self._invalid_seed(task), results)
        seed_url = LinkUtility.normalize_url(tasks[0].url) if tasks else ""

        self.log("info", f"Crawl started: {self.frontier.pending()} URL(s), concurrency {concurrency_limit}, "
                         f"recursive={recursive}")

        with ThreadPoolExecutor(max_workers=concurrency_limit, thread_name_prefix="CrawlerWorker") as pool:
            while not self._should_stop():
                self._pace()
                if self._should_stop():
                    break

                batch = self.frontier.next_batch(self._batch_size(concurrency_limit))
                if not batch:
                    break

                self.batches_run += 1
                self.log("info", f"Batch {self.batches_run}: dispatching {len(batch)} URL(s)")
                futures = [pool.submit(self._dispatch_one, task) for task in batch]
                wait(futures)

                for task, future in zip(batch, futures):
                    result = future.result()
                    self._report(result, results)
                    if recursive and result.ok and not self.policy_state.aborted:
                        self._merge_discoveries(result, task, seed_url)

        stats = self.frontier.get_stats()
        self.log("info", f"Crawl finished: {len(results)} result(s) in {self.batches_run} batch(es), "
                         f"{stats['duplicates']} duplicate(s) ignored, {stats['queued']} left in frontier")
        return results
