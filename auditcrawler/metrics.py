"""
Centralized metrics tracking and terminal summary for a crawl session.
Counters are updated from worker threads; every mutation happens under one lock.
"""

import os
import time
from collections import defaultdict
from datetime import datetime, timedelta
from threading import Lock

import psutil
from tabulate import tabulate

from auditcrawler.models import FetchResult
from auditcrawler.processor import LinkUtility


def _status_of(result: FetchResult) -> str:
    if result.quit:
        return "quit"
    if result.skipped:
        return "skipped"
    if result.error is not None:
        return "failed"
    return "success"


class CrawlerMetrics:
    """
    Tracks per-URL outcomes, per-domain aggregates and the politeness/caching counters
    the session summary reports.
    """

    def __init__(self):
        self.lock = Lock()
        self.start_time = time.time()
        self.started_at = datetime.now()

        self.url_records = []
        self.domain_stats = defaultdict(lambda: {
            'total_urls': 0,
            'success_count': 0,
            'skipped_count': 0,
            'failed_count': 0,
            'total_size_bytes': 0,
        })
        self.overall_stats = {
            'total_urls': 0,
            'success_count': 0,
            'skipped_count': 0,
            'quit_count': 0,
            'failed_count': 0,
            'total_size_bytes': 0,
            'total_fetch_time': 0.0,
            'peak_memory_mb': 0.0,
        }
        self.via_counts = defaultdict(int)
        self.counters = defaultdict(int)
        self.failures = []

        # Resource tracking
        self.process = psutil.Process(os.getpid())
        self.initial_memory_mb = self.process.memory_info().rss / 1024 / 1024

    def incr(self, name: str, amount: int = 1) -> None:
        """Named event counter (cache_hits, cache_misses, retries, render_fallbacks, ...)."""
        with self.lock:
            self.counters[name] += amount

    def get_current_memory_usage(self):
        current_memory_mb = self.process.memory_info().rss / 1024 / 1024
        return current_memory_mb, current_memory_mb - self.initial_memory_mb

    def record_result(self, result: FetchResult, fetch_time_sec: float = 0.0, worker_name: str = None):
        status = _status_of(result)
        size_bytes = len(result.body) if result.body is not None else 0
        memory_mb, _ = self.get_current_memory_usage()
        domain = LinkUtility.registrable_domain(result.url) if result.url else ""

        with self.lock:
            self.url_records.append({
                'sr_no': len(self.url_records) + 1,
                'url': result.url,
                'domain': domain,
                'status': status,
                'status_code': result.status_code,
                'rendered_via': result.rendered_via.value if result.rendered_via else None,
                'size_bytes': size_bytes,
                'fetch_time_sec': fetch_time_sec,
                'worker': worker_name,
                'error_reason': result.error_message or result.reason,
                'timestamp': datetime.now(),
            })

            ds = self.domain_stats[domain]
            ds['total_urls'] += 1
            ds['total_size_bytes'] += size_bytes

            self.overall_stats['total_urls'] += 1
            self.overall_stats['total_size_bytes'] += size_bytes
            self.overall_stats['total_fetch_time'] += fetch_time_sec
            self.overall_stats['peak_memory_mb'] = max(self.overall_stats['peak_memory_mb'], memory_mb)

            if status == 'success':
                ds['success_count'] += 1
                self.overall_stats['success_count'] += 1
                self.via_counts[result.rendered_via.value if result.rendered_via else "unknown"] += 1
            elif status in ('skipped', 'quit'):
                ds['skipped_count'] += 1
                self.overall_stats['skipped_count' if status == 'skipped' else 'quit_count'] += 1
            else:
                ds['failed_count'] += 1
                self.overall_stats['failed_count'] += 1
                self.failures.append((result.url, result.error.value, result.error_message))

    def snapshot(self):
        with self.lock:
            return {
                **self.overall_stats,
                'via': dict(self.via_counts),
                'counters': dict(self.counters),
                'failures': list(self.failures),
            }

    def render_summary(self, pool_stats=None, limiter_stats=None) -> str:
        elapsed = time.time() - self.start_time
        snap = self.snapshot()
        total = max(1, snap['total_urls'])
        lines = [
            "=" * 100,
            "CRAWL COMPLETED - FINAL SUMMARY",
            "=" * 100,
            "",
            "TIME METRICS:",
            f"   Start Time:      {self.started_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"   Total Duration:  {timedelta(seconds=int(elapsed))}",
            f"   Avg per URL:     {elapsed / total:.3f}s",
            "",
            "URL METRICS:",
        ]
        rows = [
            ["Processed", snap['total_urls'], ""],
            ["Succeeded", snap['success_count'], f"{snap['success_count'] / total * 100:.1f}%"],
            ["Skipped (robots.txt)", snap['skipped_count'], f"{snap['skipped_count'] / total * 100:.1f}%"],
            ["Stopped by quit", snap['quit_count'], f"{snap['quit_count'] / total * 100:.1f}%"],
            ["Failed", snap['failed_count'], f"{snap['failed_count'] / total * 100:.1f}%"],
        ]
        lines.append(tabulate(rows, headers=["Outcome", "URLs", "Share"], tablefmt="simple"))

        if snap['via']:
            lines += ["", "SOURCES:"]
            lines.append(tabulate(sorted(snap['via'].items()), headers=["Rendered via", "URLs"], tablefmt="simple"))

        if snap['counters']:
            lines += ["", "EVENTS:"]
            lines.append(tabulate(sorted(snap['counters'].items()), headers=["Event", "Count"], tablefmt="simple"))

        if pool_stats:
            lines += ["", "RENDER POOL:"]
            lines.append(tabulate(sorted(pool_stats.items()), headers=["Stat", "Value"], tablefmt="simple"))

        if limiter_stats:
            lines += ["", "THROTTLE:"]
            lines.append(tabulate(sorted(limiter_stats.items()), headers=["Stat", "Value"], tablefmt="simple"))

        total_mb = snap['total_size_bytes'] / 1024 / 1024
        lines += [
            "",
            "DATA TRANSFER:",
            f"   Total Data Fetched:    {total_mb:.2f} MB ({snap['total_size_bytes']:,} bytes)",
            f"   Peak Memory:           {snap['peak_memory_mb']:.2f} MB",
        ]

        if snap['failures']:
            lines += ["", f"FAILED URLS: {len(snap['failures'])}"]
            lines.append(tabulate(
                [[i, url if len(url) <= 70 else url[:67] + "...", kind, (msg or "")[:60]]
                 for i, (url, kind, msg) in enumerate(snap['failures'], start=1)],
                headers=["#", "URL", "Error", "Reason"],
                tablefmt="simple",
            ))
        return "\n".join(lines)

    def print_final_summary(self, pool_stats=None, limiter_stats=None):
        print("\n" + self.render_summary(pool_stats, limiter_stats))
