"""
FILE DESCRIPTION: Fixed-size pool of renderer instances.
KEY FUNCTIONS/CLASSES: RendererHandle, RenderPool

Invariants:
- A handle is in use by at most one caller at a time; ownership moves only through acquire/release.
- Waiters are served strictly FIFO; a release hands the handle straight to the oldest waiter.
- A handle is relaunched when it has served `recycle_threshold` pages or its renderer broke.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, TypeVar

from auditcrawler.core import DEFAULT_POOL_SIZE, DEFAULT_RECYCLE_THRESHOLD, logger
from auditcrawler.errors import PoolShutdownError, RenderError, RendererCrashedError, RenderPoolError, RenderTimeoutError
from auditcrawler.rendering.backend import Renderer

T = TypeVar("T")


@dataclass
class RendererHandle:
    id: int
    instance: Renderer
    in_use: bool = False
    pages_served: int = 0


class _Waiter:
    def __init__(self):
        self.event = threading.Event()
        self.handle: Optional[RendererHandle] = None
        self.error: Optional[Exception] = None


class RenderPool:
    """
    FLOW: initialize() launches `pool_size` renderers -> acquire() hands out an idle handle or queues
    the caller -> release() counts the page, recycles if due, then wakes the oldest waiter ->
    shutdown() fails all waiters and tears every renderer down.
    """

    def __init__(self, launcher: Callable[[int], Renderer], pool_size: int = DEFAULT_POOL_SIZE,
                 recycle_threshold: int = DEFAULT_RECYCLE_THRESHOLD):
        if pool_size < 1:
            raise ValueError("pool_size must be >= 1")
        self.launcher = launcher
        self.pool_size = pool_size
        self.recycle_threshold = recycle_threshold
        self._handles: List[RendererHandle] = []
        self._waiters = deque()
        self._lock = threading.Lock()
        self._settled = threading.Condition(self._lock)
        self._shutting_down = False
        self._initialized = False
        self._launch_seq = 0
        self.recycle_count = 0
        self.pages_rendered = 0

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': 'pool'})

    def _launch(self) -> Renderer:
        with self._lock:
            self._launch_seq += 1
            seq = self._launch_seq
        return self.launcher(seq)

    def initialize(self) -> "RenderPool":
        """Launches every renderer. Raises RenderPoolError if none could be started."""
        if self._initialized:
            return self
        launched = []
        for handle_id in range(self.pool_size):
            try:
                launched.append(RendererHandle(id=handle_id, instance=self._launch()))
            except Exception as e:
                self.log("error", f"Failed to launch renderer {handle_id}: {e}")

        if not launched:
            raise RenderPoolError(f"no renderer could be launched (pool size {self.pool_size})")
        if len(launched) < self.pool_size:
            self.log("warning", f"Render pool running degraded: {len(launched)}/{self.pool_size} renderers")

        with self._lock:
            self._handles = launched
            self._initialized = True
        self.log("info", f"Render pool ready with {len(launched)} renderer(s)")
        return self

    # === ACQUIRE / RELEASE ===

    def acquire(self, timeout: Optional[float] = None) -> RendererHandle:
        with self._lock:
            if self._shutting_down:
                raise PoolShutdownError("render pool is shutting down")
            if not self._initialized:
                raise RenderPoolError("render pool is not initialized")
            for handle in self._handles:
                if not handle.in_use:
                    handle.in_use = True
                    return handle
            if not self._handles:
                raise RenderPoolError("render pool has no live renderers")
            waiter = _Waiter()
            self._waiters.append(waiter)
            waiting = len(self._waiters)

        self.log("debug", f"All renderers busy; queued as waiter #{waiting}")
        signalled = waiter.event.wait(timeout)

        if not signalled:
            with self._lock:
                if waiter in self._waiters:
                    self._waiters.remove(waiter)
                    raise RenderPoolError(f"timed out after {timeout}s waiting for a renderer")
            # handed over between the timeout and the lock

        if waiter.error is not None:
            raise waiter.error
        return waiter.handle

    def release(self, handle: RendererHandle, broken: bool = False) -> None:
        handle.pages_served += 1
        with self._lock:
            self.pages_rendered += 1
            shutting_down = self._shutting_down

        if not shutting_down and (broken or handle.pages_served >= self.recycle_threshold):
            self._recycle(handle, broken)

        with self._lock:
            if handle not in self._handles:
                self._fail_waiters_if_empty()
                self._settled.notify_all()
                return
            if self._shutting_down:
                handle.in_use = False
                self._settled.notify_all()
                return
            if self._waiters:
                waiter = self._waiters.popleft()
                waiter.handle = handle
                waiter.event.set()
            else:
                handle.in_use = False
                self._settled.notify_all()

    def _recycle(self, handle: RendererHandle, broken: bool) -> None:
        reason = "renderer broke" if broken else f"served {handle.pages_served} pages"
        self.log("info", f"Recycling renderer {handle.id} ({reason})")
        self._teardown(handle)
        try:
            handle.instance = self._launch()
        except Exception as e:
            self.log("error", f"Relaunch of renderer {handle.id} failed: {e}; removing it from the pool")
            with self._lock:
                if handle in self._handles:
                    self._handles.remove(handle)
            return
        handle.pages_served = 0
        with self._lock:
            self.recycle_count += 1

    def _fail_waiters_if_empty(self) -> None:
        # caller holds self._lock
        if self._handles:
            return
        while self._waiters:
            waiter = self._waiters.popleft()
            waiter.error = RenderPoolError("render pool has no live renderers")
            waiter.event.set()

    def _teardown(self, handle: RendererHandle) -> None:
        try:
            handle.instance.close()
        except Exception as e:
            self.log("warning", f"Error closing renderer {handle.id}: {e}")

    def execute(self, fn: Callable[[Renderer], T], timeout: Optional[float] = None) -> T:
        """
        Acquire -> run fn(renderer) -> release, on every exit path.
        Crashes and timeouts mark the handle broken so it is relaunched before reuse.
        """
        handle = self.acquire(timeout=timeout)
        broken = False
        try:
            return fn(handle.instance)
        except (RendererCrashedError, RenderTimeoutError):
            broken = True
            raise
        except RenderError:
            broken = not handle.instance.alive
            raise
        finally:
            self.release(handle, broken=broken)

    # === SHUTDOWN ===

    def shutdown(self, drain_timeout: float = 30) -> None:
        """
        Stops new acquisitions, fails queued waiters, lets in-flight renders finish
        (up to drain_timeout), then closes every renderer.
        """
        with self._lock:
            if self._shutting_down:
                return
            self._shutting_down = True
            while self._waiters:
                waiter = self._waiters.popleft()
                waiter.error = PoolShutdownError("render pool shut down while waiting")
                waiter.event.set()

            deadline = time.monotonic() + drain_timeout
            while any(h.in_use for h in self._handles):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self.log("warning", "Drain timeout reached; closing busy renderers")
                    break
                self._settled.wait(remaining)
            handles = list(self._handles)
            self._handles = []

        for handle in handles:
            self._teardown(handle)
        self.log("info", f"Render pool shut down ({len(handles)} renderer(s) closed)")

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            busy = sum(1 for h in self._handles if h.in_use)
            return {
                "pool_size": self.pool_size,
                "live": len(self._handles),
                "idle": len(self._handles) - busy,
                "busy": busy,
                "waiting": len(self._waiters),
                "recycles": self.recycle_count,
                "pages_rendered": self.pages_rendered,
                "shutting_down": int(self._shutting_down),
            }

    def __enter__(self) -> "RenderPool":
        return self.initialize()

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False
