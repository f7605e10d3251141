"""
FILE DESCRIPTION: Cooperative shutdown for a crawl session.
KEY FUNCTIONS/CLASSES: ShutdownCoordinator

SIGINT/SIGTERM set a flag the scheduler checks at batch boundaries; in-flight work finishes.
A second SIGINT raises KeyboardInterrupt in the main thread.
"""

import signal
import threading
from typing import Callable, List, Optional

from auditcrawler.core import logger


class ShutdownCoordinator:

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._callbacks_ran = False
        self._previous_handlers = {}
        self.reason: Optional[str] = None

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': 'shutdown'})

    def is_requested(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleeps up to `timeout`; returns True early if shutdown was requested."""
        return self._event.wait(timeout)

    def on_shutdown(self, callback: Callable[[], None]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def request_shutdown(self, reason: str = "requested") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
        self.log("warning", f"Shutdown requested ({reason}); finishing in-flight work")

    def run_callbacks(self) -> None:
        """Runs registered callbacks once, in registration order. Errors are logged per callback."""
        with self._lock:
            if self._callbacks_ran:
                return
            self._callbacks_ran = True
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                self.log("error", f"Shutdown callback {getattr(callback, '__name__', callback)} failed: {e}")

    # === SIGNALS ===

    def _handle_signal(self, signum, frame):
        name = signal.Signals(signum).name
        if self._event.is_set() and signum == signal.SIGINT:
            self.log("error", "Second interrupt received; aborting immediately")
            raise KeyboardInterrupt
        self.request_shutdown(f"signal {name}")

    def install_signal_handlers(self) -> None:
        """Must be called from the main thread."""
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
