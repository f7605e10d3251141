"""
FILE DESCRIPTION: Playwright-backed renderer.
KEY FUNCTIONS/CLASSES: PlaywrightRenderer

Playwright's sync API is bound to the thread that started it, so every renderer owns
one dedicated thread with its own browser and serves render requests from a queue.
"""

import queue
import threading
from typing import List, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from auditcrawler.core import JS_GOTO_TIMEOUT, JS_WAIT_TIMEOUT, USER_AGENT, logger
from auditcrawler.errors import (
    RenderExecutionError,
    RendererCrashedError,
    RenderPoolError,
    RenderTimeoutError,
)
from auditcrawler.models import RenderedPage
from auditcrawler.rendering.backend import Renderer

BLOCKED_RESOURCE_TYPES = ("image", "font", "media")

_STOP = object()


class _RenderRequest:
    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        self.result_queue = queue.Queue(maxsize=1)


class PlaywrightRenderer(Renderer):
    """
    FLOW: Spawns a dedicated Playwright thread -> Thread launches Chromium and signals readiness ->
    render() queues a request and waits (bounded) on its private result queue ->
    close() sends the stop sentinel and joins the thread.
    """

    def __init__(self, renderer_id: int = 0, user_agent: str = USER_AGENT, startup_timeout: float = 30):
        self.renderer_id = renderer_id
        self.user_agent = user_agent
        self._requests = queue.Queue()
        self._ready = threading.Event()
        self._startup_error: Optional[BaseException] = None
        self._closed = False
        self._thread = threading.Thread(
            target=self._render_loop, daemon=True, name=f"RenderWorker-{renderer_id}"
        )
        self._thread.start()
        if not self._ready.wait(timeout=startup_timeout):
            self.close()
            raise RenderPoolError(f"renderer {renderer_id} did not start within {startup_timeout}s")
        if self._startup_error is not None:
            raise RenderPoolError(f"renderer {renderer_id} failed to launch: {self._startup_error}")

    @classmethod
    def launch(cls, renderer_id: int) -> "PlaywrightRenderer":
        """Launcher used by RenderPool."""
        return cls(renderer_id=renderer_id)

    @property
    def alive(self) -> bool:
        return not self._closed and self._thread.is_alive()

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': f'RenderWorker-{self.renderer_id}'})

    def _render_loop(self):
        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(
                    headless=True,
                    args=["--disable-gpu", "--no-sandbox", "--disable-dev-shm-usage"]
                )
                context = browser.new_context(
                    user_agent=self.user_agent,
                    viewport={"width": 1024, "height": 768}
                )
                self.log("info", "Renderer ready.")
                self._ready.set()

                while True:
                    req = self._requests.get()
                    if req is _STOP:
                        break
                    req.result_queue.put(self._render_page(context, req))

                browser.close()
        except Exception as e:
            if not self._ready.is_set():
                self._startup_error = e
                self._ready.set()
            else:
                self.log("critical", f"Renderer fatal error: {e}")
        finally:
            self._closed = True
            # unblock anyone still queued on a dead thread
            while True:
                try:
                    req = self._requests.get_nowait()
                except queue.Empty:
                    break
                if req is not _STOP:
                    req.result_queue.put(RendererCrashedError("renderer thread exited"))

    def _render_page(self, context, req: _RenderRequest):
        console_errors: List[str] = []
        try:
            page = context.new_page()
        except PlaywrightError as e:
            return RendererCrashedError(f"cannot open page: {e}")

        def on_console(msg):
            if msg.type == "error":
                console_errors.append(msg.text)

        def route_intercept(route):
            if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
                return route.abort()
            return route.continue_()

        try:
            page.on("console", on_console)
            page.on("pageerror", lambda err: console_errors.append(str(err)))
            page.route("**/*", route_intercept)

            goto_ms = int(min(req.timeout, JS_GOTO_TIMEOUT) * 1000)
            response = page.goto(req.url, wait_until="commit", timeout=goto_ms)
            status_code = response.status if response else 0
            headers = dict(response.headers) if response else {}

            if 200 <= status_code <= 299:
                try:
                    page.wait_for_load_state("domcontentloaded", timeout=JS_WAIT_TIMEOUT * 1000)
                except PlaywrightTimeoutError:
                    self.log("debug", f"domcontentloaded not reached for {req.url}; using current DOM")

            return RenderedPage(
                url=req.url,
                final_url=page.url,
                status_code=status_code,
                html=page.content(),
                headers=headers,
                console_errors=tuple(console_errors),
            )
        except PlaywrightTimeoutError as e:
            return RenderTimeoutError(f"navigation timed out for {req.url}: {e}")
        except PlaywrightError as e:
            if "closed" in str(e).lower() or "disconnected" in str(e).lower():
                return RendererCrashedError(f"browser gone while rendering {req.url}: {e}")
            return RenderExecutionError(f"render failed for {req.url}: {e}")
        finally:
            page.remove_listener("console", on_console)
            try:
                page.close()
            except PlaywrightError as e:
                self.log("debug", f"page close failed: {e}")

    def render(self, url: str, timeout: float) -> RenderedPage:
        if not self.alive:
            raise RendererCrashedError(f"renderer {self.renderer_id} is not running")

        req = _RenderRequest(url, timeout)
        self._requests.put(req)
        try:
            outcome = req.result_queue.get(timeout=timeout)
        except queue.Empty:
            raise RenderTimeoutError(f"JS rendering timed out after {timeout}s for {url}")

        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def close(self) -> None:
        if self._thread.is_alive():
            self._requests.put(_STOP)
            self._thread.join(timeout=10)
        self._closed = True
