from abc import ABC, abstractmethod

from auditcrawler.models import RenderedPage


class Renderer(ABC):
    """
    Abstraction for one headless browser instance held by a pool handle.
    Contractual Requirements for Implementers:
    - MUST enforce the timeout passed to render() and raise RenderTimeoutError when it expires.
    - MUST raise RendererCrashedError once the instance is unusable, so the pool can replace it.
    - MUST return console errors with the page instead of exposing page listeners.
    - MUST tolerate close() being called more than once.
    """

    @abstractmethod
    def render(self, url: str, timeout: float) -> RenderedPage:
        """
        Navigate to `url` and return the serialized DOM.
        Raises RenderTimeoutError, RenderExecutionError or RendererCrashedError.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @property
    def alive(self) -> bool:
        return True
