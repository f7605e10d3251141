"""
FILE DESCRIPTION: Retrieval of the site's robots.txt.
KEY FUNCTIONS/CLASSES: RobotsFetcher

FLOW: GET <origin>/robots.txt directly -> 2xx parse | 404 allow all | other status allow all ->
network error or block -> render the document through the pool -> any remaining failure allows all.
"""

from typing import Optional

from bs4 import BeautifulSoup

from auditcrawler.core import logger
from auditcrawler.errors import BlockedError, NetworkError, RenderError, RenderPoolError, RequestError
from auditcrawler.models import RuleSet
from auditcrawler.processor import LinkUtility
from auditcrawler.robots.parser import parse_robots_txt, robots_summary


class RobotsFetcher:

    def __init__(self, fetcher, render_pool=None, render_timeout: float = 60):
        self.fetcher = fetcher
        self.render_pool = render_pool
        self.render_timeout = render_timeout

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': 'robots'})

    @staticmethod
    def robots_url(site_url: str) -> str:
        return f"{LinkUtility.origin(site_url)}/robots.txt"

    def fetch(self, site_url: str) -> RuleSet:
        robots_url = self.robots_url(site_url)
        self.log("info", f"Fetching robots.txt from: {robots_url}")

        try:
            response = self.fetcher.fetch(robots_url)
        except (NetworkError, BlockedError) as e:
            self.log("warning", f"Direct robots.txt fetch failed ({e}); trying renderer")
            return self._fetch_rendered(robots_url)
        except RequestError as e:
            self.log("warning", f"robots.txt request rejected ({e}) - all URLs allowed")
            return RuleSet.empty(robots_url)

        if response.status_code == 404:
            self.log("info", "No robots.txt found (404) - all URLs allowed")
            return RuleSet.empty(robots_url)
        if not 200 <= response.status_code < 300:
            self.log("warning", f"robots.txt returned status {response.status_code} - all URLs allowed")
            return RuleSet.empty(robots_url)

        rule_set = parse_robots_txt(response.body.decode("utf-8", errors="replace"), source_url=robots_url)
        self.log("info", robots_summary(rule_set))
        return rule_set

    def _fetch_rendered(self, robots_url: str) -> RuleSet:
        if self.render_pool is None:
            self.log("warning", "No renderer available for robots.txt fallback - all URLs allowed")
            return RuleSet.empty(robots_url)

        try:
            page = self.render_pool.execute(lambda renderer: renderer.render(robots_url, self.render_timeout))
        except (RenderError, RenderPoolError) as e:
            self.log("warning", f"Rendered robots.txt fetch failed ({e}) - all URLs allowed")
            return RuleSet.empty(robots_url)

        if not 200 <= page.status_code < 300:
            self.log("info", f"robots.txt not available via renderer (status {page.status_code}) - all URLs allowed")
            return RuleSet.empty(robots_url)

        rule_set = parse_robots_txt(self._document_text(page.html), source_url=robots_url)
        self.log("info", robots_summary(rule_set))
        return rule_set

    @staticmethod
    def _document_text(html: Optional[str]) -> str:
        """Browsers wrap plain-text documents in <pre>; take that text when present."""
        if not html:
            return ""
        soup = BeautifulSoup(html, "html.parser")
        pre = soup.find("pre")
        return (pre or soup).get_text()
