"""
FILE DESCRIPTION: Content processing helpers: lightweight HTTP fetching, URL normalization and link extraction.
KEY FUNCTIONS/CLASSES: LinkUtility, PageFetcher, LinkExtractor
"""

import re
import time
from email.utils import parsedate_to_datetime
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlparse, urlunparse

import requests
import tldextract
from bs4 import BeautifulSoup
from requests.adapters import HTTPAdapter

from auditcrawler.core import USER_AGENT, logger
from auditcrawler.errors import BlockedError, NetworkError, RequestError
from auditcrawler.models import DirectResponse

# Offline extractor: uses the suffix list bundled with tldextract, never the network.
_TLD_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())

BLOCKED_STATUS_CODES = (403, 429)

CHALLENGE_MARKERS = (
    "sucuri_cloudproxy_js",
    "sucuri.net/using-firewall",
    "cf-chl",
    "challenge-platform",
    "g-recaptcha",
    "h-captcha",
    "captcha-delivery",
    "are you a robot",
)

NON_WEB_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "ftp:", "file:")


# === LINK UTILITY ===

class LinkUtility:

    @staticmethod
    def normalize_url(url: str, *, base: Optional[str] = None) -> str:
        """
        Canonical form used for visited-set identity and cache keys:
        lower-case scheme/host, default ports and fragment dropped, trailing slash stripped (root stays "/").
        """
        if not url:
            return ""

        url = url.strip()
        if base:
            url = urljoin(base, url)
        if url.lower().startswith(NON_WEB_SCHEMES):
            return url
        if "://" not in url:
            url = "https://" + url.lstrip("/")

        parsed = urlparse(url)
        scheme = (parsed.scheme or "https").lower()
        netloc = parsed.netloc.lower()
        if scheme == "http" and netloc.endswith(":80"):
            netloc = netloc[:-3]
        elif scheme == "https" and netloc.endswith(":443"):
            netloc = netloc[:-4]

        path = parsed.path or "/"
        path = path.rstrip("/") or "/"

        return urlunparse((scheme, netloc, path, "", parsed.query, ""))

    @staticmethod
    def origin(url: str) -> str:
        parsed = urlparse(url if "://" in url else "https://" + url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @staticmethod
    def registrable_domain(url: str) -> str:
        ext = _TLD_EXTRACT(url)
        if ext.suffix:
            return f"{ext.domain}.{ext.suffix}".lower()
        return (ext.domain or urlparse(url).hostname or "").lower()

    @staticmethod
    def _site_subdomain(subdomain: str) -> str:
        sub = (subdomain or "").lower()
        if sub == "www":
            return ""
        return sub[4:] if sub.startswith("www.") else sub

    @classmethod
    def is_same_domain(cls, seed_url: str, candidate_url: str) -> bool:
        """
        Same registrable domain and same subdomain, treating "www." as the bare host.
        Other subdomains of the registrable domain are out of scope.
        """
        if not urlparse(candidate_url).hostname or not urlparse(seed_url).hostname:
            return False
        seed = _TLD_EXTRACT(seed_url)
        candidate = _TLD_EXTRACT(candidate_url)
        if (seed.domain.lower(), seed.suffix.lower()) != (candidate.domain.lower(), candidate.suffix.lower()):
            return False
        return cls._site_subdomain(seed.subdomain) == cls._site_subdomain(candidate.subdomain)

    @staticmethod
    def is_http(url: str) -> bool:
        return urlparse(url).scheme in ("http", "https")


# === PAGE FETCHER ===

def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - time.time())


def is_challenge(status_code: int, headers: Dict[str, str], body: bytes) -> bool:
    """Anti-bot challenge detection on a response that was not already blocked by status."""
    sample = body[:20000].decode("utf-8", errors="ignore").lower()
    lowered = {k.lower(): v for k, v in headers.items()}
    if "cf-ray" in lowered and ("just a moment" in sample or "cloudflare" in sample) and status_code >= 400:
        return True
    return any(marker in sample for marker in CHALLENGE_MARKERS)


class PageFetcher:
    """
    FLOW: GET with crawler headers -> Classifies network failures (NetworkError) and
    403/429/challenge pages (BlockedError) -> Returns a DirectResponse for everything else.
    """

    def __init__(self, user_agent: str = USER_AGENT, timeout: float = 30, pool_size: int = 10,
                 session: Optional[requests.Session] = None):
        self.user_agent = user_agent
        self.timeout = timeout
        self.session = session or requests.Session()
        adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.session.headers.update({
            "User-Agent": user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        })

    def fetch(self, url: str, referer: Optional[str] = None) -> DirectResponse:
        headers = {"Referer": referer} if referer else None
        start_time = time.time()
        try:
            r = self.session.get(url, timeout=self.timeout, headers=headers, allow_redirects=True)
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"timeout: {e}", url=url) from e
        except requests.exceptions.ConnectionError as e:
            raise NetworkError(f"connection error: {e}", url=url) from e
        except requests.exceptions.RequestException as e:
            raise RequestError(f"request error: {e}", url=url) from e

        fetch_time_ms = int((time.time() - start_time) * 1000)
        response_headers = {k: v for k, v in r.headers.items()}
        body = r.content or b""

        if r.status_code in BLOCKED_STATUS_CODES:
            raise BlockedError(
                f"http {r.status_code}",
                url=url,
                status_code=r.status_code,
                retry_after=_parse_retry_after(r.headers.get("Retry-After")),
            )
        if is_challenge(r.status_code, response_headers, body):
            raise BlockedError("challenge page detected", url=url, status_code=r.status_code)

        logger.debug(f"[FETCH] {url} -> {r.status_code} ({len(body)} bytes, {fetch_time_ms} ms)")
        return DirectResponse(
            url=url,
            final_url=r.url or url,
            status_code=r.status_code,
            headers=response_headers,
            body=body,
            elapsed_ms=fetch_time_ms,
        )

    def head(self, url: str, timeout: Optional[float] = None) -> Dict[str, str]:
        """Header-only request used by staleness probes. Raises NetworkError on failure."""
        try:
            r = self.session.head(url, timeout=timeout or self.timeout, allow_redirects=True)
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"probe failed: {e}", url=url) from e
        return {k: v for k, v in r.headers.items()}

    def close(self) -> None:
        self.session.close()


# === LINK EXTRACTOR ===

class LinkExtractor:

    DATE_SELECTORS = (
        ("meta", {"property": "article:modified_time"}),
        ("meta", {"property": "og:updated_time"}),
        ("time", {"itemprop": "dateModified"}),
    )

    SKIP_SCHEMES = NON_WEB_SCHEMES

    STATIC_EXTENSIONS = (
        ".css", ".js", ".png", ".jpg", ".jpeg", ".webp",
        ".gif", ".svg", ".ico", ".woff", ".woff2",
        ".ttf", ".eot", ".pdf", ".zip", ".xlsx",
        ".xls", ".docx", ".doc", ".gz", ".tar",
        ".ppt", ".pptx", ".mp3", ".mp4", ".xml",
    )

    @classmethod
    def extract_urls(cls, html: str, base_url: str) -> List[str]:
        """All crawlable absolute http(s) links on the page, normalized, in document order."""
        if not html:
            return []
        soup = BeautifulSoup(html, "html.parser")

        base_tag = soup.find("base", href=True)
        if base_tag:
            base_url = urljoin(base_url, base_tag["href"])

        seen = set()
        urls = []
        for a in soup.find_all("a", href=True):
            href = a["href"].strip()
            if not href or href.startswith("#") or href.lower().startswith(cls.SKIP_SCHEMES):
                continue
            absolute = urljoin(base_url, href)
            if not LinkUtility.is_http(absolute):
                continue
            if urlparse(absolute).path.lower().endswith(cls.STATIC_EXTENSIONS):
                continue
            normalized = LinkUtility.normalize_url(absolute)
            if normalized not in seen:
                seen.add(normalized)
                urls.append(normalized)
        return urls

    @classmethod
    def extract_same_domain(cls, html: str, page_url: str, seed_url: Optional[str] = None) -> List[str]:
        seed_url = seed_url or page_url
        return [u for u in cls.extract_urls(html, page_url) if LinkUtility.is_same_domain(seed_url, u)]

    @classmethod
    def page_metadata(cls, html: str, headers: Dict[str, str], final_url: str) -> Dict[str, Optional[str]]:
        """
        Lightweight metadata kept with the cache entry: title, canonical, content type and
        the page-declared modification time (meta tags first, then the Last-Modified header).
        """
        lowered = {k.lower(): v for k, v in (headers or {}).items()}
        metadata: Dict[str, Optional[str]] = {
            "title": None,
            "canonical_url": None,
            "content_type": lowered.get("content-type"),
            "final_url": final_url,
            "last_modified": None,
        }
        if not html:
            metadata["last_modified"] = lowered.get("last-modified")
            return metadata

        soup = BeautifulSoup(html, "html.parser")
        if soup.title and soup.title.string:
            metadata["title"] = re.sub(r"\s+", " ", soup.title.string).strip()
        canonical = soup.find("link", rel="canonical")
        if canonical and canonical.get("href"):
            metadata["canonical_url"] = urljoin(final_url, canonical["href"])

        for name, attrs in cls.DATE_SELECTORS:
            tag = soup.find(name, attrs=attrs)
            if tag:
                value = tag.get("content") or tag.get("datetime") or tag.get_text(strip=True)
                if value:
                    metadata["last_modified"] = value.strip()
                    break
        if not metadata["last_modified"]:
            metadata["last_modified"] = lowered.get("last-modified")
        return metadata


def split_url_line(line: str) -> Tuple[str, Optional[str]]:
    """`<url>[<tab or space><lastmod>]` -> (url, lastmod)"""
    parts = line.strip().split(None, 1)
    if not parts:
        return "", None
    return parts[0], (parts[1].strip() if len(parts) > 1 else None)
