from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Tuple


class Directive(Enum):
    ALLOW = "allow"
    DENY = "disallow"


class RenderedVia(Enum):
    CACHE = "cache"
    RENDER = "render"
    DIRECT_FETCH = "direct_fetch"


class ErrorKind(Enum):
    NETWORK = "network"
    BLOCKED = "blocked"
    RENDER = "render"
    CACHE_IO = "cache_io"
    NOT_CACHED = "not_cached"
    INVALID_URL = "invalid_url"
    REQUEST = "request"
    INTERNAL = "internal"


@dataclass(frozen=True)
class UrlTask:
    """
    One unit of crawl work.
    Produced by the URL supplier (seeds) or by the scheduler for discovered same-domain links.
    """
    url: str
    last_modified: Optional[datetime] = None
    discovered: bool = False
    discovered_from: Optional[str] = None
    depth: int = 0


@dataclass(frozen=True)
class Rule:
    directive: Directive
    path_pattern: str

    @property
    def is_allow(self) -> bool:
        return self.directive is Directive.ALLOW


@dataclass(frozen=True)
class RuleSet:
    """
    Immutable exclusion rules parsed from one robots.txt document.
    Keys of user_agent_rules are lower-cased agent tokens ("*" for the wildcard group).
    """
    user_agent_rules: Mapping[str, Tuple[Rule, ...]] = field(default_factory=dict)
    sitemaps: Tuple[str, ...] = ()
    source_url: Optional[str] = None

    @classmethod
    def empty(cls, source_url: Optional[str] = None) -> "RuleSet":
        return cls(user_agent_rules={}, sitemaps=(), source_url=source_url)

    @property
    def rule_count(self) -> int:
        return sum(len(rules) for rules in self.user_agent_rules.values())

    def rules_for(self, agent: str) -> List[Rule]:
        """Rules whose agent pattern equals `agent` (case-insensitive) or is the wildcard."""
        wanted = (agent or "").strip().lower()
        applicable: List[Rule] = []
        for pattern, rules in self.user_agent_rules.items():
            if pattern == "*" or pattern == wanted:
                applicable.extend(rules)
        return applicable


@dataclass(frozen=True)
class ComplianceDecision:
    allowed: bool
    matched_rule: Optional[Rule]
    reason: str


class SessionPolicyState:
    """
    Session-wide compliance state shared by every worker.
    Mutated by the compliance gate only; read by the scheduler to detect abort.
    """

    def __init__(self, force_bypass: bool = False):
        self._lock = Lock()
        self._force_bypass = force_bypass
        self._has_prompted_once = False
        self._aborted = False

    @property
    def force_bypass(self) -> bool:
        with self._lock:
            return self._force_bypass

    @property
    def has_prompted_once(self) -> bool:
        with self._lock:
            return self._has_prompted_once

    @property
    def aborted(self) -> bool:
        with self._lock:
            return self._aborted

    def enable_bypass(self) -> None:
        with self._lock:
            self._force_bypass = True

    def mark_prompted(self) -> bool:
        """Records a prompt and returns True if it was the first one of the session."""
        with self._lock:
            first = not self._has_prompted_once
            self._has_prompted_once = True
            return first

    def abort(self) -> None:
        with self._lock:
            self._aborted = True

    def snapshot(self) -> Dict[str, bool]:
        with self._lock:
            return {
                "force_bypass": self._force_bypass,
                "has_prompted_once": self._has_prompted_once,
                "aborted": self._aborted,
            }


@dataclass(frozen=True)
class CacheEntry:
    """
    One cached page. `key` is the hash of the normalized URL.
    """
    key: str
    url: str
    body: bytes
    status_code: int
    response_headers: Dict[str, str] = field(default_factory=dict)
    extracted_metadata: Dict[str, Any] = field(default_factory=dict)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rendered_via: RenderedVia = RenderedVia.DIRECT_FETCH
    console_errors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DirectResponse:
    """Raw response of the lightweight HTTP path."""
    url: str
    final_url: str
    status_code: int
    headers: Dict[str, str]
    body: bytes
    elapsed_ms: int = 0


@dataclass(frozen=True)
class RenderedPage:
    """
    Result of one render call.
    Console errors are collected during the call and returned with the page.
    """
    url: str
    final_url: str
    status_code: int
    html: str
    headers: Dict[str, str] = field(default_factory=dict)
    console_errors: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FetchResult:
    """
    Terminal value handed to the result sink. The core never retains it.
    """
    url: str
    body: Optional[bytes] = None
    status_code: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)
    rendered_via: Optional[RenderedVia] = None
    error: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    skipped: bool = False
    quit: bool = False
    reason: Optional[str] = None
    final_url: Optional[str] = None
    extracted_metadata: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    depth: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped and self.body is not None

    @property
    def text(self) -> str:
        if self.body is None:
            return ""
        return self.body.decode("utf-8", errors="replace")

    def summary(self) -> Dict[str, Any]:
        """JSON-safe metadata view (no body)."""
        return {
            "url": self.url,
            "final_url": self.final_url,
            "status_code": self.status_code,
            "rendered_via": self.rendered_via.value if self.rendered_via else None,
            "error": self.error.value if self.error else None,
            "error_message": self.error_message,
            "skipped": self.skipped,
            "quit": self.quit,
            "reason": self.reason,
            "attempts": self.attempts,
            "size": len(self.body) if self.body is not None else 0,
            "depth": self.depth,
        }
