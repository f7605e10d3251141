from auditcrawler.core import CrawlConfig, setup_logger
from auditcrawler.models import (
    CacheEntry,
    ComplianceDecision,
    ErrorKind,
    FetchResult,
    RenderedVia,
    Rule,
    RuleSet,
    SessionPolicyState,
    UrlTask,
)
from auditcrawler.errors import (
    BlockedError,
    CacheIOError,
    CrawlError,
    NetworkError,
    RenderError,
    RenderPoolError,
    RequestError,
    SessionAborted,
)

__version__ = "0.1.0"
