"""
FILE DESCRIPTION: Foundational module for crawl configuration and logging.
KEY FUNCTIONS/CLASSES: CrawlConfig, CompanyFormatter, setup_logger, logger

Configuration is an explicit value handed to every component. Nothing in the
package reads options from a module-level singleton after start-up.
"""

import logging
import os
import sys
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# === CONFIGURATION SECTION ===

DEFAULT_POOL_SIZE = 3
DEFAULT_CONCURRENCY = 3
DEFAULT_RECYCLE_THRESHOLD = 50
DEFAULT_MAX_RETRIES = 3

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
ROBOTS_AGENT = "AuditCrawler"

# Playwright / JS Rendering Waiting Periods (seconds)
JS_GOTO_TIMEOUT = 25
JS_WAIT_TIMEOUT = 5


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


@dataclass(frozen=True)
class CrawlConfig:
    """
    Settings for one crawl session.
    Built once (from_env + CLI overlay) and passed into each component's constructor.
    """
    pool_size: int = DEFAULT_POOL_SIZE
    concurrency_limit: int = DEFAULT_CONCURRENCY
    recycle_threshold: int = DEFAULT_RECYCLE_THRESHOLD
    recursive: bool = True
    force_bypass: bool = False
    no_cache: bool = False
    cache_only: bool = False
    force_delete_cache: bool = False
    cache_dir: str = ".cache"
    request_timeout: float = 30
    render_timeout: float = 60
    probe_timeout: float = 10
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = 1.0
    use_renderer: bool = True
    prefer_direct_fetch: bool = True
    strict_staleness: bool = False
    max_pages: int = -1
    user_agent: str = USER_AGENT
    robots_agent: str = ROBOTS_AGENT
    crawl_delay: float = 0.0
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "CrawlConfig":
        """
        FLOW: Loads .env (if present) -> Reads environment overrides -> Returns a validated config.
        """
        load_dotenv(env_file or Path.cwd() / ".env")
        config = cls(
            pool_size=_env_int("POOL_SIZE", DEFAULT_POOL_SIZE),
            concurrency_limit=_env_int("CONCURRENCY", DEFAULT_CONCURRENCY),
            recycle_threshold=_env_int("RECYCLE_THRESHOLD", DEFAULT_RECYCLE_THRESHOLD),
            recursive=not _env_flag("NO_RECURSIVE"),
            force_bypass=_env_flag("FORCE_SCRAPE"),
            no_cache=_env_flag("NO_CACHE"),
            cache_only=_env_flag("CACHE_ONLY"),
            force_delete_cache=_env_flag("FORCE_DELETE_CACHE"),
            cache_dir=os.getenv("CACHE_DIR", ".cache"),
            request_timeout=_env_float("TIMEOUT", 30),
            max_retries=_env_int("MAX_RETRIES", DEFAULT_MAX_RETRIES),
            backoff_base=_env_float("INITIAL_BACKOFF", 1.0),
            use_renderer=not _env_flag("NO_RENDERER"),
            strict_staleness=_env_flag("STRICT_STALENESS"),
            max_pages=_env_int("LIMIT", -1),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_file=os.getenv("LOG_FILE") or None,
        )
        config.validate()
        return config

    def with_overrides(self, **changes) -> "CrawlConfig":
        """Returns a copy with the non-None entries of `changes` applied."""
        updated = replace(self, **{k: v for k, v in changes.items() if v is not None})
        updated.validate()
        return updated

    def validate(self) -> None:
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be >= 1 (got {self.pool_size})")
        if self.concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1 (got {self.concurrency_limit})")
        if self.recycle_threshold < 1:
            raise ValueError(f"recycle_threshold must be >= 1 (got {self.recycle_threshold})")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1 (got {self.max_retries})")
        if self.no_cache and self.cache_only:
            raise ValueError("no_cache and cache_only cannot both be enabled")


# === LOGGING SECTION ===

class CompanyFormatter(logging.Formatter):
    """
    FLOW: Receives a log record -> Extracts timestamp -> Formats according to company standard
    (e.g., [ Tue Jan 06 05:32:41 AM UTC 2026 ]) -> Prepends level and context -> Returns final string.
    """
    def format(self, record):
        dt = datetime.fromtimestamp(record.created)
        timestamp = dt.strftime("%a %b %d %I:%M:%S %p UTC %Y")
        context = getattr(record, 'context', 'root')
        message = f"[ {timestamp} ] : {record.levelname} : {context} : {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logger(name="auditcrawler", log_file=None, level=logging.INFO):
    """
    FLOW: Initializes/Retrieves logger -> Checks for existing handlers to prevent duplicates ->
    Sets propagation for child loggers -> Attaches Console and optional File handlers with CompanyFormatter.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger(name)
    logger.setLevel(level)

    if name != "auditcrawler":
        logger.propagate = True
        setup_logger("auditcrawler", log_file=log_file, level=level)
        return logger

    formatter = CompanyFormatter()

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    # File handler (optional), attached once per path
    if log_file:
        target = os.path.abspath(log_file)
        if not any(isinstance(h, logging.FileHandler) and h.baseFilename == target
                   for h in logger.handlers):
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

    return logger


# Global logger instance
logger = setup_logger()
