"""
Allow/Disallow evaluation for robots.txt rule sets.

Pattern semantics:
- a pattern of exactly "/" matches every path
- "*" matches any run of characters, everything else is literal
- a trailing "$" anchors the match to the end of the path (query string included)
- otherwise a pattern matches as a prefix

Precedence: the matching rule with the longest pattern (raw length, "*" and "$" counted)
wins; on an exact length tie Allow wins. No matching rule means allowed.
"""

import re
from functools import lru_cache
from typing import Iterable, Optional
from urllib.parse import urlparse

from auditcrawler.models import ComplianceDecision, Rule, RuleSet


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> "re.Pattern[str]":
    anchored = pattern.endswith("$")
    body = pattern[:-1] if anchored else pattern
    regex = ".*".join(re.escape(part) for part in body.split("*"))
    return re.compile("^" + regex + ("$" if anchored else ""), re.DOTALL)


def path_matches(path: str, pattern: str) -> bool:
    if pattern == "/":
        return True
    if not pattern:
        return False
    return _compile(pattern).match(path) is not None


def _best_rule(path: str, rules: Iterable[Rule]) -> Optional[Rule]:
    best: Optional[Rule] = None
    best_length = -1
    for rule in rules:
        if not path_matches(path, rule.path_pattern):
            continue
        length = len(rule.path_pattern)
        if length > best_length or (length == best_length and rule.is_allow and not best.is_allow):
            best = rule
            best_length = length
    return best


def match(path: str, rule_set: Optional[RuleSet], agent: str) -> ComplianceDecision:
    """
    Decide whether `path` (path + query) may be fetched by `agent`.
    Pure function: identical inputs always give identical decisions.
    """
    if rule_set is None:
        return ComplianceDecision(True, None, "no applicable rules")

    applicable = rule_set.rules_for(agent)
    if not applicable:
        return ComplianceDecision(True, None, "no applicable rules")

    best = _best_rule(path or "/", applicable)
    if best is None:
        return ComplianceDecision(True, None, "no matching rules")
    if best.is_allow:
        return ComplianceDecision(True, best, f"explicitly allowed by rule: {best.path_pattern}")
    return ComplianceDecision(False, best, f"blocked by rule: {best.path_pattern}")


def request_path(url: str) -> str:
    """Path plus query string, the part of a URL that rules are compared against."""
    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    return path


def is_url_allowed(url: str, rule_set: Optional[RuleSet], agent: str) -> ComplianceDecision:
    return match(request_path(url), rule_set, agent)
