"""
FILE DESCRIPTION: Compliance gate between the frontier and the network.
KEY FUNCTIONS/CLASSES: ComplianceGate, GateOutcome, OverrideChoice, DecisionProvider,
TerminalDecisionProvider, ScriptedDecisionProvider, FixedDecisionProvider

Per URL: Allowed | Denied-Pending-Decision -> Overridden | Bypassed | Skipped | Aborted.
Bypassed and Aborted are session-scoped and live in SessionPolicyState.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional

from auditcrawler.core import logger
from auditcrawler.models import ComplianceDecision, RuleSet, SessionPolicyState
from auditcrawler.robots.matcher import is_url_allowed


class OverrideChoice(Enum):
    OVERRIDE_ONCE = "y"
    ENABLE_BYPASS = "a"
    SKIP = "n"
    QUIT = "q"


@dataclass(frozen=True)
class GateOutcome:
    proceed: bool
    quit: bool = False
    reason: str = ""
    decision: Optional[ComplianceDecision] = None


# === DECISION PROVIDERS ===

class DecisionProvider(ABC):
    """
    Answers a denied URL with one of the four override choices.
    Production asks a human; tests and unattended runs answer from a policy.
    """

    @abstractmethod
    def decide(self, url: str, decision: ComplianceDecision, first: bool) -> OverrideChoice:
        pass


FIRST_PROMPT = (
    "\n⚠️  robots.txt RESTRICTION DETECTED\n\n"
    "The URL is blocked by robots.txt:\n"
    "  URL: {url}\n"
    "  Rule: {rule}\n\n"
    "Options:\n"
    "  [y] Scrape this URL anyway (override for this URL only)\n"
    "  [a] Scrape all URLs (enable force-scrape mode for remainder of session)\n"
    "  [n] Skip this URL and continue\n"
    "  [q] Quit the analysis\n\n"
    "Your choice (y/a/n/q): "
)

REPEAT_PROMPT = (
    "\n⚠️  Another URL blocked by robots.txt:\n"
    "  URL: {url}\n"
    "  Rule: {rule}\n\n"
    "Options:\n"
    "  [y] Scrape anyway\n"
    "  [a] Enable force-scrape mode\n"
    "  [n] Skip\n"
    "  [q] Quit\n\n"
    "Choice (y/a/n/q): "
)


class TerminalDecisionProvider(DecisionProvider):
    """Reads the answer from the terminal. Unknown answers and EOF mean skip."""

    def __init__(self, input_fn: Callable[[str], str] = input, output_fn: Callable[[str], None] = print):
        self._input = input_fn
        self._output = output_fn

    def decide(self, url: str, decision: ComplianceDecision, first: bool) -> OverrideChoice:
        rule = decision.matched_rule.path_pattern if decision.matched_rule else "(unknown)"
        template = FIRST_PROMPT if first else REPEAT_PROMPT
        try:
            answer = self._input(template.format(url=url, rule=rule))
        except EOFError:
            answer = ""

        choice = (answer or "").strip().lower()
        if choice == "y":
            self._output("✓ Overriding robots.txt for this URL only\n")
            return OverrideChoice.OVERRIDE_ONCE
        if choice == "a":
            self._output("✓ Force-scrape mode ENABLED - all robots.txt restrictions will be bypassed")
            self._output("   This setting will persist for the remainder of this session\n")
            return OverrideChoice.ENABLE_BYPASS
        if choice == "n":
            self._output("✓ Skipping this URL\n")
            return OverrideChoice.SKIP
        if choice == "q":
            self._output("✓ Quitting analysis\n")
            return OverrideChoice.QUIT
        self._output(f'Invalid choice "{choice}" - skipping URL\n')
        return OverrideChoice.SKIP


class ScriptedDecisionProvider(DecisionProvider):
    """
    Replays a fixed list of answers. When the script runs out the last answer repeats
    (or `default` if the script was empty).
    """

    def __init__(self, answers: Iterable[OverrideChoice], default: OverrideChoice = OverrideChoice.SKIP):
        self._answers = list(answers)
        self._default = default
        self._lock = threading.Lock()
        self.calls = []

    def decide(self, url: str, decision: ComplianceDecision, first: bool) -> OverrideChoice:
        with self._lock:
            self.calls.append((url, first))
            if len(self._answers) > 1:
                return self._answers.pop(0)
            if self._answers:
                return self._answers[0]
            return self._default


class FixedDecisionProvider(DecisionProvider):
    """Always gives the same answer. Used for unattended (non-TTY) runs."""

    def __init__(self, choice: OverrideChoice = OverrideChoice.SKIP):
        self.choice = choice

    def decide(self, url: str, decision: ComplianceDecision, first: bool) -> OverrideChoice:
        return self.choice


# === COMPLIANCE GATE ===

class ComplianceGate:
    """
    FLOW: Session bypass? -> proceed | Rule match allowed? -> proceed |
    Denied -> escalate to DecisionProvider (one prompt at a time) -> apply choice to the session state.
    """

    def __init__(self, rule_set: Optional[RuleSet], policy_state: SessionPolicyState,
                 decision_provider: DecisionProvider, agent: str):
        self.rule_set = rule_set
        self.policy_state = policy_state
        self.decision_provider = decision_provider
        self.agent = agent
        self._prompt_lock = threading.Lock()
        self.denials = 0

    def log(self, level, msg):
        getattr(logger, level)(msg, extra={'context': 'gate'})

    def check(self, url: str) -> GateOutcome:
        if self.policy_state.aborted:
            return GateOutcome(proceed=False, quit=True, reason="session aborted")

        if self.policy_state.force_bypass:
            return GateOutcome(proceed=True, reason="bypass enabled")

        decision = is_url_allowed(url, self.rule_set, self.agent)
        if decision.allowed:
            return GateOutcome(proceed=True, reason=decision.reason, decision=decision)

        self.denials += 1
        rule = decision.matched_rule.path_pattern if decision.matched_rule else None
        self.log("warning", f"robots.txt blocks access to: {url} (rule: {rule})")
        return self._escalate(url, decision)

    def _escalate(self, url: str, decision: ComplianceDecision) -> GateOutcome:
        with self._prompt_lock:
            # Another worker may have changed the session while this one waited.
            if self.policy_state.aborted:
                return GateOutcome(proceed=False, quit=True, reason="session aborted", decision=decision)
            if self.policy_state.force_bypass:
                return GateOutcome(proceed=True, reason="bypass enabled", decision=decision)

            first = self.policy_state.mark_prompted()
            choice = self.decision_provider.decide(url, decision, first)

            if choice is OverrideChoice.OVERRIDE_ONCE:
                self.log("info", f"User override for {url}")
                return GateOutcome(proceed=True, reason="user override", decision=decision)

            if choice is OverrideChoice.ENABLE_BYPASS:
                self.policy_state.enable_bypass()
                self.log("warning", "User enabled force-scrape mode - robots.txt restrictions will be bypassed for remainder of session")
                return GateOutcome(proceed=True, reason="bypass enabled by user", decision=decision)

            if choice is OverrideChoice.QUIT:
                self.policy_state.abort()
                self.log("info", "User chose to quit analysis due to robots.txt restriction")
                return GateOutcome(proceed=False, quit=True, reason="user quit due to robots.txt restriction",
                                   decision=decision)

            return GateOutcome(proceed=False, reason="blocked by robots.txt and user declined override",
                               decision=decision)
