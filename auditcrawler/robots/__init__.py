from auditcrawler.robots.matcher import match, path_matches, is_url_allowed, request_path
from auditcrawler.robots.parser import parse_robots_txt, robots_summary
from auditcrawler.robots.compliance import (
    ComplianceGate,
    GateOutcome,
    OverrideChoice,
    DecisionProvider,
    TerminalDecisionProvider,
    ScriptedDecisionProvider,
    FixedDecisionProvider,
)
