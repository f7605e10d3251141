"""
Line-oriented robots.txt parser.
Produces an immutable RuleSet; unknown directives are ignored.
"""

from typing import Dict, List, Optional

from auditcrawler.models import Directive, Rule, RuleSet

_DIRECTIVES = {
    "allow": Directive.ALLOW,
    "disallow": Directive.DENY,
}


def parse_robots_txt(content: Optional[str], source_url: Optional[str] = None) -> RuleSet:
    """
    FLOW: Strips comments -> Groups consecutive User-agent lines -> Attaches Allow/Disallow
    rules to the current group ("*" when none declared yet) -> Collects Sitemap lines.
    """
    if not content:
        return RuleSet.empty(source_url)

    groups: Dict[str, List[Rule]] = {}
    sitemaps: List[str] = []
    current_agents: List[str] = []
    last_was_agent = False

    for raw in content.splitlines():
        line = raw.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        field, value = line.split(":", 1)
        field = field.strip().lower()
        value = value.strip()

        if field == "user-agent":
            agent = value.lower()
            if not last_was_agent:
                current_agents = []
            if agent and agent not in current_agents:
                current_agents.append(agent)
                groups.setdefault(agent, [])
            last_was_agent = True
            continue

        last_was_agent = False

        if field == "sitemap":
            if value:
                sitemaps.append(value)
            continue

        directive = _DIRECTIVES.get(field)
        if directive is None or not value:
            # empty Disallow means "allow everything"
            continue

        for agent in current_agents or ["*"]:
            groups.setdefault(agent, []).append(Rule(directive, value))

    return RuleSet(
        user_agent_rules={agent: tuple(rules) for agent, rules in groups.items()},
        sitemaps=tuple(sitemaps),
        source_url=source_url,
    )


def robots_summary(rule_set: Optional[RuleSet]) -> str:
    if rule_set is None or not rule_set.user_agent_rules:
        return "No valid robots.txt found"

    agents = list(rule_set.user_agent_rules)
    shown = ", ".join(agents[:3]) + ("..." if len(agents) > 3 else "")
    return (
        "robots.txt summary:\n"
        f"  - User agents declared: {len(agents)} ({shown})\n"
        f"  - Total rules: {rule_set.rule_count}\n"
        f"  - Sitemaps: {len(rule_set.sitemaps)}"
    )
