"""Config file parser for routing rules.

The config is line oriented::

    [General]
    # ignored by the rule engine

    [Rule]
    DOMAIN,example.com,DIRECT
    DOMAIN-SUFFIX,.cn,DIRECT
    DOMAIN-KEYWORD,ads,REJECT
    IP-CIDR,10.0.0.0/8,DIRECT
    GEOIP,cn,DIRECT
    FINAL,Proxy

Malformed lines are skipped with a warning; parsing never raises.
"""

from enum import Enum, auto
from typing import Final

from loguru import logger

from acl_socks_proxy.core.exceptions import RuleError

from .rules import Rule, RuleAction, RuleSet, RuleType

GENERAL_SECTION: Final = "[General]"
RULE_SECTION: Final = "[Rule]"
COMMENT_PREFIX: Final = "#"
FIELD_SEPARATOR: Final = ","


class _Section(Enum):
    INITIAL = auto()
    GENERAL = auto()
    RULE = auto()


def parse_rule_line(line: str) -> Rule | None:
    """Parse one ``[Rule]`` line.

    Args:
        line: Trimmed, non-empty rule line

    Returns:
        Rule | None: The parsed rule (``FINAL`` rules included), or None when
            the line is malformed
    """
    fields = [item.strip() for item in line.split(FIELD_SEPARATOR)]

    if len(fields) == 2:
        rule_type, action = RuleType.parse(fields[0]), RuleAction.parse(fields[1])
        if rule_type is not RuleType.FINAL or action is None:
            return None
        return Rule.final(action)

    if len(fields) == 3:
        rule_type, action = RuleType.parse(fields[0]), RuleAction.parse(fields[2])
        if rule_type is None or action is None:
            return None
        try:
            return Rule(rule_type, fields[1], action)
        except RuleError as e:
            logger.debug(f"[acl] Rejected rule {line!r}: {e}")
            return None

    return None


def parse_config(text: str) -> RuleSet:
    """Parse config text into a ``RuleSet``.

    Only lines inside the ``[Rule]`` section are interpreted. The last ``FINAL``
    line sets the default action; without one it stays ``Proxy``.

    Args:
        text: Full config file contents

    Returns:
        RuleSet: Rules in file order plus the default action
    """
    rules: list[Rule] = []
    default_action = RuleAction.PROXY
    section = _Section.INITIAL

    for lineno, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith(COMMENT_PREFIX):
            continue
        if line == GENERAL_SECTION:
            section = _Section.GENERAL
            continue
        if line == RULE_SECTION:
            section = _Section.RULE
            continue

        if section is not _Section.RULE:
            continue

        rule = parse_rule_line(line)
        if rule is None:
            logger.warning(f"[acl] Invalid rule at line {lineno}: {line}")
        elif rule.type is RuleType.FINAL:
            default_action = rule.action
        else:
            rules.append(rule)

    return RuleSet(tuple(rules), default_action)
