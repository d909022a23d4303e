"""Routing rule model.

A rule maps a host or address predicate to an action. Rules are immutable; the
ordered collection plus the fallback action forms a ``RuleSet``, which is rebuilt
from scratch on every config load and never mutated afterwards.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from acl_socks_proxy.core.exceptions import RuleError


class RuleType(Enum):
    """Kind of predicate a rule applies. Values are the config file tokens."""

    DOMAIN = "DOMAIN"
    DOMAIN_SUFFIX = "DOMAIN-SUFFIX"
    DOMAIN_KEYWORD = "DOMAIN-KEYWORD"
    IP_CIDR = "IP-CIDR"
    GEOIP = "GEOIP"
    FINAL = "FINAL"

    @classmethod
    def parse(cls, token: str) -> RuleType | None:
        """Return the member spelled exactly as ``token``, or None."""
        try:
            return cls(token)
        except ValueError:
            return None

    @property
    def needs_address(self) -> bool:
        return self in (RuleType.IP_CIDR, RuleType.GEOIP)


class RuleAction(Enum):
    """What to do with a matched connection.

    The ``Proxy`` token is mixed-case in the config grammar while the other two
    are upper-case; the values keep that spelling.
    """

    DIRECT = "DIRECT"
    PROXY = "Proxy"
    REJECT = "REJECT"

    @classmethod
    def parse(cls, token: str) -> RuleAction | None:
        """Return the member spelled exactly as ``token``, or None."""
        try:
            return cls(token)
        except ValueError:
            return None


@dataclass(frozen=True)
class Rule:
    """A single routing rule.

    Attributes:
        type: Predicate kind
        pattern: Host fragment, CIDR literal or ISO country code, stored lowercased.
            Absent for ``FINAL`` rules only.
        action: Action applied when the predicate matches
    """

    type: RuleType
    pattern: str | None
    action: RuleAction

    def __post_init__(self) -> None:
        if self.type is RuleType.FINAL:
            if self.pattern is not None:
                msg = f"FINAL rule takes no pattern, got {self.pattern!r}"
                raise RuleError(msg)
        elif not self.pattern:
            msg = f"{self.type.value} rule requires a pattern"
            raise RuleError(msg)
        else:
            object.__setattr__(self, "pattern", self.pattern.lower())

    @classmethod
    def final(cls, action: RuleAction) -> Rule:
        return cls(RuleType.FINAL, None, action)

    @property
    def description(self) -> str:
        """Human readable form, e.g. ``DIRECT DOMAIN-SUFFIX .cn``."""
        return f"{self.action.value} {self.type.value} {self.pattern or ''}"

    @property
    def raw(self) -> str:
        """Canonical config line for this rule."""
        if self.type is RuleType.FINAL:
            return f"{self.type.value},{self.action.value}"
        return f"{self.type.value},{self.pattern},{self.action.value}"

    def __str__(self) -> str:
        return self.raw


@dataclass(frozen=True)
class RuleSet:
    """Ordered non-final rules plus the fallback action.

    Order is significant: the first matching rule wins.
    """

    rules: tuple[Rule, ...] = field(default_factory=tuple)
    default_action: RuleAction = RuleAction.PROXY

    def __post_init__(self) -> None:
        if any(rule.type is RuleType.FINAL for rule in self.rules):
            msg = "FINAL rules are stored as default_action, not in the ordered list"
            raise RuleError(msg)

    def __len__(self) -> int:
        return len(self.rules)

    def __iter__(self) -> Iterator[Rule]:
        return iter(self.rules)

    @property
    def final_rule(self) -> Rule:
        return Rule.final(self.default_action)

    def dump(self) -> str:
        """Render the rule set back into config file text."""
        lines = ["[Rule]", *(rule.raw for rule in self.rules), self.final_rule.raw]
        return "\n".join(lines) + "\n"


EMPTY_RULE_SET = RuleSet()
