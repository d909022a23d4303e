"""Routing rule engine components."""

from .engine import ACL, match_cidr
from .geoip import CountryLookup, CountryRecord, GeoIPDatabase
from .parser import parse_config, parse_rule_line
from .resolver import HostResolver, is_ipv4_literal
from .rules import Rule, RuleAction, RuleSet, RuleType

__all__ = [
    "ACL",
    "CountryLookup",
    "CountryRecord",
    "GeoIPDatabase",
    "HostResolver",
    "is_ipv4_literal",
    "match_cidr",
    "parse_config",
    "parse_rule_line",
    "Rule",
    "RuleAction",
    "RuleSet",
    "RuleType",
]
