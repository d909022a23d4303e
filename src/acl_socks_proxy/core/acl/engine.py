"""Rule engine deciding how each proxied connection is routed.

The engine holds the active ``RuleSet`` as an immutable snapshot. Reloads build a
complete new snapshot and swap the reference, so concurrent ``decide`` calls see
either the old rules or the new ones, never a mix.

Example:
    acl = ACL.from_database("GeoLite2-Country.mmdb")
    acl.load("rules.conf")

    if acl.decide("www.example.com") is RuleAction.REJECT:
        ...
"""

import functools
import ipaddress
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from os import PathLike
from typing import Final

from loguru import logger

from acl_socks_proxy.core.exceptions import GeoIPUnavailableError

from .geoip import CountryLookup, GeoIPDatabase
from .parser import parse_config
from .resolver import HostResolver, is_ipv4_literal
from .rules import EMPTY_RULE_SET, Rule, RuleAction, RuleSet, RuleType

IPV4_BITS: Final = 32
IPV4_ALL_ONES: Final = 0xFFFFFFFF
DEFAULT_RESOLVE_WORKERS: Final = 16


def ipv4_to_int(ip: str) -> int:
    """Convert a dotted quad to an unsigned 32-bit integer, most significant octet first."""
    return int(ipaddress.IPv4Address(ip))


@functools.lru_cache(maxsize=1024)
def parse_cidr(cidr: str) -> tuple[int, int]:
    """Parse ``a.b.c.d/n`` into ``(network, mask)``.

    Host bits set in the base address are ignored.

    Raises:
        ValueError: If the base is not an IPv4 literal or the prefix is not 0-32
    """
    base, sep, prefix = cidr.partition("/")
    if not sep or not prefix.isascii() or not prefix.isdigit():
        msg = f"Invalid CIDR {cidr!r}"
        raise ValueError(msg)

    prefix_len = int(prefix)
    if prefix_len > IPV4_BITS:
        msg = f"Invalid prefix length in {cidr!r}"
        raise ValueError(msg)

    mask = (IPV4_ALL_ONES << (IPV4_BITS - prefix_len)) & IPV4_ALL_ONES
    return ipv4_to_int(base) & mask, mask


def match_cidr(ip: str, cidr: str) -> bool:
    """Check whether IPv4 literal ``ip`` falls inside ``cidr``."""
    network, mask = parse_cidr(cidr)
    return ipv4_to_int(ip) & mask == network


class ACL:
    """Ordered first-match-wins routing rules.

    Attributes:
        country_lookup: Country lookup used by ``GEOIP`` rules
        resolver: Resolver used by ``IP-CIDR`` and ``GEOIP`` rules
    """

    def __init__(
        self,
        country_lookup: CountryLookup | None,
        resolver: HostResolver | None = None,
        *,
        max_workers: int = DEFAULT_RESOLVE_WORKERS,
    ) -> None:
        """Initialize the engine with an empty rule set.

        Args:
            country_lookup: Country lookup for ``GEOIP`` rules
            resolver: Host resolver (default: ``HostResolver()``)
            max_workers: Size of the pool used by ``decide_async``

        Raises:
            GeoIPUnavailableError: If ``country_lookup`` is None
        """
        if country_lookup is None:
            msg = "A country lookup is required, GEOIP rules cannot be evaluated without it"
            logger.error(msg)
            raise GeoIPUnavailableError(msg)

        self.country_lookup = country_lookup
        self.resolver = resolver if resolver is not None else HostResolver()
        self._rule_set: RuleSet = EMPTY_RULE_SET
        self._swap_lock = threading.Lock()
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    @classmethod
    def from_database(cls, path: str | PathLike[str], resolver: HostResolver | None = None) -> "ACL":
        """Create an engine backed by a MaxMind database file."""
        return cls(GeoIPDatabase(path), resolver)

    @property
    def rule_set(self) -> RuleSet:
        """Current rule set snapshot."""
        return self._rule_set

    def swap(self, rule_set: RuleSet) -> RuleSet:
        """Replace the active rule set and return the previous one."""
        with self._swap_lock:
            previous, self._rule_set = self._rule_set, rule_set
        return previous

    def load_text(self, text: str) -> RuleSet:
        """Parse config text and make it the active rule set."""
        rule_set = parse_config(text)
        self.swap(rule_set)
        logger.info(f"[acl] Load rule ok, count:{len(rule_set)} final:{rule_set.default_action.value}")
        return rule_set

    def load(self, path: str | PathLike[str]) -> bool:
        """Load a rule file from disk.

        On failure the previously loaded rules stay active.

        Args:
            path: Local config file path

        Returns:
            bool: True if the new rules were swapped in
        """
        logger.debug(f"[acl] Load rule file {path}...")
        try:
            with open(path, encoding="utf-8") as f:
                text = f.read()
        except (OSError, UnicodeDecodeError) as e:
            logger.error(f"[acl] Load config file failed: {e}")
            return False

        self.load_text(text)
        return True

    def _resolve(self, host: str) -> str:
        try:
            return self.resolver.resolve(host)
        except Exception as e:
            logger.warning(f"[acl] Resolving {host} failed: {e}")
            return ""

    def _match_country(self, address: str, pattern: str) -> bool:
        if not address:
            return False
        try:
            country = self.country_lookup.lookup(address)
        except Exception as e:
            logger.warning(f"[acl] Country lookup failed for {address}: {e}")
            return False
        if country is None or country.iso_code.lower() != pattern:
            return False
        logger.debug(f"[acl] country {country.iso_code}, {pattern}")
        return True

    def _matches(self, rule: Rule, host: str, address: str) -> bool:
        pattern = rule.pattern or ""
        if rule.type is RuleType.DOMAIN:
            return host == pattern
        if rule.type is RuleType.DOMAIN_KEYWORD:
            return pattern in host
        if rule.type is RuleType.DOMAIN_SUFFIX:
            return host.endswith(pattern)
        if rule.type is RuleType.IP_CIDR:
            if not is_ipv4_literal(address):
                return False
            try:
                return match_cidr(address, pattern)
            except ValueError as e:
                logger.warning(f"[acl] Skipping rule {rule.raw}: {e}")
                return False
        if rule.type is RuleType.GEOIP:
            return self._match_country(address, pattern)
        return False

    def match(self, host: str) -> Rule:
        """Find the rule that applies to ``host``.

        The address is resolved at most once, and only if an ``IP-CIDR`` or
        ``GEOIP`` rule is reached. Never raises.

        Args:
            host: Destination hostname or IPv4 literal

        Returns:
            Rule: The first matching rule, else the ``FINAL`` rule
        """
        rule_set = self._rule_set
        if not rule_set.rules:
            logger.info("[acl] global mode or no rules")
            return Rule.final(RuleAction.PROXY)

        name = host.lower()
        address: str | None = None

        for rule in rule_set:
            if rule.type.needs_address and address is None:
                address = self._resolve(host)
                logger.info(f"[acl] host: {host} {address}")
            if self._matches(rule, name, address or ""):
                logger.info(f"[acl] use rule: {rule.description}")
                return rule

        logger.info(f"[acl] use rule: final {rule_set.default_action.value}")
        return rule_set.final_rule

    def decide(self, host: str) -> RuleAction:
        """Decide how a connection to ``host`` is routed.

        Returns:
            RuleAction: Action of the first matching rule, else the default action
        """
        return self.match(host).action

    def use_proxy(self, host: str) -> bool:
        """Check whether ``host`` should go through the forward proxy."""
        return self.decide(host) is RuleAction.PROXY

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix="acl-resolve"
                )
            return self._executor

    def decide_async(self, host: str) -> "Future[RuleAction]":
        """Run ``decide`` on the engine's worker pool.

        Lets event loops and accept loops get a decision without blocking on DNS.
        """
        return self._get_executor().submit(self.decide, host)

    def close(self) -> None:
        """Shut down the worker pool used by ``decide_async``."""
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ACL":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
