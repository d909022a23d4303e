"""DNS resolution for address-based rules using dnspython."""

import ipaddress
import socket
from typing import TYPE_CHECKING, Final, cast

import dns.resolver
from loguru import logger

if TYPE_CHECKING:
    from dns.resolver import Resolver

# DNS resolver constants
DEFAULT_TIMEOUT: Final = 1.0  # seconds
DEFAULT_LIFETIME: Final = 3.0  # seconds
DEFAULT_NAMESERVERS: Final = [
    "1.1.1.1",  # Cloudflare
    "8.8.8.8",  # Google
    "9.9.9.9",  # Quad9
]


def is_ipv4_literal(value: str) -> bool:
    """Check whether ``value`` is a strict dotted-quad IPv4 address."""
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def _new_resolver(nameservers: list[str]) -> "Resolver":
    resolver = cast("Resolver", dns.resolver.Resolver(configure=False))
    resolver.timeout = DEFAULT_TIMEOUT
    resolver.lifetime = DEFAULT_LIFETIME
    resolver.nameservers = list(nameservers)
    return resolver


class HostResolver:
    """Resolve hostnames to a numeric address for IP and GeoIP rules.

    Resolution is blocking. Callers run it on a session thread or on the
    engine's executor, never on the accept loop.
    """

    def __init__(
        self,
        nameservers: list[str] | None = None,
        fallback_nameservers: list[str] | None = None,
        *,
        use_system_dns: bool = True,
    ) -> None:
        """Initialize the resolver.

        Args:
            nameservers: Nameservers for the configured resolver
                (default: ``DEFAULT_NAMESERVERS``)
            fallback_nameservers: Nameservers tried one at a time when the
                configured resolver fails (default: ``DEFAULT_NAMESERVERS``)
            use_system_dns: Try the operating system resolver first
        """
        self.nameservers = list(DEFAULT_NAMESERVERS if nameservers is None else nameservers)
        self.fallback_nameservers = list(
            DEFAULT_NAMESERVERS if fallback_nameservers is None else fallback_nameservers
        )
        self.use_system_dns = use_system_dns

    def _try_system_dns(self, domain: str) -> str | None:
        """Try resolving using system DNS."""
        try:
            return socket.gethostbyname(domain)
        except (socket.gaierror, UnicodeError) as e:
            logger.debug(f"System DNS resolution failed for {domain}: {e}")
            return None

    def _query(self, domain: str, nameservers: list[str]) -> str | None:
        if not nameservers:
            return None
        answer = _new_resolver(nameservers).resolve(domain, "A")
        return str(answer[0])

    def _try_configured_resolver(self, domain: str) -> str | None:
        """Try resolving using configured resolver."""
        try:
            return self._query(domain, self.nameservers)
        except Exception as e:
            logger.debug(f"Configured resolver failed for {domain}: {e}")
            return None

    def _try_alternative_nameservers(self, domain: str) -> str | None:
        """Try resolving using alternative nameservers."""
        for nameserver in self.fallback_nameservers:
            try:
                return self._query(domain, [nameserver])
            except Exception as e:
                logger.debug(f"Alternative nameserver {nameserver} failed for {domain}: {e}")
        return None

    def resolve(self, host: str) -> str:
        """Resolve a host to a numeric address.

        Args:
            host: Hostname or IPv4 literal

        Returns:
            str: The IPv4 literal itself, the first resolved address, or an
                empty string when resolution fails
        """
        if is_ipv4_literal(host):
            return host
        if not host:
            return ""

        if self.use_system_dns and (ip := self._try_system_dns(host)):
            return ip

        if ip := self._try_configured_resolver(host):
            return ip

        if ip := self._try_alternative_nameservers(host):
            return ip

        logger.debug(f"Could not resolve {host} using any available method")
        return ""
