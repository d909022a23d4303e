"""Custom exceptions for the proxy server.

This module defines custom exceptions used throughout the proxy server implementation.
These exceptions provide more specific error handling for:
- Invalid routing rules
- Missing or unusable GeoIP databases
- Forward proxy handshake failures

Only ``GeoIPUnavailableError`` is fatal: the rule engine refuses to start without a
country lookup. Everything else is caught and logged by the component that raised it.

Example:
    try:
        acl = ACL.from_database("GeoLite2-Country.mmdb")
    except GeoIPUnavailableError as e:
        console.print(f"[red]Cannot start rule engine: {e}")
"""


class ProxyError(Exception):
    """Base exception for proxy errors."""


class RuleError(ProxyError, ValueError):
    """Raised when a routing rule is constructed with inconsistent fields."""


class GeoIPUnavailableError(ProxyError):
    """Raised when the GeoIP country database cannot be opened."""


class ForwardProxyError(ProxyError):
    """Raised when the upstream SOCKS5 proxy refuses or breaks the handshake."""
