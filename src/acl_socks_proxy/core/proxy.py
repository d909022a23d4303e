"""Core proxy functionality and main entry point for the SOCKS proxy server.

This module wires the rule engine, the session registry and the SOCKS server
together. The command line calls ``create_proxy_server``; embedders that need
their own engine or registry can use ``run_server`` directly.

Example:
    from acl_socks_proxy.core.proxy import create_proxy_server

    # Route by rules.conf, tunnel "Proxy" traffic through 10.0.0.2:1080
    create_proxy_server(
        "127.0.0.1",
        1080,
        config_path="rules.conf",
        geoip_db="GeoLite2-Country.mmdb",
        forward_proxy=ForwardProxy("10.0.0.2", 1080),
    )
"""

from os import PathLike

from loguru import logger

from .acl import ACL
from .lib import ForwardProxy, SessionRegistry, run_server


def create_proxy_server(
    host: str,
    port: int,
    config_path: str | PathLike[str],
    geoip_db: str | PathLike[str],
    forward_proxy: ForwardProxy | None = None,
) -> None:
    """Build the rule engine and registry, then serve until interrupted.

    Raises:
        GeoIPUnavailableError: If the GeoIP database cannot be opened
    """
    acl = ACL.from_database(geoip_db)
    if not acl.load(config_path):
        logger.warning("[acl] Starting without rules, all traffic uses the forward proxy")

    registry = SessionRegistry(forward_proxy=forward_proxy)
    if forward_proxy is not None:
        logger.info(f"[socks] Forward proxy {forward_proxy}")

    run_server(host, port, acl, registry, config_path=config_path)


__all__ = ["create_proxy_server", "run_server"]
