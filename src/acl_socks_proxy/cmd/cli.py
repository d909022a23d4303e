"""Command-line interface for the SOCKS proxy server.

This module provides the main command-line interface for the proxy server, handling:
- Command-line argument parsing
- Logging setup
- Server initialization
- Rule inspection and dry-run routing decisions
- Error reporting

The CLI is built using Typer and provides commands to:
- Start the proxy server with a rule file and GeoIP database
- Check how a set of hosts would be routed
- List the rules parsed from a config file

Every path option can also be given through an environment variable.

Example:
    # Run from command line:
    $ acl-socks-proxy proxy --config rules.conf --geoip-db GeoLite2-Country.mmdb --port 1080
    $ acl-socks-proxy check www.example.com 10.1.2.3 -c rules.conf -g GeoLite2-Country.mmdb
"""

from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from acl_socks_proxy import __version__
from acl_socks_proxy.core.acl import ACL, RuleAction, parse_config
from acl_socks_proxy.core.exceptions import GeoIPUnavailableError
from acl_socks_proxy.core.lib import ForwardProxy
from acl_socks_proxy.core.proxy import create_proxy_server
from acl_socks_proxy.core.utils.log_config import LOG_DIR, configure_logging

console = Console()
app = typer.Typer(help="SOCKS5 proxy with rule-based routing")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 1080

ACTION_STYLES = {
    RuleAction.DIRECT: "green",
    RuleAction.PROXY: "cyan",
    RuleAction.REJECT: "red",
}

ConfigOption = typer.Option(
    ...,
    "--config",
    "-c",
    envvar="ACL_PROXY_CONFIG",
    exists=True,
    dir_okay=False,
    help="Rule config file",
)
GeoIPOption = typer.Option(
    ...,
    "--geoip-db",
    "-g",
    envvar="ACL_PROXY_GEOIP_DB",
    help="MaxMind Country or City database (.mmdb)",
)


def _open_acl(config: Path, geoip_db: Path) -> ACL:
    try:
        acl = ACL.from_database(geoip_db)
    except GeoIPUnavailableError as e:
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e
    acl.load(config)
    return acl


@app.callback(invoke_without_command=True)
def version_callback():
    """Show version information."""
    console.print(f"[cyan]ACL SOCKS Proxy v{__version__}[/cyan]")


@app.command(name="proxy")
def start_proxy(
    config: Path = ConfigOption,
    geoip_db: Path = GeoIPOption,
    host: str = typer.Option(DEFAULT_HOST, "--host", help="Address to listen on"),
    port: int = typer.Option(DEFAULT_PORT, "--port", envvar="ACL_PROXY_PORT", help="Port to listen on"),
    forward_proxy: str | None = typer.Option(
        None,
        "--forward-proxy",
        "-f",
        envvar="ACL_PROXY_FORWARD",
        help="Upstream SOCKS5 proxy (host:port) for 'Proxy' traffic",
    ),
    debug: bool = typer.Option(
        default=False,
        help="Enable debug logging",
    ),
):
    """Start the SOCKS proxy server."""
    configure_logging(debug=debug, log_dir=LOG_DIR)

    try:
        upstream = ForwardProxy.parse(forward_proxy) if forward_proxy else None
    except ValueError as e:
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e

    logger.info(f"Starting SOCKS proxy server on {host}:{port}")
    try:
        create_proxy_server(host, port, config, geoip_db, forward_proxy=upstream)
    except GeoIPUnavailableError as e:
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e
    except OSError as e:
        logger.exception("Error starting proxy server")
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e


@app.command(name="check")
def check_hosts(
    hosts: list[str] = typer.Argument(..., help="Hostnames or IPv4 addresses"),
    config: Path = ConfigOption,
    geoip_db: Path = GeoIPOption,
):
    """Show how each host would be routed."""
    acl = _open_acl(config, geoip_db)

    table = Table(title=f"Routing ({config.name})")
    table.add_column("Host", style="cyan")
    table.add_column("Action")
    table.add_column("Rule", style="dim")

    with acl:
        for host in hosts:
            rule = acl.match(host)
            style = ACTION_STYLES[rule.action]
            table.add_row(host, f"[{style}]{rule.action.value}[/{style}]", rule.raw)

    console.print(table)


@app.command(name="rules")
def list_rules(
    config: Path = ConfigOption,
    raw: bool = typer.Option(default=False, help="Print canonical config lines"),
):
    """List the rules parsed from a config file."""
    try:
        text = config.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e

    rule_set = parse_config(text)

    if raw:
        console.print(rule_set.dump(), end="", markup=False, highlight=False)
        return

    table = Table(title=f"Rules ({len(rule_set)})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Pattern", style="green")
    table.add_column("Action")

    for index, rule in enumerate(rule_set, start=1):
        style = ACTION_STYLES[rule.action]
        table.add_row(str(index), rule.type.value, rule.pattern, f"[{style}]{rule.action.value}[/{style}]")
    final = rule_set.final_rule
    style = ACTION_STYLES[final.action]
    table.add_row("", final.type.value, "", f"[{style}]{final.action.value}[/{style}]")

    console.print(table)


if __name__ == "__main__":
    app()
