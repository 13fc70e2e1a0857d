"""boxreg server - main entry point."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import click
import structlog
from pydantic import ValidationError
from rich.console import Console

from boxreg import __version__
from boxreg.core.config import RegistryConfig, load_config_from_file
from boxreg.server.app import RegistryServer

console = Console()

BANNER = """
 ██████╗  ██████╗ ██╗  ██╗██████╗ ███████╗ ██████╗
 ██╔══██╗██╔═══██╗╚██╗██╔╝██╔══██╗██╔════╝██╔════╝
 ██████╔╝██║   ██║ ╚███╔╝ ██████╔╝█████╗  ██║  ███╗
 ██╔══██╗██║   ██║ ██╔██╗ ██╔══██╗██╔══╝  ██║   ██║
 ██████╔╝╚██████╔╝██╔╝ ██╗██║  ██║███████╗╚██████╔╝
 ╚═════╝  ╚═════╝ ╚═╝  ╚═╝╚═╝  ╚═╝╚══════╝ ╚═════╝
                 REGISTRATION SERVER
"""


def configure_logging(log_level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )


def build_config(config_file: str | None, overrides: dict[str, Any]) -> RegistryConfig:
    """Merge file values and CLI overrides on top of the environment."""
    values: dict[str, Any] = load_config_from_file(config_file) if config_file else {}
    values.update({key: value for key, value in overrides.items() if value is not None})
    return RegistryConfig(**values)


@click.command()
@click.version_option(__version__, prog_name="boxreg")
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to YAML or TOML config file",
)
@click.option("--domain", "-d", help="Domain; boxes get <name>.box.<domain>")
@click.option("--bind", "-b", help="HTTP bind address (default: 0.0.0.0:4242)")
@click.option(
    "--storage",
    "storage_path",
    help="SQLite database path, or ':memory:' (default: registry.db)",
)
@click.option(
    "--store-timeout",
    type=float,
    help="Timeout in seconds for a storage call (default: 5)",
)
@click.option(
    "--trust-proxy/--no-trust-proxy",
    "trust_proxy_headers",
    default=None,
    help="Take the caller IP from X-Forwarded-For/X-Real-IP",
)
@click.option(
    "--dns/--no-dns",
    "dns_enabled",
    default=None,
    help="Serve the PowerDNS remote backend at /pdns",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Log level (default: info)",
)
def main(
    config_file: str | None,
    domain: str | None,
    bind: str | None,
    storage_path: str | None,
    store_timeout: float | None,
    trust_proxy_headers: bool | None,
    dns_enabled: bool | None,
    log_level: str | None,
):
    """Run the boxreg registration server."""
    try:
        config = build_config(
            config_file,
            {
                "domain": domain,
                "bind": bind,
                "storage_path": storage_path,
                "store_timeout": store_timeout,
                "trust_proxy_headers": trust_proxy_headers,
                "dns_enabled": dns_enabled,
                "log_level": log_level,
            },
        )
    except (ValueError, ValidationError) as e:
        raise click.UsageError(str(e)) from e

    configure_logging(config.log_level)
    console.print(BANNER, style="cyan")
    console.print(f"Serving boxes under {config.registry_domain}...", style="yellow")
    console.print(f"HTTP: {config.bind}", style="dim")
    console.print(f"Storage: {config.storage_path}", style="dim")
    if config.trust_proxy_headers:
        console.print("Caller IP: taken from proxy headers", style="dim")
    if config.dns_enabled:
        console.print("PowerDNS backend: enabled at /pdns", style="green")
    else:
        console.print("PowerDNS backend: disabled", style="dim")

    asyncio.run(run_server(config))


async def run_server(config: RegistryConfig):
    """Run the registration server."""
    server = RegistryServer(config)

    try:
        await server.start()
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
