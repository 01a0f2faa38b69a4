"""Endpoint management commands for termsync CLI.

Commands:
- endpoint add: Remember a runtime endpoint
- endpoint list: List known endpoints
- endpoint remove: Forget an endpoint
"""

from __future__ import annotations

import sys

import click

from termsync.client.cli.config import load_config, load_endpoints, save_config


@click.group()
def endpoint() -> None:
    """Manage runtime endpoints."""


@endpoint.command("add")
@click.argument("name")
@click.argument("url")
@click.option("--token", required=True, help="Runtime proxy token.")
@click.option(
    "--id",
    "endpoint_id",
    default=None,
    help="Endpoint id used to name the sync directory (default: NAME).",
)
@click.option(
    "--no-verify-ssl",
    is_flag=True,
    default=False,
    help="Skip SSL certificate verification.",
)
def add(name: str, url: str, token: str, endpoint_id: str | None, no_verify_ssl: bool) -> None:
    """Add or replace the endpoint NAME at URL."""
    if not url.startswith(("http://", "https://")):
        click.echo("Error: URL must start with http:// or https://", err=True)
        sys.exit(1)

    config = load_config()
    endpoints = config.setdefault("endpoints", {})
    if name in endpoints:
        click.echo(f"Note: Replacing endpoint '{name}'")

    endpoints[name] = {
        "id": endpoint_id or name,
        "url": url.rstrip("/"),
        "token": token,
        "verify_ssl": not no_verify_ssl,
    }
    save_config(config)
    click.echo(f"Endpoint '{name}' saved.")


@endpoint.command("list")
def list_endpoints() -> None:
    """List known endpoints."""
    endpoints = load_endpoints()
    if not endpoints:
        click.echo("No endpoints configured.")
        return

    for name, ep in sorted(endpoints.items()):
        click.echo(f"{name}: {ep.base_url} (id: {ep.id})")


@endpoint.command("remove")
@click.argument("name")
def remove(name: str) -> None:
    """Forget the endpoint NAME."""
    config = load_config()
    endpoints = config.get("endpoints", {})
    if name not in endpoints:
        click.echo(f"Error: Unknown endpoint '{name}'.", err=True)
        sys.exit(1)

    del endpoints[name]
    save_config(config)
    click.echo(f"Endpoint '{name}' removed.")
