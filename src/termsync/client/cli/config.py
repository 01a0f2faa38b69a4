"""Configuration utilities for termsync CLI.

This module provides shared configuration functions used across CLI commands.
Known endpoints are kept in ~/.termsync/config.json under "endpoints".
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click

from termsync.core.config import Endpoint
from termsync.storage.config import get_config_dir


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def load_endpoints() -> dict[str, Endpoint]:
    """Load known endpoints, keyed by name."""
    endpoints: dict[str, Endpoint] = {}
    for name, data in load_config().get("endpoints", {}).items():
        endpoints[name] = Endpoint(
            id=data.get("id", name),
            base_url=data["url"],
            token=data["token"],
            verify_ssl=data.get("verify_ssl", True),
        )
    return endpoints


def require_endpoint(name: str) -> Endpoint:
    """Get a known endpoint by name, or exit with an error."""
    endpoint = load_endpoints().get(name)
    if endpoint is None:
        click.echo(f"Error: Unknown endpoint '{name}'.", err=True)
        click.echo("Add it with: termsync endpoint add NAME URL --token TOKEN", err=True)
        sys.exit(1)
    return endpoint
