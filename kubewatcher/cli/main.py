"""kubewatcher command-line interface.

Commands:
    kubewatcher run           -- Start the watcher until SIGTERM/SIGINT.
    kubewatcher check-config  -- Load and validate a configuration file.
"""

from __future__ import annotations

import asyncio

import click

from kubewatcher import __version__
from kubewatcher.config import ConfigError, load_config

_CONFIG_OPTION = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False),
    default=None,
    envvar="KUBEWATCHER_CONFIG",
    help="Path to the YAML configuration file (default: config.yaml).",
)


@click.group()
@click.version_option(__version__, prog_name="kubewatcher")
def cli() -> None:
    """Watch Kubernetes resources and notify on changes."""


@cli.command()
@_CONFIG_OPTION
def run(config_path: str | None) -> None:
    """Start watching the configured resources."""
    from kubewatcher.app import main

    asyncio.run(main(config_path))


@cli.command("check-config")
@_CONFIG_OPTION
def check_config(config_path: str | None) -> None:
    """Validate the configuration and print the resolved watch filters."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"cluster: {config.cluster_name}")
    for resource in config.resources:
        click.echo(f"  watch {resource.label}")
    channels = []
    if config.email.enabled:
        channels.append(f"email -> {', '.join(config.email.to_addrs)}")
    if config.webhook.url:
        channels.append("webhook")
    click.echo(f"notifications: {'; '.join(channels) or 'none'}")
    click.echo("configuration OK")
