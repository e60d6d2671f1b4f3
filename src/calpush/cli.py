"""CLI for calpush: run the push-sync service."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from calpush import __version__
from calpush.config import CONFIG_ENV_VAR, ConfigError, ServiceConfig, load_config
from calpush.core.logging import configure_logging

logger = logging.getLogger(__name__)

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    envvar=CONFIG_ENV_VAR,
    help=f"Path to the calpush TOML config (default: ${CONFIG_ENV_VAR}, else built-in defaults)",
)


def _load_or_exit(config_path: Path | None) -> ServiceConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """calpush: calendar push-sync service."""


@cli.command()
@_config_option
@click.option("--host", default=None, help="Override server.host")
@click.option("--port", type=int, default=None, help="Override server.port")
def serve(config_path: Path | None, host: str | None, port: int | None) -> None:
    """Start the HTTP service."""
    import uvicorn

    from calpush.api.app import create_app

    config = _load_or_exit(config_path)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port

    logger.info(
        "Starting calpush on %s:%d (config=%s)",
        config.server.host,
        config.server.port,
        config.source or "defaults",
    )
    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_config=None,
    )


@cli.command("check-config")
@_config_option
def check_config(config_path: Path | None) -> None:
    """Validate the configuration and print the effective values."""
    config = _load_or_exit(config_path)
    click.echo(json.dumps(config.to_dict(), indent=2, sort_keys=True))
    click.echo(f"OK: {config.source or 'built-in defaults'}", err=True)
