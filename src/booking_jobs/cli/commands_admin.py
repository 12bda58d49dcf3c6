from __future__ import annotations

import json

import click

from booking_jobs.config import ConfigError, get_safe_config_report, get_settings
from booking_jobs.worker.main import run


@click.command(name="worker")
def worker_cmd() -> None:
    """
    Run the worker process until SIGINT/SIGTERM.
    """
    raise SystemExit(run())


@click.command(name="config")
def config_cmd() -> None:
    """
    Print the effective configuration (secrets shown as SET/UNSET).
    """
    try:
        get_settings()
    except ConfigError as ex:
        click.echo(f"Invalid configuration: {ex}", err=True)
        raise SystemExit(2) from ex
    click.echo(json.dumps(get_safe_config_report(), indent=2, sort_keys=True))


def add_commands(cli_group) -> None:
    cli_group.add_command(worker_cmd)
    cli_group.add_command(config_cmd)


__all__ = ["add_commands", "config_cmd", "worker_cmd"]
