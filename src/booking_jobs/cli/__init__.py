from __future__ import annotations

import click

from booking_jobs.utils.log import set_log_level

from . import commands_admin, commands_queue


@click.group(name="booking-jobs", help="booking-jobs CLI (worker + queue tools)")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this run.")
def cli(log_level: str | None) -> None:
    if log_level:
        set_log_level(log_level)


commands_admin.add_commands(cli)
commands_queue.add_commands(cli)


def main() -> None:
    cli()


__all__ = ["cli", "main"]

if __name__ == "__main__":  # pragma: no cover
    main()
