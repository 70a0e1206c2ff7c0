#!/usr/bin/env python3
from pathlib import Path
from typing import Any

import click
from rich.console import Console

from nodeharness.cli.archive import archive
from nodeharness.cli.db import db
from nodeharness.cli.run import run
from nodeharness.cli.snapshot import snapshot
from nodeharness.logging_config import LogLevel, flush_logs, get_logger, setup_structured_logging

console = Console()
log = get_logger(__name__)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--log-file", type=click.Path(path_type=Path, dir_okay=False), help="Write JSON logs to this file instead of stderr")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, log_file: Path | None) -> None:
    """
    nodeharness - launch, probe and tear down a node for integration tests.
    """
    level = LogLevel.DEBUG if verbose else LogLevel.WARNING if quiet else LogLevel.INFO
    setup_structured_logging(log_file_path=log_file, log_level=level, console_output=log_file is None)
    ctx.call_on_close(flush_logs)

    if verbose:
        log.debug("Verbose mode enabled")


@cli.command()
def version() -> None:
    """
    Show the version of nodeharness.
    """
    from nodeharness import __version__

    console.print(f"nodeharness version: {__version__}", style="bold blue")


# Register command groups
cli.add_command(run)
cli.add_command(archive)
cli.add_command(db)
cli.add_command(snapshot)


def main() -> Any:
    return cli()


if __name__ == "__main__":
    main()
