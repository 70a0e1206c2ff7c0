from pathlib import Path

import click
from rich.console import Console

from nodeharness.cli.utils import config_options, handle_exceptions, load_cli_config
from nodeharness.errors import ConfigError, QueryExecutionFailed
from nodeharness.node.query import NodeQuery

console = Console()


@click.group()
def db() -> None:
    """
    Node database commands.
    """


@db.command()
@click.option("--chain", default=None, help="Chain to inspect, overriding the config file")
@config_options
@click.pass_context
@handle_exceptions(
    {
        ConfigError: "Invalid configuration",
        QueryExecutionFailed: "Database stats failed",
    },
)
def stats(ctx: click.Context, chain: str | None, config_path: Path | None, overrides: tuple[str, ...]) -> None:
    """
    Show database statistics for the configured chain.
    """
    query = NodeQuery(load_cli_config(config_path, overrides))
    console.print(query.db_stats(chain).rstrip(), markup=False, highlight=False)
