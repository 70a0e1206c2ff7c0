from pathlib import Path

import click
from rich.console import Console

from nodeharness.cli.utils import config_options, handle_exceptions, load_cli_config
from nodeharness.errors import ConfigError, QueryExecutionFailed, QueryFieldNotFound
from nodeharness.node.query import ArtifactTarget, NodeQuery

console = Console()

FIELDS = {
    "epoch": NodeQuery.archive_epoch,
    "state-roots": NodeQuery.archive_state_roots,
    "format": NodeQuery.archive_format,
}


@click.group()
def archive() -> None:
    """
    Snapshot archive inspection commands.
    """


@archive.command()
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
@click.option("--field", type=click.Choice(list(FIELDS)), default=None, help="Print a single field")
@config_options
@click.pass_context
@handle_exceptions(
    {
        ConfigError: "Invalid configuration",
        QueryExecutionFailed: "Archive query failed",
        QueryFieldNotFound: "Field missing from archive info",
    },
)
def info(
    ctx: click.Context,
    path: Path,
    field: str | None,
    config_path: Path | None,
    overrides: tuple[str, ...],
) -> None:
    """
    Show metadata of the snapshot archive at PATH.
    """
    query = NodeQuery(load_cli_config(config_path, overrides))

    if field is None:
        result = query.run(ArtifactTarget(path), ["archive", "info"])
        console.print(result.stdout.rstrip(), markup=False, highlight=False)
        return

    click.echo(FIELDS[field](query, path))
