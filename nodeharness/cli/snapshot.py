from pathlib import Path

import click
from rich.console import Console

from nodeharness.cli.utils import config_options, handle_exceptions, load_cli_config
from nodeharness.errors import CommandSpawnError, ConfigError
from nodeharness.node import snapshot as snapshots
from nodeharness.process.command import CommandResult

console = Console()


@click.group()
def snapshot() -> None:
    """
    Snapshot preparation commands.
    """


@snapshot.command(name="import")
@click.argument("path", type=click.Path(path_type=Path, dir_okay=False))
@config_options
@click.pass_context
@handle_exceptions(
    {
        ConfigError: "Invalid configuration",
        CommandSpawnError: "Node binary could not be started",
    },
)
def import_(ctx: click.Context, path: Path, config_path: Path | None, overrides: tuple[str, ...]) -> None:
    """
    Import the snapshot at PATH into the node database and exit.
    """
    cfg = load_cli_config(config_path, overrides)
    console.print(f"📦 Importing {path} into {cfg.chain}...", style="blue")
    _finish(ctx, snapshots.import_snapshot(cfg, path))


@snapshot.command()
@click.option("--height", type=int, default=-200, show_default=True, help="Snapshot height, negative is relative to head")
@config_options
@click.pass_context
@handle_exceptions(
    {
        ConfigError: "Invalid configuration",
        CommandSpawnError: "Node binary could not be started",
    },
)
def download(ctx: click.Context, height: int, config_path: Path | None, overrides: tuple[str, ...]) -> None:
    """
    Download a recent snapshot, import it and exit.
    """
    cfg = load_cli_config(config_path, overrides)
    console.print(f"📥 Downloading snapshot at height {height} for {cfg.chain}...", style="blue")
    _finish(ctx, snapshots.download_and_import(cfg, height))


def _finish(ctx: click.Context, result: CommandResult) -> None:
    if result.ok:
        console.print("✅ Snapshot imported", style="bold green")
        return

    reason = "timed out" if result.timed_out else f"exited with {result.returncode}"
    console.print(f"❌ Snapshot import {reason}", style="bold red")
    if result.stderr.strip():
        console.print(result.stderr.rstrip(), markup=False, highlight=False, style="dim")
    ctx.exit(result.returncode if result.returncode > 0 else 1)
