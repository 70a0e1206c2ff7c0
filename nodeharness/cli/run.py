import os
import subprocess
from pathlib import Path

import click
from rich.console import Console

from nodeharness.cli.utils import config_options, handle_exceptions, load_cli_config
from nodeharness.errors import ConfigError, LaunchFailed, ReadinessTimeout
from nodeharness.logging_config import get_logger
from nodeharness.node.controller import LifecycleController, TeardownReport
from nodeharness.node.modes import mode_from_name
from nodeharness.node.protocols import NodeEnvironment

console = Console()
log = get_logger(__name__)


class BodyFailed(Exception):
    def __init__(self, returncode: int):
        self.returncode = returncode
        super().__init__(f"Test body exited with {returncode}")


@click.command(context_settings={"ignore_unknown_options": True})
@config_options
@click.option(
    "--mode",
    type=click.Choice(["normal", "stateless"]),
    default=None,
    help="Run mode, overriding the config file",
)
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
@click.pass_context
@handle_exceptions(
    {
        ConfigError: "Invalid configuration",
        LaunchFailed: "Node failed to launch",
        ReadinessTimeout: "Node never became ready",
    },
)
def run(
    ctx: click.Context,
    config_path: Path | None,
    overrides: tuple[str, ...],
    mode: str | None,
    command: tuple[str, ...],
) -> None:
    """
    Start a node, run COMMAND against it and always tear the node down.

    COMMAND sees ADMIN_TOKEN and FULLNODE_API_INFO in its environment.
    Exits with COMMAND's exit status.
    """
    cfg = load_cli_config(config_path, overrides)
    run_mode = mode_from_name(mode) if mode is not None else cfg.mode
    controller = LifecycleController(cfg, console=console)

    console.print(f"🚀 Starting node in {run_mode.name} mode...", style="blue")
    returncode = 0
    try:
        with controller.session(run_mode) as env:
            assert controller.handle is not None
            console.print(f"✅ Node ready (pid {controller.handle.pid})", style="bold green")
            returncode = _run_body(list(command), env)
            if returncode != 0:
                # teardown treats the run as failed and surfaces diagnostics
                raise BodyFailed(returncode)
    except BodyFailed as e:
        console.print(f"❌ {e}", style="bold red")
    finally:
        if controller.handle is not None and controller.last_report is not None:
            _print_report(controller.last_report)

    ctx.exit(returncode)


def _run_body(command: list[str], env: NodeEnvironment) -> int:
    log.info("Running test body", command=command)
    try:
        completed = subprocess.run(command, env=os.environ | env.as_env(), check=False)
    except OSError as e:
        console.print(f"❌ Could not run {command[0]}: {e}", style="bold red")
        return 127
    return completed.returncode


def _print_report(report: TeardownReport) -> None:
    if not report.was_alive:
        console.print("📋 Node had already exited before teardown", style="yellow")
    elif report.graceful:
        console.print("🛑 Node stopped gracefully", style="green")
    elif report.forced and not report.leaked:
        console.print("⚠️  Node had to be killed after the grace period", style="yellow")

    for anomaly in report.anomalies:
        console.print(f"⚠️  {anomaly}", style="yellow")
