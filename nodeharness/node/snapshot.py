from __future__ import annotations

from pathlib import Path

from nodeharness.config import HarnessConfig
from nodeharness.logging_config import get_logger
from nodeharness.process.command import CommandResult, CommandRunner

log = get_logger(__name__)


def _halt_after_import_args(cfg: HarnessConfig) -> list[str]:
    return [
        *cfg.binaries.node,
        "--chain", cfg.chain,
        "--encrypt-keystore", str(cfg.encrypt_keystore).lower(),
        "--halt-after-import",
    ]


def import_snapshot(cfg: HarnessConfig, path: Path, runner: CommandRunner | None = None) -> CommandResult:
    """
    Import a snapshot into the node's database and exit.
    The result is returned as-is: importing a snapshot from another chain is expected to fail.
    """
    runner = runner or CommandRunner()
    args = [*_halt_after_import_args(cfg), "--import-snapshot", str(path)]

    log.info("Importing snapshot", path=str(path), chain=cfg.chain)
    result = runner.run(args, timeout=cfg.timeouts.snapshot_import.total_seconds())
    log.info("Snapshot import finished", path=str(path), returncode=result.returncode)
    return result


def download_and_import(cfg: HarnessConfig, height: int = -200, runner: CommandRunner | None = None) -> CommandResult:
    runner = runner or CommandRunner()
    args = [*_halt_after_import_args(cfg), f"--height={height}", "--auto-download-snapshot"]

    log.info("Downloading and importing snapshot", height=height, chain=cfg.chain)
    result = runner.run(args, timeout=cfg.timeouts.snapshot_import.total_seconds())
    log.info("Snapshot download finished", height=height, returncode=result.returncode)
    return result


def check_db_stats(cfg: HarnessConfig, runner: CommandRunner | None = None) -> CommandResult:
    runner = runner or CommandRunner()
    args = [*cfg.binaries.tool, "db", "stats", "--chain", cfg.chain]
    return runner.run(args, timeout=cfg.timeouts.command.total_seconds())
