"""
Read-only inspection of a running node or a standalone archive.

Commands print human readable "Label: value" lines; a query runs one
command and picks a single whitespace-delimited token out of the first
line mentioning the label.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path

from nodeharness.config import HarnessConfig
from nodeharness.errors import QueryExecutionFailed, QueryFieldNotFound
from nodeharness.logging_config import get_logger
from nodeharness.node.protocols import NodeEnvironment
from nodeharness.node.snapshot import check_db_stats
from nodeharness.process.command import CommandResult, CommandRunner
from nodeharness.utils.maybe import Maybe

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class InstanceTarget:
    environment: NodeEnvironment


@dataclass(frozen=True, slots=True)
class ArtifactTarget:
    path: Path


type QueryTarget = InstanceTarget | ArtifactTarget


def extract_field(output: str, label: str, position: int | None = None) -> str:
    """
    Return the token at `position` on the first line containing `label`.

    By default the token right after the label's own words is returned,
    so "Epoch" picks the 2nd token and "CAR format" the 3rd.
    """
    if position is None:
        position = len(label.split())

    line = Maybe.find(lambda ln: label in ln, output.splitlines())
    tokens = line.map(str.split).unwrap()
    if tokens is None or position >= len(tokens):
        raise QueryFieldNotFound(label, output)

    return tokens[position]


class NodeQuery:
    def __init__(self, cfg: HarnessConfig, runner: CommandRunner | None = None):
        self._cfg = cfg
        self._runner = runner or CommandRunner()

    def run(self, target: QueryTarget, command: list[str]) -> CommandResult:
        timeout = self._cfg.timeouts.command.total_seconds()

        match target:
            case InstanceTarget(environment=environment):
                args = [*self._cfg.binaries.cli, *command]
                result = self._runner.run(args, env=environment.as_env(), timeout=timeout)
            case ArtifactTarget(path=path):
                args = [*self._cfg.binaries.tool, *command, str(path)]
                result = self._runner.run(args, timeout=timeout)
            case _:
                raise TypeError(f"Unsupported query target: {target!r}")

        if not result.ok:
            raise QueryExecutionFailed(result)

        return result

    def query(
        self,
        target: QueryTarget,
        command: list[str],
        field_label: str,
        *,
        position: int | None = None,
    ) -> str:
        result = self.run(target, command)
        value = extract_field(result.stdout, field_label, position)
        log.debug("Query answered", command=command, label=field_label, value=value)
        return value

    # -----------------------
    # -- Archive shortcuts --
    # -----------------------
    def archive_epoch(self, path: Path) -> str:
        return self.query(ArtifactTarget(path), ["archive", "info"], "Epoch")

    def archive_state_roots(self, path: Path) -> str:
        return self.query(ArtifactTarget(path), ["archive", "info"], "State-roots")

    def archive_format(self, path: Path) -> str:
        return self.query(ArtifactTarget(path), ["archive", "info"], "CAR format")

    def db_stats(self, chain: str | None = None) -> str:
        cfg = self._cfg if chain is None else replace(self._cfg, chain=chain)
        result = check_db_stats(cfg, self._runner)
        if not result.ok:
            raise QueryExecutionFailed(result)
        return result.stdout
