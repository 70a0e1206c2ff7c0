from __future__ import annotations

import os
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from nodeharness.errors import CommandSpawnError
from nodeharness.logging_config import get_logger
from nodeharness.process.process import Process

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


class CommandRunner:
    """
    Runs external commands. A non-zero exit status is returned to the
    caller as a result; only a failure to start the command raises.
    """

    def __init__(self, cwd: Path | None = None, env: Mapping[str, str] | None = None):
        self.cwd = cwd
        self.env = dict(env) if env is not None else {}

    def _merged_env(self, env: Mapping[str, str] | None) -> dict[str, str]:
        return os.environ.copy() | self.env | dict(env or {})

    def run(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        log.debug("Running command", args=args, timeout=timeout)
        try:
            completed = subprocess.run(
                args,
                cwd=cwd or self.cwd,
                env=self._merged_env(env),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            log.warning("Command timed out", args=args, timeout=timeout)
            return CommandResult(
                args=args,
                returncode=-1,
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                timed_out=True,
            )
        except OSError as e:
            raise CommandSpawnError(args, str(e)) from e

        result = CommandResult(
            args=args,
            returncode=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )
        log.debug("Command finished", args=args, returncode=result.returncode)
        return result

    def spawn_detached(
        self,
        args: list[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
    ) -> Process:
        """Start `args` in its own session and return without waiting for it."""
        try:
            process = Process.start_in_background(
                args,
                cwd=cwd or self.cwd,
                env=self._merged_env(env),
                stdout_path=stdout_path,
                stderr_path=stderr_path,
            )
        except OSError as e:
            raise CommandSpawnError(args, str(e)) from e

        log.info("Spawned detached process", args=args, pid=process.pid)
        return process


def _decode(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
