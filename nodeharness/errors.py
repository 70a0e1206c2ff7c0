from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nodeharness.process.command import CommandResult


class HarnessError(Exception):
    pass


class ConfigError(HarnessError):
    pass


class CommandSpawnError(HarnessError):
    """The command could not be started at all (missing binary, permissions)."""

    def __init__(self, args: list[str], reason: str):
        self.command = args
        self.reason = reason
        super().__init__(f"Could not start {args[0] if args else '<empty command>'}: {reason}")


class LaunchFailed(HarnessError):
    pass


class ReadinessTimeout(HarnessError):
    def __init__(self, timeout_seconds: float, reason: str = ""):
        self.timeout_seconds = timeout_seconds
        self.reason = reason
        detail = f" ({reason})" if reason else ""
        super().__init__(f"Node did not become ready within {timeout_seconds:.1f}s{detail}")


class QueryExecutionFailed(HarnessError):
    def __init__(self, result: CommandResult):
        self.result = result
        stderr = result.stderr.strip()
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"Command {' '.join(result.args)} exited with {result.returncode}{detail}")


class QueryFieldNotFound(HarnessError):
    def __init__(self, label: str, output: str):
        self.label = label
        self.output = output
        super().__init__(f"No '{label}' field found in command output")


class ShutdownTimeout(HarnessError):
    """Reported, never raised: graceful shutdown outlived its grace period."""


class TeardownLeak(HarnessError):
    """Reported, never raised: the process survived forced termination."""


class ControllerStateError(HarnessError):
    pass
