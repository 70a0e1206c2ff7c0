from __future__ import annotations

import os
import tempfile
from pathlib import Path

import tomlkit

from nodeharness.config import HarnessConfig
from nodeharness.errors import CommandSpawnError, LaunchFailed
from nodeharness.logging_config import get_logger
from nodeharness.node.context import HarnessContext
from nodeharness.node.handle import ProcessHandle
from nodeharness.node.modes import NormalMode, StatelessMode
from nodeharness.process.command import CommandRunner
from nodeharness.process.process import Process
from nodeharness.process.process_list import find_processes_by_cmdline
from nodeharness.utils.polling import wait_for_event

log = get_logger(__name__)


def write_config_atomically(path: Path, payload: dict[str, dict[str, object]]) -> Path:
    """
    Write a TOML document so that readers only ever see the complete file:
    the content is flushed and fsynced to a sibling temp file, then renamed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(tomlkit.dumps(payload))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    return path


class ProcessLauncher:
    def __init__(self, cfg: HarnessConfig, runner: CommandRunner | None = None):
        self._cfg = cfg
        self._runner = runner or CommandRunner()

    # ------------
    # -- Public --
    # ------------
    def build_args(self, mode: NormalMode | StatelessMode, context: HarnessContext) -> list[str]:
        cfg = self._cfg
        args = [
            *cfg.binaries.node,
            "--chain", cfg.chain,
            "--encrypt-keystore", str(cfg.encrypt_keystore).lower(),
            "--log-dir", str(context.log_dir),
            "--save-token", str(context.token_path(mode)),
        ]
        if cfg.track_peak_rss:
            args.append("--track-peak-rss")
        if cfg.launch.self_detach:
            args.append("--detach")

        args += mode.extra_args(context.mode_config_path(mode))
        return args

    def launch(self, mode: NormalMode | StatelessMode, context: HarnessContext) -> ProcessHandle:
        """
        Start the node and return as soon as it has been started.
        The returned handle says nothing about readiness.
        """
        self._prepare_mode(mode, context)

        # a stale token from an earlier run must not count towards readiness
        context.token_path(mode).unlink(missing_ok=True)

        args = self.build_args(mode, context)
        log.info("Launching node", mode=mode.name, self_detach=self._cfg.launch.self_detach)

        try:
            if self._cfg.launch.self_detach:
                process = self._launch_self_detaching(args, mode, context)
            else:
                process = self._runner.spawn_detached(
                    args,
                    cwd=context.work_dir,
                    stdout_path=context.stdout_path,
                    stderr_path=context.stderr_path,
                )
        except CommandSpawnError as e:
            raise LaunchFailed(str(e)) from e

        self._check_startup(process, context)

        handle = ProcessHandle(
            process=process,
            mode=mode,
            token_path=context.token_path(mode),
            log_dir=context.log_dir,
            stdout_path=context.stdout_path,
            stderr_path=context.stderr_path,
        )
        log.info("Node launched", mode=mode.name, pid=handle.pid)
        return handle

    # ---------------
    # -- Internals --
    # ---------------
    def _prepare_mode(self, mode: NormalMode | StatelessMode, context: HarnessContext) -> None:
        if not isinstance(mode, StatelessMode):
            return

        config_path = context.mode_config_path(mode)
        assert config_path is not None
        try:
            write_config_atomically(config_path, mode.config_payload())
        except (OSError, ValueError) as e:
            raise LaunchFailed(f"Could not write stateless config {config_path}: {e}") from e

        log.debug("Wrote stateless node config", path=str(config_path), data_dir=str(mode.data_dir))

    def _launch_self_detaching(
        self,
        args: list[str],
        mode: NormalMode | StatelessMode,
        context: HarnessContext,
    ) -> Process:
        result = self._runner.run(
            args,
            cwd=context.work_dir,
            timeout=self._cfg.timeouts.command.total_seconds(),
        )
        if not result.ok:
            raise LaunchFailed(
                f"Detaching launch exited with {result.returncode}: {result.stderr.strip()}",
            )

        # the forked daemon keeps the launch-unique token path on its command line
        fragments = ["--save-token", str(context.token_path(mode))]
        found: list[Process] = []

        def _discovered() -> bool:
            nonlocal found
            found = [p for p in find_processes_by_cmdline(fragments) if p.is_alive()]
            return len(found) > 0

        wait_for_event(
            _discovered,
            interval=0.1,
            timeout=self._cfg.launch.discovery_timeout.total_seconds(),
        )

        if len(found) != 1:
            # every match carries this run's token path, so none may outlive the failed launch
            for process in found:
                process.kill_tree()
            raise LaunchFailed(
                f"Expected exactly one detached node process, found {len(found)}",
            )

        return found[0]

    def _check_startup(self, process: Process, context: HarnessContext) -> None:
        """A node that is gone right after spawning never really launched."""
        window = self._cfg.timeouts.startup_check.total_seconds()
        exited = wait_for_event(lambda: not process.is_alive(), interval=0.02, timeout=window)
        if not exited:
            return

        stderr_tail = _tail(context.stderr_path)
        raise LaunchFailed(
            f"Node exited during start-up (code {process.returncode()})"
            + (f": {stderr_tail}" if stderr_tail else ""),
        )


def _tail(path: Path, lines: int = 20) -> str:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""
    return "\n".join(content.strip().splitlines()[-lines:])
