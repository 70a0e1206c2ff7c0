from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from subprocess import DEVNULL, Popen
from typing import Any

import psutil

from nodeharness.utils.errors import fail_gracefully
from nodeharness.utils.polling import wait_for_event

IS_WINDOWS = sys.platform.startswith("win")


class Process:
    """
    A pid-addressed handle on an OS process.

    Every status check is a fresh snapshot; a process vanishing between
    two calls is expected and reported as "not running", never as an error.
    """

    # ============================================================================
    # Initialization
    # ============================================================================

    def __init__(self, proc: psutil.Process, popen: Popen[bytes] | None = None):
        self._proc = proc
        # kept for processes we spawned ourselves so their exit status gets reaped
        self._popen = popen

    @staticmethod
    def start_in_background(
        args: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
    ) -> Process:
        popen_kwargs: dict[str, Any] = {
            "stdin": DEVNULL,
            "cwd": cwd,
            "env": env,
        }

        if IS_WINDOWS:
            detached_process = getattr(subprocess, "DETACHED_PROCESS", 0)
            create_new_process_group = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
            create_no_window = getattr(subprocess, "CREATE_NO_WINDOW", 0)
            popen_kwargs["creationflags"] = detached_process | create_new_process_group | create_no_window
        else:
            popen_kwargs["start_new_session"] = True

        stdout = _open_capture(stdout_path)
        stderr = _open_capture(stderr_path)
        try:
            popen = Popen(args, stdout=stdout or DEVNULL, stderr=stderr or DEVNULL, **popen_kwargs)
        finally:
            # the child holds its own descriptors from here on
            for handle in (stdout, stderr):
                if handle is not None:
                    handle.close()

        return Process(psutil.Process(popen.pid), popen)

    # ============================================================================
    # Properties
    # ============================================================================

    @property
    def pid(self) -> int:
        return self._proc.pid

    def returncode(self) -> int | None:
        if self._popen is None:
            return None
        return self._popen.poll()

    # ============================================================================
    # Status Checks
    # ============================================================================

    def is_running(self) -> bool:
        self._reap()
        try:
            return self._proc.is_running()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def is_zombie(self) -> bool:
        try:
            return self._proc.status() == psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    def is_alive(self) -> bool:
        return self.is_running() and not self.is_zombie()

    def _reap(self) -> None:
        if self._popen is not None:
            self._popen.poll()

    # ============================================================================
    # Process Tree
    # ============================================================================

    def children(self) -> list[Process]:
        try:
            return [Process(child) for child in self._proc.children(recursive=True)]
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    # ============================================================================
    # Lifecycle Management
    # ============================================================================

    @fail_gracefully()
    def terminate(self):
        try:
            self._proc.terminate()
        except psutil.NoSuchProcess:
            pass

    @fail_gracefully()
    def kill(self):
        try:
            self._proc.kill()
        except psutil.NoSuchProcess:
            pass

    def terminate_tree(self) -> list[Process]:
        """Send SIGTERM to the process and all its descendants, returning the descendants."""
        children = self.children()
        for child in children:
            child.terminate()

        self.terminate()
        return children

    def kill_tree(self) -> list[Process]:
        """Send SIGKILL to the process and all its descendants, returning the descendants."""
        children = self.children()
        for child in children:
            child.kill()

        self.kill()
        return children

    def wait_for_termination(
        self,
        timeout: float = 5.0,
        poll_interval: float = 0.1,
        children: list[Process] | None = None,
    ) -> bool:
        """
        Wait until the process (and the given descendants) are gone.
        Only waits; never signals anything.
        """
        children = children or []

        def _all_done() -> bool:
            return not self.is_alive() and all(not c.is_alive() for c in children)

        return wait_for_event(_all_done, interval=poll_interval, timeout=timeout)


def _open_capture(path: Path | None):
    if path is None:
        return None

    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "ab")
