"""
Readiness polling.

Readiness is an application-level state: the node has written its auth
token *and* the probe (sync finished, API listening, ...) passes. A live
process alone is not ready. Every wait here is bounded.
"""

from __future__ import annotations

import socket
import time
from datetime import timedelta

from nodeharness.config import HarnessConfig
from nodeharness.errors import QueryExecutionFailed, QueryFieldNotFound
from nodeharness.logging_config import get_logger
from nodeharness.node.handle import ProcessHandle
from nodeharness.node.modes import NormalMode, StatelessMode
from nodeharness.node.protocols import NodeEnvironment, Probe, ReadinessResult
from nodeharness.node.query import InstanceTarget, NodeQuery
from nodeharness.process.command import CommandRunner

log = get_logger(__name__)


class ReadinessPoller:
    def __init__(self, clock=time.monotonic, sleep=time.sleep):
        self._clock = clock
        self._sleep = sleep

    def wait_ready(
        self,
        handle: ProcessHandle,
        probe: Probe,
        timeout: timedelta,
        interval: timedelta,
    ) -> ReadinessResult:
        deadline = self._clock() + timeout.total_seconds()
        interval_s = interval.total_seconds()
        attempts = 0

        while True:
            attempts += 1
            if not handle.is_alive():
                log.error("Node exited while waiting for readiness", pid=handle.pid, attempts=attempts)
                return ReadinessResult.TIMED_OUT

            if handle.token_available() and _safe_probe(probe, handle):
                log.info("Node is ready", pid=handle.pid, attempts=attempts)
                return ReadinessResult.READY

            remaining = deadline - self._clock()
            if remaining <= 0:
                log.error(
                    "Node did not become ready in time",
                    pid=handle.pid,
                    attempts=attempts,
                    timeout_seconds=timeout.total_seconds(),
                )
                return ReadinessResult.TIMED_OUT

            self._sleep(min(interval_s, remaining))


def _safe_probe(probe: Probe, handle: ProcessHandle) -> bool:
    try:
        return bool(probe(handle))
    except Exception as e:
        log.debug("Readiness probe raised, treating as not ready", error=str(e))
        return False


# ------------
# -- Probes --
# ------------
def environment_for(handle: ProcessHandle, cfg: HarnessConfig) -> NodeEnvironment:
    token = handle.maybe_token().expect(f"No token available at {handle.token_path}")
    return NodeEnvironment(admin_token=token, api_info=f"{token}:{cfg.api.multiaddr()}")


def sync_wait_probe(cfg: HarnessConfig, runner: CommandRunner | None = None) -> Probe:
    """Ready once the client's blocking `sync wait` returns successfully."""
    runner = runner or CommandRunner()

    def _probe(handle: ProcessHandle) -> bool:
        env = environment_for(handle, cfg).as_env()
        result = runner.run(
            [*cfg.binaries.cli, "sync", "wait"],
            env=env,
            timeout=cfg.timeouts.probe.total_seconds(),
        )
        return result.ok

    return _probe


def api_listening_probe(cfg: HarnessConfig, connect_timeout: float = 1.0) -> Probe:
    """Ready once the node accepts TCP connections on its API address."""
    def _probe(handle: ProcessHandle) -> bool:
        try:
            with socket.create_connection((cfg.api.host, cfg.api.port), timeout=connect_timeout):
                return True
        except OSError:
            return False

    return _probe


def field_probe(
    cfg: HarnessConfig,
    command: list[str],
    label: str,
    expected: str,
    runner: CommandRunner | None = None,
) -> Probe:
    """Ready once a queried field equals `expected`, e.g. `sync status` -> `Synced`."""
    query = NodeQuery(cfg, runner)

    def _probe(handle: ProcessHandle) -> bool:
        target = InstanceTarget(environment_for(handle, cfg))
        try:
            value = query.query(target, command, label)
        except (QueryExecutionFailed, QueryFieldNotFound) as e:
            log.debug("Field probe could not read field", label=label, error=str(e))
            return False
        return value == expected

    return _probe


def default_probe(mode: NormalMode | StatelessMode, cfg: HarnessConfig, runner: CommandRunner | None = None) -> Probe:
    if isinstance(mode, StatelessMode):
        # stateless nodes never import or sync; serving the API is as ready as they get
        return api_listening_probe(cfg)
    return sync_wait_probe(cfg, runner)
