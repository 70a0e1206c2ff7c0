"""
Lifecycle controller for one managed node.

    IDLE -> LAUNCHING -> AWAITING_READY -> READY -> ACTIVE -> TEARING_DOWN -> TERMINATED
                 \\              \\
                  +-> FAILED <---+  (FAILED always continues to TEARING_DOWN)

Teardown is guaranteed: the exit guard is installed the moment launching
begins, `session()` tears down on every exit path, and teardown itself
only raises to pass on an interrupt that arrived while it ran.
"""

from __future__ import annotations

import atexit
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from types import FrameType
from typing import Any

from rich.console import Console

from nodeharness.config import HarnessConfig
from nodeharness.errors import (
    CommandSpawnError,
    ControllerStateError,
    HarnessError,
    ReadinessTimeout,
    ShutdownTimeout,
    TeardownLeak,
)
from nodeharness.logging_config import LogLevel, bind_node_context, clear_node_context, get_logger
from nodeharness.node.context import HarnessContext
from nodeharness.node.diagnostics import DiagnosticsBundle, DiagnosticsCollector
from nodeharness.node.handle import ProcessHandle
from nodeharness.node.launcher import ProcessLauncher
from nodeharness.node.modes import NormalMode, StatelessMode
from nodeharness.node.protocols import (
    ALLOWED_TRANSITIONS,
    ControllerState,
    NodeEnvironment,
    Probe,
    ReadinessResult,
)
from nodeharness.node.readiness import ReadinessPoller, default_probe, environment_for
from nodeharness.process.command import CommandRunner
from nodeharness.utils.errors import fail_gracefully

log = get_logger(__name__)


@dataclass
class TeardownReport:
    was_alive: bool = False
    graceful: bool = False
    forced: bool = False
    leaked: bool = False
    diagnostics: DiagnosticsBundle | None = None
    anomalies: list[HarnessError] = field(default_factory=list)


class ExitGuard:
    """
    Runs `on_exit` however the host process goes away: atexit for normal
    interpreter shutdown, and SIGINT/SIGTERM turned into SystemExit so
    that pending `finally` blocks unwind before the interpreter stops.

    A signal arriving while `on_exit` is already running is held back and
    raised by `deliver_pending` once it has finished.
    """

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self, on_exit: Callable[[], object], is_busy: Callable[[], bool]):
        self._on_exit = on_exit
        self._is_busy = is_busy
        self._previous: dict[int, Any] = {}
        self._installed = False
        self.pending_signal: int | None = None

    def install(self) -> None:
        if self._installed:
            return

        self.pending_signal = None
        atexit.register(self._on_exit)
        if threading.current_thread() is threading.main_thread():
            for sig in self.SIGNALS:
                try:
                    self._previous[sig] = signal.signal(sig, self._handle_signal)
                except (ValueError, OSError):
                    continue
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return

        atexit.unregister(self._on_exit)
        for sig, handler in self._previous.items():
            try:
                signal.signal(sig, handler)
            except (ValueError, OSError):
                continue
        self._previous.clear()
        self._installed = False

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        if self._is_busy():
            log.warning("Signal received during teardown, finishing teardown first", signal=name)
            self.pending_signal = signum
            return

        log.warning("Signal received, unwinding to tear down the node", signal=name)
        raise SystemExit(128 + signum)

    def deliver_pending(self) -> None:
        signum, self.pending_signal = self.pending_signal, None
        if signum is None:
            return

        log.warning("Delivering signal held back during teardown", signal=signal.Signals(signum).name)
        raise SystemExit(128 + signum)


class LifecycleController:
    """
    Owns a single node from launch to teardown. At most one live node
    exists per controller; a new launch requires the previous one to be
    fully torn down.
    """

    def __init__(
        self,
        cfg: HarnessConfig,
        *,
        runner: CommandRunner | None = None,
        launcher: ProcessLauncher | None = None,
        poller: ReadinessPoller | None = None,
        collector_factory: Callable[[HarnessConfig, HarnessContext], DiagnosticsCollector] = DiagnosticsCollector,
        console: Console | None = None,
    ):
        self._cfg = cfg
        self._runner = runner or CommandRunner()
        self._launcher = launcher or ProcessLauncher(cfg, self._runner)
        self._poller = poller or ReadinessPoller()
        self._collector_factory = collector_factory
        self._console = console or Console(stderr=True)

        self._state = ControllerState.IDLE
        self._handle: ProcessHandle | None = None
        self._environment: NodeEnvironment | None = None
        self._context: HarnessContext | None = None
        self._guard = ExitGuard(self.teardown, lambda: self._state == ControllerState.TEARING_DOWN)

        self.history: list[ControllerState] = [self._state]
        self.last_report: TeardownReport | None = None

    # ----------------
    # -- Properties --
    # ----------------
    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    @property
    def environment(self) -> NodeEnvironment | None:
        return self._environment

    @property
    def context(self) -> HarnessContext | None:
        return self._context

    # ------------
    # -- Public --
    # ------------
    def start(self, mode: NormalMode | StatelessMode | None = None, probe: Probe | None = None) -> NodeEnvironment:
        """
        Launch the node and block until it is ready.

        Raises LaunchFailed or ReadinessTimeout; in both cases the node has
        already been torn down and diagnostics have been surfaced.
        """
        if self._state == ControllerState.TERMINATED:
            self._transition(ControllerState.IDLE)
        if self._state != ControllerState.IDLE:
            raise ControllerStateError(f"Cannot start a node while in state {self._state}")

        mode = mode or self._cfg.mode
        self._handle = None
        self._environment = None
        self._context = HarnessContext.create(self._cfg)
        bind_node_context(run_mode=mode.name, work_dir=str(self._context.work_dir))

        self._transition(ControllerState.LAUNCHING)
        self._guard.install()
        try:
            self._handle = self._launcher.launch(mode, self._context)
            bind_node_context(node_pid=self._handle.pid)
            self._transition(ControllerState.AWAITING_READY)

            probe = probe or default_probe(mode, self._cfg, self._runner)
            result = self._poller.wait_ready(
                self._handle,
                probe,
                timeout=self._cfg.timeouts.readiness,
                interval=self._cfg.timeouts.poll_interval,
            )
            if result == ReadinessResult.TIMED_OUT:
                reason = "process exited" if not self._handle.is_alive() else "probe never passed"
                raise ReadinessTimeout(self._cfg.timeouts.readiness.total_seconds(), reason)

            self._handle.read_token(self._cfg.timeouts.token_retry.total_seconds())
            self._environment = environment_for(self._handle, self._cfg)
            self._transition(ControllerState.READY)
        except BaseException:
            if self._state in (ControllerState.LAUNCHING, ControllerState.AWAITING_READY):
                self._transition(ControllerState.FAILED)
            self.teardown(failed=True)
            raise

        return self._environment

    def activate(self) -> NodeEnvironment:
        """Hand the ready node over to the caller's test body."""
        env = self._environment
        if env is None:
            raise ControllerStateError(f"Cannot activate a node while in state {self._state}")

        self._transition(ControllerState.ACTIVE)
        return env

    def teardown(self, failed: bool = False) -> TeardownReport | None:
        """
        Stop the node if it is still alive. Safe to call at any time and any
        number of times. The only exception it raises is the SystemExit for
        a SIGINT/SIGTERM that arrived while it was running.
        """
        if self._state in (ControllerState.IDLE, ControllerState.TERMINATED):
            log.debug("Teardown requested with nothing to tear down", state=self._state)
            return self.last_report
        if self._state == ControllerState.TEARING_DOWN:
            return None

        failed = failed or self._state == ControllerState.FAILED
        self._transition(ControllerState.TEARING_DOWN)

        report = TeardownReport()
        try:
            self._tear_down(report, failed)
        except Exception as e:
            log.warning("Teardown hit an internal error", error=str(e), exc_info=True)
            report.anomalies.append(HarnessError(f"Internal teardown error: {e}"))
        finally:
            self._transition(ControllerState.TERMINATED)
            self._guard.uninstall()
            self.last_report = report
            clear_node_context()

        self._guard.deliver_pending()
        return report

    @contextmanager
    def session(
        self,
        mode: NormalMode | StatelessMode | None = None,
        probe: Probe | None = None,
    ) -> Iterator[NodeEnvironment]:
        """Scoped node: ready on entry, torn down on every way out."""
        self.start(mode, probe)
        failed = False
        try:
            yield self.activate()
        except BaseException:
            failed = True
            raise
        finally:
            self.teardown(failed=failed)

    # --------------
    # -- Teardown --
    # --------------
    def _tear_down(self, report: TeardownReport, failed: bool) -> None:
        handle = self._handle
        if handle is None:
            # nothing was ever started; partial output may still explain why
            if failed:
                report.diagnostics = self._collect_diagnostics(None, failed).unwrap()
            return

        report.was_alive = handle.is_alive()
        if failed or (report.was_alive and self._cfg.diagnostics_on_success):
            report.diagnostics = self._collect_diagnostics(handle, failed).unwrap()

        if not report.was_alive:
            log.info("Node already exited, nothing to stop", pid=handle.pid)
            return

        timeouts = self._cfg.timeouts
        children = handle.process.children()
        self._request_shutdown(handle)

        if handle.process.wait_for_termination(timeouts.grace_period.total_seconds(), children=children):
            report.graceful = True
            log.info("Node stopped gracefully", pid=handle.pid)
            return

        self._report_anomaly(report, ShutdownTimeout(
            f"Node pid={handle.pid} still alive after {timeouts.grace_period.total_seconds():.1f}s grace period",
        ))
        report.forced = True
        children += handle.process.kill_tree()

        if handle.process.wait_for_termination(timeouts.escalation.total_seconds(), children=children):
            log.info("Node stopped after forced termination", pid=handle.pid)
            return

        report.leaked = True
        survivors = [p.pid for p in (handle.process, *children) if p.is_alive()]
        self._report_anomaly(report, TeardownLeak(
            f"Node processes {survivors} survived forced termination",
        ))

    def _request_shutdown(self, handle: ProcessHandle) -> None:
        """Ask the node to stop through its client, falling back to SIGTERM."""
        timeout = self._cfg.timeouts.grace_period.total_seconds()
        env = self._environment or handle.maybe_token().map(
            lambda _: environment_for(handle, self._cfg),
        ).unwrap()

        if env is not None:
            try:
                result = self._runner.run(
                    [*self._cfg.binaries.cli, "shutdown", "--force"],
                    env=env.as_env(),
                    timeout=timeout,
                )
                if result.ok:
                    log.info("Shutdown requested through client", pid=handle.pid)
                    return
                log.warning("Shutdown command failed", returncode=result.returncode, stderr=result.stderr.strip())
            except CommandSpawnError as e:
                log.warning("Shutdown command could not be started", error=str(e))

        log.info("Sending SIGTERM to node", pid=handle.pid)
        handle.process.terminate_tree()

    @fail_gracefully(log, "Diagnostics collection failed")
    def _collect_diagnostics(self, handle: ProcessHandle | None, failed: bool) -> DiagnosticsBundle:
        assert self._context is not None
        collector = self._collector_factory(self._cfg, self._context)
        bundle = collector.collect(handle)

        dump = bundle.write(self._context.work_dir)
        log.info("Diagnostics written", path=str(dump))
        if failed:
            bundle.render(self._console)
        return bundle

    def _report_anomaly(self, report: TeardownReport, anomaly: HarnessError) -> None:
        log.warning(str(anomaly), anomaly=type(anomaly).__name__)
        report.anomalies.append(anomaly)

    # -------------------
    # -- State machine --
    # -------------------
    def _transition(self, to: ControllerState) -> None:
        if to not in ALLOWED_TRANSITIONS[self._state]:
            raise ControllerStateError(f"Illegal transition {self._state} -> {to}")

        level = LogLevel.WARNING if to == ControllerState.FAILED else LogLevel.DEBUG
        getattr(log, level.value)(
            "Controller state change",
            from_state=self._state,
            to_state=to,
            pid=self._handle.pid if self._handle else None,
        )
        self._state = to
        self.history.append(to)
