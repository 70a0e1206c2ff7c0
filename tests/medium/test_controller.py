import os
import signal
import threading
import time
from dataclasses import replace
from pathlib import Path

import pytest
from rich.console import Console

from nodeharness.config import HarnessConfig
from nodeharness.errors import ReadinessTimeout, ShutdownTimeout
from nodeharness.node.controller import LifecycleController
from nodeharness.node.modes import NormalMode
from nodeharness.node.protocols import ControllerState
from nodeharness.node.readiness import field_probe
from nodeharness.utils.polling import wait_for_event
from tests.utils.fake_node import fake_node_pid, pid_alive


def _controller(cfg: HarnessConfig) -> LifecycleController:
    return LifecycleController(cfg, console=Console(record=True, width=120))


@pytest.mark.timeout(60)
def test_start_and_teardown(harness_config: HarnessConfig, fake_state_dir: Path):
    controller = _controller(harness_config)

    env = controller.start(NormalMode())

    assert controller.state == ControllerState.READY
    assert env.api_info.startswith(f"{env.admin_token}:/ip4/127.0.0.1/tcp/")
    assert controller.handle is not None
    pid = controller.handle.pid

    report = controller.teardown()

    assert report is not None
    assert report.was_alive and report.graceful
    assert not report.forced and not report.leaked
    assert report.anomalies == []
    assert (fake_state_dir / "shutdown_requested").exists()
    assert not pid_alive(pid)
    assert controller.state == ControllerState.TERMINATED


@pytest.mark.timeout(60)
def test_teardown_is_idempotent(harness_config: HarnessConfig):
    controller = _controller(harness_config)
    controller.start(NormalMode())

    first = controller.teardown()
    second = controller.teardown()

    assert second is first
    assert controller.history.count(ControllerState.TEARING_DOWN) == 1


@pytest.mark.timeout(60)
def test_teardown_of_already_exited_node(harness_config: HarnessConfig):
    controller = _controller(harness_config)
    controller.start(NormalMode())
    assert controller.handle is not None

    controller.handle.process.kill()
    assert controller.handle.process.wait_for_termination(timeout=5)

    report = controller.teardown()

    assert report is not None
    assert not report.was_alive
    assert not report.forced
    assert not report.leaked
    assert report.anomalies == []


@pytest.mark.timeout(60)
def test_node_ignoring_sigterm_is_killed_after_grace_period(
    harness_config: HarnessConfig,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setenv("FAKE_NODE_BEHAVIOR", "ignore_sigterm")
    controller = _controller(harness_config)
    controller.start(NormalMode())
    assert controller.handle is not None
    pid = controller.handle.pid

    report = controller.teardown()

    assert report is not None
    assert report.forced
    assert not report.graceful
    assert not report.leaked
    assert [type(a) for a in report.anomalies] == [ShutdownTimeout]
    assert not pid_alive(pid)


@pytest.mark.timeout(60)
def test_readiness_timeout_tears_down_and_raises(
    harness_config: HarnessConfig,
    fake_state_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setenv("FAKE_NODE_BEHAVIOR", "never_sync")
    monkeypatch.setenv("FAKE_CLI_WAIT_TIMEOUT", "0.2")
    cfg = replace(harness_config, timeouts=replace(harness_config.timeouts, readiness=harness_config.timeouts.grace_period))
    controller = _controller(cfg)

    with pytest.raises(ReadinessTimeout):
        controller.start(NormalMode())

    assert ControllerState.FAILED in controller.history
    assert controller.state == ControllerState.TERMINATED
    assert not pid_alive(fake_node_pid(fake_state_dir))

    report = controller.last_report
    assert report is not None and report.diagnostics is not None
    assert "starting fake node" in report.diagnostics.log_files["forest.log"]


@pytest.mark.timeout(60)
def test_session_tears_down_when_body_raises(harness_config: HarnessConfig):
    controller = _controller(harness_config)

    with pytest.raises(RuntimeError, match="body failed"):
        with controller.session(NormalMode()) as env:
            assert controller.state == ControllerState.ACTIVE
            assert env.admin_token
            raise RuntimeError("body failed")

    assert controller.state == ControllerState.TERMINATED
    report = controller.last_report
    assert report is not None and report.graceful
    # a failing body always gets its diagnostics surfaced
    assert report.diagnostics is not None


@pytest.mark.timeout(90)
def test_controller_can_start_again_after_teardown(harness_config: HarnessConfig):
    controller = _controller(harness_config)

    with controller.session(NormalMode()):
        first_pid = controller.handle.pid if controller.handle else None
    with controller.session(NormalMode()):
        second_pid = controller.handle.pid if controller.handle else None

    assert first_pid is not None and second_pid is not None
    assert first_pid != second_pid
    assert controller.state == ControllerState.TERMINATED


@pytest.mark.timeout(60)
def test_cannot_start_twice(harness_config: HarnessConfig):
    controller = _controller(harness_config)
    controller.start(NormalMode())
    try:
        with pytest.raises(Exception, match="Cannot start"):
            controller.start(NormalMode())
    finally:
        controller.teardown()


# ============================================================================
# Interrupts
# ============================================================================


def _signal_on_state(controller: LifecycleController, state: ControllerState, signum: int) -> threading.Thread:
    """Send `signum` to this process once the controller reaches `state`."""

    def _send() -> None:
        if wait_for_event(lambda: controller.state == state, interval=0.05, timeout=30):
            os.kill(os.getpid(), signum)

    thread = threading.Thread(target=_send, daemon=True)
    thread.start()
    return thread


@pytest.mark.timeout(60)
def test_sigint_while_awaiting_readiness_tears_down(
    harness_config: HarnessConfig,
    fake_state_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setenv("FAKE_NODE_BEHAVIOR", "never_sync")
    previous = signal.getsignal(signal.SIGINT)
    controller = _controller(harness_config)
    sender = _signal_on_state(controller, ControllerState.AWAITING_READY, signal.SIGINT)

    with pytest.raises(SystemExit) as exc_info:
        controller.start(NormalMode())
    sender.join(timeout=5)

    assert exc_info.value.code == 128 + signal.SIGINT
    assert ControllerState.FAILED in controller.history
    assert controller.state == ControllerState.TERMINATED
    assert not pid_alive(fake_node_pid(fake_state_dir))
    assert signal.getsignal(signal.SIGINT) == previous


@pytest.mark.timeout(60)
def test_sigint_in_session_body_tears_down(harness_config: HarnessConfig, fake_state_dir: Path):
    controller = _controller(harness_config)

    with pytest.raises(SystemExit) as exc_info:
        with controller.session(NormalMode()):
            os.kill(os.getpid(), signal.SIGINT)
            time.sleep(10)

    assert exc_info.value.code == 128 + signal.SIGINT
    assert controller.state == ControllerState.TERMINATED
    report = controller.last_report
    assert report is not None and report.graceful
    assert report.diagnostics is not None
    assert not pid_alive(fake_node_pid(fake_state_dir))


@pytest.mark.timeout(60)
def test_sigterm_during_teardown_finishes_teardown_then_exits(
    harness_config: HarnessConfig,
    monkeypatch: pytest.MonkeyPatch,
):
    monkeypatch.setenv("FAKE_NODE_BEHAVIOR", "ignore_sigterm")
    controller = _controller(harness_config)
    controller.start(NormalMode())
    assert controller.handle is not None
    pid = controller.handle.pid

    # the node ignores SIGTERM, so teardown sits out the whole grace period
    sender = _signal_on_state(controller, ControllerState.TEARING_DOWN, signal.SIGTERM)
    with pytest.raises(SystemExit) as exc_info:
        controller.teardown()
    sender.join(timeout=5)

    assert exc_info.value.code == 128 + signal.SIGTERM
    assert controller.state == ControllerState.TERMINATED
    report = controller.last_report
    assert report is not None and report.forced
    assert not pid_alive(pid)


# ============================================================================
# Probes
# ============================================================================


@pytest.mark.timeout(60)
def test_field_probe_against_sync_status(harness_config: HarnessConfig, fake_state_dir: Path):
    controller = _controller(harness_config)
    probe = field_probe(harness_config, ["sync", "status"], "Sync status", "Synced")

    controller.start(NormalMode(), probe)
    try:
        assert controller.state == ControllerState.READY
        assert (fake_state_dir / "synced").exists()
    finally:
        controller.teardown()
