import socket
import sys
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from nodeharness.config import (
    ApiConfig,
    BinaryConfig,
    HarnessConfig,
    LaunchConfig,
    MetricsConfig,
    TimeoutConfig,
)
from nodeharness.process.process_list import find_processes_by_cmdline
from tests.utils.timeout_multiplier import apply_timeout_multiplier

FIXTURES = Path(__file__).resolve().parent / "fixtures"
FAKE_NODE = FIXTURES / "fake_node.py"
FAKE_CLI = FIXTURES / "fake_cli.py"
FAKE_TOOL = FIXTURES / "fake_tool.py"


def _free_port() -> int:
    # Binding to port 0 will ask the OS to give us an arbitrary free port
    # since we've just bound that free port, it is by definition no longer free,
    # so we set that port as reusable to allow another socket to bind to it
    # then we immediately close the socket and release our connection.
    sock = socket.socket()
    sock.bind(("127.0.0.1", 0))
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

    port: int = sock.getsockname()[1]
    sock.close()

    return port


@pytest.fixture()
def free_localhost_port() -> int:
    """Function-scoped fixture to get a free port for each test."""
    return _free_port()


@pytest.fixture()
def fake_binaries() -> BinaryConfig:
    return BinaryConfig(
        node=[sys.executable, str(FAKE_NODE)],
        cli=[sys.executable, str(FAKE_CLI)],
        tool=[sys.executable, str(FAKE_TOOL)],
    )


@pytest.fixture()
def fake_state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Where the fake node leaves its pid, sync marker and observed config."""
    state = tmp_path / "fake_state"
    state.mkdir()
    monkeypatch.setenv("FAKE_NODE_STATE_DIR", str(state))
    return state


@pytest.fixture()
def fast_timeouts() -> TimeoutConfig:
    return TimeoutConfig(
        readiness=timedelta(seconds=apply_timeout_multiplier(20)),
        poll_interval=timedelta(milliseconds=100),
        probe=timedelta(seconds=apply_timeout_multiplier(5)),
        grace_period=timedelta(seconds=apply_timeout_multiplier(2)),
        escalation=timedelta(seconds=apply_timeout_multiplier(2)),
        startup_check=timedelta(milliseconds=300),
        command=timedelta(seconds=apply_timeout_multiplier(15)),
        token_retry=timedelta(milliseconds=200),
    )


@pytest.fixture()
def harness_config(
    tmp_path: Path,
    fake_binaries: BinaryConfig,
    fake_state_dir: Path,
    fast_timeouts: TimeoutConfig,
    monkeypatch: pytest.MonkeyPatch,
) -> HarnessConfig:
    """Harness config pointing at the fake binaries, with short timeouts and private ports."""
    api_port = _free_port()
    metrics_port = _free_port()
    monkeypatch.setenv("FAKE_NODE_API_PORT", str(api_port))
    monkeypatch.setenv("FAKE_NODE_METRICS_PORT", str(metrics_port))

    return HarnessConfig(
        binaries=fake_binaries,
        work_dir=tmp_path / "work",
        api=ApiConfig(port=api_port),
        metrics=MetricsConfig(url=f"http://127.0.0.1:{metrics_port}/metrics", timeout=timedelta(seconds=1)),
        timeouts=fast_timeouts,
        launch=LaunchConfig(discovery_timeout=timedelta(seconds=apply_timeout_multiplier(5))),
    )


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture(scope="session", autouse=True)
def cleanup_lingering_processes() -> Iterator[None]:
    """Session-scoped fixture to kill any fake node a failing test left behind."""

    yield

    for proc in find_processes_by_cmdline([str(FAKE_NODE)]):
        proc.kill_tree()
        proc.wait_for_termination(timeout=apply_timeout_multiplier(2.0))
