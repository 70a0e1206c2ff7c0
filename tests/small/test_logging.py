import json
import logging
from pathlib import Path

import pytest
import structlog

from nodeharness.logging_config import (
    LogLevel,
    bind_node_context,
    clear_node_context,
    flush_logs,
    get_logger,
    setup_structured_logging,
)


@pytest.fixture
def restore_logging():
    handlers = list(logging.getLogger().handlers)
    level = logging.getLogger().level
    yield
    clear_node_context()
    logging.getLogger().handlers[:] = handlers
    logging.getLogger().setLevel(level)
    structlog.reset_defaults()


def test_file_output_is_json_with_node_context(tmp_path: Path, restore_logging):
    log_file = tmp_path / "logs" / "harness.log"
    setup_structured_logging(log_file_path=log_file, log_level=LogLevel.DEBUG, console_output=False)

    bind_node_context(node_pid=4242, run_mode="normal")
    get_logger("test").info("Node launched", extra_field=1)
    clear_node_context()
    get_logger("test").info("After teardown")
    flush_logs()

    first, second = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert first["event"] == "Node launched"
    assert first["node_pid"] == 4242
    assert first["run_mode"] == "normal"
    assert first["level"] == "info"
    assert "node_pid" not in second


def test_level_filters_records(tmp_path: Path, restore_logging):
    log_file = tmp_path / "harness.log"
    setup_structured_logging(log_file_path=log_file, log_level="warning", console_output=False)

    get_logger("test").info("hidden")
    get_logger("test").warning("shown")
    flush_logs()

    assert [json.loads(line)["event"] for line in log_file.read_text().splitlines()] == ["shown"]


def test_unknown_context_keys_rejected():
    with pytest.raises(ValueError, match="pidd"):
        bind_node_context(pidd=1)
