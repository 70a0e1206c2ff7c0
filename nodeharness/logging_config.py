"""
Structured logging for the harness.

Log records go to stderr so that a test body's own stdout stays clean;
with a log file, records are written there as JSON lines instead.
"""

import logging
import logging.handlers
import sys
from enum import StrEnum
from pathlib import Path
from typing import Any

import structlog

NODE_CONTEXT_KEYS = ("node_pid", "run_mode", "work_dir")


class LogLevel(StrEnum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


def setup_structured_logging(
    log_file_path: Path | None = None,
    log_level: LogLevel | str = LogLevel.INFO,
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5,
    console_output: bool = True,
) -> None:
    level = logging.getLevelName(str(log_level).upper())

    handlers: list[logging.Handler] = []
    if console_output:
        handlers.append(logging.StreamHandler(sys.stderr))

    if log_file_path is not None:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            filename=log_file_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        ))

    for handler in handlers:
        handler.setLevel(level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            _renderer(json_output=log_file_path is not None),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers[:] = handlers


def _renderer(json_output: bool) -> Any:
    if json_output:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def bind_node_context(**values: Any) -> None:
    """Attach node details (pid, mode, work dir) to every record logged until cleared."""
    unknown = set(values) - set(NODE_CONTEXT_KEYS)
    if unknown:
        raise ValueError(f"Unknown node context keys: {sorted(unknown)}")
    structlog.contextvars.bind_contextvars(**values)


def clear_node_context() -> None:
    structlog.contextvars.unbind_contextvars(*NODE_CONTEXT_KEYS)


def flush_logs() -> None:
    """Force flush all log handlers to ensure logs are written to files."""
    for handler in logging.getLogger().handlers:
        handler.flush()
