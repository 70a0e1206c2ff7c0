from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import requests
from rich.console import Console
from rich.rule import Rule

from nodeharness.config import HarnessConfig
from nodeharness.logging_config import get_logger
from nodeharness.node.context import HarnessContext
from nodeharness.node.handle import ProcessHandle

log = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class DiagnosticsBundle:
    collected_at: datetime
    metrics: str | None
    metrics_error: str | None
    stdout: str
    stderr: str
    log_files: dict[str, str] = field(default_factory=dict)
    pid: int | None = None

    def write(self, directory: Path) -> Path:
        """Persist the bundle next to the node's own output and return the dump path."""
        directory.mkdir(parents=True, exist_ok=True)
        (directory / "metrics.log").write_text(self.metrics or "", encoding="utf-8")

        dump = directory / f"diagnostics-{self.collected_at:%Y%m%dT%H%M%S}.log"
        dump.write_text("\n".join(self._sections()), encoding="utf-8")
        return dump

    def render(self, console: Console) -> None:
        for line in self._sections():
            if line.startswith("--- "):
                console.print(Rule(line.strip("- ")))
            else:
                console.print(line, markup=False, highlight=False)

    def _sections(self) -> list[str]:
        metrics = self.metrics if self.metrics is not None else f"<unavailable: {self.metrics_error}>"
        lines = [
            "--- Node STDOUT ---", self.stdout,
            "--- Node STDERR ---", self.stderr,
            "--- Node metrics ---", metrics,
            "--- Node log files ---",
        ]
        if not self.log_files:
            lines.append("<no log files>")
        for name, content in self.log_files.items():
            lines += [f"--- {name} ---", content]
        return lines


class DiagnosticsCollector:
    """
    Best-effort snapshot of everything a human needs for a post-mortem.
    Nothing here raises: missing artifacts become annotated empty fields.
    """

    def __init__(self, cfg: HarnessConfig, context: HarnessContext):
        self._cfg = cfg
        self._context = context

    def collect(self, handle: ProcessHandle | None) -> DiagnosticsBundle:
        stdout_path = handle.stdout_path if handle else self._context.stdout_path
        stderr_path = handle.stderr_path if handle else self._context.stderr_path
        log_dir = handle.log_dir if handle else self._context.log_dir

        metrics, metrics_error = self._fetch_metrics()
        bundle = DiagnosticsBundle(
            collected_at=datetime.now(),
            metrics=metrics,
            metrics_error=metrics_error,
            stdout=_read_capture(stdout_path),
            stderr=_read_capture(stderr_path),
            log_files=_read_log_dir(log_dir),
            pid=handle.pid if handle else None,
        )
        log.info(
            "Collected diagnostics",
            pid=bundle.pid,
            metrics_available=metrics is not None,
            log_files=len(bundle.log_files),
        )
        return bundle

    def _fetch_metrics(self) -> tuple[str | None, str | None]:
        url = self._cfg.metrics.url
        try:
            response = requests.get(url, timeout=self._cfg.metrics.timeout.total_seconds())
            response.raise_for_status()
        except requests.RequestException as e:
            log.warning("Could not fetch metrics", url=url, error=str(e))
            return None, str(e)

        return response.text, None


def _read_capture(path: Path) -> str:
    if not path.exists():
        return f"<{path.name} not found>"

    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        return f"<could not read {path.name}: {e}>"


def _read_log_dir(log_dir: Path) -> dict[str, str]:
    if not log_dir.is_dir():
        return {}

    contents: dict[str, str] = {}
    for path in sorted(p for p in log_dir.rglob("*") if p.is_file()):
        name = path.relative_to(log_dir).as_posix()
        try:
            contents[name] = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            contents[name] = f"<could not read: {e}>"
    return contents
