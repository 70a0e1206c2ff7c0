from __future__ import annotations

import tempfile
from dataclasses import dataclass
from pathlib import Path

from nodeharness.config import HarnessConfig
from nodeharness.node.modes import NormalMode, StatelessMode


@dataclass(frozen=True, slots=True)
class HarnessContext:
    """
    Filesystem layout of one harness run: every path the node writes and
    the harness reads back lives here instead of in process-wide globals.
    """
    work_dir: Path
    log_dir: Path
    stdout_path: Path
    stderr_path: Path

    @staticmethod
    def create(cfg: HarnessConfig) -> HarnessContext:
        work_dir = cfg.work_dir or Path(tempfile.mkdtemp(prefix="nodeharness-"))
        work_dir = work_dir.resolve()
        log_dir = work_dir / cfg.launch.log_dir_name

        work_dir.mkdir(parents=True, exist_ok=True)
        log_dir.mkdir(parents=True, exist_ok=True)

        return HarnessContext(
            work_dir=work_dir,
            log_dir=log_dir,
            stdout_path=work_dir / cfg.launch.stdout_name,
            stderr_path=work_dir / cfg.launch.stderr_name,
        )

    def token_path(self, mode: NormalMode | StatelessMode) -> Path:
        return self.work_dir / mode.token_file

    def mode_config_path(self, mode: NormalMode | StatelessMode) -> Path | None:
        if isinstance(mode, StatelessMode):
            return self.work_dir / mode.config_file
        return None
