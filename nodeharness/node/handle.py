from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import backoff

from nodeharness.node.modes import NormalMode, StatelessMode
from nodeharness.process.process import Process
from nodeharness.utils.maybe import Maybe


class TokenNotWritten(Exception):
    pass


@dataclass(slots=True)
class ProcessHandle:
    """
    One launched node instance. Every operation addresses the pid captured
    at launch; liveness is queried on demand and never cached.
    """
    process: Process
    mode: NormalMode | StatelessMode
    token_path: Path
    log_dir: Path
    stdout_path: Path
    stderr_path: Path
    launched_at: datetime = field(default_factory=datetime.now)

    @property
    def pid(self) -> int:
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process.is_alive()

    # -----------
    # -- Token --
    # -----------
    def _read_token_once(self) -> str:
        try:
            token = self.token_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError as e:
            raise TokenNotWritten(f"Token file {self.token_path} does not exist yet") from e

        if not token:
            raise TokenNotWritten(f"Token file {self.token_path} is empty")

        return token

    def maybe_token(self) -> Maybe[str]:
        return Maybe.from_try(self._read_token_once, (TokenNotWritten, OSError))

    def token_available(self) -> bool:
        return self.maybe_token().is_some()

    def read_token(self, retry_delay: float = 1.0) -> str:
        """Read the token, retrying once after `retry_delay` if it is not written yet."""
        @backoff.on_exception(
            backoff.constant,
            TokenNotWritten,
            max_tries=2,
            interval=retry_delay,
            jitter=None,
        )
        def _read() -> str:
            return self._read_token_once()

        return _read()
