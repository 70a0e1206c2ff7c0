from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path

from pydantic import Field, TypeAdapter, ValidationError, model_validator

from nodeharness.errors import ConfigError
from nodeharness.node.modes import NormalMode, RunMode
from nodeharness.utils.config import apply_overrides, config, list_, read_yaml


@config(frozen=True)
class BinaryConfig:
    """Command prefixes used to invoke the node, its client and its tool."""
    node: list[str] = list_(["forest"])
    cli: list[str] = list_(["forest-cli"])
    tool: list[str] = list_(["forest-tool"])


@config(frozen=True)
class ApiConfig:
    host: str = "127.0.0.1"
    port: int = 2345
    protocol: str = "http"

    def multiaddr(self) -> str:
        return f"/ip4/{self.host}/tcp/{self.port}/{self.protocol}"


@config(frozen=True)
class MetricsConfig:
    url: str = "http://localhost:6116/metrics"
    timeout: timedelta = timedelta(seconds=5)


@config(frozen=True)
class TimeoutConfig:
    readiness: timedelta = timedelta(minutes=30)
    poll_interval: timedelta = timedelta(seconds=5)
    # ceiling for a single readiness probe invocation
    probe: timedelta = timedelta(minutes=5)
    grace_period: timedelta = timedelta(seconds=10)
    escalation: timedelta = timedelta(seconds=5)
    startup_check: timedelta = timedelta(milliseconds=100)
    command: timedelta = timedelta(minutes=5)
    token_retry: timedelta = timedelta(seconds=1)
    snapshot_import: timedelta = timedelta(hours=2)

    @model_validator(mode="after")
    def _check_ceilings(self):
        for name in ("readiness", "poll_interval", "probe", "grace_period", "escalation", "command"):
            if getattr(self, name) <= timedelta(0):
                raise ValueError(f"timeouts.{name} must be positive")

        if self.escalation > self.grace_period:
            raise ValueError("timeouts.escalation must not exceed timeouts.grace_period")

        return self


@config(frozen=True)
class LaunchConfig:
    # pass --detach to the node and discover the forked daemon afterwards
    self_detach: bool = False
    discovery_timeout: timedelta = timedelta(seconds=10)
    stdout_name: str = "forest.out"
    stderr_name: str = "forest.err"
    log_dir_name: str = "logs"


@config()
class HarnessConfig:
    binaries: BinaryConfig = Field(default_factory=BinaryConfig)
    chain: str = "calibnet"
    encrypt_keystore: bool = False
    track_peak_rss: bool = True
    work_dir: Path | None = None
    api: ApiConfig = Field(default_factory=ApiConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    launch: LaunchConfig = Field(default_factory=LaunchConfig)
    diagnostics_on_success: bool = True
    mode: RunMode = Field(default_factory=NormalMode)


# -------------
# -- Loading --
# -------------
def load_config(path: Path | None = None, overrides: Sequence[str] = ()) -> HarnessConfig:
    raw = read_yaml(path) if path is not None else {}
    raw = apply_overrides(raw, overrides)

    try:
        return TypeAdapter(HarnessConfig).validate_python(raw)
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"Invalid harness config: {e}") from e
