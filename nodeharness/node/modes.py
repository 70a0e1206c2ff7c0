"""
Run modes for the managed node.

A mode only describes how the node is started; it is selected once per
launch and never changes afterwards.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field

from nodeharness.utils.config import config, list_


@config(frozen=True)
class NormalMode:
    name: Literal["normal"] = "normal"
    import_snapshot: Path | None = None
    auto_download_snapshot: bool = False
    height: int | None = None
    token_file: str = "admin_token"

    def extra_args(self, config_path: Path | None = None) -> list[str]:
        args: list[str] = []
        if self.import_snapshot is not None:
            args += ["--import-snapshot", str(self.import_snapshot)]
        if self.height is not None:
            args.append(f"--height={self.height}")
        if self.auto_download_snapshot:
            args.append("--auto-download-snapshot")
        return args


@config(frozen=True)
class StatelessMode:
    name: Literal["stateless"] = "stateless"
    data_dir: Path = Path("/tmp/stateless_forest_data")
    listening_multiaddrs: list[str] = list_(["/ip4/127.0.0.1/tcp/0"])
    config_file: str = "stateless_forest_config.toml"
    skip_load_actors: bool = True
    token_file: str = "stateless_admin_token"

    def extra_args(self, config_path: Path | None = None) -> list[str]:
        args: list[str] = []
        if config_path is not None:
            args += ["--config", str(config_path)]
        if self.skip_load_actors:
            args.append("--skip-load-actors")
        args.append("--stateless")
        return args

    def config_payload(self) -> dict[str, dict[str, object]]:
        return {
            "client": {"data_dir": str(self.data_dir)},
            "network": {"listening_multiaddrs": list(self.listening_multiaddrs)},
        }


RunMode = Annotated[NormalMode | StatelessMode, Field(discriminator="name")]


def mode_from_name(name: str) -> NormalMode | StatelessMode:
    match name:
        case "normal":
            return NormalMode()
        case "stateless":
            return StatelessMode()
        case _:
            raise ValueError(f"Unknown run mode: {name!r}")
