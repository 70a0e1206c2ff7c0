from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nodeharness.node.handle import ProcessHandle


class ControllerState(StrEnum):
    """Lifecycle state of the controller's managed node."""
    IDLE = "idle"
    LAUNCHING = "launching"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    ACTIVE = "active"
    TEARING_DOWN = "tearing_down"
    TERMINATED = "terminated"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ControllerState, frozenset[ControllerState]] = {
    ControllerState.IDLE: frozenset({ControllerState.LAUNCHING}),
    ControllerState.LAUNCHING: frozenset({ControllerState.AWAITING_READY, ControllerState.FAILED}),
    ControllerState.AWAITING_READY: frozenset({ControllerState.READY, ControllerState.FAILED}),
    ControllerState.READY: frozenset({ControllerState.ACTIVE, ControllerState.TEARING_DOWN}),
    ControllerState.ACTIVE: frozenset({ControllerState.TEARING_DOWN}),
    ControllerState.FAILED: frozenset({ControllerState.TEARING_DOWN}),
    ControllerState.TEARING_DOWN: frozenset({ControllerState.TERMINATED}),
    ControllerState.TERMINATED: frozenset({ControllerState.IDLE}),
}


class ReadinessResult(StrEnum):
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True, slots=True)
class NodeEnvironment:
    """Values handed to the test body once the node is ready."""
    admin_token: str
    api_info: str

    def as_env(self) -> dict[str, str]:
        return {
            "ADMIN_TOKEN": self.admin_token,
            "FULLNODE_API_INFO": self.api_info,
        }


Probe = Callable[["ProcessHandle"], bool]
