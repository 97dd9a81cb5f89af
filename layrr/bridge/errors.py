from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class BridgeError(Exception):
    pass


class TransportError(BridgeError):
    pass


class FormatError(BridgeError):
    """Formatter failure. Valid input never produces one; treat as a defect."""


class AgentError(BridgeError):
    stage = "agent"

    def __init__(self, message: str, *, session: str | None = None) -> None:
        super().__init__(message)
        self.session = session

    def __str__(self) -> str:
        base = super().__str__()
        if self.session:
            return f"[{self.session}] {base}"
        return base


class AgentBusyError(AgentError):
    stage = "agent.busy"


class AgentProcessError(AgentError):
    stage = "agent.process"


class AgentTaskError(AgentError):
    stage = "agent.task"

    def __init__(self, message: str, *, session: str | None = None, returncode: int | None = None) -> None:
        super().__init__(message, session=session)
        self.returncode = returncode


@dataclass
class InstructionError(BridgeError):
    """Instruction failure with enough context for a user-facing message."""

    request_id: int | None
    stage: str
    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"request {self.request_id} failed at {self.stage}: {self.reason}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.request_id,
            "status": "error",
            "stage": self.stage,
            "error": self.reason,
            **({"details": self.details} if self.details else {}),
        }


class CheckpointError(BridgeError):
    pass


class NoRepositoryError(CheckpointError):
    pass


class NothingToCheckpointError(CheckpointError):
    pass


class MergeConflictError(CheckpointError):
    pass


class InvalidCheckpointError(CheckpointError):
    pass


class BranchRepairError(CheckpointError):
    pass


class CheckpointLockedError(CheckpointError):
    pass
