from __future__ import annotations

from enum import Enum


class ExecutionStatus(str, Enum):
    PENDING = "Pending"
    PLANNING = "Planning"
    EXECUTING = "Executing"
    REPLANNING = "Replanning"
    WAITING_HUMAN_APPROVAL = "WaitingHumanApproval"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


__all__ = ["ExecutionStatus"]
