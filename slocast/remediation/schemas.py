"""
Remediation run lifecycle and action-template types.

State machine: pending -> executing -> {success, failed}
"""

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class RunStatus(StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED)


ALLOWED_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.PENDING: frozenset({RunStatus.EXECUTING, RunStatus.FAILED}),
    RunStatus.EXECUTING: frozenset({RunStatus.SUCCESS, RunStatus.FAILED}),
    RunStatus.SUCCESS: frozenset(),
    RunStatus.FAILED: frozenset(),
}


class ActionType(StrEnum):
    CREATE_TASK = "create_task"
    NOTIFY_TEAM = "notify_team"
    UPDATE_FLAG = "update_flag"
    INVOKE_FUNCTION = "invoke_function"
    ROLLBACK = "rollback"


class ActionTemplate(BaseModel):
    """Playbook action. `type` stays a plain string so unknown types fail the run, not validation."""
    type: str
    target: Optional[str] = None
    params: dict = Field(default_factory=dict)


class ActionResult(BaseModel):
    success: bool
    details: dict = Field(default_factory=dict)
