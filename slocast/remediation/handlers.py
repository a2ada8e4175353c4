"""
Remediation Action Handlers.

One handler per action-template type. The external systems behind them
(ticketing, chat, feature flags, functions) are outside this service, so
every handler records what it would have done and reports success.

An unknown type fails the run instead of raising.
"""

import secrets
import string
from typing import Optional, Protocol

import structlog

from slocast.remediation.schemas import ActionResult, ActionTemplate, ActionType

logger = structlog.get_logger(__name__)

_TASK_ID_ALPHABET = string.ascii_lowercase + string.digits


class ActionHandler(Protocol):
    """Protocol for action-template handlers."""

    async def execute(self, action: ActionTemplate, parameters: dict) -> ActionResult:
        ...


class CreateTaskHandler:
    async def execute(self, action: ActionTemplate, parameters: dict) -> ActionResult:
        task_id = "STUB-" + "".join(secrets.choice(_TASK_ID_ALPHABET) for _ in range(9))
        return ActionResult(
            success=True,
            details={
                "task_created": True,
                "task_id": task_id,
                "target": action.target,
                "title": action.params.get("title"),
                "labels": action.params.get("labels"),
            },
        )


class NotifyTeamHandler:
    async def execute(self, action: ActionTemplate, parameters: dict) -> ActionResult:
        return ActionResult(
            success=True,
            details={
                "notification_sent": True,
                "target": action.target,
                "message": action.params.get("message"),
            },
        )


class UpdateFlagHandler:
    async def execute(self, action: ActionTemplate, parameters: dict) -> ActionResult:
        return ActionResult(
            success=True,
            details={
                "flag_updated": True,
                "flag": action.params.get("flag"),
                "value": action.params.get("value"),
            },
        )


class InvokeFunctionHandler:
    async def execute(self, action: ActionTemplate, parameters: dict) -> ActionResult:
        return ActionResult(
            success=True,
            details={
                "function_invoked": True,
                "function": action.params.get("function"),
                "result": "stub",
            },
        )


class RollbackHandler:
    async def execute(self, action: ActionTemplate, parameters: dict) -> ActionResult:
        return ActionResult(
            success=True,
            details={
                "rolled_back": True,
                "original_action": parameters.get("original_action"),
            },
        )


class ActionRouter:
    """Routes an action template to its handler."""

    def __init__(self, handlers: Optional[dict[ActionType, ActionHandler]] = None):
        self._handlers: dict[ActionType, ActionHandler] = handlers or {
            ActionType.CREATE_TASK: CreateTaskHandler(),
            ActionType.NOTIFY_TEAM: NotifyTeamHandler(),
            ActionType.UPDATE_FLAG: UpdateFlagHandler(),
            ActionType.INVOKE_FUNCTION: InvokeFunctionHandler(),
            ActionType.ROLLBACK: RollbackHandler(),
        }

    async def execute(self, action: ActionTemplate, parameters: dict) -> ActionResult:
        try:
            handler = self._handlers.get(ActionType(action.type))
        except ValueError:
            handler = None
        if handler is None:
            logger.warning("remediation_action_unknown", action_type=action.type)
            return ActionResult(success=False, details={"error": "Unknown action type"})

        logger.info("remediation_action_executing", action_type=action.type, target=action.target)
        return await handler.execute(action, parameters)
