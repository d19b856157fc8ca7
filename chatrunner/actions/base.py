"""Action contracts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from chatrunner.exceptions import PermissionDeniedError
from chatrunner.models import ActionPermissions, ActionResult, IncomingContext

if TYPE_CHECKING:
    from chatrunner.db import Database
    from chatrunner.transport import Transport


@dataclass(slots=True)
class ActionContext:
    """Caller identity and collaborators available to an action invocation."""

    chat_id: str
    sender_ids: list[str]
    transport: Transport
    db: Database
    group_name: str | None = None
    is_root: bool = False
    incoming: IncomingContext | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    async def send(self, text: str, chat_id: str | None = None) -> None:
        await self.transport.send(text, chat_id or self.chat_id)

    async def reply(self, text: str, chat_id: str | None = None) -> None:
        await self.transport.reply(text, chat_id or self.chat_id, self.incoming)

    async def delete_message(self, chat_id: str | None = None) -> None:
        key = self.incoming.message_key if self.incoming else None
        await self.transport.delete(chat_id or self.chat_id, key)


class Action(ABC):
    """Base class for all model-invocable actions."""

    name: str
    description: str
    parameters_schema: dict[str, Any]
    permissions: ActionPermissions = ActionPermissions()
    command: str | None = None

    @abstractmethod
    async def run(self, context: ActionContext, args: dict[str, Any], call_id: str | None) -> Any:
        """Execute the action with validated arguments.

        May return a bare value or an ``ActionResult`` to assert per-call
        permissions such as ``auto_continue``.
        """

    def require_root(self, context: ActionContext) -> None:
        if self.permissions.require_root and not context.is_root:
            raise PermissionDeniedError(f"Action {self.name} requires root permissions")

    def to_result(self, value: Any) -> ActionResult:
        if isinstance(value, ActionResult):
            return value
        return ActionResult(result=value, permissions=self.permissions)
