"""Reject an unparseable message: notify its sender and delete it."""

from __future__ import annotations

from typing import Any

from chatrunner.actions.base import Action, ActionContext
from chatrunner.models import ActionPermissions


class DeleteMessageAction(Action):
    name = "deleteMessage"
    description = (
        "Informa al usuario que envió el mensaje acerca de un error en la extracción de datos "
        "con la acción parseData y elimina el mensaje"
    )
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}, "required": []}
    permissions = ActionPermissions(auto_execute=True, use_root_db=True)

    async def run(self, context: ActionContext, args: dict[str, Any], call_id: str | None) -> str:
        await context.reply(
            "❌ No se pudo extraer la información del mensaje. Por favor revisa el formato.",
            context.sender_ids[0] if context.sender_ids else None,
        )
        await context.delete_message()
        return "Message deleted due to parsing error"
