"""Conversation reset and per-chat configuration actions."""

from __future__ import annotations

from typing import Any

from chatrunner.actions.base import Action, ActionContext
from chatrunner.models import ActionPermissions

NEW_CONVERSATION = "new_conversation"

_CHAT_ID_PROPERTY = {
    "type": "string",
    "description": "Target chat id. Defaults to the chat the request came from.",
}


class NewConversationAction(Action):
    """Start over: earlier messages stop being sent to the model."""

    name = NEW_CONVERSATION
    description = "Forget the previous conversation and start a new one in this chat."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {}, "required": []}
    permissions = ActionPermissions(auto_execute=True)
    command = "new"

    async def run(self, context: ActionContext, args: dict[str, Any], call_id: str | None) -> str:
        floor = context.db.reset_history(context.chat_id)
        return f"New conversation started (history before message {floor + 1} hidden)."


class EnableChatAction(Action):
    name = "enable_chat"
    description = "Enable automatic processing of messages in a chat."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {"chat_id": _CHAT_ID_PROPERTY}}
    permissions = ActionPermissions(require_root=True, use_root_db=True)
    command = "enable"

    async def run(self, context: ActionContext, args: dict[str, Any], call_id: str | None) -> str:
        self.require_root(context)
        chat_id = args.get("chat_id") or context.chat_id
        context.db.create_chat(chat_id)
        context.db.set_chat_enabled(chat_id, True)
        return f"Chat {chat_id} enabled."


class DisableChatAction(Action):
    name = "disable_chat"
    description = "Stop automatic processing of messages in a chat."
    parameters_schema: dict[str, Any] = {"type": "object", "properties": {"chat_id": _CHAT_ID_PROPERTY}}
    permissions = ActionPermissions(require_root=True, use_root_db=True)
    command = "disable"

    async def run(self, context: ActionContext, args: dict[str, Any], call_id: str | None) -> str:
        self.require_root(context)
        chat_id = args.get("chat_id") or context.chat_id
        context.db.set_chat_enabled(chat_id, False)
        return f"Chat {chat_id} disabled."


class SetSystemPromptAction(Action):
    """Override the system prompt of the current chat; an empty prompt restores the default."""

    name = "set_system_prompt"
    description = "Replace the system prompt used for this chat. Send an empty prompt to restore the default."
    parameters_schema: dict[str, Any] = {
        "type": "object",
        "properties": {"prompt": {"type": "string", "description": "New system prompt."}},
        "required": [],
    }
    permissions = ActionPermissions(require_root=True, use_root_db=True)
    command = "prompt"

    async def run(self, context: ActionContext, args: dict[str, Any], call_id: str | None) -> str:
        self.require_root(context)
        prompt = (args.get("prompt") or "").strip()
        context.db.create_chat(context.chat_id)
        context.db.set_system_prompt(context.chat_id, prompt or None)
        if prompt:
            return "System prompt updated."
        return "System prompt reset to default."
