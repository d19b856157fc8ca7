"""Command dispatcher for !-prefixed messages.

Commands bypass the model and invoke actions directly by their ``command``
keyword. Nothing about a command is written to the conversation log.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from chatrunner.actions.base import ActionContext
from chatrunner.exceptions import ActionError
from chatrunner.models import IncomingContext

if TYPE_CHECKING:
    from chatrunner.actions.registry import ActionRegistry
    from chatrunner.db import Database
    from chatrunner.transport import Transport

LOGGER = logging.getLogger(__name__)

COMMAND_PREFIX = "!"


def parse_command(text: str) -> tuple[str, list[str]] | None:
    """Split a !-prefixed message into (command, args).

    Returns:
        A (command, args) tuple where command is lowercased, or None if text
        is not a valid !command.
    """
    text = text.strip()
    if not text.startswith(COMMAND_PREFIX):
        return None
    parts = text[1:].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


def map_arguments(schema: dict[str, Any], args: list[str]) -> dict[str, Any]:
    """Assign positional words to the schema's parameters in declaration order.

    The last parameter takes every remaining word, so free text such as a
    prompt survives intact. Missing values fall back to the schema default.
    """
    names = list(schema.get("properties", {}))
    params: dict[str, Any] = {}
    for index, name in enumerate(names):
        if index == len(names) - 1 and len(args) > index:
            value: Any = " ".join(args[index:])
        elif index < len(args):
            value = args[index]
        else:
            value = schema["properties"][name].get("default")
        if value is not None:
            params[name] = value
    return params


class CommandDispatcher:
    """Routes !-prefixed messages to actions and replies to the master id."""

    def __init__(
        self,
        action_registry: ActionRegistry,
        transport: Transport,
        db: Database,
        master_ids: list[str] | None = None,
    ) -> None:
        self._action_registry = action_registry
        self._transport = transport
        self._db = db
        self._master_ids = list(master_ids or [])

    async def dispatch(self, message: IncomingContext) -> bool:
        """Handle ``message`` if it is a command.

        Returns:
            True when the message was a command (handled, even on error),
            False when it should go through the model.
        """
        first = message.first_text_block()
        parsed = parse_command(first.text) if first else None
        if parsed is None:
            return False
        command, args = parsed
        LOGGER.info("Command dispatch: command=%r args=%r", command, args)

        action = self._action_registry.resolve_command(command)
        if action is None:
            await self._reply(message, "❌ *Error*", f"Unknown command: {command}")
            return True

        params = map_arguments(action.parameters_schema, args)
        context = ActionContext(
            chat_id=message.chat_id,
            sender_ids=list(message.sender_ids),
            transport=self._transport,
            db=self._db,
            group_name=message.group_name,
            is_root=any(sender in self._master_ids for sender in message.sender_ids),
            incoming=message,
        )
        try:
            result = await self._action_registry.dispatch(action.name, context, params)
        except ActionError as exc:
            LOGGER.warning("Command %r failed: %s", command, exc)
            await self._reply(message, "❌ *Error*", f"Error: {exc}")
            return True

        if isinstance(result.result, str):
            await self._reply(message, f"⚡ *Command* {COMMAND_PREFIX}{command}", result.result)
        return True

    async def _reply(self, message: IncomingContext, header: str, text: str) -> None:
        target = self._master_ids[0] if self._master_ids else message.chat_id
        await self._transport.reply(f"{header}\n\n{text}", target, message)
