"""Core agent runtime."""

from __future__ import annotations

import logging
import re

from chatrunner.chat_locks import ChatLocks
from chatrunner.commands import CommandDispatcher
from chatrunner.db import Database
from chatrunner.history import HistoryFormatter
from chatrunner.models import (
    ROLE_USER,
    ChatMessage,
    ContentBlock,
    IncomingContext,
    TextBlock,
    Turn,
    TurnOutcome,
)
from chatrunner.turn_processor import TurnProcessor

LOGGER = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%m/%d/%Y, %I:%M %p"


class AgentRuntime:
    """Chat-isolated runtime: persists inbound messages and runs model turns."""

    def __init__(
        self,
        db: Database,
        processor: TurnProcessor,
        formatter: HistoryFormatter,
        default_system_prompt: str,
        master_ids: list[str] | None = None,
        history_window_messages: int = 1,
        respond_only_when_mentioned: bool = False,
        command_dispatcher: CommandDispatcher | None = None,
        chat_locks: ChatLocks | None = None,
    ) -> None:
        self._db = db
        self._processor = processor
        self._formatter = formatter
        self._default_system_prompt = default_system_prompt
        self._master_ids = list(master_ids or [])
        self._history_window_messages = history_window_messages
        self._respond_only_when_mentioned = respond_only_when_mentioned
        self._command_dispatcher = command_dispatcher
        self._chat_locks = chat_locks or ChatLocks()

    async def handle_message(self, message: IncomingContext) -> TurnOutcome | None:
        """Handle one inbound message.

        Returns the turn outcome, or None when no model turn ran (command,
        disabled chat, gated group message).
        """
        if self._command_dispatcher and await self._command_dispatcher.dispatch(message):
            return None

        async with self._chat_locks.acquire(message.chat_id):
            return await self._handle_in_chat(message)

    async def _handle_in_chat(self, message: IncomingContext) -> TurnOutcome | None:
        chat_name = message.group_name if message.is_group else message.sender_name
        self._db.create_chat(message.chat_id, chat_name or None)

        chat = self._db.get_chat(message.chat_id)
        system_prompt = (chat.system_prompt if chat else None) or self._default_system_prompt
        if message.is_group:
            system_prompt += f'\n\nNombre del grupo: "{message.group_name or ""}"'

        user_message = ChatMessage(role=ROLE_USER, content=self._stamp_content(message))
        self._db.add_message(message.chat_id, user_message, message.sender_ids)

        if not self._should_respond(message):
            LOGGER.info("Not responding in chat %s", message.chat_id)
            return None

        stored = self._db.get_messages(message.chat_id, self._history_window_messages)
        history = await self._formatter.format([row.message for row in stored])
        if not history:
            LOGGER.warning("Chat %s has no usable history, skipping turn", message.chat_id)
            return None

        turn = Turn(
            history=history,
            chat_id=message.chat_id,
            sender_ids=list(message.sender_ids),
            system_prompt=system_prompt,
            master_id=self._master_id(message),
            group_name=message.group_name,
            context=message,
        )
        outcome = await self._processor.process(turn)
        LOGGER.info(
            "Turn for chat %s ended in %s after %d iteration(s)",
            message.chat_id,
            outcome.state.value,
            outcome.iterations,
        )
        return outcome

    def _stamp_content(self, message: IncomingContext) -> list[ContentBlock]:
        """Prefix the first text block with time (and sender name in groups)."""

        stamp = message.timestamp.strftime(_TIMESTAMP_FORMAT)
        first = message.first_text_block()
        content: list[ContentBlock] = []
        for block in message.content:
            if block is not first:
                content.append(block)
                continue
            if message.is_group:
                text = _strip_self_mention(block.text, message.self_ids)
                content.append(TextBlock(text=f"[{stamp}] {message.sender_name}: {text}"))
            else:
                content.append(TextBlock(text=f"[{stamp}] {block.text}"))
        return content

    def _should_respond(self, message: IncomingContext) -> bool:
        chat = self._db.get_chat(message.chat_id)
        if chat is None or not chat.is_enabled:
            return False
        if not message.is_group:
            return True
        if not self._respond_only_when_mentioned:
            return True
        return any(
            mention.startswith(self_id) for mention in message.mentions for self_id in message.self_ids
        )

    def _master_id(self, message: IncomingContext) -> str:
        if self._master_ids:
            return self._master_ids[0]
        return message.sender_ids[0] if message.sender_ids else message.chat_id


def _strip_self_mention(text: str, self_ids: list[str]) -> str:
    if not self_ids:
        return text
    pattern = re.compile(r"^@(" + "|".join(re.escape(s) for s in self_ids) + r") *")
    return pattern.sub("", text)
