"""Model/action exchange loop for a single conversational turn."""

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Any

from chatrunner.actions.base import ActionContext
from chatrunner.actions.conversation import NEW_CONVERSATION
from chatrunner.actions.registry import ActionRegistry
from chatrunner.db import Database
from chatrunner.exceptions import ActionError, ProviderError
from chatrunner.history import function_response_turn
from chatrunner.llm.base import ModelProvider
from chatrunner.models import (
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ChatMessage,
    FunctionCall,
    TextBlock,
    ToolCallBlock,
    Turn,
    TurnOutcome,
    TurnState,
)
from chatrunner.transport import Transport

LOGGER = logging.getLogger(__name__)


class TurnProcessor:
    """Drive the model until it stops requesting actions.

    Each iteration sends the formatted history to the provider, persists the
    assistant message, runs the requested actions sequentially and persists
    their results. Another iteration follows when an action asked for it
    (``auto_continue``) or failed, up to ``max_continuations`` extra provider
    calls. A provider failure captures the pending turn in the retry queue.
    """

    def __init__(
        self,
        db: Database,
        llm: ModelProvider,
        action_registry: ActionRegistry,
        transport: Transport,
        master_ids: list[str] | None = None,
        max_continuations: int = 10,
    ) -> None:
        self._db = db
        self._llm = llm
        self._action_registry = action_registry
        self._transport = transport
        self._master_ids = list(master_ids or [])
        self._max_continuations = max_continuations

    async def process(self, turn: Turn, retry_on_failure: bool = True) -> TurnOutcome:
        """Run one turn to completion.

        With ``retry_on_failure=False`` (replays from the retry queue) a
        provider failure is reported in the outcome without queuing a new
        snapshot or notifying again.
        """
        if not turn.history:
            raise ValueError(f"Turn for chat {turn.chat_id} has no history to send")

        history: list[dict[str, Any]] = list(turn.history)
        declarations = self._action_registry.list_declarations()
        context = self._action_context(turn)
        outcome = TurnOutcome(state=TurnState.SENDING)

        while True:
            outcome.iterations += 1
            outcome.state = TurnState.SENDING
            try:
                response = await self._llm.respond(turn.system_prompt, declarations, history[:-1], history[-1])
            except ProviderError as exc:
                outcome.state = TurnState.QUEUED_FOR_RETRY
                outcome.error = str(exc)
                LOGGER.warning("Provider call failed for chat %s: %s", turn.chat_id, exc)
                if retry_on_failure:
                    await self._queue_for_retry(turn, history, outcome.error)
                return outcome

            assistant_message = _assistant_message(response.text, response.function_calls)
            if assistant_message.content:
                self._db.add_message(turn.chat_id, assistant_message, turn.sender_ids)
                outcome.assistant_messages.append(assistant_message)

            if not response.function_calls:
                outcome.state = TurnState.DONE
                return outcome

            outcome.state = TurnState.AWAITING_TOOLS
            history.append(
                {
                    "role": "model",
                    "parts": [{"functionCall": {"name": c.name, "args": c.args}} for c in response.function_calls],
                }
            )
            continue_processing = await self._run_actions(
                turn, context, response.function_calls, assistant_message.tool_calls(), history, outcome
            )

            if not continue_processing:
                outcome.state = TurnState.DONE
                return outcome
            if outcome.iterations > self._max_continuations:
                LOGGER.warning(
                    "Chat %s reached the limit of %d continuations, stopping",
                    turn.chat_id,
                    self._max_continuations,
                )
                outcome.state = TurnState.DONE
                outcome.truncated = True
                return outcome
            outcome.state = TurnState.CONTINUING
            LOGGER.info("Continuing chat %s (iteration %d)", turn.chat_id, outcome.iterations + 1)

    async def _run_actions(
        self,
        turn: Turn,
        context: ActionContext,
        calls: list[FunctionCall],
        tool_blocks: list[ToolCallBlock],
        history: list[dict[str, Any]],
        outcome: TurnOutcome,
    ) -> bool:
        continue_processing = False
        # Calls and tool blocks are paired by position so repeated names keep distinct ids.
        for call, block in zip(calls, tool_blocks):
            args = {**call.args, "group_name": turn.group_name}
            LOGGER.info("Executing %s [%s] args=%r", call.name, block.tool_id, args)
            try:
                result = await self._action_registry.dispatch(call.name, context, args, block.tool_id)
            except ActionError as exc:
                error_message = f"Error executing {call.name}: {exc}"
                LOGGER.warning("%s", error_message)
                tool_message = ChatMessage(
                    role=ROLE_TOOL, tool_id=block.tool_id, content=[TextBlock(text=error_message)]
                )
                self._db.add_message(turn.chat_id, tool_message, turn.sender_ids)
                outcome.tool_messages.append(tool_message)
                await self._notify(
                    f"❌ *Tool Error*   [{short_tool_id(block.tool_id)}]\n\n{error_message}", turn
                )
                history.append(function_response_turn(call.name, {"error": error_message}))
                continue_processing = True
                continue

            if call.name != NEW_CONVERSATION:
                tool_message = ChatMessage(
                    role=ROLE_TOOL, tool_id=block.tool_id, content=[TextBlock(text=stringify_result(result.result))]
                )
                self._db.add_message(turn.chat_id, tool_message, turn.sender_ids)
                outcome.tool_messages.append(tool_message)

            history.append(function_response_turn(call.name, {"result": stringify_result(result.result, indent=2)}))
            if result.permissions.auto_continue:
                continue_processing = True
        return continue_processing

    async def _queue_for_retry(self, turn: Turn, history: list[dict[str, Any]], error: str) -> None:
        pending = Turn(
            history=list(history),
            chat_id=turn.chat_id,
            sender_ids=turn.sender_ids,
            system_prompt=turn.system_prompt,
            master_id=turn.master_id,
            group_name=turn.group_name,
            context=turn.context,
        )
        queued = self._db.enqueue_turn(pending, error)
        LOGGER.info("Queued turn %d for chat %s", queued.id, turn.chat_id)
        await self._notify(
            f"❌ *Error*\n\nAn error occurred while processing the message.\n\n{error}",
            turn,
            quote=True,
        )

    async def _notify(self, text: str, turn: Turn, quote: bool = False) -> None:
        if not turn.master_id:
            return
        try:
            if quote:
                await self._transport.reply(text, turn.master_id, turn.context)
            else:
                await self._transport.send(text, turn.master_id)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Could not notify %s", turn.master_id)

    def _action_context(self, turn: Turn) -> ActionContext:
        return ActionContext(
            chat_id=turn.chat_id,
            sender_ids=list(turn.sender_ids),
            transport=self._transport,
            db=self._db,
            group_name=turn.group_name,
            is_root=any(sender in self._master_ids for sender in turn.sender_ids),
            incoming=turn.context,
        )


def _assistant_message(text: str, calls: list[FunctionCall]) -> ChatMessage:
    message = ChatMessage(role=ROLE_ASSISTANT)
    if text and text.strip():
        message.content.append(TextBlock(text=text))
    for call in calls:
        message.content.append(
            ToolCallBlock(tool_id=new_tool_id(), name=call.name, arguments=json.dumps(call.args))
        )
    return message


def new_tool_id() -> str:
    return f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"


def short_tool_id(tool_id: str) -> str:
    return tool_id.rsplit("_", 1)[-1][:6]


def stringify_result(result: Any, indent: int | None = None) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=indent, default=str)
