"""Application entrypoint."""

from __future__ import annotations

import asyncio
import logging

from chatrunner.actions.conversation import (
    DisableChatAction,
    EnableChatAction,
    NewConversationAction,
    SetSystemPromptAction,
)
from chatrunner.actions.delete_message import DeleteMessageAction
from chatrunner.actions.parse_data import ParseDataAction
from chatrunner.actions.registry import ActionRegistry
from chatrunner.agent_runtime import AgentRuntime
from chatrunner.audio import AudioConverter
from chatrunner.chat_locks import ChatLocks
from chatrunner.commands import CommandDispatcher
from chatrunner.config import load_settings, master_ids
from chatrunner.db import Database
from chatrunner.history import HistoryFormatter
from chatrunner.llm.gemini import GeminiProvider
from chatrunner.models import IncomingContext
from chatrunner.retry_queue import RetryQueue
from chatrunner.sheets import GoogleSheetsManager
from chatrunner.signal_adapter import SignalAdapter
from chatrunner.turn_processor import TurnProcessor

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)


async def run() -> None:
    """Initialize app layers and start processing loop."""

    settings = load_settings()
    masters = master_ids(settings)

    db = Database(settings.database_path)
    db.initialize()

    transport = SignalAdapter(
        signal_cli_path=settings.signal_cli_path,
        account=settings.signal_account,
        poll_interval_seconds=settings.signal_poll_interval_seconds,
    )

    actions = ActionRegistry(db)
    if settings.google_sheet_id:
        sheets = GoogleSheetsManager(settings.google_credentials_path, settings.request_timeout_seconds)
        actions.register(ParseDataAction(sheets, settings.google_sheet_id))
    else:
        LOGGER.warning("GOOGLE_SHEET_ID not set, parseData is disabled")
    actions.register(DeleteMessageAction())
    actions.register(NewConversationAction())
    actions.register(EnableChatAction())
    actions.register(DisableChatAction())
    actions.register(SetSystemPromptAction())

    processor = TurnProcessor(
        db=db,
        llm=GeminiProvider(settings),
        action_registry=actions,
        transport=transport,
        master_ids=masters,
        max_continuations=settings.max_continuations,
    )
    chat_locks = ChatLocks()
    runtime = AgentRuntime(
        db=db,
        processor=processor,
        formatter=HistoryFormatter(AudioConverter(settings.ffmpeg_path)),
        default_system_prompt=settings.system_prompt,
        master_ids=masters,
        history_window_messages=settings.history_window_messages,
        respond_only_when_mentioned=settings.respond_only_when_mentioned,
        command_dispatcher=CommandDispatcher(actions, transport, db, masters),
        chat_locks=chat_locks,
    )
    retry_queue = RetryQueue(
        db=db,
        processor=processor,
        batch_size=settings.retry_batch_size,
        poll_interval_seconds=settings.retry_sweep_interval_seconds,
        chat_locks=chat_locks,
    )

    retry_task = asyncio.create_task(retry_queue.run_forever(), name="retry-queue")
    inflight: set[asyncio.Task[None]] = set()

    async def handle(message: IncomingContext) -> None:
        try:
            await runtime.handle_message(message)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to handle message in chat %s", message.chat_id)

    try:
        async for message in transport.poll_messages():
            task = asyncio.create_task(handle(message), name=f"chat-{message.chat_id}")
            inflight.add(task)
            task.add_done_callback(inflight.discard)
    except asyncio.CancelledError:
        raise
    finally:
        await shutdown(retry_queue, retry_task, inflight)


async def shutdown(
    retry_queue: RetryQueue,
    retry_task: asyncio.Task[None],
    inflight: set[asyncio.Task[None]],
) -> None:
    """Stop the retry loop, cancel in-flight turns and wait for all of them to finish."""

    retry_queue.stop()
    tasks = [retry_task, *inflight]
    for task in tasks:
        task.cancel()
    results = await asyncio.gather(*tasks, return_exceptions=True)
    interrupted = sum(isinstance(result, asyncio.CancelledError) for result in results[1:])
    if interrupted:
        LOGGER.warning("Cancelled %d in-flight turn(s) during shutdown", interrupted)
    LOGGER.info("Shutdown complete")


def main() -> None:
    """Synchronous wrapper for asyncio entrypoint."""

    asyncio.run(run())


if __name__ == "__main__":
    main()
