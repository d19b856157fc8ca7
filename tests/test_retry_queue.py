from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrunner.actions.registry import ActionRegistry
from chatrunner.chat_locks import ChatLocks
from chatrunner.db import Database
from chatrunner.exceptions import ProviderError
from chatrunner.models import ModelResponse, Turn, TurnState
from chatrunner.retry_queue import RetryQueue
from chatrunner.transport import Transport
from chatrunner.turn_processor import TurnProcessor


def _db(tmp_path) -> Database:  # noqa: ANN001
    db = Database(tmp_path / "chatrunner.db")
    db.initialize()
    return db


def _turn(chat_id: str = "chat-1", text: str = "Hola") -> Turn:
    return Turn(
        history=[{"role": "user", "parts": [{"text": text}]}],
        chat_id=chat_id,
        sender_ids=["+111"],
        system_prompt="system",
        master_id="+999",
    )


def _queue(db: Database, llm: MagicMock, **kwargs) -> tuple[RetryQueue, MagicMock]:  # noqa: ANN003
    transport = MagicMock(spec=Transport)
    transport.send = AsyncMock()
    transport.reply = AsyncMock()
    processor = TurnProcessor(db=db, llm=llm, action_registry=ActionRegistry(db), transport=transport)
    return RetryQueue(db=db, processor=processor, **kwargs), transport


@pytest.mark.asyncio
async def test_successful_sweep_marks_turn_processed(tmp_path):
    db = _db(tmp_path)
    queued = db.enqueue_turn(_turn(), "boom")
    llm = MagicMock()
    llm.respond = AsyncMock(return_value=ModelResponse(text="done"))
    queue, _ = _queue(db, llm)

    report = await queue.sweep()

    assert report.processed == [queued.id]
    assert report.failed == []
    assert queue.list_pending() == []
    assert db.get_queued_turn(queued.id).processed is True
    assert [row.message.text() for row in db.get_messages("chat-1", limit=10)] == ["done"]


@pytest.mark.asyncio
async def test_failed_replay_stays_pending_without_new_entry(tmp_path):
    db = _db(tmp_path)
    queued = db.enqueue_turn(_turn(), "boom")
    llm = MagicMock()
    llm.respond = AsyncMock(side_effect=ProviderError("still down"))
    queue, transport = _queue(db, llm)

    report = await queue.sweep()

    assert report.failed == [queued.id]
    pending = queue.list_pending()
    assert [q.id for q in pending] == [queued.id]
    assert pending[0].processed is False
    transport.reply.assert_not_called()


@pytest.mark.asyncio
async def test_one_failure_does_not_block_other_entries(tmp_path):
    db = _db(tmp_path)
    first = db.enqueue_turn(_turn("chat-1"), "boom")
    second = db.enqueue_turn(_turn("chat-2"), "boom")
    llm = MagicMock()
    llm.respond = AsyncMock(side_effect=[ProviderError("flaky"), ModelResponse(text="ok")])
    queue, _ = _queue(db, llm)

    report = await queue.sweep()

    assert report.failed == [first.id]
    assert report.processed == [second.id]
    assert [q.id for q in queue.list_pending()] == [first.id]


@pytest.mark.asyncio
async def test_unexpected_exception_is_isolated(tmp_path):
    db = _db(tmp_path)
    first = db.enqueue_turn(_turn("chat-1"), "boom")
    second = db.enqueue_turn(_turn("chat-2"), "boom")
    processor = MagicMock()
    processor.process = AsyncMock(
        side_effect=[RuntimeError("db locked"), MagicMock(state=TurnState.DONE)]
    )
    queue = RetryQueue(db=db, processor=processor)

    report = await queue.sweep()

    assert report.failed == [first.id]
    assert report.processed == [second.id]
    for call in processor.process.call_args_list:
        assert call.kwargs == {"retry_on_failure": False}


@pytest.mark.asyncio
async def test_pending_turns_are_replayed_oldest_first(tmp_path):
    db = _db(tmp_path)
    ids = [db.enqueue_turn(_turn(text=f"m{i}"), "boom").id for i in range(3)]
    llm = MagicMock()
    llm.respond = AsyncMock(return_value=ModelResponse(text="ok"))
    queue, _ = _queue(db, llm, batch_size=2)

    report = await queue.sweep()

    assert report.processed == ids[:2]
    sent = [call.args[3]["parts"][0]["text"] for call in llm.respond.call_args_list]
    assert sent == ["m0", "m1"]
    assert [q.id for q in queue.list_pending()] == ids[2:]


@pytest.mark.asyncio
async def test_failed_turn_is_retried_at_least_once(tmp_path):
    db = _db(tmp_path)
    llm = MagicMock()
    llm.respond = AsyncMock(side_effect=[ProviderError("down"), ModelResponse(text="recovered")])
    queue, _ = _queue(db, llm)
    processor = queue._processor

    outcome = await processor.process(_turn())
    assert outcome.state is TurnState.QUEUED_FOR_RETRY
    pending = queue.list_pending()
    assert len(pending) == 1
    assert pending[0].processed is False

    report = await queue.sweep()

    assert report.processed == [pending[0].id]
    assert db.get_queued_turn(pending[0].id).processed is True
    assert queue.list_pending() == []


@pytest.mark.asyncio
async def test_sweep_waits_for_chat_lock(tmp_path):
    db = _db(tmp_path)
    db.enqueue_turn(_turn(), "boom")
    llm = MagicMock()
    llm.respond = AsyncMock(return_value=ModelResponse(text="ok"))
    locks = ChatLocks()
    queue, _ = _queue(db, llm, chat_locks=locks)

    async with locks.acquire("chat-1"):
        sweep = asyncio.create_task(queue.sweep())
        await asyncio.sleep(0.05)
        assert not sweep.done()
        llm.respond.assert_not_called()

    report = await sweep
    assert len(report.processed) == 1


@pytest.mark.asyncio
async def test_run_forever_sweeps_until_stopped(tmp_path):
    db = _db(tmp_path)
    queued = db.enqueue_turn(_turn(), "boom")
    llm = MagicMock()
    llm.respond = AsyncMock(return_value=ModelResponse(text="ok"))
    queue, _ = _queue(db, llm, poll_interval_seconds=0.01)

    task = asyncio.create_task(queue.run_forever())
    await asyncio.sleep(0.05)
    queue.stop()
    await asyncio.wait_for(task, timeout=1)

    assert db.get_queued_turn(queued.id).processed is True
    llm.respond.assert_called_once()


@pytest.mark.asyncio
async def test_failing_batch_does_not_starve_newer_turns(tmp_path):
    db = _db(tmp_path)
    bad = [db.enqueue_turn(_turn(f"chat-{i}", text="bad"), "HTTP 400").id for i in range(2)]
    good = db.enqueue_turn(_turn("chat-good", text="good"), "HTTP 503")

    async def respond(system_prompt, declarations, prior_turns, new_turn):  # noqa: ANN001, ANN202
        if new_turn["parts"][0]["text"] == "bad":
            raise ProviderError("HTTP 400: malformed request")
        return ModelResponse(text="ok")

    llm = MagicMock()
    llm.respond = AsyncMock(side_effect=respond)
    queue, _ = _queue(db, llm, batch_size=2)

    first = await queue.sweep()
    assert first.failed == bad
    second = await queue.sweep()

    assert good.id in second.processed
    assert db.get_queued_turn(good.id).processed is True
    assert sorted(q.id for q in queue.list_pending()) == bad
    assert db.get_queued_turn(bad[0]).error == "HTTP 400: malformed request"
