"""Durable queue of turns whose provider call failed, with a periodic replay sweep."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from chatrunner.chat_locks import ChatLocks
from chatrunner.db import Database
from chatrunner.models import QueuedTurn, Turn, TurnState
from chatrunner.turn_processor import TurnProcessor

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepReport:
    processed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)


class RetryQueue:
    """Replays queued turns until each one succeeds.

    A failed replay leaves the entry pending but moves it behind the other
    pending turns, so a batch of permanent failures cannot starve newer ones.
    There is no backoff and no attempt limit.
    """

    def __init__(
        self,
        db: Database,
        processor: TurnProcessor,
        batch_size: int = 10,
        poll_interval_seconds: float = 60.0,
        chat_locks: ChatLocks | None = None,
    ) -> None:
        self._db = db
        self._processor = processor
        self._chat_locks = chat_locks
        self._batch_size = batch_size
        self._poll_interval_seconds = poll_interval_seconds
        self._stop_event = asyncio.Event()

    def enqueue(self, turn: Turn, error: str) -> QueuedTurn:
        return self._db.enqueue_turn(turn, error)

    def list_pending(self, limit: int | None = None) -> list[QueuedTurn]:
        return self._db.list_queued_turns(limit or self._batch_size)

    def mark_processed(self, queued_id: int) -> None:
        self._db.mark_queued_turn_processed(queued_id)

    async def sweep(self, limit: int | None = None) -> SweepReport:
        """Replay up to ``limit`` pending turns; one failure never blocks the rest."""

        report = SweepReport()
        pending = self.list_pending(limit)
        if pending:
            LOGGER.info("Retrying %d queued turn(s)", len(pending))
        for queued in pending:
            try:
                if self._chat_locks is None:
                    outcome = await self._processor.process(queued.turn, retry_on_failure=False)
                else:
                    async with self._chat_locks.acquire(queued.turn.chat_id):
                        outcome = await self._processor.process(queued.turn, retry_on_failure=False)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Error retrying queued turn %d", queued.id)
                self._db.record_failed_attempt(queued.id, str(exc))
                report.failed.append(queued.id)
                continue
            if outcome.state is TurnState.QUEUED_FOR_RETRY:
                LOGGER.warning("Queued turn %d failed again: %s", queued.id, outcome.error)
                self._db.record_failed_attempt(queued.id, outcome.error or queued.error)
                report.failed.append(queued.id)
                continue
            self.mark_processed(queued.id)
            report.processed.append(queued.id)
        return report

    async def run_forever(self) -> None:
        """Run sweep loop until stop() is called."""

        while not self._stop_event.is_set():
            await self.sweep()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()
