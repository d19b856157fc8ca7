"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from chatrunner.models import ChatMessage, ChatRecord, QueuedTurn, StoredMessage, Turn

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management.

    Every public method opens its own connection and commits on exit, so
    multi-step sequences are not transactional as a whole.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS chats (
                chat_id TEXT PRIMARY KEY,
                name TEXT,
                is_enabled INTEGER NOT NULL DEFAULT 0,
                system_prompt TEXT,
                history_floor INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                sender_id TEXT,
                message_json TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(chat_id) REFERENCES chats(chat_id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id, id);

            CREATE TABLE IF NOT EXISTS queued_turns (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                snapshot_json TEXT NOT NULL,
                error TEXT,
                processed INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS action_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                action_name TEXT NOT NULL,
                call_id TEXT,
                input_json TEXT NOT NULL,
                output_json TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )

    def get_chat(self, chat_id: str) -> ChatRecord | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chats WHERE chat_id = ?", (chat_id,)).fetchone()
        if row is None:
            return None
        return ChatRecord(
            chat_id=row["chat_id"],
            name=row["name"],
            is_enabled=bool(row["is_enabled"]),
            system_prompt=row["system_prompt"],
            history_floor=int(row["history_floor"]),
            created_at=row["created_at"],
        )

    def create_chat(self, chat_id: str, name: str | None = None) -> None:
        """Insert the chat, or refresh its name when a new one is given."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chats(chat_id, name, created_at)
                VALUES(?, ?, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    name=COALESCE(excluded.name, chats.name)
                """,
                (chat_id, name, _utc_now_iso()),
            )

    def set_chat_enabled(self, chat_id: str, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE chats SET is_enabled = ? WHERE chat_id = ?", (int(enabled), chat_id))

    def set_system_prompt(self, chat_id: str, system_prompt: str | None) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE chats SET system_prompt = ? WHERE chat_id = ?", (system_prompt, chat_id))

    def reset_history(self, chat_id: str) -> int:
        """Hide every message stored so far from future history reads."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(id), 0) AS floor FROM messages WHERE chat_id = ?", (chat_id,)
            ).fetchone()
            floor = int(row["floor"])
            conn.execute("UPDATE chats SET history_floor = ? WHERE chat_id = ?", (floor, chat_id))
        return floor

    def add_message(
        self,
        chat_id: str,
        message: ChatMessage,
        sender_ids: list[str] | None = None,
    ) -> StoredMessage:
        sender_id = ",".join(sender_ids) if sender_ids else None
        now = _utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO messages(chat_id, sender_id, message_json, created_at) VALUES (?, ?, ?, ?)",
                (chat_id, sender_id, json.dumps(message.to_dict()), now),
            )
            message_id = int(cur.lastrowid)
        return StoredMessage(id=message_id, chat_id=chat_id, sender_id=sender_id, message=message, created_at=now)

    def get_messages(self, chat_id: str, limit: int = 1) -> list[StoredMessage]:
        """Return the latest messages above the chat's history floor, newest first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.id, m.chat_id, m.sender_id, m.message_json, m.created_at
                FROM messages m
                LEFT JOIN chats c ON c.chat_id = m.chat_id
                WHERE m.chat_id = ? AND m.id > COALESCE(c.history_floor, 0)
                ORDER BY m.id DESC
                LIMIT ?
                """,
                (chat_id, limit),
            ).fetchall()
        return [
            StoredMessage(
                id=int(row["id"]),
                chat_id=row["chat_id"],
                sender_id=row["sender_id"],
                message=ChatMessage.from_dict(json.loads(row["message_json"])),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def enqueue_turn(self, turn: Turn, error: str) -> QueuedTurn:
        now = _utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO queued_turns(chat_id, snapshot_json, error, processed, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (turn.chat_id, json.dumps(turn.to_snapshot()), error, now, now),
            )
            queued_id = int(cur.lastrowid)
        return QueuedTurn(id=queued_id, turn=turn, error=error, processed=False, created_at=now)

    def list_queued_turns(self, limit: int = 10) -> list[QueuedTurn]:
        """Return unprocessed queued turns, least recently attempted first."""

        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM queued_turns WHERE processed = 0 ORDER BY updated_at ASC, id ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [_to_queued_turn(row) for row in rows]

    def get_queued_turn(self, queued_id: int) -> QueuedTurn | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM queued_turns WHERE id = ?", (queued_id,)).fetchone()
        return _to_queued_turn(row) if row else None

    def record_failed_attempt(self, queued_id: int, error: str) -> None:
        """Keep the turn pending but move it behind every other pending turn."""

        with self._connect() as conn:
            conn.execute(
                "UPDATE queued_turns SET error = ?, updated_at = ? WHERE id = ?",
                (error, _utc_now_iso(), queued_id),
            )

    def mark_queued_turn_processed(self, queued_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE queued_turns SET processed = 1, updated_at = ? WHERE id = ?",
                (_utc_now_iso(), queued_id),
            )

    def log_action_execution(
        self,
        chat_id: str,
        action_name: str,
        call_id: str | None,
        action_input: dict[str, Any],
        action_output: Any,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO action_executions(chat_id, action_name, call_id, input_json, output_json, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    chat_id,
                    action_name,
                    call_id,
                    json.dumps(action_input, default=str),
                    json.dumps(action_output, default=str),
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_action_executions(self, chat_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT action_name, call_id, input_json, output_json, succeeded FROM action_executions "
                "WHERE chat_id = ? ORDER BY id ASC",
                (chat_id,),
            ).fetchall()
        return [dict(row) for row in rows]


def _to_queued_turn(row: sqlite3.Row) -> QueuedTurn:
    return QueuedTurn(
        id=int(row["id"]),
        turn=Turn.from_snapshot(json.loads(row["snapshot_json"])),
        error=row["error"] or "",
        processed=bool(row["processed"]),
        created_at=row["created_at"],
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
