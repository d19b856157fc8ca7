"""Tests for the !command dispatch system."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrunner.actions.conversation import EnableChatAction, SetSystemPromptAction
from chatrunner.actions.registry import ActionRegistry
from chatrunner.commands import CommandDispatcher, map_arguments, parse_command
from chatrunner.db import Database
from chatrunner.models import IncomingContext, TextBlock
from chatrunner.transport import Transport


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _msg(text: str, sender: str = "+111", chat_id: str = "g1") -> IncomingContext:
    return IncomingContext(
        chat_id=chat_id,
        sender_ids=[sender],
        content=[TextBlock(text=text)],
        timestamp=datetime.now(timezone.utc),
        is_group=True,
        group_name="Caja (USD)",
    )


def _transport() -> MagicMock:
    transport = MagicMock(spec=Transport)
    transport.send = AsyncMock()
    transport.reply = AsyncMock()
    transport.delete = AsyncMock()
    return transport


def _dispatcher(tmp_path, master_ids: list[str] | None = None) -> tuple[CommandDispatcher, MagicMock, Database]:  # noqa: ANN001
    db = Database(tmp_path / "chatrunner.db")
    db.initialize()
    registry = ActionRegistry(db)
    registry.register(EnableChatAction())
    registry.register(SetSystemPromptAction())
    transport = _transport()
    return CommandDispatcher(registry, transport, db, master_ids), transport, db


# ===========================================================================
# parse_command
# ===========================================================================


class TestParseCommand:
    def test_regular_text_returns_none(self):
        assert parse_command("hello world") is None

    def test_empty_string_returns_none(self):
        assert parse_command("") is None

    def test_prefix_alone_returns_none(self):
        assert parse_command("!   ") is None

    def test_command_with_no_args(self):
        assert parse_command("!new") == ("new", [])

    def test_command_keyword_is_lowercased_args_kept(self):
        assert parse_command("  !PROMPT Sé Breve  ") == ("prompt", ["Sé", "Breve"])


# ===========================================================================
# map_arguments
# ===========================================================================


class TestMapArguments:
    SCHEMA = {
        "type": "object",
        "properties": {
            "chat_id": {"type": "string"},
            "prompt": {"type": "string", "default": "none"},
        },
    }

    def test_positional_mapping_with_trailing_join(self):
        assert map_arguments(self.SCHEMA, ["g2", "be", "brief"]) == {"chat_id": "g2", "prompt": "be brief"}

    def test_missing_values_use_default(self):
        assert map_arguments(self.SCHEMA, ["g2"]) == {"chat_id": "g2", "prompt": "none"}

    def test_missing_without_default_is_skipped(self):
        assert map_arguments(self.SCHEMA, []) == {"prompt": "none"}

    def test_single_parameter_takes_all_words(self):
        schema = {"properties": {"prompt": {"type": "string"}}}
        assert map_arguments(schema, ["a", "b", "c"]) == {"prompt": "a b c"}


# ===========================================================================
# CommandDispatcher
# ===========================================================================


class TestCommandDispatcher:
    @pytest.mark.asyncio
    async def test_plain_text_is_not_a_command(self, tmp_path):
        dispatcher, transport, _ = _dispatcher(tmp_path, ["+999"])

        assert await dispatcher.dispatch(_msg("hola")) is False
        transport.reply.assert_not_called()

    @pytest.mark.asyncio
    async def test_message_without_text_is_not_a_command(self, tmp_path):
        dispatcher, _, _ = _dispatcher(tmp_path)
        message = _msg("ignored")
        message.content = []

        assert await dispatcher.dispatch(message) is False

    @pytest.mark.asyncio
    async def test_unknown_command_replies_error_to_master(self, tmp_path):
        dispatcher, transport, _ = _dispatcher(tmp_path, ["+999"])
        message = _msg("!frobnicate now")

        assert await dispatcher.dispatch(message) is True

        transport.reply.assert_awaited_once_with("❌ *Error*\n\nUnknown command: frobnicate", "+999", message)

    @pytest.mark.asyncio
    async def test_root_sender_enables_chat(self, tmp_path):
        dispatcher, transport, db = _dispatcher(tmp_path, ["+999"])

        assert await dispatcher.dispatch(_msg("!enable", sender="+999")) is True

        assert db.get_chat("g1").is_enabled is True
        text, target, _ = transport.reply.await_args.args
        assert text == "⚡ *Command* !enable\n\nChat g1 enabled."
        assert target == "+999"

    @pytest.mark.asyncio
    async def test_non_root_sender_gets_error_reply(self, tmp_path):
        dispatcher, transport, db = _dispatcher(tmp_path, ["+999"])

        assert await dispatcher.dispatch(_msg("!enable")) is True

        assert db.get_chat("g1") is None
        text, target, _ = transport.reply.await_args.args
        assert text.startswith("❌ *Error*\n\nError: ")
        assert "root" in text
        assert target == "+999"

    @pytest.mark.asyncio
    async def test_prompt_words_are_joined(self, tmp_path):
        dispatcher, _, db = _dispatcher(tmp_path, ["+999"])

        await dispatcher.dispatch(_msg("!prompt Responde siempre en inglés", sender="+999"))

        assert db.get_chat("g1").system_prompt == "Responde siempre en inglés"

    @pytest.mark.asyncio
    async def test_replies_to_chat_when_no_master_configured(self, tmp_path):
        dispatcher, transport, _ = _dispatcher(tmp_path)

        await dispatcher.dispatch(_msg("!unknown"))

        assert transport.reply.await_args.args[1] == "g1"
