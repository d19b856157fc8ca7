"""Tests for the signal-cli transport."""

from __future__ import annotations

import base64
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from chatrunner.models import AudioBlock, ImageBlock, IncomingContext, QuoteBlock, TextBlock
from chatrunner.signal_adapter import SignalAdapter, _attachment_blocks, _to_incoming

ACCOUNT = "+1000"


def _envelope(data_message: dict, **envelope: object) -> dict:
    base = {
        "sourceNumber": "+111",
        "sourceUuid": "uuid-111",
        "sourceName": "Ana",
        "timestamp": 1709283900000,
        "dataMessage": data_message,
    }
    base.update(envelope)
    return {"envelope": base}


def _adapter() -> SignalAdapter:
    return SignalAdapter(signal_cli_path="signal-cli", account=ACCOUNT, poll_interval_seconds=1)


# ---------------------------------------------------------------------------
# _to_incoming
# ---------------------------------------------------------------------------


def test_private_message_is_normalized():
    message = _to_incoming(_envelope({"message": "  hola  "}), ACCOUNT)

    assert message.chat_id == "+111"
    assert message.sender_ids == ["+111", "uuid-111"]
    assert message.sender_name == "Ana"
    assert message.content == [TextBlock(text="hola")]
    assert message.is_group is False
    assert message.timestamp == datetime(2024, 3, 1, 9, 5, tzinfo=timezone.utc)
    assert message.self_ids == [ACCOUNT]
    assert message.message_key == {"timestamp": 1709283900000, "author": "+111"}


def test_group_message_with_quote_and_mentions():
    data = {
        "message": "registra esto",
        "groupInfo": {"groupId": "grp==", "groupName": "Caja (USD)"},
        "quote": {"text": "ODT 5 arena 20"},
        "mentions": [{"number": ACCOUNT, "uuid": "uuid-bot"}],
    }

    message = _to_incoming(_envelope(data), ACCOUNT)

    assert message.chat_id == "grp=="
    assert message.is_group is True
    assert message.group_name == "Caja (USD)"
    assert message.content == [
        QuoteBlock(content=[TextBlock(text="ODT 5 arena 20")]),
        TextBlock(text="registra esto"),
    ]
    assert message.mentions == [ACCOUNT, "uuid-bot"]


def test_envelopes_without_content_are_dropped():
    assert _to_incoming({"envelope": {"receiptMessage": {}}}, ACCOUNT) is None
    assert _to_incoming(_envelope({"message": "   "}), ACCOUNT) is None
    assert _to_incoming({"result": []}, ACCOUNT) is None


def test_attachments_become_inline_blocks(tmp_path):
    image = tmp_path / "photo.jpg"
    image.write_bytes(b"jpeg-bytes")
    audio = tmp_path / "voice.ogg"
    audio.write_bytes(b"ogg-bytes")

    blocks = _attachment_blocks(
        [
            {"file": str(image), "contentType": "image/jpeg"},
            {"file": str(audio), "contentType": "audio/ogg"},
            {"file": str(tmp_path / "doc.pdf"), "contentType": "application/pdf", "filename": "doc.pdf"},
            {"file": str(tmp_path / "missing.png"), "contentType": "image/png"},
        ]
    )

    assert blocks[0] == ImageBlock(data=base64.b64encode(b"jpeg-bytes").decode(), mime_type="image/jpeg")
    assert blocks[1] == AudioBlock(data=base64.b64encode(b"ogg-bytes").decode(), mime_type="audio/ogg")
    assert blocks[2] == TextBlock(text="[Attachment doc.pdf type=application/pdf]")
    assert isinstance(blocks[3], TextBlock)
    assert blocks[3].text.startswith("Error reading attachment")


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reply_quotes_the_original_message():
    adapter = _adapter()
    original = IncomingContext(
        chat_id="+111",
        sender_ids=["+111"],
        content=[TextBlock(text="hola")],
        timestamp=datetime.now(timezone.utc),
        message_key={"timestamp": 42, "author": "+111"},
    )

    with patch.object(adapter, "_run", AsyncMock(return_value=(0, "", ""))) as run:
        await adapter.reply("ok", "+111", original)

    run.assert_awaited_once_with(
        "send", "-m", "ok", "+111", "--quote-timestamp", "42", "--quote-author", "+111"
    )


@pytest.mark.asyncio
async def test_known_groups_are_addressed_with_group_flag():
    adapter = _adapter()
    listing = json.dumps([{"id": "grp==", "name": "Caja (USD)"}, {"id": "other", "name": "Otro"}])

    with patch.object(adapter, "_run", AsyncMock(return_value=(0, listing, ""))) as run:
        assert await adapter.resolve_group_name("grp==") == "Caja (USD)"
        await adapter.send("hola", "grp==")

    assert run.await_args_list[-1].args == ("send", "-m", "hola", "-g", "grp==")


@pytest.mark.asyncio
async def test_delete_uses_remote_delete():
    adapter = _adapter()

    with patch.object(adapter, "_run", AsyncMock(return_value=(0, "", ""))) as run:
        await adapter.delete("+111", {"timestamp": 42, "author": "+111"})

    run.assert_awaited_once_with("remoteDelete", "-t", "42", "+111")


@pytest.mark.asyncio
async def test_delete_without_key_is_rejected():
    with pytest.raises(ValueError):
        await _adapter().delete("+111", None)


@pytest.mark.asyncio
async def test_failed_send_raises():
    adapter = _adapter()

    with patch.object(adapter, "_run", AsyncMock(return_value=(1, "", "Unregistered user"))):
        with pytest.raises(RuntimeError, match="Unregistered user"):
            await adapter.send("hola", "+222")


def _stub_run(listing: str) -> AsyncMock:
    async def run(*args: str) -> tuple[int, str, str]:
        if args[0] == "listGroups":
            return 0, listing, ""
        return 0, "", ""

    return AsyncMock(side_effect=run)


@pytest.mark.asyncio
async def test_group_addressing_without_prior_poll():
    adapter = _adapter()
    run = _stub_run(json.dumps([{"id": "GROUPID==", "name": "Caja (USD)"}]))

    with patch.object(adapter, "_run", run):
        await adapter.delete("GROUPID==", {"timestamp": 1, "author": "+111"})
        await adapter.reply("ok", "GROUPID==", None)

    calls = [call.args for call in run.await_args_list]
    assert ("remoteDelete", "-t", "1", "-g", "GROUPID==") in calls
    assert calls[-1] == ("send", "-m", "ok", "-g", "GROUPID==")
    assert [c for c in calls if c[0] == "listGroups"] == [("listGroups",)]


@pytest.mark.asyncio
async def test_phone_numbers_skip_group_lookup():
    adapter = _adapter()
    run = _stub_run("[]")

    with patch.object(adapter, "_run", run):
        await adapter.send("hola", "+222")

    run.assert_awaited_once_with("send", "-m", "hola", "+222")
