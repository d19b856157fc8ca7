"""Signal CLI transport."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

from chatrunner.models import AudioBlock, ContentBlock, ImageBlock, IncomingContext, QuoteBlock, TextBlock
from chatrunner.transport import Transport

LOGGER = logging.getLogger(__name__)

_SIGNAL_ATTACHMENTS_DIR = "~/.local/share/signal-cli/attachments"


class SignalAdapter(Transport):
    """Transport around signal-cli JSON commands."""

    def __init__(
        self,
        signal_cli_path: str,
        account: str,
        poll_interval_seconds: float,
    ) -> None:
        self._signal_cli_path = signal_cli_path
        self._account = account
        self._poll_interval_seconds = poll_interval_seconds
        self._group_names: dict[str, str] = {}

    async def _run(self, *args: str) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            self._signal_cli_path,
            "-o",
            "json",
            "-a",
            self._account,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        return process.returncode or 0, stdout.decode(), stderr.decode().strip()

    async def poll_messages(self) -> AsyncIterator[IncomingContext]:
        """Poll receive endpoint and yield normalized inbound messages."""

        while True:
            returncode, stdout, stderr = await self._run(
                "receive", "-t", str(int(self._poll_interval_seconds))
            )
            if returncode != 0:
                LOGGER.warning("signal-cli receive failed: %s", stderr)
                await asyncio.sleep(self._poll_interval_seconds)
                continue

            for line in stdout.splitlines():
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                    message = await asyncio.to_thread(_to_incoming, payload, self._account)
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    continue
                if message is None:
                    continue
                if message.is_group:
                    message.group_name = message.group_name or await self.resolve_group_name(message.chat_id)
                    self._group_names[message.chat_id] = message.group_name or ""
                yield message

    async def resolve_group_name(self, group_id: str) -> str | None:
        """Return the display name of a group, scanning ``listGroups`` on a cache miss."""

        if not self._group_names.get(group_id):
            await self._load_groups()
        name = self._group_names.get(group_id)
        if not name:
            LOGGER.warning("Could not resolve name of group %s", group_id)
        return name or None

    async def _load_groups(self) -> None:
        returncode, stdout, stderr = await self._run("listGroups")
        if returncode != 0:
            LOGGER.warning("signal-cli listGroups failed: %s", stderr)
            return
        for line in stdout.splitlines():
            try:
                groups = json.loads(line)
            except json.JSONDecodeError:
                continue
            for group in groups if isinstance(groups, list) else [groups]:
                if isinstance(group, dict) and isinstance(group.get("id"), str):
                    self._group_names[group["id"]] = group.get("name") or ""

    async def _is_group(self, chat_id: str) -> bool:
        if chat_id in self._group_names:
            return True
        # Phone numbers are never group ids; other ids are looked up in the account's groups.
        if chat_id.startswith("+"):
            return False
        await self._load_groups()
        return chat_id in self._group_names

    async def _target_args(self, chat_id: str) -> list[str]:
        return ["-g", chat_id] if await self._is_group(chat_id) else [chat_id]

    async def send(self, text: str, chat_id: str) -> None:
        await self._send(["send", "-m", text, *(await self._target_args(chat_id))])

    async def reply(self, text: str, chat_id: str, original: IncomingContext | None) -> None:
        args = ["send", "-m", text, *(await self._target_args(chat_id))]
        key = original.message_key if original else None
        if key and key.get("timestamp") and key.get("author"):
            args.extend(["--quote-timestamp", str(key["timestamp"]), "--quote-author", str(key["author"])])
        await self._send(args)

    async def delete(self, chat_id: str, message_key: dict[str, Any] | None) -> None:
        if not message_key or not message_key.get("timestamp"):
            raise ValueError("Cannot delete a message without its timestamp key")
        target = await self._target_args(chat_id)
        await self._send(["remoteDelete", "-t", str(message_key["timestamp"]), *target])

    async def _send(self, args: list[str]) -> None:
        returncode, _, stderr = await self._run(*args)
        if returncode != 0:
            raise RuntimeError(f"signal-cli {args[0]} failed: {stderr}")


def _attachment_blocks(raw: list[object]) -> list[ContentBlock]:
    """Load image and audio attachments as inline base64 blocks.

    Other attachment kinds become a short text note.
    """
    blocks: list[ContentBlock] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        # Newer signal-cli versions include the stored path directly.
        local_path = (
            item.get("file")
            or item.get("storedFilename")
            or os.path.expanduser(f"{_SIGNAL_ATTACHMENTS_DIR}/{item.get('id', '')}")
        )
        content_type = str(item.get("contentType", "application/octet-stream"))
        if not content_type.startswith(("image/", "audio/")):
            blocks.append(TextBlock(text=f"[Attachment {item.get('filename') or ''} type={content_type}]"))
            continue
        try:
            data = base64.b64encode(Path(str(local_path)).read_bytes()).decode("ascii")
        except OSError as exc:
            blocks.append(TextBlock(text=f"Error reading attachment: {exc}"))
            continue
        if content_type.startswith("image/"):
            blocks.append(ImageBlock(data=data, mime_type=content_type))
        else:
            blocks.append(AudioBlock(data=data, mime_type=content_type))
    return blocks


def _to_incoming(payload: dict[str, object], account: str) -> IncomingContext | None:
    envelope = payload.get("envelope")
    if not isinstance(envelope, dict):
        return None
    data_message = envelope.get("dataMessage")
    if not isinstance(data_message, dict):
        return None

    content: list[ContentBlock] = []
    quote = data_message.get("quote")
    if isinstance(quote, dict) and isinstance(quote.get("text"), str) and quote["text"].strip():
        content.append(QuoteBlock(content=[TextBlock(text=quote["text"])]))

    text = data_message.get("message")
    text = text.strip() if isinstance(text, str) else ""
    if text:
        content.append(TextBlock(text=text))

    raw_attachments = data_message.get("attachments")
    content.extend(_attachment_blocks(raw_attachments if isinstance(raw_attachments, list) else []))

    # Drop messages with no content at all.
    if not content:
        return None

    source = str(envelope.get("sourceNumber") or envelope.get("source") or "unknown")
    sender_ids = [source]
    source_uuid = envelope.get("sourceUuid")
    if isinstance(source_uuid, str) and source_uuid not in sender_ids:
        sender_ids.append(source_uuid)

    timestamp_ms = int(envelope.get("timestamp") or 0)
    timestamp = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)

    group_info = data_message.get("groupInfo")
    if isinstance(group_info, dict) and isinstance(group_info.get("groupId"), str):
        chat_id = group_info["groupId"]
        group_name = group_info.get("groupName") if isinstance(group_info.get("groupName"), str) else None
        is_group = True
    else:
        chat_id = source
        group_name = None
        is_group = False

    mentions: list[str] = []
    for mention in data_message.get("mentions") or []:
        if isinstance(mention, dict):
            mentions.extend(str(mention[k]) for k in ("number", "uuid") if mention.get(k))

    return IncomingContext(
        chat_id=chat_id,
        sender_ids=sender_ids,
        sender_name=str(envelope.get("sourceName") or ""),
        content=content,
        timestamp=timestamp,
        is_group=is_group,
        group_name=group_name,
        self_ids=[account],
        mentions=mentions,
        message_key={"timestamp": timestamp_ms, "author": source},
    )
