"""Rebuild provider turns from the persisted message log."""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Iterable

from chatrunner.exceptions import AudioConversionError
from chatrunner.models import (
    ROLE_ASSISTANT,
    ROLE_TOOL,
    ROLE_USER,
    AudioBlock,
    ChatMessage,
    ContentBlock,
    ImageBlock,
    QuoteBlock,
    TextBlock,
    ToolCallBlock,
)

LOGGER = logging.getLogger(__name__)

AudioTranscoder = Callable[[str], Awaitable[str]]

_PASSTHROUGH_AUDIO = {"wav", "mp3"}


class HistoryFormatter:
    """Translate stored messages (newest first) into provider turns (oldest first).

    User messages become ``user`` turns, assistant messages ``model`` turns and
    each tool result a ``function`` turn addressed by its tool id. A leading
    run of tool results is dropped because a truncated history window can
    start in the middle of a call/result pair.
    """

    def __init__(self, audio_transcoder: AudioTranscoder | None = None) -> None:
        self._audio_transcoder = audio_transcoder

    async def format(self, messages_newest_first: Iterable[ChatMessage]) -> list[dict[str, Any]]:
        ordered = list(reversed(list(messages_newest_first)))
        while ordered and ordered[0].role == ROLE_TOOL:
            ordered.pop(0)

        turns: list[dict[str, Any]] = []
        for message in ordered:
            if message.role == ROLE_USER:
                parts: list[dict[str, Any]] = []
                for block in message.content:
                    parts.extend(await self._user_parts(block))
                turns.append({"role": "user", "parts": parts})
            elif message.role == ROLE_ASSISTANT:
                parts = _assistant_parts(message.content)
                if parts:
                    turns.append({"role": "model", "parts": parts})
            elif message.role == ROLE_TOOL:
                for block in message.content:
                    if isinstance(block, TextBlock):
                        turns.append(function_response_turn(message.tool_id or "", {"result": block.text}))
            else:
                LOGGER.debug("Skipping message with unknown role %r", message.role)
        return turns

    async def _user_parts(self, block: ContentBlock) -> list[dict[str, Any]]:
        if isinstance(block, TextBlock):
            return [{"text": block.text}]
        if isinstance(block, ImageBlock):
            return [{"inlineData": {"data": block.data, "mimeType": block.mime_type}}]
        if isinstance(block, AudioBlock):
            return [await self._audio_part(block)]
        if isinstance(block, QuoteBlock):
            parts: list[dict[str, Any]] = []
            for inner in block.content:
                if isinstance(inner, TextBlock):
                    parts.append({"text": quote_text(inner.text)})
                else:
                    parts.extend(await self._user_parts(inner))
            return parts
        return []

    async def _audio_part(self, block: AudioBlock) -> dict[str, Any]:
        fmt = audio_format(block.mime_type)
        data = block.data
        if fmt not in _PASSTHROUGH_AUDIO:
            if self._audio_transcoder is None:
                raise AudioConversionError(f"No audio transcoder configured for {block.mime_type!r}")
            LOGGER.warning("Unsupported audio format %r, transcoding to mp3", block.mime_type)
            data = await self._audio_transcoder(block.data)
            fmt = "mp3"
        return {"inlineData": {"data": data, "mimeType": f"audio/{fmt}"}}


def _assistant_parts(blocks: list[ContentBlock]) -> list[dict[str, Any]]:
    parts: list[dict[str, Any]] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            parts.append({"text": block.text})
        elif isinstance(block, ToolCallBlock):
            parts.append({"functionCall": {"name": block.name, "args": _safe_json_loads(block.arguments)}})
    return parts


def function_response_turn(name: str, response: dict[str, Any]) -> dict[str, Any]:
    return {"role": "function", "parts": [{"functionResponse": {"name": name, "response": response}}]}


def quote_text(text: str) -> str:
    """Prefix every line with a block-quote marker."""

    return "> " + text.strip().replace("\n", "\n> ")


def audio_format(mime_type: str | None) -> str:
    # "audio/ogg; codecs=opus" -> "ogg"
    if not mime_type or "audio/" not in mime_type:
        return ""
    return mime_type.split("audio/", 1)[1].split(";", 1)[0].strip()


def _safe_json_loads(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
