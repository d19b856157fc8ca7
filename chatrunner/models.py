"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"


@dataclass(slots=True)
class TextBlock:
    text: str


@dataclass(slots=True)
class ImageBlock:
    """Inline image, base64 encoded."""

    data: str
    mime_type: str


@dataclass(slots=True)
class AudioBlock:
    """Inline audio, base64 encoded."""

    data: str
    mime_type: str | None = None


@dataclass(slots=True)
class QuoteBlock:
    """Content quoted from an earlier message."""

    content: list[ContentBlock] = field(default_factory=list)


@dataclass(slots=True)
class ToolCallBlock:
    """Action call emitted by the model; ``arguments`` is a JSON string."""

    tool_id: str
    name: str
    arguments: str


ContentBlock = Union[TextBlock, ImageBlock, AudioBlock, QuoteBlock, ToolCallBlock]


def block_to_dict(block: ContentBlock) -> dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ImageBlock):
        return {"type": "image", "data": block.data, "mime_type": block.mime_type}
    if isinstance(block, AudioBlock):
        return {"type": "audio", "data": block.data, "mime_type": block.mime_type}
    if isinstance(block, QuoteBlock):
        return {"type": "quote", "content": [block_to_dict(b) for b in block.content]}
    if isinstance(block, ToolCallBlock):
        return {"type": "tool", "tool_id": block.tool_id, "name": block.name, "arguments": block.arguments}
    raise TypeError(f"Unsupported content block: {block!r}")


def block_from_dict(data: dict[str, Any]) -> ContentBlock | None:
    """Rebuild a content block; unknown block types yield None."""

    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=str(data.get("text", "")))
    if kind == "image":
        return ImageBlock(data=data.get("data", ""), mime_type=data.get("mime_type", "image/jpeg"))
    if kind == "audio":
        return AudioBlock(data=data.get("data", ""), mime_type=data.get("mime_type"))
    if kind == "quote":
        return QuoteBlock(content=_blocks_from_list(data.get("content", [])))
    if kind == "tool":
        return ToolCallBlock(
            tool_id=data["tool_id"],
            name=data["name"],
            arguments=data.get("arguments") or "{}",
        )
    return None


def _blocks_from_list(raw: list[dict[str, Any]]) -> list[ContentBlock]:
    blocks = (block_from_dict(item) for item in raw if isinstance(item, dict))
    return [block for block in blocks if block is not None]


@dataclass(slots=True)
class ChatMessage:
    """One entry of a conversation log: a user, assistant or tool message."""

    role: str
    content: list[ContentBlock] = field(default_factory=list)
    tool_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": [block_to_dict(b) for b in self.content]}
        if self.tool_id is not None:
            data["tool_id"] = self.tool_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        return cls(
            role=str(data.get("role", "")),
            content=_blocks_from_list(data.get("content") or []),
            tool_id=data.get("tool_id"),
        )

    def tool_calls(self) -> list[ToolCallBlock]:
        return [block for block in self.content if isinstance(block, ToolCallBlock)]

    def text(self) -> str:
        return "\n".join(block.text for block in self.content if isinstance(block, TextBlock))


@dataclass(slots=True)
class StoredMessage:
    """Persisted message row."""

    id: int
    chat_id: str
    sender_id: str | None
    message: ChatMessage
    created_at: str


@dataclass(slots=True)
class ChatRecord:
    """Persisted chat settings."""

    chat_id: str
    name: str | None
    is_enabled: bool
    system_prompt: str | None
    history_floor: int
    created_at: str


@dataclass(slots=True)
class IncomingContext:
    """Inbound message normalized by a transport adapter."""

    chat_id: str
    sender_ids: list[str]
    content: list[ContentBlock]
    timestamp: datetime
    sender_name: str = ""
    is_group: bool = False
    group_name: str | None = None
    self_ids: list[str] = field(default_factory=list)
    mentions: list[str] = field(default_factory=list)
    message_key: dict[str, Any] | None = None

    def first_text_block(self) -> TextBlock | None:
        return next((block for block in self.content if isinstance(block, TextBlock)), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "sender_ids": list(self.sender_ids),
            "content": [block_to_dict(b) for b in self.content],
            "timestamp": self.timestamp.isoformat(),
            "sender_name": self.sender_name,
            "is_group": self.is_group,
            "group_name": self.group_name,
            "self_ids": list(self.self_ids),
            "mentions": list(self.mentions),
            "message_key": self.message_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IncomingContext:
        raw_ts = data.get("timestamp")
        timestamp = datetime.fromisoformat(raw_ts) if raw_ts else datetime.now(timezone.utc)
        return cls(
            chat_id=data["chat_id"],
            sender_ids=list(data.get("sender_ids") or []),
            content=_blocks_from_list(data.get("content") or []),
            timestamp=timestamp,
            sender_name=data.get("sender_name") or "",
            is_group=bool(data.get("is_group")),
            group_name=data.get("group_name"),
            self_ids=list(data.get("self_ids") or []),
            mentions=list(data.get("mentions") or []),
            message_key=data.get("message_key"),
        )


@dataclass(slots=True)
class FunctionCall:
    """Action invocation requested by the model."""

    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ModelResponse:
    """Result from a model provider request."""

    text: str = ""
    function_calls: list[FunctionCall] = field(default_factory=list)
    raw: dict[str, Any] | None = None


@dataclass(slots=True)
class ActionPermissions:
    auto_execute: bool = False
    require_root: bool = False
    use_root_db: bool = False
    auto_continue: bool = False


@dataclass(slots=True)
class ActionResult:
    """Value returned by an action plus the permissions it asserts for this call."""

    result: Any
    permissions: ActionPermissions = field(default_factory=ActionPermissions)


@dataclass(slots=True)
class Turn:
    """Everything the turn processor needs to drive one model exchange."""

    history: list[dict[str, Any]]
    chat_id: str
    sender_ids: list[str]
    system_prompt: str
    master_id: str
    group_name: str | None = None
    context: IncomingContext | None = None

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "history": self.history,
            "chat_id": self.chat_id,
            "sender_ids": list(self.sender_ids),
            "system_prompt": self.system_prompt,
            "master_id": self.master_id,
            "group_name": self.group_name,
            "context": self.context.to_dict() if self.context else None,
        }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> Turn:
        context = data.get("context")
        return cls(
            history=list(data.get("history") or []),
            chat_id=data["chat_id"],
            sender_ids=list(data.get("sender_ids") or []),
            system_prompt=data.get("system_prompt") or "",
            master_id=data.get("master_id") or "",
            group_name=data.get("group_name"),
            context=IncomingContext.from_dict(context) if context else None,
        )


@dataclass(slots=True)
class QueuedTurn:
    """Durable snapshot of a turn whose provider call failed."""

    id: int
    turn: Turn
    error: str
    processed: bool
    created_at: str


class TurnState(str, Enum):
    SENDING = "sending"
    AWAITING_TOOLS = "awaiting_tools"
    CONTINUING = "continuing"
    DONE = "done"
    QUEUED_FOR_RETRY = "queued_for_retry"


@dataclass(slots=True)
class TurnOutcome:
    """Summary of one processed turn."""

    state: TurnState
    iterations: int = 0
    assistant_messages: list[ChatMessage] = field(default_factory=list)
    tool_messages: list[ChatMessage] = field(default_factory=list)
    error: str | None = None
    truncated: bool = False
