"""Messaging transport interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from chatrunner.models import IncomingContext


class Transport(ABC):
    """Outbound messaging capability handed to the runtime and to actions."""

    @abstractmethod
    async def send(self, text: str, chat_id: str) -> None:
        """Send a plain message."""

    @abstractmethod
    async def reply(self, text: str, chat_id: str, original: IncomingContext | None) -> None:
        """Send a message quoting ``original`` when the transport supports it."""

    @abstractmethod
    async def delete(self, chat_id: str, message_key: dict[str, Any] | None) -> None:
        """Delete a previously received message."""
