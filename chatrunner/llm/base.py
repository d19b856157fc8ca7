"""Model provider interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from chatrunner.models import ModelResponse


class ModelProvider(ABC):
    """Abstract model provider used by the turn processor."""

    @abstractmethod
    async def respond(
        self,
        system_prompt: str,
        tool_declarations: list[dict[str, Any]],
        prior_turns: list[dict[str, Any]],
        new_turn: dict[str, Any],
    ) -> ModelResponse:
        """Send ``new_turn`` on top of ``prior_turns`` and return the model's reply.

        Raises:
            ProviderError: the request failed or the response was unusable.
        """
