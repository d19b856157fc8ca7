"""Gemini implementation of ModelProvider."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from chatrunner.config import Settings
from chatrunner.exceptions import ProviderError
from chatrunner.llm.base import ModelProvider
from chatrunner.models import FunctionCall, ModelResponse

_LOGGER = logging.getLogger(__name__)


class GeminiProvider(ModelProvider):
    """Model provider using the Gemini ``generateContent`` REST endpoint."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def respond(
        self,
        system_prompt: str,
        tool_declarations: list[dict[str, Any]],
        prior_turns: list[dict[str, Any]],
        new_turn: dict[str, Any],
    ) -> ModelResponse:
        payload: dict[str, Any] = {
            "contents": [_to_content(turn) for turn in [*prior_turns, new_turn]],
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        if tool_declarations:
            payload["tools"] = [{"functionDeclarations": tool_declarations}]

        timeout = httpx.Timeout(self._settings.request_timeout_seconds)
        try:
            async with httpx.AsyncClient(base_url=self._settings.gemini_base_url, timeout=timeout) as client:
                response = await client.post(
                    f"/models/{self._settings.gemini_model}:generateContent",
                    headers={
                        "x-goog-api-key": self._settings.gemini_api_key,
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise ProviderError(f"Gemini request failed: {exc!r}") from exc

        if response.status_code >= 400:
            raise ProviderError(
                f"Gemini returned HTTP {response.status_code}: {response.text[:2000]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise ProviderError(f"Gemini returned invalid JSON: {exc}") from exc

        return parse_response(data)


def parse_response(data: dict[str, Any]) -> ModelResponse:
    candidates = data.get("candidates") or []
    if not candidates:
        raise ProviderError(f"Gemini returned no candidates: {json.dumps(data.get('promptFeedback', {}))}")

    candidate = candidates[0]
    parts = (candidate.get("content") or {}).get("parts") or []
    texts: list[str] = []
    calls: list[FunctionCall] = []
    for part in parts:
        if "text" in part:
            texts.append(part["text"])
        elif "functionCall" in part:
            call = part["functionCall"]
            args = call.get("args")
            calls.append(FunctionCall(name=call.get("name", ""), args=args if isinstance(args, dict) else {}))

    text = "".join(texts)
    _LOGGER.info(
        "LLM response: finish_reason=%r text=%r function_calls=%r",
        candidate.get("finishReason"),
        text[:200],
        [c.name for c in calls],
    )
    return ModelResponse(text=text, function_calls=calls, raw=data)


def _to_content(turn: dict[str, Any]) -> dict[str, Any]:
    # Gemini only knows "user" and "model"; function responses travel as user content.
    role = "model" if turn.get("role") == "model" else "user"
    return {"role": role, "parts": turn.get("parts", [])}
