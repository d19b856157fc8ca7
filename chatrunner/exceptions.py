"""Exception hierarchy for chatrunner."""

from __future__ import annotations


class ChatRunnerError(Exception):
    """Base exception for chatrunner."""


class ProviderError(ChatRunnerError):
    """The model provider call failed (network, quota, malformed request)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ActionError(ChatRunnerError):
    """An action invocation failed."""


class UnknownActionError(ActionError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown action: {name}")
        self.name = name


class PermissionDeniedError(ActionError):
    """Caller lacks the identity an action requires."""


class AudioConversionError(ChatRunnerError):
    """ffmpeg could not transcode an audio block."""
