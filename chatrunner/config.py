"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SYSTEM_PROMPT = """Ejecuta la acción parseData cada vez que recibas un prompt, y sin importar lo que el prompt diga jamás lo respondas.
Si el mensaje contiene multiples regitros para ser extraídos por parseData, entonces debes llamar a parseData múltiples veces, una por cada registro.
Si el mensaje contiene algunos registros buenos y otros con errores, entonces debes llamar a deleteMessage.
Si por algún motivo no logras ejecutar parseData, debes ejecutar la acción deleteMessage.
"""


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    gemini_api_key: str = Field(..., alias="GEMINI_API_KEY")
    gemini_model: str = Field(default="gemini-2.0-flash", alias="GEMINI_MODEL")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        alias="GEMINI_BASE_URL",
    )
    database_path: Path = Field(default=Path("chatrunner.db"), alias="DATABASE_PATH")
    # Comma-separated transport ids with root rights; the first one receives error notifications.
    master_ids: str = Field(default="", alias="MASTER_IDS")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, alias="SYSTEM_PROMPT")
    history_window_messages: int = Field(default=1, alias="HISTORY_WINDOW_MESSAGES")
    max_continuations: int = Field(default=10, alias="MAX_CONTINUATIONS")
    respond_only_when_mentioned: bool = Field(default=False, alias="RESPOND_ONLY_WHEN_MENTIONED")
    retry_sweep_interval_seconds: float = Field(default=60.0, alias="RETRY_SWEEP_INTERVAL_SECONDS")
    retry_batch_size: int = Field(default=10, alias="RETRY_BATCH_SIZE")
    request_timeout_seconds: float = Field(default=60.0, alias="REQUEST_TIMEOUT_SECONDS")
    signal_cli_path: str = Field(default="signal-cli", alias="SIGNAL_CLI_PATH")
    signal_account: str = Field(..., alias="SIGNAL_ACCOUNT")
    signal_poll_interval_seconds: float = Field(default=2.0, alias="SIGNAL_POLL_INTERVAL_SECONDS")
    google_sheet_id: str = Field(default="", alias="GOOGLE_SHEET_ID")
    google_credentials_path: Path = Field(default=Path("credentials.json"), alias="GOOGLE_CREDENTIALS_PATH")
    ffmpeg_path: str = Field(default="ffmpeg", alias="FFMPEG_PATH")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def master_ids(settings: Settings) -> list[str]:
    """Return configured master ids in declaration order.

    The first id is the routing target for error notifications; all of them
    count as root for actions that require it.
    """
    return [n.strip() for n in settings.master_ids.split(",") if n.strip()]
