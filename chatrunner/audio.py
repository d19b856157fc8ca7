"""Audio transcoding via the ffmpeg CLI."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging

from chatrunner.exceptions import AudioConversionError

LOGGER = logging.getLogger(__name__)

_FFMPEG_TIMEOUT = 60  # seconds


class AudioConverter:
    """Transcode base64 audio (e.g. ogg/opus voice notes) to base64 mp3."""

    def __init__(self, ffmpeg_path: str = "ffmpeg", timeout_seconds: float = _FFMPEG_TIMEOUT) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._timeout_seconds = timeout_seconds

    async def __call__(self, data: str) -> str:
        return await self.to_mp3_base64(data)

    async def to_mp3_base64(self, data: str) -> str:
        try:
            raw = base64.b64decode(data)
        except (binascii.Error, ValueError) as exc:
            raise AudioConversionError(f"Audio payload is not valid base64: {exc}") from exc

        proc = await asyncio.create_subprocess_exec(
            self._ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "error",
            "-i",
            "pipe:0",
            "-f",
            "mp3",
            "pipe:1",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(raw), timeout=self._timeout_seconds)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise AudioConversionError("ffmpeg timed out") from exc
        if proc.returncode != 0:
            raise AudioConversionError(f"ffmpeg failed: {stderr.decode(errors='replace').strip()}")
        LOGGER.info("Transcoded %d audio bytes to %d mp3 bytes", len(raw), len(stdout))
        return base64.b64encode(stdout).decode("ascii")
