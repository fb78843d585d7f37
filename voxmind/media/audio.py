"""
Groq Whisper transcription for audio files on disk.

``transcribe`` takes a path and checks its size against the upload limit
before any bytes are read. Every way a file can fail to become text is raised
as ``TranscriptionFailed`` with a short reason, which the speech engine turns
into its error marker.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

import groq
import structlog

if TYPE_CHECKING:
    from voxmind.config import GroqConfig

logger = structlog.get_logger(__name__)


class TranscriptionFailed(Exception):
    """An audio file produced no usable transcript."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def _unreadable(exc: OSError) -> TranscriptionFailed:
    return TranscriptionFailed(f"cannot read audio file: {exc.strerror or exc}")


class AudioTranscriber:
    def __init__(self, config: GroqConfig, *, client: Optional[Any] = None) -> None:
        self._config = config
        self._client = client

    @property
    def is_available(self) -> bool:
        return self._config.is_available

    async def transcribe(self, path: Path) -> str:
        if not self.is_available:
            raise TranscriptionFailed("transcription service not configured")

        try:
            size = (await asyncio.to_thread(path.stat)).st_size
        except OSError as exc:
            logger.warning("audio.unreadable", path=str(path), error=str(exc))
            raise _unreadable(exc) from exc

        limit = self._config.max_audio_bytes
        if size > limit:
            logger.warning("audio.file_too_large", path=str(path), size=size, limit=limit)
            raise TranscriptionFailed(f"audio file too large ({size} bytes, limit {limit})")
        if size == 0:
            raise TranscriptionFailed("audio file is empty")

        try:
            audio = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            logger.warning("audio.unreadable", path=str(path), error=str(exc))
            raise _unreadable(exc) from exc

        try:
            result = await self._connect().audio.transcriptions.create(
                file=(path.name, audio),
                model=self._config.whisper_model,
            )
        except groq.APIError as exc:
            logger.warning("audio.transcription_failed", path=str(path), error=str(exc))
            raise TranscriptionFailed(f"transcription request failed: {exc}") from exc

        text = (getattr(result, "text", "") or "").strip()
        if not text:
            raise TranscriptionFailed("no speech could be transcribed")
        logger.debug("audio.transcribed", path=str(path), audio_bytes=size, length=len(text))
        return text

    def _connect(self) -> Any:
        if self._client is None:
            self._client = groq.AsyncGroq(api_key=self._config.api_key)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
