"""
Text-to-speech synthesis via the ElevenLabs API.

The client is created lazily and any failure comes back as ``None``. Markdown
and HTML are stripped first so the voice does not read out formatting
characters.
"""

from __future__ import annotations

import inspect
import re
from typing import TYPE_CHECKING, Optional

import structlog

if TYPE_CHECKING:
    from voxmind.config import ElevenLabsConfig

logger = structlog.get_logger(__name__)

_STRIP_PATTERNS = [
    re.compile(r"```[\s\S]*?```"),                      # fenced code blocks
    re.compile(r"`[^`]+`"),                             # inline code
    re.compile(r"<[^>]+>"),                             # HTML tags
    re.compile(r"!\[[^\]]*\]\([^)]+\)"),                # images
    re.compile(r"\[([^\]]+)\]\([^)]+\)"),               # links -> keep text
    re.compile(r"^#{1,6}\s+", re.MULTILINE),            # heading markers
    re.compile(r"\*{1,3}([^*]+)\*{1,3}"),               # bold/italic -> keep text
    re.compile(r"(?<!\w)_{1,3}([^_]+)_{1,3}(?!\w)"),    # emphasis -> keep text
    re.compile(r"^[\s]*[-*+]\s", re.MULTILINE),         # list markers
    re.compile(r"^>\s?", re.MULTILINE),                 # blockquotes
    re.compile(r"\n{3,}"),                              # runs of blank lines
]


def clean_text_for_tts(text: str) -> str:
    """Strip markdown/HTML formatting for natural-sounding speech."""
    result = text
    for pattern in _STRIP_PATTERNS:
        result = pattern.sub(r"\1" if pattern.groups else "", result)
    return result.strip()


class TTSSynthesizer:
    """Synthesize speech from text via ElevenLabs."""

    def __init__(self, config: ElevenLabsConfig) -> None:
        self._config = config
        self._client = None  # Lazy-init AsyncElevenLabs

    @property
    def is_available(self) -> bool:
        return self._config.is_available

    async def synthesize(self, text: str, *, voice_id: Optional[str] = None) -> Optional[bytes]:
        """Return audio bytes for *text*, or ``None`` on any failure."""
        if not self._config.is_available:
            return None

        cleaned = clean_text_for_tts(text)
        if not cleaned:
            logger.debug("tts.empty_after_cleaning")
            return None
        if len(cleaned) > self._config.max_text_length:
            logger.debug(
                "tts.text_truncated",
                original_length=len(cleaned),
                max_length=self._config.max_text_length,
            )
            cleaned = cleaned[: self._config.max_text_length]

        client = self._ensure_client()
        if client is None:
            return None

        voice = voice_id or self._config.default_voice_id
        try:
            stream = client.text_to_speech.convert(
                text=cleaned,
                voice_id=voice,
                model_id=self._config.model_id,
                output_format=self._config.output_format,
            )
            if inspect.isawaitable(stream):
                stream = await stream
            chunks = [chunk async for chunk in stream]
        except Exception as exc:
            logger.warning("tts.synthesis_failed", error=str(exc))
            return None

        audio = b"".join(chunks)
        if not audio:
            logger.warning("tts.empty_response")
            return None
        logger.debug("tts.synthesis_success", text_length=len(cleaned), audio_bytes=len(audio))
        return audio

    def _ensure_client(self):
        if self._client is not None:
            return self._client
        try:
            from elevenlabs.client import AsyncElevenLabs

            self._client = AsyncElevenLabs(api_key=self._config.api_key)
        except Exception as exc:
            logger.warning("tts.client_init_failed", error=str(exc))
            return None
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            try:
                await self._client.close()
            except Exception as exc:
                logger.debug("tts.client_close_failed", error=str(exc))
            self._client = None
