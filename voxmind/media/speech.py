"""
Speech engine: the runtime's single entry point for audio in and out.

``transcribe`` never raises: when speech cannot be turned into text it
returns a marker string of the form

    __TRANSCRIPTION_ERROR__: <reason> (audio: <path>)

and the request carries on with that marker as its content.

``synthesize`` writes the audio to ``output_dir`` and returns the file path,
or ``None`` if no audio could be produced.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import structlog

from voxmind._utils import new_id
from voxmind.config import ElevenLabsConfig, GroqConfig
from voxmind.media.audio import AudioTranscriber, TranscriptionFailed
from voxmind.media.tts import TTSSynthesizer

logger = structlog.get_logger(__name__)

TRANSCRIPTION_ERROR_PREFIX = "__TRANSCRIPTION_ERROR__"


def transcription_error(reason: str, audio_path: str) -> str:
    return f"{TRANSCRIPTION_ERROR_PREFIX}: {reason} (audio: {audio_path})"


def is_transcription_error(text: str) -> bool:
    return text.startswith(TRANSCRIPTION_ERROR_PREFIX)


def _extension_for(output_format: str) -> str:
    codec = output_format.split("_", 1)[0].lower()
    return {"mp3": "mp3", "pcm": "pcm", "ulaw": "ulaw", "opus": "opus"}.get(codec, "bin")


class SpeechEngine:
    """Facade over the transcriber and the synthesizer."""

    def __init__(
        self,
        groq: GroqConfig,
        elevenlabs: ElevenLabsConfig,
        *,
        transcriber: Optional[AudioTranscriber] = None,
        synthesizer: Optional[TTSSynthesizer] = None,
    ):
        self._transcriber = transcriber or AudioTranscriber(groq)
        self._synthesizer = synthesizer or TTSSynthesizer(elevenlabs)
        self._output_dir = Path(elevenlabs.output_dir)
        self._extension = _extension_for(elevenlabs.output_format)

    async def transcribe(self, audio_path: str) -> str:
        try:
            return await self._transcriber.transcribe(Path(audio_path))
        except TranscriptionFailed as exc:
            return transcription_error(exc.reason, audio_path)

    async def synthesize(self, text: str) -> Optional[str]:
        audio = await self._synthesizer.synthesize(text)
        if audio is None:
            return None
        target = self._output_dir / f"{new_id('speech')}.{self._extension}"
        try:
            await asyncio.to_thread(self._write, target, audio)
        except OSError as exc:
            logger.warning("speech.write_failed", path=str(target), error=str(exc))
            return None
        logger.info("speech.synthesized", path=str(target), audio_bytes=len(audio))
        return str(target)

    @staticmethod
    def _write(target: Path, audio: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(audio)

    async def close(self) -> None:
        await self._transcriber.close()
        await self._synthesizer.close()
