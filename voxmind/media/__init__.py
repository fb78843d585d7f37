"""Speech in and out: Whisper transcription and ElevenLabs synthesis."""

from __future__ import annotations

from voxmind.media.audio import AudioTranscriber
from voxmind.media.speech import SpeechEngine
from voxmind.media.tts import TTSSynthesizer

__all__ = ["AudioTranscriber", "SpeechEngine", "TTSSynthesizer"]
