"""
Tests for the voxmind.media package: AudioTranscriber, TTSSynthesizer and
the SpeechEngine facade.

Groq and ElevenLabs clients are replaced with mocks so no API calls occur.
"""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import groq
import httpx
import pytest

from voxmind.config import ElevenLabsConfig, GroqConfig
from voxmind.media.audio import AudioTranscriber, TranscriptionFailed
from voxmind.media.speech import SpeechEngine, is_transcription_error
from voxmind.media.tts import TTSSynthesizer, clean_text_for_tts


def _groq(**kw) -> GroqConfig:
    return GroqConfig(api_key=kw.pop("api_key", "gsk-test"), **kw)


def _eleven(tmp_path: Path, **kw) -> ElevenLabsConfig:
    return ElevenLabsConfig(api_key=kw.pop("api_key", "el-test"), output_dir=tmp_path / "audio", **kw)


def _groq_client(text: str = "hello world") -> MagicMock:
    client = MagicMock()
    client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text=text))
    client.close = AsyncMock()
    return client


def _clip(tmp_path: Path, data: bytes) -> Path:
    clip = tmp_path / "clip.wav"
    clip.write_bytes(data)
    return clip


def _eleven_client(*chunks: bytes) -> MagicMock:
    async def _stream():
        for chunk in chunks:
            yield chunk

    client = MagicMock()
    client.text_to_speech.convert = MagicMock(side_effect=lambda **kw: _stream())
    return client


# ---------------------------------------------------------------------------
# clean_text_for_tts
# ---------------------------------------------------------------------------


class TestCleanTextForTTS:
    def test_strips_code_and_keeps_prose(self):
        result = clean_text_for_tts("Hello\n```python\nprint('hi')\n```\nWorld")
        assert "print" not in result
        assert "Hello" in result and "World" in result

    def test_keeps_link_and_emphasis_text(self):
        result = clean_text_for_tts("See **[the docs](https://example.com)** now.")
        assert result == "See the docs now."

    def test_strips_headings_and_lists(self):
        assert clean_text_for_tts("## Plan\n- first\n- second") == "Plan\nfirst\nsecond"


# ---------------------------------------------------------------------------
# AudioTranscriber
# ---------------------------------------------------------------------------


class TestAudioTranscriber:
    @pytest.mark.asyncio
    async def test_unavailable_without_key(self, tmp_path):
        transcriber = AudioTranscriber(GroqConfig(api_key=None))
        assert transcriber.is_available is False
        with pytest.raises(TranscriptionFailed, match="not configured"):
            await transcriber.transcribe(tmp_path / "clip.wav")

    @pytest.mark.asyncio
    async def test_transcribes_file(self, tmp_path):
        client = _groq_client("  hi there ")
        transcriber = AudioTranscriber(_groq(), client=client)

        assert await transcriber.transcribe(_clip(tmp_path, b"abc")) == "hi there"
        kwargs = client.audio.transcriptions.create.await_args.kwargs
        assert kwargs["file"] == ("clip.wav", b"abc")
        assert kwargs["model"] == "whisper-large-v3-turbo"

    @pytest.mark.asyncio
    async def test_oversized_file_rejected_before_reading(self, tmp_path, monkeypatch):
        clip = _clip(tmp_path, b"abc")
        client = _groq_client()
        transcriber = AudioTranscriber(_groq(max_audio_bytes=2), client=client)
        monkeypatch.setattr(Path, "read_bytes", lambda self: pytest.fail("audio was read"))

        with pytest.raises(TranscriptionFailed, match=r"too large \(3 bytes, limit 2\)"):
            await transcriber.transcribe(clip)
        client.audio.transcriptions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_and_missing_files(self, tmp_path):
        transcriber = AudioTranscriber(_groq(), client=_groq_client())
        with pytest.raises(TranscriptionFailed, match="empty"):
            await transcriber.transcribe(_clip(tmp_path, b""))
        with pytest.raises(TranscriptionFailed, match="cannot read audio file"):
            await transcriber.transcribe(tmp_path / "missing.wav")

    @pytest.mark.asyncio
    async def test_api_error_becomes_reason(self, tmp_path):
        client = _groq_client()
        client.audio.transcriptions.create.side_effect = groq.APIConnectionError(
            request=httpx.Request("POST", "https://api.groq.com/openai/v1/audio/transcriptions")
        )
        transcriber = AudioTranscriber(_groq(), client=client)
        with pytest.raises(TranscriptionFailed, match="transcription request failed"):
            await transcriber.transcribe(_clip(tmp_path, b"abc"))

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        client = _groq_client()
        transcriber = AudioTranscriber(_groq(), client=client)
        await transcriber.close()
        client.close.assert_awaited_once()
        assert transcriber._client is None


# ---------------------------------------------------------------------------
# TTSSynthesizer
# ---------------------------------------------------------------------------


class TestTTSSynthesizer:
    @pytest.mark.asyncio
    async def test_unavailable_without_key(self, tmp_path):
        synthesizer = TTSSynthesizer(_eleven(tmp_path, api_key=None))
        assert await synthesizer.synthesize("hi") is None

    @pytest.mark.asyncio
    async def test_joins_stream_chunks(self, tmp_path):
        synthesizer = TTSSynthesizer(_eleven(tmp_path))
        synthesizer._client = _eleven_client(b"ab", b"cd")

        assert await synthesizer.synthesize("**Hello**") == b"abcd"
        kwargs = synthesizer._client.text_to_speech.convert.call_args.kwargs
        assert kwargs["text"] == "Hello"
        assert kwargs["voice_id"] == "21m00Tcm4TlvDq8ikWAM"

    @pytest.mark.asyncio
    async def test_truncates_long_text(self, tmp_path):
        synthesizer = TTSSynthesizer(_eleven(tmp_path, max_text_length=5))
        synthesizer._client = _eleven_client(b"x")
        await synthesizer.synthesize("abcdefghij")
        assert synthesizer._client.text_to_speech.convert.call_args.kwargs["text"] == "abcde"

    @pytest.mark.asyncio
    async def test_empty_after_cleaning(self, tmp_path):
        synthesizer = TTSSynthesizer(_eleven(tmp_path))
        synthesizer._client = _eleven_client(b"x")
        assert await synthesizer.synthesize("```code only```") is None

    @pytest.mark.asyncio
    async def test_empty_audio_is_none(self, tmp_path):
        synthesizer = TTSSynthesizer(_eleven(tmp_path))
        synthesizer._client = _eleven_client()
        assert await synthesizer.synthesize("hello") is None

    @pytest.mark.asyncio
    async def test_close_releases_client(self, tmp_path):
        synthesizer = TTSSynthesizer(_eleven(tmp_path))
        client = _eleven_client()
        client.close = AsyncMock()
        synthesizer._client = client

        await synthesizer.close()

        client.close.assert_awaited_once()
        assert synthesizer._client is None


# ---------------------------------------------------------------------------
# SpeechEngine
# ---------------------------------------------------------------------------


class TestSpeechEngine:
    @pytest.mark.asyncio
    async def test_transcribe_not_configured(self, tmp_path):
        engine = SpeechEngine(GroqConfig(api_key=None), _eleven(tmp_path))
        text = await engine.transcribe(str(tmp_path / "a.wav"))
        assert is_transcription_error(text)
        assert "not configured" in text
        assert text.endswith(f"(audio: {tmp_path / 'a.wav'})")

    @pytest.mark.asyncio
    async def test_transcribe_unreadable_file(self, tmp_path):
        engine = SpeechEngine(_groq(), _eleven(tmp_path))
        text = await engine.transcribe(str(tmp_path / "missing.wav"))
        assert text.startswith("__TRANSCRIPTION_ERROR__: cannot read audio file")

    @pytest.mark.asyncio
    async def test_transcribe_oversized_file_has_own_reason(self, tmp_path):
        clip = _clip(tmp_path, b"RIFFdata")
        engine = SpeechEngine(_groq(max_audio_bytes=4), _eleven(tmp_path))
        text = await engine.transcribe(str(clip))
        assert text == f"__TRANSCRIPTION_ERROR__: audio file too large (8 bytes, limit 4) (audio: {clip})"

    @pytest.mark.asyncio
    async def test_transcribe_success_and_empty(self, tmp_path):
        clip = tmp_path / "clip.wav"
        clip.write_bytes(b"RIFF")
        transcriber = AudioTranscriber(_groq())
        transcriber._client = _groq_client("book a room")
        engine = SpeechEngine(_groq(), _eleven(tmp_path), transcriber=transcriber)

        assert await engine.transcribe(str(clip)) == "book a room"

        transcriber._client = _groq_client("   ")
        text = await engine.transcribe(str(clip))
        assert text == f"__TRANSCRIPTION_ERROR__: no speech could be transcribed (audio: {clip})"

    @pytest.mark.asyncio
    async def test_synthesize_writes_file(self, tmp_path):
        synthesizer = TTSSynthesizer(_eleven(tmp_path))
        synthesizer._client = _eleven_client(b"ID3", b"data")
        engine = SpeechEngine(_groq(), _eleven(tmp_path), synthesizer=synthesizer)

        path = await engine.synthesize("Hello")

        assert path is not None
        assert Path(path).parent == tmp_path / "audio"
        assert path.endswith(".mp3")
        assert Path(path).read_bytes() == b"ID3data"

    @pytest.mark.asyncio
    async def test_synthesize_unavailable_returns_none(self, tmp_path):
        engine = SpeechEngine(_groq(), _eleven(tmp_path, api_key=None))
        assert await engine.synthesize("Hello") is None
        assert not (tmp_path / "audio").exists()
