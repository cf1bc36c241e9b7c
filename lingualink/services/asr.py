"""Speech-to-text for local utterances, built on faster-whisper."""
from __future__ import annotations

import asyncio
import logging
import wave
from functools import lru_cache
from io import BytesIO
from typing import Optional

from faster_whisper import WhisperModel

from ..core.config import settings
from .translation import primary_subtag

logger = logging.getLogger(__name__)

PCM_SAMPLE_RATE = 16000


@lru_cache
def _load_model() -> WhisperModel:
    """Load the Whisper model once per process."""

    logger.info("Loading whisper model %s on %s", settings.whisper_model, settings.whisper_device)
    return WhisperModel(
        settings.whisper_model,
        device=settings.whisper_device,
        compute_type=settings.whisper_compute_type,
    )


def pcm_to_wav(pcm: bytes, sample_rate: int = PCM_SAMPLE_RATE, channels: int = 1) -> bytes:
    """Wrap signed 16-bit little-endian PCM in a WAV container."""

    buffer = BytesIO()
    with wave.open(buffer, "wb") as wav_file:
        wav_file.setnchannels(channels)
        wav_file.setsampwidth(2)
        wav_file.setframerate(sample_rate)
        wav_file.writeframes(pcm)
    return buffer.getvalue()


async def transcribe_audio(audio_bytes: bytes, language: Optional[str] = None) -> str:
    """Return the transcript of one utterance.

    ``audio_bytes`` is either a WAV file or raw 16 kHz mono PCM as captured from
    the microphone track. ``language`` is a BCP-47 tag; only its primary subtag
    is passed to whisper.
    """

    if not audio_bytes:
        return ""
    if not audio_bytes.startswith(b"RIFF"):
        audio_bytes = pcm_to_wav(audio_bytes)
    whisper_language = primary_subtag(language) if language else None

    def _run_transcription() -> str:
        segments, _ = _load_model().transcribe(
            BytesIO(audio_bytes),
            beam_size=1,
            language=whisper_language,
            vad_filter=True,
        )
        return " ".join(segment.text.strip() for segment in segments if segment.text.strip())

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _run_transcription)
