"""Speak translated captions with Edge TTS or gTTS, falling back to silence."""
from __future__ import annotations

import asyncio
import logging
from io import BytesIO
from typing import Awaitable, Callable, List, Optional, Tuple

import edge_tts
from gtts import gTTS

from ..core.config import settings
from .asr import PCM_SAMPLE_RATE, pcm_to_wav
from .translation import primary_subtag

logger = logging.getLogger(__name__)

Speech = Tuple[bytes, str]
Provider = Callable[[str, str], Awaitable[Optional[Speech]]]

EDGE_VOICES = {
    "en": "en-US-AriaNeural",
    "es": "es-ES-ElviraNeural",
    "fr": "fr-FR-DeniseNeural",
    "de": "de-DE-KatjaNeural",
    "it": "it-IT-ElsaNeural",
    "pt": "pt-BR-FranciscaNeural",
    "hi": "hi-IN-SwaraNeural",
    "ja": "ja-JP-NanamiNeural",
    "zh": "zh-CN-XiaoxiaoNeural",
    "ar": "ar-EG-SalmaNeural",
}


def _edge_voice(language: str) -> str:
    return EDGE_VOICES.get(primary_subtag(language), settings.tts_voice)


async def _edge_tts(phrase: str, language: str) -> Optional[Speech]:
    audio = bytearray()
    async for chunk in edge_tts.Communicate(phrase, voice=_edge_voice(language)).stream():
        if chunk["type"] == "audio":
            audio.extend(chunk["data"])
    if not audio:
        return None
    return bytes(audio), "audio/mpeg"


async def _gtts(phrase: str, language: str) -> Optional[Speech]:
    def _render() -> bytes:
        buffer = BytesIO()
        gTTS(text=phrase, lang=primary_subtag(language) or "en").write_to_fp(buffer)
        return buffer.getvalue()

    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, _render), "audio/mpeg"


def _offline_placeholder(duration_seconds: float = 0.8) -> Speech:
    """Short silent WAV clip used when no provider produced audio."""

    frames = max(1, int(duration_seconds * PCM_SAMPLE_RATE))
    return pcm_to_wav(b"\x00\x00" * frames), "audio/wav"


def _providers() -> List[Tuple[str, Provider]]:
    if settings.tts_provider.strip().lower() == "edge":
        return [("edge", _edge_tts), ("gtts", _gtts)]
    return [("gtts", _gtts)]


async def synthesize_speech(text: str, language: Optional[str] = None) -> Speech:
    """Return audio bytes and their media type for ``text`` spoken in ``language``."""

    if not text.strip():
        return _offline_placeholder()
    language = language or "en-US"

    for name, provider in _providers():
        try:
            speech = await provider(text, language)
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s TTS failed for %s: %s", name, language, exc)
            continue
        if speech is not None:
            return speech
        logger.warning("%s TTS returned no audio for %s", name, language)

    logger.error("All configured TTS providers failed; returning placeholder audio")
    return _offline_placeholder()
