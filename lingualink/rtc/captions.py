"""Caption pipeline: local transcripts out, translated and spoken captions in."""
from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

from ..schemas.signaling import MessageType, ReceiveSpeakDataPayload, SpeakDataPayload
from ..services import asr, tts
from ..services.translation import MyMemoryTranslator
from .models import Identity

logger = logging.getLogger(__name__)

SendMessage = Callable[[str, Any], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Caption:
    speaker: str
    source_language: str
    target_language: str
    original_text: str
    text: str


class Translator(Protocol):
    async def translate(self, text: str, source: str, target: str) -> str: ...


class Speaker(Protocol):
    async def speak(self, text: str, language: str) -> None: ...


class SynthesizedSpeaker:
    """Speak captions through :func:`tts.synthesize_speech` and hand the audio to ``play_audio``."""

    def __init__(self, play_audio: Optional[Callable[[bytes, str], Any]] = None) -> None:
        self._play_audio = play_audio

    async def speak(self, text: str, language: str) -> None:
        audio, media_type = await tts.synthesize_speech(text, language)
        if self._play_audio is None:
            logger.debug("Synthesized %d bytes of %s with no player attached", len(audio), media_type)
            return
        result = self._play_audio(audio, media_type)
        if inspect.isawaitable(result):
            await result


class CaptionPipeline:
    """Publish what the local user says and caption what everybody else says.

    Incoming utterances are translated in arrival order on a private worker so
    slow translation never holds up signaling. A new utterance interrupts the
    one still being spoken.
    """

    def __init__(
        self,
        translator: Optional[Translator] = None,
        speaker: Optional[Speaker] = None,
        *,
        listen_language: Optional[str] = None,
        on_caption: Optional[Callable[[Caption], Any]] = None,
        speak_captions: bool = True,
    ) -> None:
        self.translator = translator or MyMemoryTranslator()
        self.speaker = speaker or SynthesizedSpeaker()
        self.listen_language = listen_language
        self.speak_captions = speak_captions
        self.muted = False
        self._on_caption = on_caption
        self._send: Optional[SendMessage] = None
        self._room_id: Optional[str] = None
        self._identity: Optional[Identity] = None
        self._queue: asyncio.Queue[ReceiveSpeakDataPayload] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._speech: asyncio.Task[None] | None = None

    @property
    def spoken_language(self) -> Optional[str]:
        return self._identity.spoken_language if self._identity else None

    @property
    def target_language(self) -> str:
        return self.listen_language or self.spoken_language or "en-US"

    def bind(self, send: SendMessage, room_id: str, identity: Identity) -> None:
        """Attach to a joined session."""

        self._send = send
        self._room_id = room_id
        self._identity = identity
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    def update_identity(self, identity: Identity) -> None:
        self._identity = identity

    async def unbind(self) -> None:
        """Detach from the session and stop any translation or speech in progress."""

        self._send = None
        for task in (self._worker, self._speech):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._worker = None
        self._speech = None
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def publish_transcript(self, text: str) -> bool:
        """Send a local transcript to the room. Returns False when nothing was sent."""

        text = text.strip()
        if not text or self.muted or self._send is None or self._identity is None:
            return False
        payload = SpeakDataPayload(
            room_id=self._room_id or "",
            text=text,
            source_lang=self._identity.spoken_language,
            identity=self._identity.display_name,
        )
        logger.debug("Publishing transcript (%s): %s", payload.source_lang, text)
        await self._send(MessageType.SPEAK_DATA.value, payload.model_dump(mode="json"))
        return True

    async def publish_audio(self, audio_bytes: bytes) -> bool:
        """Transcribe an utterance of the local user and publish the text."""

        if self.muted or self._identity is None:
            return False
        text = await asr.transcribe_audio(audio_bytes, self._identity.spoken_language)
        return await self.publish_transcript(text)

    async def handle_speech(self, payload: Any, sender: Optional[str] = None) -> None:
        """Queue a ``receive-speak-data`` payload for translation."""

        message = ReceiveSpeakDataPayload.model_validate(payload)
        if not message.identity and sender:
            message = message.model_copy(update={"identity": sender})
        self._queue.put_nowait(message)

    async def drain(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while self._worker is asyncio.current_task():
            message = await self._queue.get()
            try:
                await self._caption(message)
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            except Exception:
                logger.exception("Captioning utterance from %s failed", message.identity)
            self._queue.task_done()

    async def _caption(self, message: ReceiveSpeakDataPayload) -> None:
        target = self.target_language
        translated = await self.translator.translate(message.text, message.source_lang, target)
        caption = Caption(
            speaker=message.identity,
            source_language=message.source_lang,
            target_language=target,
            original_text=message.text,
            text=translated,
        )
        if self._on_caption is not None:
            result = self._on_caption(caption)
            if inspect.isawaitable(result):
                await result
        if self.speak_captions and self._worker is asyncio.current_task():
            await self._interrupt_speech()
            self._speech = asyncio.create_task(self._speak(caption))

    async def _interrupt_speech(self) -> None:
        speech, self._speech = self._speech, None
        if speech is not None and not speech.done():
            speech.cancel()
            with suppress(asyncio.CancelledError):
                await speech

    async def _speak(self, caption: Caption) -> None:
        try:
            await self.speaker.speak(caption.text, caption.target_language)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Speaking caption from %s failed: %s", caption.speaker, exc)
