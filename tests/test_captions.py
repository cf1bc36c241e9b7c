"""Tests for translation and the caption pipeline."""
from __future__ import annotations

import asyncio

import httpx
import pytest

from lingualink.rtc.captions import CaptionPipeline
from lingualink.rtc.models import Identity
from lingualink.rtc.session import Session
from lingualink.services import asr
from lingualink.services.translation import MyMemoryTranslator, primary_subtag

from .fakes import FakeConnectionFactory, Recorder, RecordingTransport

ANA = Identity(display_name="Ana", spoken_language="es-ES")


class DummyTranslator:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    async def translate(self, text: str, source: str, target: str) -> str:
        self.calls.append((text, source, target))
        return f"[{target}] {text}"


class DummySpeaker:
    def __init__(self, *, hang: bool = False) -> None:
        self.hang = hang
        self.started: list[tuple[str, str]] = []
        self.cancelled: list[str] = []

    async def speak(self, text: str, language: str) -> None:
        self.started.append((text, language))
        if not self.hang:
            return
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled.append(text)
            raise


def _translator(handler) -> MyMemoryTranslator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MyMemoryTranslator(api_url="https://translate.test/get", client=client)


def test_primary_subtag():
    assert primary_subtag("es-MX") == "es"
    assert primary_subtag("pt_BR") == "pt"
    assert primary_subtag("EN") == "en"


@pytest.mark.asyncio
async def test_translation_uses_primary_language_pair():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"responseData": {"translatedText": "hello"}})

    translated = await _translator(handler).translate("hola", "es-ES", "en-US")

    assert translated == "hello"
    assert requests[0].url.params["q"] == "hola"
    assert requests[0].url.params["langpair"] == "es|en"


@pytest.mark.asyncio
async def test_same_primary_language_skips_the_service():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("translation service should not be called")

    translator = _translator(handler)

    assert await translator.translate("hola", "es-MX", "es-ES") == "hola"
    assert await translator.translate("   ", "es-ES", "en-US") == "   "


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="upstream down"),
        httpx.Response(200, json={"unexpected": True}),
        httpx.Response(200, json={"responseData": {"translatedText": ""}}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_translation_failures_fall_back_to_original_text(response):
    translated = await _translator(lambda request: response).translate("hola", "es-ES", "en-US")

    assert translated == "hola"


@pytest.mark.asyncio
async def test_network_error_falls_back_to_original_text():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    assert await _translator(handler).translate("hola", "es-ES", "en-US") == "hola"


@pytest.mark.asyncio
async def test_publish_transcript_respects_binding_and_mute():
    sent = []

    async def send(type, payload):
        sent.append((type, payload))

    pipeline = CaptionPipeline(DummyTranslator(), DummySpeaker())
    assert await pipeline.publish_transcript("hola") is False

    pipeline.bind(send, "R1", ANA)
    assert await pipeline.publish_transcript("  hola  ") is True
    assert await pipeline.publish_transcript("   ") is False
    pipeline.muted = True
    assert await pipeline.publish_transcript("adios") is False

    assert sent == [
        ("speak-data", {"room_id": "R1", "text": "hola", "source_lang": "es-ES", "identity": "Ana"})
    ]
    await pipeline.unbind()


@pytest.mark.asyncio
async def test_publish_audio_transcribes_in_spoken_language(monkeypatch):
    sent = []
    seen_languages = []

    async def send(type, payload):
        sent.append(payload["text"])

    async def fake_transcribe(audio_bytes, language=None):
        seen_languages.append(language)
        return "buenos dias"

    monkeypatch.setattr(asr, "transcribe_audio", fake_transcribe)
    pipeline = CaptionPipeline(DummyTranslator(), DummySpeaker())
    pipeline.bind(send, "R1", ANA)

    assert await pipeline.publish_audio(b"RIFF....") is True

    assert sent == ["buenos dias"]
    assert seen_languages == ["es-ES"]
    await pipeline.unbind()


@pytest.mark.asyncio
async def test_received_speech_is_translated_captioned_and_spoken():
    captions = Recorder()
    translator = DummyTranslator()
    speaker = DummySpeaker()
    pipeline = CaptionPipeline(translator, speaker, on_caption=captions)
    pipeline.bind(lambda *args: None, "R1", Identity("Bo", "en-US"))

    await pipeline.handle_speech({"text": "hola", "source_lang": "es-ES", "identity": ""}, "7")
    await pipeline.drain()
    await asyncio.sleep(0)

    (caption,) = [call[0] for call in captions.calls]
    assert caption.speaker == "7"
    assert caption.original_text == "hola"
    assert caption.text == "[en-US] hola"
    assert translator.calls == [("hola", "es-ES", "en-US")]
    assert speaker.started == [("[en-US] hola", "en-US")]
    await pipeline.unbind()


@pytest.mark.asyncio
async def test_listen_language_overrides_spoken_language():
    translator = DummyTranslator()
    pipeline = CaptionPipeline(translator, DummySpeaker(), listen_language="fr-FR", speak_captions=False)
    pipeline.bind(lambda *args: None, "R1", ANA)

    await pipeline.handle_speech({"text": "hello", "source_lang": "en-US", "identity": "Bo"})
    await pipeline.drain()

    assert translator.calls == [("hello", "en-US", "fr-FR")]
    await pipeline.unbind()


@pytest.mark.asyncio
async def test_new_utterance_interrupts_the_one_being_spoken():
    speaker = DummySpeaker(hang=True)
    pipeline = CaptionPipeline(DummyTranslator(), speaker)
    pipeline.bind(lambda *args: None, "R1", Identity("Bo", "en-US"))

    await pipeline.handle_speech({"text": "first", "source_lang": "en-US", "identity": "Ana"})
    await pipeline.drain()
    await asyncio.sleep(0)
    await pipeline.handle_speech({"text": "second", "source_lang": "en-US", "identity": "Ana"})
    await pipeline.drain()
    await asyncio.sleep(0)

    assert [text for text, _ in speaker.started] == ["first", "second"]
    assert speaker.cancelled == ["first"]

    await pipeline.unbind()
    assert speaker.cancelled == ["first", "second"]


@pytest.mark.asyncio
async def test_session_wires_captions_to_the_room():
    transport = RecordingTransport("5")
    captions = Recorder()
    pipeline = CaptionPipeline(DummyTranslator(), DummySpeaker(), on_caption=captions)
    session = Session(
        transport_factory=lambda: transport,
        connection_factory=FakeConnectionFactory("5"),
        captions=pipeline,
    )

    assert await session.publish_transcript("hola") is False
    await session.join("R1", ANA, ["mic"])

    assert await session.publish_transcript("hola") is True
    assert transport.outbound("speak-data") == [
        ({"room_id": "R1", "text": "hola", "source_lang": "es-ES", "identity": "Ana"}, None)
    ]

    await transport.deliver("receive-speak-data", {"text": "hello", "source_lang": "en-US", "identity": "Bo"}, "2")
    await session.drain()
    await pipeline.drain()
    assert [call[0].text for call in captions.calls] == ["[es-ES] hello"]

    await session.update_local_language("de-DE")
    await transport.deliver("receive-speak-data", {"text": "bye", "source_lang": "en-US", "identity": "Bo"}, "2")
    await session.drain()
    await pipeline.drain()
    assert captions.calls[-1][0].text == "[de-DE] bye"

    session.set_audio_enabled(False)
    assert await session.publish_transcript("silencio") is False

    await session.leave()


@pytest.mark.asyncio
async def test_leaving_from_the_caption_callback_detaches_the_session():
    transport = RecordingTransport("5")
    speaker = DummySpeaker()
    captions = Recorder()
    session = None

    async def caption_then_leave(caption):
        captions(caption)
        await session.leave()

    pipeline = CaptionPipeline(DummyTranslator(), speaker, on_caption=caption_then_leave)
    session = Session(
        transport_factory=lambda: transport,
        connection_factory=FakeConnectionFactory("5"),
        captions=pipeline,
    )
    await session.join("R1", ANA, ["mic"])

    await transport.deliver("receive-speak-data", {"text": "bye", "source_lang": "en-US", "identity": "Bo"}, "2")
    await asyncio.sleep(0.01)

    assert [call[0].text for call in captions.calls] == ["[es-ES] bye"]
    assert not session.joined
    assert transport.closed
    assert speaker.started == []
    assert await pipeline.publish_transcript("hola") is False
