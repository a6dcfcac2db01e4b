"""
Speech services shared by the live agent and the HTTP endpoints.

``SpeechSynthesizer`` wraps OpenAI text-to-speech: raw 24 kHz PCM for the
agent's room track, base64 mp3 data URIs for ``/api/speak-question``.
``SpeechTranscriber`` runs Deepgram prerecorded transcription for
``/api/transcribe``.
"""

import asyncio
import base64
import logging

from deepgram import DeepgramClient, PrerecordedOptions
from openai import AsyncOpenAI

logger = logging.getLogger("voicehire.services.speech")

TTS_SAMPLE_RATE = 24000


class SpeechUnavailable(Exception):
    pass


class SpeechSynthesizer:
    def __init__(
        self,
        api_key: str,
        model: str = "tts-1",
        voice: str = "nova",
        timeout_sec: float = 20.0,
        enabled: bool = True,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self.voice = voice
        self.timeout_sec = timeout_sec
        if client is not None:
            self.client = client
        elif enabled and api_key:
            self.client = AsyncOpenAI(api_key=api_key)
        else:
            self.client = None

    @property
    def available(self) -> bool:
        return self.client is not None

    async def _synthesize(self, text: str, response_format: str) -> bytes:
        if self.client is None:
            raise SpeechUnavailable("text-to-speech not configured")
        cleaned = str(text or "").strip()
        if not cleaned:
            raise SpeechUnavailable("nothing to speak")
        try:
            response = await asyncio.wait_for(
                self.client.audio.speech.create(
                    model=self.model,
                    voice=self.voice,
                    input=cleaned,
                    response_format=response_format,
                ),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise SpeechUnavailable("text-to-speech timed out") from exc
        except Exception as exc:
            logger.warning("TTS request failed | format=%s err=%s", response_format, exc)
            raise SpeechUnavailable(str(exc)) from exc
        return response.content

    async def synthesize_pcm(self, text: str) -> bytes:
        """16-bit mono PCM at ``TTS_SAMPLE_RATE``."""
        return await self._synthesize(text, "pcm")

    async def synthesize_data_uri(self, text: str) -> str:
        audio = await self._synthesize(text, "mp3")
        return "data:audio/mpeg;base64," + base64.b64encode(audio).decode("ascii")


class SpeechTranscriber:
    def __init__(self, api_key: str, enabled: bool = True):
        self.client = None
        if enabled and api_key:
            try:
                self.client = DeepgramClient(api_key)
            except Exception as exc:
                logger.warning("Deepgram client init failed; transcription disabled: %s", exc)

    @property
    def available(self) -> bool:
        return self.client is not None

    async def transcribe_url(self, audio_url: str) -> str:
        if self.client is None:
            raise SpeechUnavailable("Deepgram API key not configured")
        options = PrerecordedOptions(model="nova-2", smart_format=True, punctuate=True)
        response = await asyncio.to_thread(
            self.client.listen.prerecorded.v("1").transcribe_url,
            {"url": audio_url},
            options,
        )
        channels = response.results.channels
        if not channels or not channels[0].alternatives:
            return ""
        return str(channels[0].alternatives[0].transcript or "")
