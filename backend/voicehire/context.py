from __future__ import annotations

import logging
from dataclasses import dataclass

from core.config import Settings
from voicehire.adapters.deepgram_capture import DeepgramCapture
from voicehire.adapters.livekit_transport import LiveKitTransport
from voicehire.adapters.openai_playback import OpenAIPlayback
from voicehire.db.store import InterviewStore, build_interview_store
from voicehire.services.completion import CompletionService
from voicehire.services.livekit_tokens import LiveKitTokenIssuer
from voicehire.services.review import ReviewService
from voicehire.services.speech import SpeechSynthesizer, SpeechTranscriber
from voicehire.session.registry import SessionRegistry, build_session_registry

logger = logging.getLogger("voicehire.context")


class SessionDependencyProvider:
    """Builds the per-session adapters; tests swap in fakes."""

    def __init__(self, settings: Settings, synthesizer: SpeechSynthesizer):
        self.settings = settings
        self.synthesizer = synthesizer

    def create_transport(self) -> LiveKitTransport:
        return LiveKitTransport(agent_identity=self.settings.agent_identity)

    def create_capture(self, transport) -> DeepgramCapture:
        return DeepgramCapture(
            transport,
            self.settings.deepgram_api_key,
            enabled=not self.settings.qa_mode,
            endpointing_ms=self.settings.deepgram_endpointing_ms,
            silence_sec=self.settings.deepgram_silence_sec,
        )

    def create_playback(self, transport) -> OpenAIPlayback:
        return OpenAIPlayback(self.synthesizer, transport)


@dataclass
class AppContext:
    settings: Settings
    store: InterviewStore
    registry: SessionRegistry
    tokens: LiveKitTokenIssuer
    completion: CompletionService
    synthesizer: SpeechSynthesizer
    transcriber: SpeechTranscriber
    review: ReviewService
    provider: SessionDependencyProvider

    @classmethod
    def from_settings(cls, settings: Settings, store: InterviewStore | None = None) -> "AppContext":
        store = store or build_interview_store(settings)
        speech_enabled = not settings.qa_mode
        completion = CompletionService(settings.openai_api_key, model=settings.model_name)
        synthesizer = SpeechSynthesizer(
            settings.openai_api_key,
            model=settings.tts_model,
            voice=settings.tts_voice,
            enabled=speech_enabled,
        )
        context = cls(
            settings=settings,
            store=store,
            registry=build_session_registry(settings),
            tokens=LiveKitTokenIssuer(settings),
            completion=completion,
            synthesizer=synthesizer,
            transcriber=SpeechTranscriber(settings.deepgram_api_key, enabled=speech_enabled),
            review=ReviewService(store, completion),
            provider=SessionDependencyProvider(settings, synthesizer),
        )
        logger.info(
            "App context ready | store=%s registry=%s livekit=%s tts=%s",
            store.__class__.__name__,
            context.registry.__class__.__name__,
            context.tokens.configured,
            synthesizer.available,
        )
        return context

    def services_status(self) -> dict:
        return {
            "livekit": self.tokens.configured,
            "deepgram": bool(self.settings.deepgram_api_key),
            "openai": bool(self.settings.openai_api_key),
            "supabase": self.settings.supabase_ready(),
        }

    async def aclose(self) -> None:
        close = getattr(self.registry, "close", None)
        if close is not None:
            await close()
