import asyncio
import logging

from voicehire.adapters.base import AudioOutput, EventSink
from voicehire.interview.events import OpTag, SessionEvent
from voicehire.services.speech import TTS_SAMPLE_RATE, SpeechSynthesizer, SpeechUnavailable

logger = logging.getLogger("openai_playback")


class OpenAIPlayback:
    """Speaks questions into the room: synthesize, then push PCM to the agent track."""

    def __init__(self, synthesizer: SpeechSynthesizer, output: AudioOutput):
        self.synthesizer = synthesizer
        self.output = output
        self._sink: EventSink | None = None
        self._task: asyncio.Task | None = None

    @property
    def available(self) -> bool:
        return self.synthesizer.available

    def bind(self, sink: EventSink) -> None:
        self._sink = sink

    async def speak(self, text: str, tag: OpTag) -> None:
        await self.stop()
        self._task = asyncio.create_task(self._speak(text, tag))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        clear = getattr(self.output, "clear_output", None)
        if clear is not None:
            clear()

    async def _speak(self, text: str, tag: OpTag) -> None:
        try:
            pcm = await self.synthesizer.synthesize_pcm(text)
        except SpeechUnavailable as exc:
            logger.warning("playback unavailable: %s", exc)
            self._post(SessionEvent.playback_unavailable(tag, str(exc)))
            return

        self._post(SessionEvent.playback_started(tag))
        try:
            await self.output.play_pcm(pcm, TTS_SAMPLE_RATE)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("playback interrupted: %s", exc)
        self._post(SessionEvent.playback_ended(tag))

    def _post(self, event: SessionEvent) -> None:
        if self._sink is not None:
            self._sink(event)
