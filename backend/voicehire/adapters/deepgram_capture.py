"""
Speech capture over Deepgram live transcription.

The candidate's microphone audio arrives from the room as 16 kHz mono PCM
and is streamed to Deepgram. Interim results become ``capture_partial``
events; finalized segments are joined until Deepgram reports an utterance
end (one second without words) and then posted once as ``capture_final``.
Any way the attempt can end without an answer (socket error, close, stalled
recognizer, audio gone) is posted once as ``capture_ended`` so the controller
can decide whether to restart. An attempt posts at most one of the two.
"""

import asyncio
import logging

from deepgram import DeepgramClient, LiveOptions, LiveTranscriptionEvents

from voicehire.adapters.base import AudioInput, EventSink
from voicehire.adapters.deepgram_stream import DeepgramStreamGuard
from voicehire.interview.events import OpTag, SessionEvent

logger = logging.getLogger("deepgram_capture")

CAPTURE_SAMPLE_RATE = 16000


class DeepgramCapture:
    def __init__(
        self,
        audio: AudioInput,
        api_key: str,
        *,
        enabled: bool = True,
        endpointing_ms: int = 700,
        silence_sec: float = 12.0,
        language: str = "en",
    ):
        self.audio = audio
        self.endpointing_ms = endpointing_ms
        self.silence_sec = silence_sec
        self.language = language
        self.client = None
        self.available = bool(enabled and api_key)
        if enabled and not api_key:
            logger.error("[DG] DEEPGRAM_API_KEY not set - spoken answers disabled, manual entry only")
        if self.available:
            try:
                self.client = DeepgramClient(api_key)
            except Exception as exc:
                logger.warning("Deepgram client init failed; capture disabled: %s", exc)
                self.available = False

        self.connection = None
        self.guard: DeepgramStreamGuard | None = None
        self._sink: EventSink | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tag: OpTag | None = None
        self._pump_task: asyncio.Task | None = None
        self._watchdog_task: asyncio.Task | None = None
        self._finals: list[str] = []
        self._ended = False
        self._stopping = False

    def bind(self, sink: EventSink) -> None:
        self._sink = sink

    async def start(self, tag: OpTag) -> None:
        await self.stop()
        if not self.available:
            raise RuntimeError("speech capture unavailable")

        self._loop = asyncio.get_running_loop()
        self._tag = tag
        self._finals = []
        self._ended = False
        self._stopping = False
        self.guard = DeepgramStreamGuard(self.silence_sec)

        connection = self.client.listen.live.v("1")
        connection.on(LiveTranscriptionEvents.Transcript, self._on_transcript)
        connection.on(LiveTranscriptionEvents.UtteranceEnd, self._on_utterance_end)
        connection.on(LiveTranscriptionEvents.Error, self._on_error)
        connection.on(LiveTranscriptionEvents.Close, self._on_close)
        self.connection = connection

        options = LiveOptions(
            model="nova-2",
            language=self.language,
            encoding="linear16",
            sample_rate=CAPTURE_SAMPLE_RATE,
            channels=1,
            interim_results=True,
            punctuate=True,
            smart_format=True,
            endpointing=self.endpointing_ms,
            utterance_end_ms="1000",
            vad_events=True,
        )

        # start() is SYNC in Deepgram SDK 3.x and opens the socket
        started = await asyncio.to_thread(connection.start, options)
        if started is False:
            self.connection = None
            raise RuntimeError("Deepgram live connection refused")

        logger.info("[DG] Capture started | session=%s step=%s attempt=%s", tag.session, tag.step, tag.attempt)
        self._pump_task = asyncio.create_task(self._pump(tag))
        self._watchdog_task = asyncio.create_task(self.guard.watchdog(lambda: self._end(tag, "silence")))

    async def stop(self) -> None:
        self._stopping = True
        if self.guard:
            self.guard.stop()
        tasks = [t for t in (self._pump_task, self._watchdog_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pump_task = None
        self._watchdog_task = None

        connection, self.connection = self.connection, None
        if connection is None:
            return
        try:
            await asyncio.to_thread(connection.finish)
        except Exception as exc:
            message = str(exc or "")
            if "_keep_alive_thread" in message:
                logger.debug("Deepgram cleanup internal thread field missing; ignoring")
            else:
                logger.warning("Deepgram finish() ignored during cleanup: %s", exc)

    async def _pump(self, tag: OpTag) -> None:
        try:
            async for frame in self.audio.audio_frames():
                connection = self.connection
                if connection is None:
                    return
                connection.send(bytes(frame))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[DG] Audio pump failed: %s", exc)
            self._end(tag, f"audio error: {exc}")
            return
        self._end(tag, "audio stream ended")

    # ==========================
    # Deepgram callbacks run on the SDK's worker thread
    # ==========================

    def _on_transcript(self, client, result=None, **kwargs):
        if client is not self.connection or result is None or self._ended:
            return
        try:
            channel = result.channel
            if not channel or not channel.alternatives:
                return
            text = str(channel.alternatives[0].transcript or "").strip()
            if self.guard and not self.guard.is_in_order(getattr(result, "start", 0)):
                return
            if text and self.guard:
                self.guard.note_activity()

            if result.is_final:
                # speech_final only marks an endpointing pause; the answer closes on UtteranceEnd
                if text:
                    self._finals.append(text)
                if self._finals:
                    self._post(SessionEvent.capture_partial(self._tag, " ".join(self._finals)))
                return

            if text:
                self._post(SessionEvent.capture_partial(self._tag, " ".join(self._finals + [text])))
        except Exception as exc:
            logger.error("Deepgram transcript parse error: %s", exc)

    def _on_utterance_end(self, client, utterance_end=None, **kwargs):
        if client is not self.connection:
            return
        self._flush_final()

    def _on_error(self, client, error=None, **kwargs):
        if client is not self.connection:
            return
        logger.error("Deepgram error event: %s", error)
        self._end(self._tag, f"error: {error}")

    def _on_close(self, client, close=None, **kwargs):
        if client is not self.connection or self._stopping:
            return
        self._end(self._tag, "closed")

    def _flush_final(self):
        if self._ended or not self._finals:
            return
        text = " ".join(self._finals).strip()
        self._finals = []
        if text:
            self._ended = True
            self._post(SessionEvent.capture_final(self._tag, text))

    def _end(self, tag: OpTag, detail: str):
        if self._ended or tag is None:
            return
        self._ended = True
        logger.info("[DG] Capture attempt ended | attempt=%s detail=%s", tag.attempt, detail)
        self._post(SessionEvent.capture_ended(tag, detail))

    def _post(self, event: SessionEvent):
        if self._sink is None or self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._sink, event)
