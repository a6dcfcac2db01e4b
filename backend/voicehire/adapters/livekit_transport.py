"""
LiveKit room transport for the interviewer agent.

The agent joins the candidate's room with its own credential, publishes one
audio track for synthesized questions, and subscribes to the candidate's
microphone track. The first candidate audio track is the "device ready"
signal. Browser-side microphone failures arrive over the data channel as
``{"type": "device_error", "reason": ..., "detail": ...}``.
"""

import asyncio
import json
import logging

from livekit import rtc

from voicehire.adapters.base import EventSink
from voicehire.interview.events import ConnectionState, OpTag, SessionEvent, TransportError, TransportErrorReason
from voicehire.models import JoinCredential

logger = logging.getLogger("livekit_transport")

AGENT_SAMPLE_RATE = 24000
CAPTURE_SAMPLE_RATE = 16000
FRAME_MS = 20

_STATE_MAP = {
    rtc.ConnectionState.CONN_DISCONNECTED: ConnectionState.DISCONNECTED,
    rtc.ConnectionState.CONN_CONNECTED: ConnectionState.CONNECTED,
    rtc.ConnectionState.CONN_RECONNECTING: ConnectionState.RECONNECTING,
}

_DEVICE_REASONS = {
    # browser getUserMedia error names
    "NotAllowedError": TransportErrorReason.PERMISSION_DENIED,
    "PermissionDeniedError": TransportErrorReason.PERMISSION_DENIED,
    "NotFoundError": TransportErrorReason.NOT_FOUND,
    "DevicesNotFoundError": TransportErrorReason.NOT_FOUND,
    "NotReadableError": TransportErrorReason.DEVICE_BUSY,
    "TrackStartError": TransportErrorReason.DEVICE_BUSY,
}


def _error_text(exc: BaseException) -> str:
    # rtc.ConnectError keeps its text on .message only
    return str(getattr(exc, "message", "") or exc or "")


def classify_connect_error(exc: Exception) -> TransportErrorReason:
    message = _error_text(exc).lower()
    if any(marker in message for marker in ("401", "403", "unauthorized", "permission", "invalid token", "expired")):
        return TransportErrorReason.PERMISSION_DENIED
    if any(marker in message for marker in ("404", "not found", "no such room")):
        return TransportErrorReason.NOT_FOUND
    if any(marker in message for marker in ("duplicate", "already")):
        return TransportErrorReason.DEVICE_BUSY
    return TransportErrorReason.NETWORK


def parse_device_error(payload: dict) -> TransportError:
    raw = str(payload.get("reason") or payload.get("name") or "").strip()
    try:
        reason = TransportErrorReason(raw)
    except ValueError:
        reason = _DEVICE_REASONS.get(raw, TransportErrorReason.NOT_FOUND)
    return TransportError(reason, str(payload.get("detail") or raw), source="microphone")


def _quality_label(quality) -> str:
    try:
        return rtc.ConnectionQuality.Name(quality).replace("QUALITY_", "").lower()
    except (AttributeError, ValueError):
        return str(quality)


class LiveKitTransport:
    def __init__(self, agent_identity: str = "ai-interviewer"):
        self.agent_identity = agent_identity
        self.room: rtc.Room | None = None
        self.source: rtc.AudioSource | None = None
        self._sink: EventSink | None = None
        self._tag: OpTag | None = None
        self._frames: asyncio.Queue[bytes] = asyncio.Queue(maxsize=500)
        self._reader_task: asyncio.Task | None = None
        self._reader_track_sid = ""
        self._candidate_identity = ""

    def bind(self, sink: EventSink) -> None:
        self._sink = sink

    async def connect(self, credential: JoinCredential, tag: OpTag) -> None:
        await self.disconnect()
        self._tag = tag
        room = rtc.Room()
        self._register(room)
        self.room = room

        try:
            await room.connect(credential.endpoint_url, credential.token, options=rtc.RoomOptions(auto_subscribe=True))
            self.source = rtc.AudioSource(AGENT_SAMPLE_RATE, 1)
            track = rtc.LocalAudioTrack.create_audio_track("interviewer-voice", self.source)
            options = rtc.TrackPublishOptions()
            options.source = rtc.TrackSource.SOURCE_MICROPHONE
            await room.local_participant.publish_track(track, options)
        except BaseException as exc:
            # release whatever was set up before re-raising
            await self.disconnect()
            if isinstance(exc, rtc.ConnectError):
                raise TransportError(classify_connect_error(exc), _error_text(exc)) from exc
            if isinstance(exc, Exception):
                raise TransportError(TransportErrorReason.NETWORK, str(exc)) from exc
            raise

        logger.info("[LK] Joined room=%s as=%s", room.name, self.agent_identity)
        for participant in room.remote_participants.values():
            for publication in participant.track_publications.values():
                if publication.track is not None and publication.kind == rtc.TrackKind.KIND_AUDIO:
                    self._on_candidate_audio(publication.track, participant)

    async def disconnect(self) -> None:
        reader, self._reader_task = self._reader_task, None
        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        room, self.room = self.room, None
        # callbacks raised by our own disconnect are not session events
        self._tag = None
        self.source = None
        self._candidate_identity = ""
        self._reader_track_sid = ""
        self._drain()
        if room is None:
            return
        try:
            await room.disconnect()
        except Exception as exc:
            logger.warning("[LK] Room disconnect ignored during cleanup: %s", exc)

    async def audio_frames(self):
        self._drain()
        while True:
            yield await self._frames.get()

    async def play_pcm(self, pcm: bytes, sample_rate: int = AGENT_SAMPLE_RATE) -> None:
        source = self.source
        if source is None:
            raise TransportError(TransportErrorReason.NETWORK, "agent audio track not published")
        samples_per_frame = sample_rate * FRAME_MS // 1000
        bytes_per_frame = samples_per_frame * 2
        for offset in range(0, len(pcm), bytes_per_frame):
            chunk = pcm[offset:offset + bytes_per_frame]
            if len(chunk) < bytes_per_frame:
                chunk = chunk + b"\x00" * (bytes_per_frame - len(chunk))
            frame = rtc.AudioFrame(
                data=chunk,
                sample_rate=sample_rate,
                num_channels=1,
                samples_per_channel=samples_per_frame,
            )
            await source.capture_frame(frame)
        await source.wait_for_playout()

    def clear_output(self) -> None:
        if self.source is not None:
            self.source.clear_queue()

    # ==========================
    # room callbacks
    # ==========================

    def _register(self, room: rtc.Room) -> None:
        @room.on("connection_state_changed")
        def on_connection_state(state):
            mapped = _STATE_MAP.get(state)
            if mapped is not None:
                self._post(SessionEvent.connection_changed(self._tag, mapped))

        @room.on("participant_connected")
        def on_participant_connected(participant: rtc.RemoteParticipant):
            self._post(SessionEvent.participant_joined(self._tag, participant.identity))

        @room.on("participant_disconnected")
        def on_participant_disconnected(participant: rtc.RemoteParticipant):
            self._post(SessionEvent.participant_left(self._tag, participant.identity))

        @room.on("connection_quality_changed")
        def on_quality(participant: rtc.Participant, quality):
            self._post(SessionEvent.quality_changed(self._tag, participant.identity, _quality_label(quality)))

        @room.on("track_subscribed")
        def on_track_subscribed(track: rtc.Track, publication: rtc.RemoteTrackPublication, participant: rtc.RemoteParticipant):
            if track.kind == rtc.TrackKind.KIND_AUDIO:
                self._on_candidate_audio(track, participant)

        @room.on("track_unsubscribed")
        def on_track_unsubscribed(track: rtc.Track, publication: rtc.RemoteTrackPublication, participant: rtc.RemoteParticipant):
            if track.sid and track.sid == self._reader_track_sid:
                self._stop_reader()

        @room.on("data_received")
        def on_data_received(packet: rtc.DataPacket):
            try:
                payload = json.loads(bytes(packet.data).decode("utf-8"))
            except (ValueError, UnicodeDecodeError):
                logger.warning("[LK] Ignoring non-JSON data packet")
                return
            if isinstance(payload, dict) and payload.get("type") == "device_error":
                self._post(SessionEvent.device_error(self._tag, parse_device_error(payload)))

    def _on_candidate_audio(self, track: rtc.Track, participant: rtc.RemoteParticipant) -> None:
        if participant.identity == self.agent_identity:
            return
        # a republished or switched microphone replaces a reader that has ended
        if self._reader_task is not None and not self._reader_task.done():
            return
        self._candidate_identity = participant.identity
        self._reader_track_sid = track.sid
        stream = rtc.AudioStream(track, sample_rate=CAPTURE_SAMPLE_RATE, num_channels=1)
        self._reader_task = asyncio.create_task(self._read_audio(stream))
        logger.info("[LK] Candidate audio subscribed | participant=%s", participant.identity)
        self._post(SessionEvent.device_ready(self._tag, participant.identity))

    def _stop_reader(self) -> None:
        reader, self._reader_task = self._reader_task, None
        self._reader_track_sid = ""
        if reader is not None and not reader.done():
            reader.cancel()
        logger.info("[LK] Candidate audio unsubscribed | participant=%s", self._candidate_identity)

    async def _read_audio(self, stream: rtc.AudioStream) -> None:
        try:
            async for event in stream:
                data = bytes(event.frame.data)
                if self._frames.full():
                    self._frames.get_nowait()
                self._frames.put_nowait(data)
        finally:
            await stream.aclose()

    def _drain(self) -> None:
        while not self._frames.empty():
            self._frames.get_nowait()

    def _post(self, event: SessionEvent) -> None:
        if self._sink is not None and event.tag is not None:
            self._sink(event)
