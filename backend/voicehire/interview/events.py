"""Typed events flowing from adapters, timers and the UI into the controller.

Every asynchronous operation the controller starts is stamped with an
``OpTag``. The controller compares the tag of each incoming event with its
current position and discards anything that belongs to a superseded step.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventKind(str, Enum):
    TRANSPORT_CONNECTED = "transport_connected"
    TRANSPORT_FAILED = "transport_failed"
    CONNECTION_STATE = "connection_state"
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_LEFT = "participant_left"
    CONNECTION_QUALITY = "connection_quality"
    DEVICE_READY = "device_ready"
    DEVICE_ERROR = "device_error"
    PLAYBACK_STARTED = "playback_started"
    PLAYBACK_ENDED = "playback_ended"
    PLAYBACK_UNAVAILABLE = "playback_unavailable"
    CAPTURE_PARTIAL = "capture_partial"
    CAPTURE_FINAL = "capture_final"
    CAPTURE_ENDED = "capture_ended"
    TIMER = "timer"
    MANUAL_ANSWER = "manual_answer"
    EXIT_REQUESTED = "exit_requested"


CAPTURE_KINDS = frozenset({EventKind.CAPTURE_PARTIAL, EventKind.CAPTURE_FINAL, EventKind.CAPTURE_ENDED})


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class TimerKind(str, Enum):
    CONNECT_TIMEOUT = "connect_timeout"
    PLAYBACK_FALLBACK = "playback_fallback"
    CAPTURE_RESTART = "capture_restart"
    CAPTURE_DEADLINE = "capture_deadline"
    ADVANCE = "advance"


class TransportErrorReason(str, Enum):
    PERMISSION_DENIED = "permission-denied"
    NOT_FOUND = "not-found"
    DEVICE_BUSY = "device-busy"
    NETWORK = "network"


class TransportError(Exception):
    """Classified transport or microphone failure.

    ``source`` is ``"room"`` for the real-time channel itself and
    ``"microphone"`` for the candidate's audio device.
    """

    def __init__(self, reason: TransportErrorReason, detail: str = "", source: str = "room"):
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)
        self.reason = reason
        self.detail = detail
        self.source = source


@dataclass(frozen=True)
class OpTag:
    session: int
    step: int | None = None
    attempt: int = 0


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    tag: OpTag | None = None
    text: str = ""
    question_index: int | None = None
    connection_state: ConnectionState | None = None
    participant: str = ""
    quality: str = ""
    error: TransportError | None = None
    timer: TimerKind | None = None

    @classmethod
    def transport_connected(cls, tag: OpTag) -> "SessionEvent":
        return cls(EventKind.TRANSPORT_CONNECTED, tag=tag)

    @classmethod
    def transport_failed(cls, tag: OpTag, error: TransportError) -> "SessionEvent":
        return cls(EventKind.TRANSPORT_FAILED, tag=tag, error=error)

    @classmethod
    def connection_changed(cls, tag: OpTag, state: ConnectionState) -> "SessionEvent":
        return cls(EventKind.CONNECTION_STATE, tag=tag, connection_state=state)

    @classmethod
    def participant_joined(cls, tag: OpTag, identity: str) -> "SessionEvent":
        return cls(EventKind.PARTICIPANT_JOINED, tag=tag, participant=identity)

    @classmethod
    def participant_left(cls, tag: OpTag, identity: str) -> "SessionEvent":
        return cls(EventKind.PARTICIPANT_LEFT, tag=tag, participant=identity)

    @classmethod
    def quality_changed(cls, tag: OpTag, identity: str, quality: str) -> "SessionEvent":
        return cls(EventKind.CONNECTION_QUALITY, tag=tag, participant=identity, quality=quality)

    @classmethod
    def device_ready(cls, tag: OpTag, identity: str = "") -> "SessionEvent":
        return cls(EventKind.DEVICE_READY, tag=tag, participant=identity)

    @classmethod
    def device_error(cls, tag: OpTag | None, error: TransportError) -> "SessionEvent":
        return cls(EventKind.DEVICE_ERROR, tag=tag, error=error)

    @classmethod
    def playback_started(cls, tag: OpTag) -> "SessionEvent":
        return cls(EventKind.PLAYBACK_STARTED, tag=tag)

    @classmethod
    def playback_ended(cls, tag: OpTag) -> "SessionEvent":
        return cls(EventKind.PLAYBACK_ENDED, tag=tag)

    @classmethod
    def playback_unavailable(cls, tag: OpTag, detail: str = "") -> "SessionEvent":
        return cls(EventKind.PLAYBACK_UNAVAILABLE, tag=tag, text=detail)

    @classmethod
    def capture_partial(cls, tag: OpTag, text: str) -> "SessionEvent":
        return cls(EventKind.CAPTURE_PARTIAL, tag=tag, text=text)

    @classmethod
    def capture_final(cls, tag: OpTag, text: str) -> "SessionEvent":
        return cls(EventKind.CAPTURE_FINAL, tag=tag, text=text)

    @classmethod
    def capture_ended(cls, tag: OpTag, detail: str = "") -> "SessionEvent":
        return cls(EventKind.CAPTURE_ENDED, tag=tag, text=detail)

    @classmethod
    def timer_fired(cls, tag: OpTag, timer: TimerKind) -> "SessionEvent":
        return cls(EventKind.TIMER, tag=tag, timer=timer)

    @classmethod
    def manual_answer(cls, text: str, question_index: int | None) -> "SessionEvent":
        return cls(EventKind.MANUAL_ANSWER, text=text, question_index=question_index)

    @classmethod
    def exit_requested(cls) -> "SessionEvent":
        return cls(EventKind.EXIT_REQUESTED)


_GUIDANCE = {
    ("transport", TransportErrorReason.PERMISSION_DENIED.value): (
        "The interview room rejected the connection. Your link may have expired; ask HR for a new one."
    ),
    ("transport", TransportErrorReason.NOT_FOUND.value): (
        "The interview room could not be found. Check that you opened the full interview link."
    ),
    ("transport", TransportErrorReason.DEVICE_BUSY.value): (
        "This interview is already open in another window. Close the other window and try again."
    ),
    ("transport", TransportErrorReason.NETWORK.value): (
        "Could not reach the interview server. Check your network connection or firewall and try again."
    ),
    ("microphone", TransportErrorReason.PERMISSION_DENIED.value): (
        "Microphone access was denied. Allow microphone access in your browser settings and try again."
    ),
    ("microphone", TransportErrorReason.NOT_FOUND.value): (
        "No microphone was detected. Connect a microphone and try again."
    ),
    ("microphone", TransportErrorReason.DEVICE_BUSY.value): (
        "Your microphone is in use by another application. Close other apps using the microphone and try again."
    ),
    ("microphone", TransportErrorReason.NETWORK.value): (
        "Your microphone audio is not reaching the interview. Check your network connection and try again."
    ),
    ("credentials", "unavailable"): (
        "The interview server could not issue room credentials. Please try again in a few minutes."
    ),
    ("session", "exited"): (
        "You left the interview. Open your interview link again to resume where you stopped."
    ),
    ("session", "internal"): (
        "The interview stopped unexpectedly. Open your interview link again to resume."
    ),
}


@dataclass(frozen=True)
class SessionFailure:
    subsystem: str
    reason: str
    message: str
    detail: str = ""

    @classmethod
    def build(cls, subsystem: str, reason: str, detail: str = "") -> "SessionFailure":
        message = _GUIDANCE.get((subsystem, reason)) or _GUIDANCE[("session", "internal")]
        return cls(subsystem=subsystem, reason=reason, message=message, detail=detail)

    @classmethod
    def from_transport_error(cls, error: TransportError) -> "SessionFailure":
        subsystem = "microphone" if error.source == "microphone" else "transport"
        return cls.build(subsystem, error.reason.value, error.detail)

    def to_dict(self) -> dict:
        return {
            "subsystem": self.subsystem,
            "reason": self.reason,
            "message": self.message,
        }
