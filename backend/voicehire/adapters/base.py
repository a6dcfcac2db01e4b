from __future__ import annotations

from typing import AsyncIterator, Callable, Protocol

from voicehire.interview.events import OpTag, SessionEvent
from voicehire.models import JoinCredential


EventSink = Callable[[SessionEvent], None]


class TransportAdapter(Protocol):
    def bind(self, sink: EventSink) -> None:
        ...

    async def connect(self, credential: JoinCredential, tag: OpTag) -> None:
        """Join the room and publish the agent's audio; raises TransportError."""
        ...

    async def disconnect(self) -> None:
        ...


class AudioInput(Protocol):
    def audio_frames(self) -> AsyncIterator[bytes]:
        ...


class AudioOutput(Protocol):
    async def play_pcm(self, pcm: bytes, sample_rate: int) -> None:
        ...


class CaptureAdapter(Protocol):
    available: bool

    def bind(self, sink: EventSink) -> None:
        ...

    async def start(self, tag: OpTag) -> None:
        ...

    async def stop(self) -> None:
        ...


class PlaybackAdapter(Protocol):
    available: bool

    def bind(self, sink: EventSink) -> None:
        ...

    async def speak(self, text: str, tag: OpTag) -> None:
        ...

    async def stop(self) -> None:
        ...
