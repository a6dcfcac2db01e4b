import asyncio
import base64
import json
import sys
from dataclasses import dataclass, field
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.config import SessionPolicy  # noqa: E402
from voicehire.db.store import InMemoryInterviewStore  # noqa: E402
from voicehire.interview.controller import SessionController  # noqa: E402
from voicehire.interview.events import SessionEvent  # noqa: E402
from voicehire.models import Candidate, Job, JoinCredential  # noqa: E402
from voicehire.system_metrics import reset_metrics  # noqa: E402
from voicehire.transcript.log import TranscriptLog  # noqa: E402

HOLD = object()

FAST_POLICY = SessionPolicy(
    connect_timeout_sec=1.0,
    playback_fallback_sec=0.2,
    playback_max_sec=1.0,
    silent_delay_sec=0.01,
    capture_restart_cap=2,
    capture_restart_backoff_sec=0.0,
    capture_max_sec=1.0,
    answer_pause_sec=0.0,
    transcript_append_retries=1,
    transcript_retry_delay_sec=0.0,
)

QUESTIONS = ["Tell me about yourself.", "Why do you want this role?"]


@pytest.fixture(autouse=True)
def _test_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ENV", "development")
    monkeypatch.setenv("ALLOW_UNVERIFIED_JWT_DEV", "true")
    monkeypatch.setenv("QA_MODE", "true")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    for name in (
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "SUPABASE_SERVICE_ROLE_KEY",
        "SUPABASE_JWT_SECRET",
        "LIVEKIT_API_KEY",
        "LIVEKIT_API_SECRET",
        "LIVEKIT_URL",
        "DEEPGRAM_API_KEY",
        "USE_REDIS_SESSION_REGISTRY",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_metrics()


@pytest.fixture
def dev_jwt_token() -> str:
    def _enc(obj: dict) -> str:
        raw = json.dumps(obj, separators=(",", ":")).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")

    header = _enc({"alg": "none", "typ": "JWT"})
    payload = _enc({"sub": "pytest-user", "iat": 0})
    return f"{header}.{payload}."


# ================= FAKE ADAPTERS =================


class FakeTransport:
    def __init__(self, fail_with: Exception | None = None, fail_times: int = 0, auto_device: bool = True):
        self.fail_with = fail_with
        self.fail_times = fail_times
        self.auto_device = auto_device
        self.sink = None
        self.connects: list[JoinCredential] = []
        self.tags = []
        self.disconnects = 0
        self.connected = False

    def bind(self, sink):
        self.sink = sink

    async def connect(self, credential, tag):
        self.connects.append(credential)
        self.tags.append(tag)
        if self.fail_with is not None and (self.fail_times == 0 or len(self.connects) <= self.fail_times):
            raise self.fail_with
        self.connected = True
        if self.auto_device:
            self.sink(SessionEvent.device_ready(tag, "candidate"))

    async def disconnect(self):
        self.disconnects += 1
        self.connected = False


class FakePlayback:
    """mode: "complete" reports started+ended, "silent" never reports, "unavailable" reports a TTS failure."""

    def __init__(self, available: bool = True, mode: str = "complete"):
        self.available = available
        self.mode = mode
        self.sink = None
        self.spoken: list[str] = []
        self.stops = 0

    def bind(self, sink):
        self.sink = sink

    async def speak(self, text, tag):
        self.spoken.append(text)
        if self.mode == "complete":
            self.sink(SessionEvent.playback_started(tag))
            self.sink(SessionEvent.playback_ended(tag))
        elif self.mode == "unavailable":
            self.sink(SessionEvent.playback_unavailable(tag, "tts down"))

    async def stop(self):
        self.stops += 1


class FakeCapture:
    """Each start() consumes one script item.

    str -> partial then final; None -> ended without text;
    ("partial", text) -> partial only; HOLD or exhausted script -> nothing.
    """

    def __init__(self, script=None, available: bool = True):
        self.script = list(script or [])
        self.available = available
        self.sink = None
        self.starts = []
        self.stops = 0

    def bind(self, sink):
        self.sink = sink

    async def start(self, tag):
        self.starts.append(tag)
        if not self.script:
            return
        item = self.script.pop(0)
        if item is HOLD:
            return
        if item is None:
            self.sink(SessionEvent.capture_ended(tag, "no speech"))
        elif isinstance(item, tuple):
            self.sink(SessionEvent.capture_partial(tag, item[1]))
        else:
            self.sink(SessionEvent.capture_partial(tag, item))
            self.sink(SessionEvent.capture_final(tag, item))

    async def stop(self):
        self.stops += 1


async def fake_credentials(room, participant, interview_id):
    return JoinCredential(token="lk-token", endpoint_url="wss://livekit.test")


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ================= STORE + HARNESS =================


@pytest.fixture
def seeded_store():
    store = InMemoryInterviewStore()
    job = store.add_job(Job(id="job-1", title="Backend Engineer", default_questions=list(QUESTIONS)))
    candidate = store.add_candidate(
        Candidate(
            id="cand-1",
            name="Ada",
            email="ada@example.com",
            job_id=job.id,
            access_token="tok-ada",
        )
    )
    return store, candidate, job


@dataclass
class Harness:
    controller: SessionController
    transport: FakeTransport
    capture: FakeCapture
    playback: FakePlayback
    store: InMemoryInterviewStore
    sent: list = field(default_factory=list)

    def store_transcript(self):
        return self.store.transcripts.get(self.controller.interview.id, [])


@pytest.fixture
def session_factory(seeded_store):
    store, candidate, job = seeded_store

    async def _build(
        *,
        transport=None,
        capture=None,
        playback=None,
        policy=FAST_POLICY,
        questions=None,
        credentials=fake_credentials,
        interview=None,
    ) -> Harness:
        interview = interview or await store.create_interview(candidate.id, f"interview-{candidate.id}")
        transport = transport or FakeTransport()
        capture = capture if capture is not None else FakeCapture()
        playback = playback if playback is not None else FakePlayback()
        sent = []

        async def _send(payload: dict):
            sent.append(payload)

        transcript = TranscriptLog(interview.id, store, retries=1, retry_delay_sec=0.0)
        await transcript.load()
        controller = SessionController(
            interview,
            candidate,
            list(QUESTIONS) if questions is None else questions,
            transport=transport,
            capture=capture,
            playback=playback,
            transcript=transcript,
            store=store,
            credentials=credentials,
            policy=policy,
            send_fn=_send,
        )
        return Harness(controller, transport, capture, playback, store, sent)

    return _build
