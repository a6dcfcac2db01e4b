"""
Interview session controller.

Drives one candidate through the question list, one question at a time:

    idle -> connecting -> asking_question(i) -> listening(i) -> ... -> completed
                      any non-terminal phase -> failed(reason)

All state changes happen inside ``dispatch`` on a single runner task fed by
one queue. Adapters, timers and UI commands only ever ``post`` events; they
never touch controller state. Each event carries the tag of the operation
that produced it, and events from superseded operations are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from core.config import SessionPolicy
from core.logger import log_event
from core.state import TERMINAL_PHASES, SessionPhase
from voicehire.adapters.base import CaptureAdapter, PlaybackAdapter, TransportAdapter
from voicehire.db.store import InterviewStore, StoreError
from voicehire.interview.events import (
    CAPTURE_KINDS,
    ConnectionState,
    EventKind,
    OpTag,
    SessionEvent,
    SessionFailure,
    TimerKind,
    TransportError,
    TransportErrorReason,
)
from voicehire.interview.turn_lifecycle import QuestionTurn
from voicehire.models import Candidate, Interview, InterviewStatus, JoinCredential, Speaker, TranscriptEntry, utc_now
from voicehire.system_metrics import increment_metric, observe_answer_latency
from voicehire.transcript.log import TranscriptLog

logger = logging.getLogger("session_controller")

SendFn = Callable[[dict], Awaitable[None]]
CredentialFn = Callable[[str, str, str], Awaitable[JoinCredential]]

STARTABLE_STATUSES = (InterviewStatus.PENDING, InterviewStatus.IN_PROGRESS)


class InterviewNotStartable(Exception):
    pass


class SessionController:
    def __init__(
        self,
        interview: Interview,
        candidate: Candidate,
        questions: list[str],
        *,
        transport: TransportAdapter,
        capture: CaptureAdapter | None,
        playback: PlaybackAdapter | None,
        transcript: TranscriptLog,
        store: InterviewStore,
        credentials: CredentialFn,
        policy: SessionPolicy | None = None,
        send_fn: SendFn | None = None,
        participant_name: str = "ai-interviewer",
    ):
        self.interview = interview
        self.candidate = candidate
        self.questions = list(questions)
        self.transport = transport
        self.capture = capture
        self.playback = playback
        self.transcript = transcript
        self.store = store
        self.credentials = credentials
        self.policy = policy or SessionPolicy()
        self.send_fn = send_fn
        self.participant_name = participant_name

        self.phase = SessionPhase.IDLE
        self.question_index: int | None = None
        self.session = 0
        self.step = 0
        self.failure: SessionFailure | None = None
        self.manual_entry_required = False
        self.partial_text = ""
        self.history: list[tuple[SessionPhase, int | None]] = []

        self._queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._runner: asyncio.Task | None = None
        self._ops: set[asyncio.Task] = set()
        self._timers: dict[TimerKind, asyncio.Task] = {}
        self._timer_serials: dict[TimerKind, int] = {}
        self._timer_seq = 0
        self._finished = asyncio.Event()
        self._finalized = False
        self._turn: QuestionTurn | None = None
        self._advance_to: int | None = None
        self._transport_ready = False
        self._device_ready = False
        self._playback_started = False
        self._capture_attempt = 0
        self._capture_live = False
        self._capture_restarts = 0

        self._handlers = {
            EventKind.TRANSPORT_CONNECTED: self._on_transport_connected,
            EventKind.TRANSPORT_FAILED: self._on_transport_failed,
            EventKind.CONNECTION_STATE: self._on_connection_state,
            EventKind.PARTICIPANT_JOINED: self._on_participant,
            EventKind.PARTICIPANT_LEFT: self._on_participant,
            EventKind.CONNECTION_QUALITY: self._on_quality,
            EventKind.DEVICE_READY: self._on_device_ready,
            EventKind.DEVICE_ERROR: self._on_device_error,
            EventKind.PLAYBACK_STARTED: self._on_playback_started,
            EventKind.PLAYBACK_ENDED: self._on_playback_ended,
            EventKind.PLAYBACK_UNAVAILABLE: self._on_playback_unavailable,
            EventKind.CAPTURE_PARTIAL: self._on_capture_partial,
            EventKind.CAPTURE_FINAL: self._on_capture_final,
            EventKind.CAPTURE_ENDED: self._on_capture_ended,
            EventKind.TIMER: self._on_timer,
            EventKind.MANUAL_ANSWER: self._on_manual_answer,
            EventKind.EXIT_REQUESTED: self._on_exit,
        }

        for adapter in (transport, capture, playback):
            if adapter is not None:
                adapter.bind(self.post)
        if self.transcript.on_warning is None:
            self.transcript.on_warning = self._on_transcript_warning

    # ------------------------------------------------------------------
    # public surface
    # ------------------------------------------------------------------

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    def snapshot(self) -> dict:
        question = None
        if self.question_index is not None and 0 <= self.question_index < self.total_questions:
            question = self.questions[self.question_index]
        return {
            "interview_id": self.interview.id,
            "phase": self.phase.value,
            "question_index": self.question_index,
            "question": question,
            "total_questions": self.total_questions,
            "manual_entry_required": self.manual_entry_required,
            "failure": self.failure.to_dict() if self.failure else None,
            "session": self.session,
            "unsaved_transcript_entries": len(self.transcript.failed),
        }

    def post(self, event: SessionEvent) -> None:
        self._queue.put_nowait(event)

    async def start(self) -> None:
        if not self.questions:
            raise InterviewNotStartable("candidate has no interview questions")
        if self.interview.status not in STARTABLE_STATUSES:
            raise InterviewNotStartable(f"interview is {self.interview.status.value}")
        if self.phase not in (SessionPhase.IDLE, SessionPhase.FAILED):
            raise InterviewNotStartable(f"session is already {self.phase.value}")

        if self.phase is SessionPhase.FAILED:
            await self._enter(SessionPhase.IDLE, None)

        self._reset_session_state()
        self.session += 1
        self._ensure_runner()

        resuming = bool(self.transcript.entries)
        await self._enter(SessionPhase.CONNECTING, None)
        increment_metric("interviews_resumed" if resuming else "interviews_started")
        await self._mark_started()

        tag = self._tag()
        self._arm_timer(TimerKind.CONNECT_TIMEOUT, self.policy.connect_timeout_sec, tag)
        self._spawn(self._connect(OpTag(self.session)))

    def submit_answer(self, text: str, question_index: int | None = None) -> bool:
        cleaned = str(text or "").strip()
        if not cleaned or self.phase is not SessionPhase.LISTENING:
            return False
        # answered turns stay in listening through the advance pause
        if self._turn is None or self._turn.answered:
            return False
        index = self.question_index if question_index is None else question_index
        if index != self.question_index:
            return False
        self.post(SessionEvent.manual_answer(cleaned, index))
        return True

    def exit(self) -> None:
        self.post(SessionEvent.exit_requested())

    async def finalize(self) -> None:
        """Complete the interview. Repeated calls are no-ops."""
        await self._complete()

    async def wait_finished(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self._finished.wait(), timeout=timeout)

    async def close(self, timeout: float = 5.0) -> None:
        if self.phase not in TERMINAL_PHASES and self.phase is not SessionPhase.IDLE:
            self.exit()
            try:
                await asyncio.wait_for(self._finished.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("session close timed out waiting for exit | interview_id=%s", self.interview.id)

        self._cancel_all_timers()
        await self._teardown()
        if self._runner is not None and not self._runner.done():
            self._runner.cancel()
            await asyncio.gather(self._runner, return_exceptions=True)
        self._runner = None
        await self.transcript.close()

    # ------------------------------------------------------------------
    # dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, event: SessionEvent) -> None:
        if self._is_stale(event):
            increment_metric("stale_events_dropped")
            log_event(
                "session",
                "stale_event_dropped",
                self.interview.id,
                kind=event.kind.value,
                phase=self.phase.value,
                question_index=self.question_index,
            )
            return
        await self._handlers[event.kind](event)

    def _is_stale(self, event: SessionEvent) -> bool:
        if event.kind is EventKind.MANUAL_ANSWER:
            return (
                self.phase is not SessionPhase.LISTENING
                or event.question_index != self.question_index
                or self._turn is None
                or self._turn.answered
            )

        tag = event.tag
        if tag is None:
            return False
        if tag.session != self.session:
            return True
        if event.kind is EventKind.TIMER:
            return self._timer_serials.get(event.timer) != tag.attempt
        if tag.step is not None and tag.step != self.step:
            return True
        if event.kind in CAPTURE_KINDS and tag.attempt != self._capture_attempt:
            return True
        return False

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("session event handling failed | interview_id=%s kind=%s", self.interview.id, event.kind.value)
                await self._fail(SessionFailure.build("session", "internal", str(exc)))

    # ------------------------------------------------------------------
    # connecting
    # ------------------------------------------------------------------

    async def _mark_started(self) -> None:
        try:
            self.interview = await self.store.mark_interview_started(self.interview.id, self.candidate.id, utc_now())
        except StoreError as exc:
            increment_metric("store_write_failures")
            logger.warning("mark_interview_started failed | interview_id=%s err=%s", self.interview.id, exc)
            await self._notice("store", "We could not record the interview start yet. Your answers are still being kept.")

    async def _connect(self, tag: OpTag) -> None:
        try:
            credential = await self.credentials(self.interview.room_name, self.participant_name, self.interview.id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("join credential request failed | interview_id=%s err=%s", self.interview.id, exc)
            credential = None

        if credential is None or not credential.is_complete():
            error = TransportError(TransportErrorReason.NETWORK, "join credential incomplete", source="credentials")
            self.post(SessionEvent.transport_failed(tag, error))
            return

        try:
            await self.transport.connect(credential, tag)
        except asyncio.CancelledError:
            raise
        except TransportError as exc:
            self.post(SessionEvent.transport_failed(tag, exc))
            return
        except Exception as exc:
            logger.warning("transport raised unclassified error | interview_id=%s err=%s", self.interview.id, exc)
            self.post(SessionEvent.transport_failed(tag, TransportError(TransportErrorReason.NETWORK, str(exc))))
            return
        self.post(SessionEvent.transport_connected(tag))

    async def _on_transport_connected(self, event: SessionEvent) -> None:
        self._transport_ready = True
        log_event("transport", "connected", self.interview.id, room=self.interview.room_name)
        await self._emit({"type": "transport", "event": "connected"})
        await self._maybe_begin()

    async def _on_device_ready(self, event: SessionEvent) -> None:
        self._device_ready = True
        log_event("transport", "device_ready", self.interview.id, participant=event.participant)
        await self._maybe_begin()

    async def _maybe_begin(self) -> None:
        if self.phase is not SessionPhase.CONNECTING:
            return
        if not (self._transport_ready and self._device_ready):
            return
        self._cancel_timer(TimerKind.CONNECT_TIMEOUT)
        start_index = self.transcript.resume_point(self.total_questions)
        if start_index >= self.total_questions:
            await self._complete()
            return
        await self._ask(start_index)

    async def _on_transport_failed(self, event: SessionEvent) -> None:
        if self.phase in TERMINAL_PHASES:
            return
        error = event.error or TransportError(TransportErrorReason.NETWORK)
        if error.source == "credentials":
            await self._fail(SessionFailure.build("credentials", "unavailable", error.detail))
            return
        await self._fail(SessionFailure.from_transport_error(error))

    async def _on_device_error(self, event: SessionEvent) -> None:
        if self.phase in TERMINAL_PHASES or self.phase is SessionPhase.IDLE:
            return
        error = event.error or TransportError(TransportErrorReason.NOT_FOUND, source="microphone")
        await self._fail(SessionFailure.build("microphone", error.reason.value, error.detail))

    async def _on_connection_state(self, event: SessionEvent) -> None:
        state = event.connection_state
        log_event("transport", "connection_state", self.interview.id, state=state, phase=self.phase)
        await self._emit({"type": "transport", "event": "connection_state", "state": state.value if state else None})
        if state is ConnectionState.DISCONNECTED and self.phase not in TERMINAL_PHASES and self.phase is not SessionPhase.IDLE:
            await self._fail(SessionFailure.build("transport", TransportErrorReason.NETWORK.value, "disconnected"))

    async def _on_participant(self, event: SessionEvent) -> None:
        action = "joined" if event.kind is EventKind.PARTICIPANT_JOINED else "left"
        log_event("transport", f"participant_{action}", self.interview.id, participant=event.participant)
        await self._emit({"type": "transport", "event": f"participant_{action}", "participant": event.participant})

    async def _on_quality(self, event: SessionEvent) -> None:
        log_event("transport", "quality", self.interview.id, participant=event.participant, quality=event.quality)
        await self._emit({"type": "transport", "event": "quality", "participant": event.participant, "quality": event.quality})

    # ------------------------------------------------------------------
    # asking
    # ------------------------------------------------------------------

    async def _ask(self, index: int) -> None:
        question = self.questions[index]
        self._turn = QuestionTurn(index, question)
        self._advance_to = None
        self._playback_started = False
        self.manual_entry_required = False
        self.partial_text = ""
        await self._enter(SessionPhase.ASKING_QUESTION, index)
        tag = self._tag()

        # a question asked before an interruption is spoken again but logged once
        if not self.transcript.has_prompt(index):
            await self._emit_entry(self.transcript.append(Speaker.AI, question, index))
        increment_metric("questions_asked")

        if self.playback is None or not self.playback.available:
            increment_metric("playback_unavailable")
            self._arm_timer(TimerKind.PLAYBACK_FALLBACK, self.policy.silent_delay_sec, tag)
            return

        self._arm_timer(TimerKind.PLAYBACK_FALLBACK, self.policy.playback_fallback_sec, tag)
        self._spawn(self._speak(question, tag))

    async def _speak(self, text: str, tag: OpTag) -> None:
        try:
            await self.playback.speak(text, tag)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("playback raised | interview_id=%s err=%s", self.interview.id, exc)
            self.post(SessionEvent.playback_unavailable(tag, str(exc)))

    async def _on_playback_started(self, event: SessionEvent) -> None:
        if self.phase is not SessionPhase.ASKING_QUESTION:
            return
        self._playback_started = True
        self._arm_timer(TimerKind.PLAYBACK_FALLBACK, self.policy.playback_max_sec, self._tag())
        await self._emit({"type": "playback", "event": "started", "question_index": self.question_index})

    async def _on_playback_ended(self, event: SessionEvent) -> None:
        if self.phase is not SessionPhase.ASKING_QUESTION:
            return
        await self._emit({"type": "playback", "event": "ended", "question_index": self.question_index})
        await self._listen()

    async def _on_playback_unavailable(self, event: SessionEvent) -> None:
        if self.phase is not SessionPhase.ASKING_QUESTION:
            return
        increment_metric("playback_unavailable")
        log_event("playback", "unavailable", self.interview.id, question_index=self.question_index, detail=event.text)
        self._playback_started = False
        self._arm_timer(TimerKind.PLAYBACK_FALLBACK, self.policy.silent_delay_sec, self._tag())

    # ------------------------------------------------------------------
    # listening
    # ------------------------------------------------------------------

    async def _listen(self) -> None:
        self._cancel_timer(TimerKind.PLAYBACK_FALLBACK)
        await self._stop_playback()
        self._capture_restarts = 0
        self.partial_text = ""
        if self._turn is not None:
            self._turn.mark_listening()
        await self._enter(SessionPhase.LISTENING, self.question_index)
        self._arm_timer(TimerKind.CAPTURE_DEADLINE, self.policy.capture_max_sec, self._tag())
        await self._begin_capture()

    async def _begin_capture(self) -> None:
        if self.capture is None or not self.capture.available:
            await self._require_manual_entry("capture_unavailable")
            return
        self._capture_attempt += 1
        self._capture_live = True
        tag = OpTag(self.session, self.step, self._capture_attempt)
        self._spawn(self._run_capture(tag))

    async def _run_capture(self, tag: OpTag) -> None:
        try:
            await self.capture.start(tag)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("capture start raised | interview_id=%s err=%s", self.interview.id, exc)
            self.post(SessionEvent.capture_ended(tag, str(exc)))

    async def _on_capture_partial(self, event: SessionEvent) -> None:
        if self.phase is not SessionPhase.LISTENING:
            return
        self.partial_text = event.text
        await self._emit({"type": "partial", "question_index": self.question_index, "text": event.text})

    async def _on_capture_final(self, event: SessionEvent) -> None:
        if self.phase is not SessionPhase.LISTENING:
            return
        text = str(event.text or "").strip()
        if text:
            await self._accept_answer(text, "speech")
            return
        await self._on_capture_ended(event)

    async def _on_capture_ended(self, event: SessionEvent) -> None:
        if self.phase is not SessionPhase.LISTENING or self.manual_entry_required or not self._capture_live:
            return
        if self._turn is not None and self._turn.answered:
            return
        self._capture_live = False

        if self._capture_restarts < self.policy.capture_restart_cap:
            self._capture_restarts += 1
            increment_metric("capture_restarts")
            log_event(
                "capture",
                "restart_scheduled",
                self.interview.id,
                question_index=self.question_index,
                restart=self._capture_restarts,
                detail=event.text,
            )
            delay = self.policy.capture_restart_backoff_sec * self._capture_restarts
            self._arm_timer(TimerKind.CAPTURE_RESTART, delay, self._tag())
            return

        await self._require_manual_entry("restart_cap_reached")

    async def _on_capture_deadline(self) -> None:
        if self.phase is not SessionPhase.LISTENING or self.manual_entry_required:
            return
        increment_metric("capture_deadline_hits")
        self._cancel_timer(TimerKind.CAPTURE_RESTART)
        await self._stop_capture()
        text = self.partial_text.strip()
        if text:
            await self._accept_answer(text, "deadline")
            return
        await self._require_manual_entry("capture_deadline")

    async def _require_manual_entry(self, reason: str) -> None:
        if self.manual_entry_required:
            return
        self.manual_entry_required = True
        self._capture_live = False
        self._cancel_timer(TimerKind.CAPTURE_RESTART)
        self._cancel_timer(TimerKind.CAPTURE_DEADLINE)
        await self._stop_capture()
        increment_metric("capture_manual_fallbacks")
        log_event("capture", "manual_entry_required", self.interview.id, question_index=self.question_index, reason=reason)
        await self._emit_phase()

    async def _on_manual_answer(self, event: SessionEvent) -> None:
        await self._accept_answer(str(event.text or "").strip(), "manual")

    async def _accept_answer(self, text: str, source: str) -> None:
        turn = self._turn
        if not text or turn is None or not await turn.try_answer(source):
            return

        index = self.question_index
        self._cancel_timer(TimerKind.CAPTURE_DEADLINE)
        self._cancel_timer(TimerKind.CAPTURE_RESTART)
        # anything still in flight for this listening step is now stale
        self.step += 1
        self._capture_live = False
        await self._stop_capture()
        self.partial_text = ""
        self.manual_entry_required = False

        entry = self.transcript.append(Speaker.CANDIDATE, text, index)
        increment_metric("answers_recorded")
        if source == "manual":
            increment_metric("answers_manual")
        if turn.listening_at is not None:
            observe_answer_latency(time.monotonic() - turn.listening_at)
        log_event("session", "answer_recorded", self.interview.id, question_index=index, source=source, answer=text)
        await self._emit_entry(entry)

        next_index = index + 1
        if next_index >= self.total_questions:
            await self._complete()
            return
        if self.policy.answer_pause_sec > 0:
            self._advance_to = next_index
            self._arm_timer(TimerKind.ADVANCE, self.policy.answer_pause_sec, self._tag())
            return
        await self._ask(next_index)

    # ------------------------------------------------------------------
    # timers
    # ------------------------------------------------------------------

    async def _on_timer(self, event: SessionEvent) -> None:
        kind = event.timer
        self._timer_serials.pop(kind, None)
        self._timers.pop(kind, None)

        if kind is TimerKind.CONNECT_TIMEOUT:
            if self.phase is not SessionPhase.CONNECTING:
                return
            if not self._transport_ready:
                await self._fail(SessionFailure.build("transport", TransportErrorReason.NETWORK.value, "connect timeout"))
            else:
                await self._fail(SessionFailure.build("microphone", TransportErrorReason.NOT_FOUND.value, "no candidate audio"))
        elif kind is TimerKind.PLAYBACK_FALLBACK:
            if self.phase is not SessionPhase.ASKING_QUESTION:
                return
            increment_metric("playback_fallbacks")
            log_event(
                "playback",
                "fallback_elapsed",
                self.interview.id,
                question_index=self.question_index,
                playback_started=self._playback_started,
            )
            await self._listen()
        elif kind is TimerKind.CAPTURE_RESTART:
            if self.phase is SessionPhase.LISTENING and not self.manual_entry_required:
                await self._begin_capture()
        elif kind is TimerKind.CAPTURE_DEADLINE:
            await self._on_capture_deadline()
        elif kind is TimerKind.ADVANCE:
            next_index = self._advance_to
            self._advance_to = None
            if next_index is not None and self.phase is SessionPhase.LISTENING:
                await self._ask(next_index)

    def _arm_timer(self, kind: TimerKind, delay: float, tag: OpTag) -> None:
        self._cancel_timer(kind)
        self._timer_seq += 1
        serial = self._timer_seq
        self._timer_serials[kind] = serial
        timer_tag = OpTag(tag.session, tag.step, serial)
        self._timers[kind] = asyncio.create_task(self._timer(kind, delay, timer_tag))

    async def _timer(self, kind: TimerKind, delay: float, tag: OpTag) -> None:
        await asyncio.sleep(max(0.0, float(delay)))
        self.post(SessionEvent.timer_fired(tag, kind))

    def _cancel_timer(self, kind: TimerKind) -> None:
        self._timer_serials.pop(kind, None)
        task = self._timers.pop(kind, None)
        if task is not None and not task.done():
            task.cancel()

    def _cancel_all_timers(self) -> None:
        for kind in list(self._timers.keys()):
            self._cancel_timer(kind)
        self._timer_serials.clear()

    # ------------------------------------------------------------------
    # terminal transitions
    # ------------------------------------------------------------------

    async def _complete(self) -> None:
        if self._finalized:
            log_event("session", "finalize_skipped", self.interview.id)
            return
        self._finalized = True
        self._cancel_all_timers()
        await self._enter(SessionPhase.COMPLETED, None)
        await self._teardown()
        await self.transcript.flush()

        try:
            self.interview = await self.store.complete_interview(self.interview.id, self.candidate.id, utc_now())
        except StoreError as exc:
            increment_metric("store_write_failures")
            logger.warning("complete_interview failed | interview_id=%s err=%s", self.interview.id, exc)
            await self._notice("store", "Your interview is complete, but we could not record it yet. Please let HR know.")

        increment_metric("interviews_completed")
        self._finished.set()

    async def _fail(self, failure: SessionFailure) -> None:
        if self.phase in TERMINAL_PHASES:
            return
        self.failure = failure
        self._cancel_all_timers()
        await self._enter(SessionPhase.FAILED, self.question_index)
        await self._teardown()
        await self.transcript.flush()
        exited = failure.subsystem == "session" and failure.reason == "exited"
        increment_metric("interviews_exited" if exited else "interviews_failed")
        log_event(
            "session",
            "failed",
            self.interview.id,
            subsystem=failure.subsystem,
            reason=failure.reason,
            detail=failure.detail,
        )
        self._finished.set()

    async def _on_exit(self, event: SessionEvent) -> None:
        if self.phase in TERMINAL_PHASES or self.phase is SessionPhase.IDLE:
            return
        # stored interview stays in_progress so the same link resumes it
        await self._fail(SessionFailure.build("session", "exited"))

    async def _teardown(self) -> None:
        pending = [task for task in self._ops if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._ops.clear()

        await self._stop_capture()
        await self._stop_playback()
        if self.transport is not None:
            try:
                await self.transport.disconnect()
            except Exception as exc:
                logger.warning("transport disconnect failed | interview_id=%s err=%s", self.interview.id, exc)
        self._transport_ready = False
        self._device_ready = False

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _reset_session_state(self) -> None:
        self.failure = None
        self.manual_entry_required = False
        self.partial_text = ""
        self._finished = asyncio.Event()
        self._turn = None
        self._advance_to = None
        self._transport_ready = False
        self._device_ready = False
        self._playback_started = False
        self._capture_live = False
        self._capture_restarts = 0

    def _ensure_runner(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._ops.add(task)
        task.add_done_callback(self._ops.discard)
        return task

    def _tag(self) -> OpTag:
        return OpTag(self.session, self.step)

    async def _enter(self, phase: SessionPhase, index: int | None) -> None:
        previous = self.phase
        self.phase = phase
        self.question_index = index
        self.step += 1
        self.history.append((phase, index))
        log_event(
            "session",
            "phase_changed",
            self.interview.id,
            previous=previous,
            phase=phase,
            question_index=index,
            session=self.session,
        )
        await self._emit_phase()

    async def _stop_capture(self) -> None:
        if self.capture is None:
            return
        try:
            await self.capture.stop()
        except Exception as exc:
            logger.warning("capture stop failed | interview_id=%s err=%s", self.interview.id, exc)

    async def _stop_playback(self) -> None:
        if self.playback is None:
            return
        try:
            await self.playback.stop()
        except Exception as exc:
            logger.warning("playback stop failed | interview_id=%s err=%s", self.interview.id, exc)

    async def _emit(self, payload: dict) -> None:
        if self.send_fn is None:
            return
        try:
            await self.send_fn(payload)
        except Exception as exc:
            logger.warning("session emit failed | interview_id=%s type=%s err=%s", self.interview.id, payload.get("type"), exc)

    async def _emit_phase(self) -> None:
        await self._emit({"type": "phase", **self.snapshot()})

    async def _emit_entry(self, entry: TranscriptEntry) -> None:
        await self._emit({"type": "transcript", "entry": entry.to_dict()})

    async def _notice(self, subsystem: str, message: str) -> None:
        await self._emit({"type": "notice", "level": "warning", "subsystem": subsystem, "message": message})

    async def _on_transcript_warning(self, entry: TranscriptEntry, error: Exception | None) -> None:
        await self._notice(
            "transcript",
            "Part of the conversation could not be saved to the server. The interview continues normally.",
        )
