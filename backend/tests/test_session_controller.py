import asyncio
from dataclasses import replace

import pytest

from conftest import FAST_POLICY, HOLD, QUESTIONS, FakeCapture, FakePlayback, FakeTransport, wait_until
from core.state import SessionPhase
from voicehire.interview.controller import InterviewNotStartable
from voicehire.interview.events import OpTag, SessionEvent, TransportError, TransportErrorReason
from voicehire.models import CandidateStatus, InterviewStatus, Speaker, TranscriptEntry
from voicehire.system_metrics import get_metrics_snapshot


def _speakers(entries):
    return [(e.speaker, e.question_index) for e in entries]


@pytest.mark.asyncio
async def test_two_question_interview_runs_to_completion(session_factory):
    h = await session_factory(capture=FakeCapture(["I build payment APIs.", "I like voice products."]))

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.phase is SessionPhase.COMPLETED
    assert h.controller.history == [
        (SessionPhase.CONNECTING, None),
        (SessionPhase.ASKING_QUESTION, 0),
        (SessionPhase.LISTENING, 0),
        (SessionPhase.ASKING_QUESTION, 1),
        (SessionPhase.LISTENING, 1),
        (SessionPhase.COMPLETED, None),
    ]
    assert h.playback.spoken == QUESTIONS
    assert _speakers(h.store_transcript()) == [
        (Speaker.AI, 0),
        (Speaker.CANDIDATE, 0),
        (Speaker.AI, 1),
        (Speaker.CANDIDATE, 1),
    ]
    assert h.store_transcript()[1].message == "I build payment APIs."

    interview = await h.store.get_interview(h.controller.interview.id)
    candidate = await h.store.get_candidate("cand-1")
    assert interview.status is InterviewStatus.COMPLETED
    assert interview.started_at is not None and interview.completed_at is not None
    assert candidate.status is CandidateStatus.COMPLETED
    assert h.transport.disconnects >= 1

    phases = [p["phase"] for p in h.sent if p["type"] == "phase"]
    assert phases[-1] == "completed"
    assert any(p["type"] == "partial" for p in h.sent)


@pytest.mark.asyncio
async def test_unavailable_playback_still_logs_question_and_listens(session_factory):
    h = await session_factory(
        capture=FakeCapture(["one", "two"]),
        playback=FakePlayback(available=False),
    )

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.phase is SessionPhase.COMPLETED
    assert h.playback.spoken == []
    assert [e.message for e in h.store_transcript() if e.speaker is Speaker.AI] == QUESTIONS
    assert get_metrics_snapshot()["playback_unavailable"] == 2


@pytest.mark.asyncio
async def test_tts_failure_reported_by_playback_falls_back_to_silent_wait(session_factory):
    h = await session_factory(
        capture=FakeCapture(["one", "two"]),
        playback=FakePlayback(mode="unavailable"),
    )

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.phase is SessionPhase.COMPLETED
    assert h.playback.spoken == QUESTIONS


@pytest.mark.asyncio
async def test_playback_that_never_reports_falls_back_after_timeout(session_factory):
    h = await session_factory(
        capture=FakeCapture(["one", "two"]),
        playback=FakePlayback(mode="silent"),
    )

    await h.controller.start()
    await h.controller.wait_finished(timeout=3)

    assert h.controller.phase is SessionPhase.COMPLETED
    assert get_metrics_snapshot()["playback_fallbacks"] == 2


@pytest.mark.asyncio
async def test_capture_restarts_up_to_cap_then_requires_manual_entry(session_factory):
    capture = FakeCapture([None, None, None])
    h = await session_factory(capture=capture, questions=["What motivates you?"])

    await h.controller.start()
    await wait_until(lambda: h.controller.manual_entry_required)

    assert h.controller.phase is SessionPhase.LISTENING
    assert len(capture.starts) == 1 + FAST_POLICY.capture_restart_cap
    assert [tag.attempt for tag in capture.starts] == [1, 2, 3]
    metrics = get_metrics_snapshot()
    assert metrics["capture_restarts"] == FAST_POLICY.capture_restart_cap
    assert metrics["capture_manual_fallbacks"] == 1
    assert any(p["type"] == "phase" and p["manual_entry_required"] for p in h.sent)

    assert h.controller.submit_answer("  Shipping things people use.  ", 0) is True
    await h.controller.wait_finished(timeout=2)

    assert h.store_transcript()[-1].message == "Shipping things people use."
    assert get_metrics_snapshot()["answers_manual"] == 1


@pytest.mark.asyncio
async def test_unavailable_capture_goes_straight_to_manual_entry(session_factory):
    capture = FakeCapture(available=False)
    h = await session_factory(capture=capture, questions=["What motivates you?"])

    await h.controller.start()
    await wait_until(lambda: h.controller.manual_entry_required)

    assert capture.starts == []
    assert h.controller.submit_answer("Typed instead", None) is True
    await h.controller.wait_finished(timeout=2)
    assert h.controller.phase is SessionPhase.COMPLETED


@pytest.mark.asyncio
async def test_capture_deadline_promotes_buffered_partial(session_factory):
    policy = replace(FAST_POLICY, capture_max_sec=0.15)
    h = await session_factory(
        capture=FakeCapture([("partial", "I was halfway through")]),
        questions=["Describe a hard bug."],
        policy=policy,
    )

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.phase is SessionPhase.COMPLETED
    assert h.store_transcript()[-1].message == "I was halfway through"
    assert get_metrics_snapshot()["capture_deadline_hits"] == 1


@pytest.mark.asyncio
async def test_capture_deadline_without_text_requires_manual_entry(session_factory):
    policy = replace(FAST_POLICY, capture_max_sec=0.15)
    h = await session_factory(capture=FakeCapture([HOLD]), questions=["Describe a hard bug."], policy=policy)

    await h.controller.start()
    await wait_until(lambda: h.controller.manual_entry_required)

    assert h.controller.phase is SessionPhase.LISTENING
    assert h.capture.stops >= 1


@pytest.mark.asyncio
async def test_late_event_from_previous_question_is_dropped(session_factory):
    capture = FakeCapture([HOLD, HOLD])
    h = await session_factory(capture=capture)

    await h.controller.start()
    await wait_until(lambda: h.controller.phase is SessionPhase.LISTENING and len(capture.starts) == 1)
    old_tag = capture.starts[0]

    assert h.controller.submit_answer("typed first answer", 0) is True
    await wait_until(lambda: h.controller.phase is SessionPhase.LISTENING and h.controller.question_index == 1)

    dropped_before = get_metrics_snapshot()["stale_events_dropped"]
    h.controller.post(SessionEvent.capture_final(old_tag, "late speech for question one"))
    await wait_until(lambda: get_metrics_snapshot()["stale_events_dropped"] > dropped_before)

    assert h.controller.question_index == 1
    assert all(e.message != "late speech for question one" for e in h.controller.transcript.entries)

    assert h.controller.submit_answer("typed second answer", 1) is True
    await h.controller.wait_finished(timeout=2)
    assert len(h.store_transcript()) == 4


@pytest.mark.asyncio
async def test_manual_answer_rejected_outside_listening(session_factory):
    h = await session_factory(capture=FakeCapture([HOLD]))

    assert h.controller.submit_answer("too early", 0) is False

    await h.controller.start()
    await wait_until(lambda: h.controller.phase is SessionPhase.LISTENING)

    assert h.controller.submit_answer("   ", 0) is False
    assert h.controller.submit_answer("wrong question", 1) is False
    await h.controller.close()


@pytest.mark.asyncio
async def test_second_answer_for_same_question_is_ignored(session_factory):
    h = await session_factory(capture=FakeCapture([HOLD, HOLD]))

    await h.controller.start()
    await wait_until(lambda: h.controller.phase is SessionPhase.LISTENING)

    h.controller.submit_answer("first", 0)
    h.controller.submit_answer("second", 0)
    await wait_until(lambda: h.controller.question_index == 1 and h.controller.phase is SessionPhase.LISTENING)

    candidate_entries = [e for e in h.controller.transcript.entries if e.speaker is Speaker.CANDIDATE]
    assert [e.message for e in candidate_entries] == ["first"]
    await h.controller.close()


@pytest.mark.asyncio
async def test_typed_answer_rejected_during_advance_pause(session_factory):
    h = await session_factory(
        capture=FakeCapture(["spoken answer", HOLD]),
        policy=replace(FAST_POLICY, answer_pause_sec=0.5),
    )

    await h.controller.start()
    await wait_until(lambda: any(e.speaker is Speaker.CANDIDATE for e in h.controller.transcript.entries))

    assert h.controller.phase is SessionPhase.LISTENING
    assert h.controller.question_index == 0
    assert h.controller.submit_answer("typed after speaking", 0) is False

    await wait_until(lambda: h.controller.question_index == 1)
    candidate_entries = [e.message for e in h.controller.transcript.entries if e.speaker is Speaker.CANDIDATE]
    assert candidate_entries == ["spoken answer"]
    await h.controller.close()


@pytest.mark.asyncio
async def test_room_failure_is_classified_and_tears_down(session_factory):
    transport = FakeTransport(fail_with=TransportError(TransportErrorReason.NETWORK, "ws closed"))
    h = await session_factory(transport=transport)

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.phase is SessionPhase.FAILED
    assert h.controller.failure.subsystem == "transport"
    assert h.controller.failure.reason == "network"
    assert "network" in h.controller.failure.message.lower()
    assert transport.disconnects >= 1
    assert h.capture.starts == []
    assert h.playback.spoken == []

    interview = await h.store.get_interview(h.controller.interview.id)
    assert interview.status is InterviewStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_microphone_permission_denied_names_the_microphone(session_factory):
    transport = FakeTransport(
        fail_with=TransportError(TransportErrorReason.PERMISSION_DENIED, "NotAllowedError", source="microphone")
    )
    h = await session_factory(transport=transport)

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    failure = h.controller.failure
    assert (failure.subsystem, failure.reason) == ("microphone", "permission-denied")
    assert "microphone" in failure.message.lower()
    failed = [p for p in h.sent if p["type"] == "phase" and p["phase"] == "failed"]
    assert failed and failed[-1]["failure"]["reason"] == "permission-denied"


@pytest.mark.asyncio
async def test_device_error_while_listening_fails_session(session_factory):
    h = await session_factory(capture=FakeCapture([HOLD]))

    await h.controller.start()
    await wait_until(lambda: h.controller.phase is SessionPhase.LISTENING)
    error = TransportError(TransportErrorReason.DEVICE_BUSY, "NotReadableError", source="microphone")
    h.controller.post(SessionEvent.device_error(OpTag(h.controller.session), error))
    await h.controller.wait_finished(timeout=2)

    assert (h.controller.failure.subsystem, h.controller.failure.reason) == ("microphone", "device-busy")
    assert h.capture.stops >= 1


@pytest.mark.asyncio
async def test_connect_timeout_without_candidate_audio(session_factory):
    policy = replace(FAST_POLICY, connect_timeout_sec=0.1)
    h = await session_factory(transport=FakeTransport(auto_device=False), policy=policy)

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert (h.controller.failure.subsystem, h.controller.failure.reason) == ("microphone", "not-found")


@pytest.mark.asyncio
async def test_missing_credentials_fail_before_transport(session_factory):
    async def _no_credentials(room, participant, interview_id):
        raise RuntimeError("LiveKit credentials not configured")

    transport = FakeTransport()
    h = await session_factory(transport=transport, credentials=_no_credentials)

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.failure.subsystem == "credentials"
    assert transport.connects == []


@pytest.mark.asyncio
async def test_restart_after_failure_opens_new_session(session_factory):
    transport = FakeTransport(fail_with=TransportError(TransportErrorReason.NETWORK), fail_times=1)
    h = await session_factory(transport=transport, capture=FakeCapture(["one", "two"]))

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)
    assert h.controller.phase is SessionPhase.FAILED

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.phase is SessionPhase.COMPLETED
    assert h.controller.session == 2
    assert h.controller.failure is None
    assert (SessionPhase.IDLE, None) in h.controller.history
    assert [tag.session for tag in transport.tags] == [1, 2]


@pytest.mark.asyncio
async def test_exit_leaves_interview_resumable(session_factory):
    h = await session_factory(capture=FakeCapture([HOLD]))

    await h.controller.start()
    await wait_until(lambda: h.controller.phase is SessionPhase.LISTENING)
    h.controller.exit()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.phase is SessionPhase.FAILED
    assert (h.controller.failure.subsystem, h.controller.failure.reason) == ("session", "exited")
    assert h.transport.connected is False
    interview = await h.store.get_interview(h.controller.interview.id)
    assert interview.status is InterviewStatus.IN_PROGRESS
    assert get_metrics_snapshot()["interviews_exited"] == 1


@pytest.mark.asyncio
async def test_finalize_twice_is_a_no_op(session_factory):
    h = await session_factory(capture=FakeCapture(["one", "two"]))

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)
    completed_at = h.controller.interview.completed_at

    await h.controller.finalize()
    await h.controller.finalize()

    assert len(h.store_transcript()) == 4
    assert h.controller.history.count((SessionPhase.COMPLETED, None)) == 1
    assert h.controller.interview.completed_at == completed_at
    assert get_metrics_snapshot()["interviews_completed"] == 1


@pytest.mark.asyncio
async def test_resume_reasks_unanswered_question_without_second_prompt(session_factory, seeded_store):
    store, candidate, _ = seeded_store
    interview = await store.create_interview(candidate.id, f"interview-{candidate.id}")
    await store.mark_interview_started(interview.id, candidate.id, interview.created_at)
    for speaker, message, index in (
        (Speaker.AI, QUESTIONS[0], 0),
        (Speaker.CANDIDATE, "Earlier answer", 0),
        (Speaker.AI, QUESTIONS[1], 1),
    ):
        await store.append_transcript(TranscriptEntry(interview.id, speaker, message, index))

    h = await session_factory(interview=interview, capture=FakeCapture(["Resumed answer"]))
    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.playback.spoken == [QUESTIONS[1]]
    assert _speakers(h.store_transcript()) == [
        (Speaker.AI, 0),
        (Speaker.CANDIDATE, 0),
        (Speaker.AI, 1),
        (Speaker.CANDIDATE, 1),
    ]
    assert h.controller.history[1] == (SessionPhase.ASKING_QUESTION, 1)
    assert get_metrics_snapshot()["interviews_resumed"] == 1


@pytest.mark.asyncio
async def test_resume_with_every_question_answered_completes_without_asking(session_factory, seeded_store):
    store, candidate, _ = seeded_store
    interview = await store.create_interview(candidate.id, f"interview-{candidate.id}")
    for index, question in enumerate(QUESTIONS):
        await store.append_transcript(TranscriptEntry(interview.id, Speaker.AI, question, index))
        await store.append_transcript(TranscriptEntry(interview.id, Speaker.CANDIDATE, f"answer {index}", index))

    h = await session_factory(interview=interview)
    await h.controller.start()
    await h.controller.wait_finished(timeout=2)

    assert h.controller.phase is SessionPhase.COMPLETED
    assert h.playback.spoken == []
    assert len(h.store_transcript()) == 4


@pytest.mark.asyncio
async def test_start_preconditions(session_factory, seeded_store):
    h = await session_factory(questions=[])
    with pytest.raises(InterviewNotStartable):
        await h.controller.start()

    store, candidate, _ = seeded_store
    done = await store.create_interview(candidate.id, f"interview-{candidate.id}")
    await store.complete_interview(done.id, candidate.id, done.created_at)
    h2 = await session_factory(interview=done)
    with pytest.raises(InterviewNotStartable):
        await h2.controller.start()


@pytest.mark.asyncio
async def test_start_twice_while_running_is_rejected(session_factory):
    h = await session_factory(capture=FakeCapture([HOLD]))

    await h.controller.start()
    with pytest.raises(InterviewNotStartable):
        await h.controller.start()
    await h.controller.close()
    assert h.controller.phase is SessionPhase.FAILED


@pytest.mark.asyncio
async def test_transcript_write_failure_surfaces_notice_and_session_continues(session_factory):
    h = await session_factory(capture=FakeCapture(["one", "two"]))
    original = h.store.append_transcript

    async def _flaky(entry):
        if entry.speaker is Speaker.CANDIDATE and entry.question_index == 0:
            raise RuntimeError("db down")
        await original(entry)

    h.store.append_transcript = _flaky

    await h.controller.start()
    await h.controller.wait_finished(timeout=2)
    await asyncio.sleep(0)

    assert h.controller.phase is SessionPhase.COMPLETED
    assert len(h.controller.transcript.entries) == 4
    assert len(h.controller.transcript.failed) == 1
    assert h.controller.snapshot()["unsaved_transcript_entries"] == 1
    assert any(p["type"] == "notice" and p["subsystem"] == "transcript" for p in h.sent)
