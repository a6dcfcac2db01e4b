import pytest

from voicehire.db.store import InMemoryInterviewStore
from voicehire.interview.turn_lifecycle import QuestionTurn
from voicehire.models import Speaker, TranscriptEntry
from voicehire.system_metrics import get_metrics_snapshot
from voicehire.transcript.log import TranscriptLog


class _FlakyStore(InMemoryInterviewStore):
    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def append_transcript(self, entry: TranscriptEntry) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("insert timed out")
        await super().append_transcript(entry)


@pytest.mark.asyncio
async def test_append_keeps_order_and_mirrors_to_store():
    store = InMemoryInterviewStore()
    log = TranscriptLog("iv-1", store)

    log.append(Speaker.AI, "Q1", 0)
    log.append(Speaker.CANDIDATE, "A1", 0)
    log.append(Speaker.AI, "Q2", 1)
    await log.flush()

    assert [e.sequence for e in log.entries] == [0, 1, 2]
    assert [e.message for e in store.transcripts["iv-1"]] == ["Q1", "A1", "Q2"]
    assert log.as_conversation()[1] == {"speaker": "candidate", "message": "A1"}
    await log.close()


@pytest.mark.asyncio
async def test_failed_append_is_retried_once():
    store = _FlakyStore(failures=1)
    log = TranscriptLog("iv-1", store, retries=1, retry_delay_sec=0.0)

    log.append(Speaker.AI, "Q1", 0)
    await log.flush()

    assert store.attempts == 2
    assert [e.message for e in store.transcripts["iv-1"]] == ["Q1"]
    assert log.failed == []
    assert get_metrics_snapshot()["transcript_append_retries"] == 1
    await log.close()


@pytest.mark.asyncio
async def test_exhausted_retries_report_warning_without_raising():
    store = _FlakyStore(failures=5)
    warnings = []

    async def _warn(entry, error):
        warnings.append((entry.message, str(error)))

    log = TranscriptLog("iv-1", store, retries=1, retry_delay_sec=0.0, on_warning=_warn)
    entry = log.append(Speaker.CANDIDATE, "lost answer", 0)
    await log.flush()

    assert log.entries == [entry]
    assert log.failed == [entry]
    assert warnings == [("lost answer", "insert timed out")]
    assert get_metrics_snapshot()["transcript_append_failures"] == 1
    await log.close()


@pytest.mark.asyncio
async def test_load_and_resume_point():
    store = InMemoryInterviewStore()
    await store.append_transcript(TranscriptEntry("iv-1", Speaker.AI, "Q1", 0))
    await store.append_transcript(TranscriptEntry("iv-1", Speaker.CANDIDATE, "A1", 0))
    await store.append_transcript(TranscriptEntry("iv-1", Speaker.AI, "Q2", 1))

    log = TranscriptLog("iv-1", store)
    await log.load()

    assert [e.sequence for e in log.entries] == [0, 1, 2]
    assert log.resume_point(3) == 1
    assert log.has_prompt(1) is True
    assert log.has_prompt(2) is False

    log.append(Speaker.CANDIDATE, "A2", 1)
    assert log.resume_point(2) == 2
    await log.close()


@pytest.mark.asyncio
async def test_question_turn_accepts_one_answer():
    turn = QuestionTurn(0, "Q1")
    turn.mark_listening()

    assert await turn.try_answer("speech") is True
    assert await turn.try_answer("manual") is False
    assert turn.answered is True
    assert turn.answer_source == "speech"
    assert turn.listening_at is not None
