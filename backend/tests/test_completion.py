import pytest

from voicehire.db.store import InMemoryInterviewStore
from voicehire.models import Speaker, TranscriptEntry
from voicehire.services.completion import (
    CompletionService,
    CompletionUnavailable,
    clamp_score,
    parse_assessment,
)
from voicehire.services.review import InterviewNotFound, NothingToReview, ReviewService


class _FakeCompletions:
    def __init__(self, content=None, fail_times: int = 0):
        self.content = content
        self.fail_times = fail_times
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if len(self.calls) <= self.fail_times:
            raise RuntimeError("forced")

        class _Msg:
            content = self.content

        class _Choice:
            message = _Msg()

        class _Response:
            choices = [_Choice()]

        return _Response()


class _FakeClient:
    def __init__(self, completions: _FakeCompletions):
        class _Chat:
            pass

        self.chat = _Chat()
        self.chat.completions = completions


def test_parse_assessment_defaults_and_clamp():
    assert parse_assessment("not json").summary == "Analysis completed"
    assert parse_assessment("not json").score == 5
    assert parse_assessment('{"summary": "Solid", "score": 14}').score == 10
    assert parse_assessment('{"summary": "", "score": "0"}').summary == "Analysis completed"
    assert parse_assessment('{"summary": "", "score": "0"}').score == 1
    assert clamp_score("7.4") == 7
    assert clamp_score(None) == 5


@pytest.mark.asyncio
async def test_summarize_interview_requests_json():
    completions = _FakeCompletions('{"summary": "Clear communicator.", "score": 8}')
    service = CompletionService("", client=_FakeClient(completions))

    assessment = await service.summarize_interview(
        "Ada",
        "Backend Engineer",
        [{"speaker": "ai", "message": "Q1"}, {"speaker": "candidate", "message": "A1"}],
    )

    assert assessment.summary == "Clear communicator."
    assert assessment.score == 8
    call = completions.calls[0]
    assert call["response_format"] == {"type": "json_object"}
    assert "Ada" in call["messages"][1]["content"]
    assert "Candidate: A1" in call["messages"][1]["content"]


@pytest.mark.asyncio
async def test_completion_retries_then_succeeds():
    completions = _FakeCompletions("Can you give an example?", fail_times=1)
    service = CompletionService("", retries=1, client=_FakeClient(completions))

    reply = await service.follow_up("Tell me about yourself.", "I build APIs.")

    assert reply == "Can you give an example?"
    assert len(completions.calls) == 2
    assert completions.calls[-1]["max_tokens"] == 150


@pytest.mark.asyncio
async def test_completion_failure_raises_unavailable():
    completions = _FakeCompletions("unused", fail_times=5)
    service = CompletionService("", retries=0, timeout_sec=0.1, client=_FakeClient(completions))

    with pytest.raises(CompletionUnavailable):
        await service.follow_up("Q", "A")
    assert len(completions.calls) == 1


@pytest.mark.asyncio
async def test_unconfigured_completion_raises():
    service = CompletionService("")

    assert service.configured is False
    with pytest.raises(CompletionUnavailable):
        await service.follow_up("Q", "A")


@pytest.mark.asyncio
async def test_review_saves_assessment(seeded_store):
    store, candidate, _ = seeded_store
    interview = await store.create_interview(candidate.id, "interview-cand-1")
    await store.append_transcript(TranscriptEntry(interview.id, Speaker.AI, "Q1", 0))
    await store.append_transcript(TranscriptEntry(interview.id, Speaker.CANDIDATE, "A1", 0))
    completions = _FakeCompletions('{"summary": "Good fit.", "score": 9}')
    review = ReviewService(store, CompletionService("", client=_FakeClient(completions)))

    updated, assessment = await review.summarize(interview.id)

    assert assessment.score == 9
    assert updated.ai_summary == "Good fit."
    assert store.interviews[interview.id].ai_score == 9
    assert "Backend Engineer" in completions.calls[0]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_review_without_transcript_or_interview():
    store = InMemoryInterviewStore()
    review = ReviewService(store, CompletionService("", client=_FakeClient(_FakeCompletions("{}"))))

    with pytest.raises(InterviewNotFound):
        await review.summarize("missing")

    interview = await store.create_interview("cand-x", "interview-cand-x")
    with pytest.raises(NothingToReview):
        await review.summarize(interview.id)
