from __future__ import annotations

import logging

from core.logger import log_event
from voicehire.db.store import InterviewStore
from voicehire.models import Interview, InterviewAssessment, TranscriptEntry
from voicehire.services.completion import CompletionService

logger = logging.getLogger("voicehire.services.review")


class InterviewNotFound(Exception):
    pass


class NothingToReview(Exception):
    pass


class ReviewService:
    """HR-side reads and the summary/score write for a finished interview."""

    def __init__(self, store: InterviewStore, completion: CompletionService):
        self.store = store
        self.completion = completion

    async def _require_interview(self, interview_id: str) -> Interview:
        interview = await self.store.get_interview(interview_id)
        if interview is None:
            raise InterviewNotFound(interview_id)
        return interview

    async def transcripts(self, interview_id: str) -> list[TranscriptEntry]:
        await self._require_interview(interview_id)
        return await self.store.list_transcripts(interview_id)

    async def summarize(self, interview_id: str) -> tuple[Interview, InterviewAssessment]:
        interview = await self._require_interview(interview_id)
        entries = await self.store.list_transcripts(interview_id)
        if not entries:
            raise NothingToReview("No interview data available to analyze")

        candidate = await self.store.get_candidate(interview.candidate_id)
        job = await self.store.get_job(candidate.job_id) if candidate and candidate.job_id else None
        assessment = await self.completion.summarize_interview(
            candidate.name if candidate else "",
            job.title if job else "",
            [{"speaker": e.speaker.value, "message": e.message} for e in entries],
        )
        updated = await self.store.save_assessment(interview_id, assessment.summary, assessment.score)
        log_event("review", "assessment_saved", interview_id, score=assessment.score, entries=len(entries))
        return updated, assessment
