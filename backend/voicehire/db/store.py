from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Protocol

from voicehire.models import (
    Candidate,
    CandidateStatus,
    Interview,
    InterviewStatus,
    Job,
    TranscriptEntry,
    utc_now,
)

logger = logging.getLogger("voicehire.db.store")

_CANDIDATE_ORDER = [
    CandidateStatus.CREATED,
    CandidateStatus.LINK_SENT,
    CandidateStatus.IN_PROGRESS,
    CandidateStatus.COMPLETED,
    CandidateStatus.REVIEWED,
]


class StoreError(Exception):
    """A persistence call failed; safe to retry by record id."""


def advance_candidate_status(current: CandidateStatus, target: CandidateStatus) -> CandidateStatus:
    if _CANDIDATE_ORDER.index(target) > _CANDIDATE_ORDER.index(current):
        return target
    return current


class InterviewStore(Protocol):
    async def get_candidate_by_token(self, access_token: str) -> Candidate | None:
        ...

    async def get_candidate(self, candidate_id: str) -> Candidate | None:
        ...

    async def get_job(self, job_id: str) -> Job | None:
        ...

    async def get_interview(self, interview_id: str) -> Interview | None:
        ...

    async def get_current_interview(self, candidate_id: str) -> Interview | None:
        ...

    async def create_interview(self, candidate_id: str, room_name: str) -> Interview:
        ...

    async def mark_interview_started(self, interview_id: str, candidate_id: str, started_at: datetime) -> Interview:
        ...

    async def complete_interview(self, interview_id: str, candidate_id: str, completed_at: datetime) -> Interview:
        ...

    async def save_assessment(self, interview_id: str, summary: str, score: int) -> Interview:
        ...

    async def append_transcript(self, entry: TranscriptEntry) -> None:
        ...

    async def list_transcripts(self, interview_id: str) -> list[TranscriptEntry]:
        ...


class InMemoryInterviewStore:
    """Process-local store for development and tests."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self.jobs: dict[str, Job] = {}
        self.candidates: dict[str, Candidate] = {}
        self.interviews: dict[str, Interview] = {}
        self.transcripts: dict[str, list[TranscriptEntry]] = {}

    def add_job(self, job: Job) -> Job:
        self.jobs[job.id] = job
        return job

    def add_candidate(self, candidate: Candidate) -> Candidate:
        self.candidates[candidate.id] = candidate
        return candidate

    async def get_candidate_by_token(self, access_token: str) -> Candidate | None:
        token = str(access_token or "").strip()
        if not token:
            return None
        async with self._lock:
            for candidate in self.candidates.values():
                if candidate.access_token == token:
                    return candidate
        return None

    async def get_candidate(self, candidate_id: str) -> Candidate | None:
        async with self._lock:
            return self.candidates.get(candidate_id)

    async def get_job(self, job_id: str) -> Job | None:
        async with self._lock:
            return self.jobs.get(job_id)

    async def get_interview(self, interview_id: str) -> Interview | None:
        async with self._lock:
            return self.interviews.get(interview_id)

    async def get_current_interview(self, candidate_id: str) -> Interview | None:
        async with self._lock:
            owned = [i for i in self.interviews.values() if i.candidate_id == candidate_id]
        if not owned:
            return None
        return max(owned, key=lambda item: item.created_at)

    async def create_interview(self, candidate_id: str, room_name: str) -> Interview:
        interview = Interview(id=str(uuid.uuid4()), candidate_id=candidate_id, room_name=room_name)
        async with self._lock:
            self.interviews[interview.id] = interview
            self.transcripts.setdefault(interview.id, [])
        return interview

    async def mark_interview_started(self, interview_id: str, candidate_id: str, started_at: datetime) -> Interview:
        async with self._lock:
            interview = self._require_interview(interview_id)
            if interview.status is InterviewStatus.PENDING:
                interview.status = InterviewStatus.IN_PROGRESS
            if interview.started_at is None:
                interview.started_at = started_at
            candidate = self.candidates.get(candidate_id)
            if candidate:
                candidate.status = advance_candidate_status(candidate.status, CandidateStatus.IN_PROGRESS)
            return interview

    async def complete_interview(self, interview_id: str, candidate_id: str, completed_at: datetime) -> Interview:
        async with self._lock:
            interview = self._require_interview(interview_id)
            if interview.status is not InterviewStatus.COMPLETED:
                interview.status = InterviewStatus.COMPLETED
                interview.completed_at = completed_at
            candidate = self.candidates.get(candidate_id)
            if candidate:
                candidate.status = advance_candidate_status(candidate.status, CandidateStatus.COMPLETED)
            return interview

    async def save_assessment(self, interview_id: str, summary: str, score: int) -> Interview:
        async with self._lock:
            interview = self._require_interview(interview_id)
            interview.ai_summary = summary
            interview.ai_score = score
            return interview

    async def append_transcript(self, entry: TranscriptEntry) -> None:
        async with self._lock:
            self.transcripts.setdefault(entry.interview_id, []).append(entry)

    async def list_transcripts(self, interview_id: str) -> list[TranscriptEntry]:
        async with self._lock:
            return list(self.transcripts.get(interview_id, []))

    def _require_interview(self, interview_id: str) -> Interview:
        interview = self.interviews.get(interview_id)
        if interview is None:
            raise StoreError(f"interview not found: {interview_id}")
        return interview


class SupabaseInterviewStore:
    """Supabase tables: jobs, candidates, interviews, interview_transcripts.

    The supabase client is synchronous; every call runs in a worker thread so
    the session event loop never blocks on the network.
    """

    def __init__(self, client):
        self._client = client

    async def _run(self, label: str, fn):
        try:
            return await asyncio.to_thread(fn)
        except StoreError:
            raise
        except Exception as exc:
            logger.warning("supabase %s failed | err=%s", label, exc)
            raise StoreError(f"{label} failed: {exc}") from exc

    def _first(self, response) -> dict | None:
        rows = getattr(response, "data", None) or []
        return rows[0] if rows else None

    async def get_candidate_by_token(self, access_token: str) -> Candidate | None:
        token = str(access_token or "").strip()
        if not token:
            return None
        row = await self._run(
            "get_candidate_by_token",
            lambda: self._first(
                self._client.table("candidates").select("*").eq("access_token", token).limit(1).execute()
            ),
        )
        return Candidate.from_row(row) if row else None

    async def get_candidate(self, candidate_id: str) -> Candidate | None:
        row = await self._run(
            "get_candidate",
            lambda: self._first(self._client.table("candidates").select("*").eq("id", candidate_id).limit(1).execute()),
        )
        return Candidate.from_row(row) if row else None

    async def get_job(self, job_id: str) -> Job | None:
        row = await self._run(
            "get_job",
            lambda: self._first(self._client.table("jobs").select("*").eq("id", job_id).limit(1).execute()),
        )
        return Job.from_row(row) if row else None

    async def get_interview(self, interview_id: str) -> Interview | None:
        row = await self._run(
            "get_interview",
            lambda: self._first(self._client.table("interviews").select("*").eq("id", interview_id).limit(1).execute()),
        )
        return Interview.from_row(row) if row else None

    async def get_current_interview(self, candidate_id: str) -> Interview | None:
        row = await self._run(
            "get_current_interview",
            lambda: self._first(
                self._client.table("interviews")
                .select("*")
                .eq("candidate_id", candidate_id)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            ),
        )
        return Interview.from_row(row) if row else None

    async def create_interview(self, candidate_id: str, room_name: str) -> Interview:
        row = await self._run(
            "create_interview",
            lambda: self._first(
                self._client.table("interviews")
                .insert({
                    "candidate_id": candidate_id,
                    "status": InterviewStatus.PENDING.value,
                    "livekit_room_name": room_name,
                })
                .execute()
            ),
        )
        if not row:
            raise StoreError("create_interview returned no row")
        return Interview.from_row(row)

    async def mark_interview_started(self, interview_id: str, candidate_id: str, started_at: datetime) -> Interview:
        current = await self.get_interview(interview_id)
        if current is None:
            raise StoreError(f"interview not found: {interview_id}")

        updates = {}
        if current.status is InterviewStatus.PENDING:
            updates["status"] = InterviewStatus.IN_PROGRESS.value
        if current.started_at is None:
            updates["started_at"] = started_at.isoformat()
        if updates:
            row = await self._run(
                "mark_interview_started",
                lambda: self._first(self._client.table("interviews").update(updates).eq("id", interview_id).execute()),
            )
            if row:
                current = Interview.from_row(row)

        await self._advance_candidate(candidate_id, CandidateStatus.IN_PROGRESS)
        return current

    async def complete_interview(self, interview_id: str, candidate_id: str, completed_at: datetime) -> Interview:
        row = await self._run(
            "complete_interview",
            lambda: self._first(
                self._client.table("interviews")
                .update({
                    "status": InterviewStatus.COMPLETED.value,
                    "completed_at": completed_at.isoformat(),
                })
                .eq("id", interview_id)
                .neq("status", InterviewStatus.COMPLETED.value)
                .execute()
            ),
        )
        await self._advance_candidate(candidate_id, CandidateStatus.COMPLETED)
        if row:
            return Interview.from_row(row)
        existing = await self.get_interview(interview_id)
        if existing is None:
            raise StoreError(f"interview not found: {interview_id}")
        return existing

    async def save_assessment(self, interview_id: str, summary: str, score: int) -> Interview:
        row = await self._run(
            "save_assessment",
            lambda: self._first(
                self._client.table("interviews")
                .update({"ai_summary": summary, "ai_score": score})
                .eq("id", interview_id)
                .execute()
            ),
        )
        if not row:
            raise StoreError(f"interview not found: {interview_id}")
        return Interview.from_row(row)

    async def append_transcript(self, entry: TranscriptEntry) -> None:
        await self._run(
            "append_transcript",
            lambda: self._client.table("interview_transcripts").insert(entry.to_row()).execute(),
        )

    async def list_transcripts(self, interview_id: str) -> list[TranscriptEntry]:
        response = await self._run(
            "list_transcripts",
            lambda: self._client.table("interview_transcripts")
            .select("*")
            .eq("interview_id", interview_id)
            .order("created_at", desc=False)
            .execute(),
        )
        rows = getattr(response, "data", None) or []
        return [TranscriptEntry.from_row(row, sequence=index) for index, row in enumerate(rows)]

    async def _advance_candidate(self, candidate_id: str, target: CandidateStatus) -> None:
        candidate = await self.get_candidate(candidate_id)
        if candidate is None:
            raise StoreError(f"candidate not found: {candidate_id}")
        next_status = advance_candidate_status(candidate.status, target)
        if next_status is candidate.status:
            return
        await self._run(
            "update_candidate_status",
            lambda: self._client.table("candidates").update({"status": next_status.value}).eq("id", candidate_id).execute(),
        )


def build_interview_store(settings) -> InterviewStore:
    if not settings.supabase_ready():
        if settings.environment == "production":
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY are required in production")
        logger.warning("Supabase not configured; using in-memory interview store")
        return InMemoryInterviewStore()

    from voicehire.db.supabase import create_supabase_client

    return SupabaseInterviewStore(create_supabase_client(settings))
