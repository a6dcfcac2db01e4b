"""
Candidate portal: resolve an access link and hand back the interview to run.

An access token that matches no candidate is reported as ``InvalidInterviewLink``
before anything else is built, so a bad link never reaches the transport.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from core.logger import log_event
from voicehire.db.store import InterviewStore
from voicehire.models import Candidate, Interview, InterviewStatus, Job
from voicehire.system_metrics import increment_metric

logger = logging.getLogger("voicehire.portal")

INVALID_LINK_MESSAGE = "Invalid Interview Link"
RESUMABLE_STATUSES = (InterviewStatus.PENDING, InterviewStatus.IN_PROGRESS)


class InvalidInterviewLink(Exception):
    def __init__(self, message: str = INVALID_LINK_MESSAGE):
        super().__init__(message)
        self.message = message


@dataclass
class PortalAccess:
    candidate: Candidate
    job: Job | None
    questions: list[str]
    interview: Interview | None

    @property
    def completed(self) -> bool:
        return self.interview is not None and self.interview.status is InterviewStatus.COMPLETED

    def to_dict(self) -> dict:
        return {
            "candidate": {"id": self.candidate.id, "name": self.candidate.name, "status": self.candidate.status.value},
            "job": {"id": self.job.id, "title": self.job.title, "description": self.job.description} if self.job else None,
            "total_questions": len(self.questions),
            "interview": self.interview.to_dict() if self.interview else None,
            "completed": self.completed,
        }


def room_name_for(candidate: Candidate) -> str:
    return f"interview-{candidate.id}"


async def resolve_access(store: InterviewStore, access_token: str) -> PortalAccess:
    candidate = await store.get_candidate_by_token(access_token)
    if candidate is None:
        increment_metric("invalid_links")
        log_event("portal", "invalid_link", "", token=access_token)
        raise InvalidInterviewLink()

    job = await store.get_job(candidate.job_id) if candidate.job_id else None
    interview = await store.get_current_interview(candidate.id)
    return PortalAccess(
        candidate=candidate,
        job=job,
        questions=candidate.questions_for(job),
        interview=interview,
    )


async def begin_interview(store: InterviewStore, access: PortalAccess) -> Interview:
    """Reuse the current pending/in-progress interview, otherwise create one.

    A completed interview is returned as is; the caller decides not to run it.
    """
    current = access.interview
    if current is not None and (current.status in RESUMABLE_STATUSES or current.status is InterviewStatus.COMPLETED):
        return current

    interview = await store.create_interview(access.candidate.id, room_name_for(access.candidate))
    access.interview = interview
    log_event("portal", "interview_created", interview.id, candidate_id=access.candidate.id, room=interview.room_name)
    return interview
