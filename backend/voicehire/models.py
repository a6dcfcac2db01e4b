from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).replace("Z", "+00:00")
    return datetime.fromisoformat(text)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class CandidateStatus(str, Enum):
    CREATED = "created"
    LINK_SENT = "link_sent"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REVIEWED = "reviewed"


class InterviewStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Speaker(str, Enum):
    AI = "ai"
    CANDIDATE = "candidate"


@dataclass
class Job:
    id: str
    title: str
    description: str = ""
    default_questions: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "Job":
        return cls(
            id=str(row["id"]),
            title=str(row.get("title") or ""),
            description=str(row.get("description") or ""),
            default_questions=[str(q) for q in (row.get("default_questions") or [])],
        )


@dataclass
class Candidate:
    id: str
    name: str
    email: str
    job_id: str
    access_token: str
    custom_questions: list[str] = field(default_factory=list)
    status: CandidateStatus = CandidateStatus.CREATED
    hr_notes: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Candidate":
        return cls(
            id=str(row["id"]),
            name=str(row.get("name") or ""),
            email=str(row.get("email") or ""),
            job_id=str(row.get("job_id") or ""),
            access_token=str(row.get("access_token") or ""),
            custom_questions=[str(q) for q in (row.get("custom_questions") or [])],
            status=CandidateStatus(row.get("status") or CandidateStatus.CREATED.value),
            hr_notes=row.get("hr_notes"),
        )

    def questions_for(self, job: Job | None) -> list[str]:
        """Custom questions win; otherwise the job's default list."""
        questions = self.custom_questions or (job.default_questions if job else [])
        return [q.strip() for q in questions if str(q or "").strip()]


@dataclass
class Interview:
    id: str
    candidate_id: str
    status: InterviewStatus = InterviewStatus.PENDING
    room_name: str = ""
    started_at: datetime | None = None
    completed_at: datetime | None = None
    ai_summary: str | None = None
    ai_score: int | None = None
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: dict) -> "Interview":
        return cls(
            id=str(row["id"]),
            candidate_id=str(row.get("candidate_id") or ""),
            status=InterviewStatus(row.get("status") or InterviewStatus.PENDING.value),
            room_name=str(row.get("livekit_room_name") or ""),
            started_at=_parse_ts(row.get("started_at")),
            completed_at=_parse_ts(row.get("completed_at")),
            ai_summary=row.get("ai_summary"),
            ai_score=row.get("ai_score"),
            created_at=_parse_ts(row.get("created_at")) or utc_now(),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "candidate_id": self.candidate_id,
            "status": self.status.value,
            "room_name": self.room_name,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "ai_summary": self.ai_summary,
            "ai_score": self.ai_score,
        }


@dataclass
class TranscriptEntry:
    interview_id: str
    speaker: Speaker
    message: str
    question_index: int | None
    timestamp: datetime = field(default_factory=utc_now)
    sequence: int = 0

    @classmethod
    def from_row(cls, row: dict, sequence: int = 0) -> "TranscriptEntry":
        index = row.get("question_index")
        return cls(
            interview_id=str(row.get("interview_id") or ""),
            speaker=Speaker(row.get("speaker")),
            message=str(row.get("message") or ""),
            question_index=int(index) if index is not None else None,
            timestamp=_parse_ts(row.get("timestamp")) or utc_now(),
            sequence=sequence,
        )

    def to_row(self) -> dict:
        return {
            "interview_id": self.interview_id,
            "speaker": self.speaker.value,
            "message": self.message,
            "question_index": self.question_index,
            "timestamp": _iso(self.timestamp),
        }

    def to_dict(self) -> dict:
        data = self.to_row()
        data["sequence"] = self.sequence
        return data


@dataclass(frozen=True)
class JoinCredential:
    token: str
    endpoint_url: str

    def is_complete(self) -> bool:
        return bool(str(self.token or "").strip() and str(self.endpoint_url or "").strip())


@dataclass(frozen=True)
class InterviewAssessment:
    summary: str
    score: int

    def to_dict(self) -> dict:
        return asdict(self)
