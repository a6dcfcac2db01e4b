from fastapi import APIRouter, Depends, HTTPException, Request
import logging

from voicehire.auth import get_hr_user_id
from voicehire.db.store import StoreError
from voicehire.portal import InvalidInterviewLink, begin_interview, resolve_access
from voicehire.schemas import (
    GenerateResponseRequest,
    GenerateResponseResponse,
    GenerateSummaryRequest,
    GenerateSummaryResponse,
    LiveKitTokenRequest,
    LiveKitTokenResponse,
    SpeakQuestionRequest,
    SpeakQuestionResponse,
    TranscribeRequest,
    TranscribeResponse,
)
from voicehire.services.completion import CompletionUnavailable
from voicehire.services.livekit_tokens import CredentialsUnavailable
from voicehire.services.review import InterviewNotFound, NothingToReview
from voicehire.services.speech import SpeechUnavailable
from voicehire.system_metrics import get_metrics_snapshot

logger = logging.getLogger("voicehire.api")

router = APIRouter(prefix="/api")


def _context(request: Request):
    return request.app.state.context


@router.get("/health")
async def health(request: Request):
    return {"status": "ok", "services": _context(request).services_status()}


@router.get("/metrics")
async def metrics():
    return get_metrics_snapshot()


@router.post("/livekit-token", response_model=LiveKitTokenResponse)
async def livekit_token(body: LiveKitTokenRequest, request: Request):
    tokens = _context(request).tokens
    try:
        credential = tokens.issue(body.room_name, body.participant_name, body.interview_id)
    except CredentialsUnavailable as exc:
        raise HTTPException(500, str(exc))
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    return LiveKitTokenResponse(token=credential.token, endpoint_url=credential.endpoint_url)


@router.post("/speak-question", response_model=SpeakQuestionResponse, response_model_exclude_none=True)
async def speak_question(body: SpeakQuestionRequest, request: Request):
    synthesizer = _context(request).synthesizer
    if not synthesizer.available:
        return SpeakQuestionResponse(success=True, message="Question queued (TTS not configured)")
    try:
        audio_url = await synthesizer.synthesize_data_uri(body.question)
    except SpeechUnavailable as exc:
        logger.warning("speak-question TTS failed | interview_id=%s err=%s", body.interview_id, exc)
        return SpeakQuestionResponse(success=True, message="Question queued (TTS not configured)")
    return SpeakQuestionResponse(success=True, audio_url=audio_url, message="Question spoken")


@router.post("/generate-summary", response_model=GenerateSummaryResponse)
async def generate_summary(body: GenerateSummaryRequest, request: Request):
    completion = _context(request).completion
    if not completion.configured:
        raise HTTPException(500, "OpenAI API key not configured")
    try:
        assessment = await completion.summarize_interview(
            body.candidate_name,
            body.job_title,
            [line.model_dump() for line in body.transcripts],
        )
    except CompletionUnavailable as exc:
        raise HTTPException(502, str(exc))
    return GenerateSummaryResponse(summary=assessment.summary, score=assessment.score)


@router.post("/generate-response", response_model=GenerateResponseResponse)
async def generate_response(body: GenerateResponseRequest, request: Request):
    completion = _context(request).completion
    if not completion.configured:
        raise HTTPException(500, "OpenAI API key not configured")
    try:
        text = await completion.follow_up(body.question, body.candidate_answer, body.context)
    except CompletionUnavailable as exc:
        raise HTTPException(502, str(exc))
    return GenerateResponseResponse(response=text)


@router.post("/transcribe", response_model=TranscribeResponse)
async def transcribe(body: TranscribeRequest, request: Request):
    transcriber = _context(request).transcriber
    if not transcriber.available:
        raise HTTPException(500, "Deepgram API key not configured")
    try:
        transcript = await transcriber.transcribe_url(body.audio_url)
    except SpeechUnavailable as exc:
        raise HTTPException(500, str(exc))
    except Exception as exc:
        logger.warning("transcribe failed | err=%s", exc)
        raise HTTPException(502, "Transcription failed")
    return TranscribeResponse(transcript=transcript)


@router.get("/portal/{access_token}")
async def portal(access_token: str, request: Request):
    try:
        access = await resolve_access(_context(request).store, access_token)
    except InvalidInterviewLink as exc:
        raise HTTPException(404, exc.message)
    except StoreError as exc:
        raise HTTPException(503, f"Interview data is temporarily unavailable: {exc}")
    return access.to_dict()


@router.post("/portal/{access_token}/interview")
async def portal_interview(access_token: str, request: Request):
    store = _context(request).store
    try:
        access = await resolve_access(store, access_token)
        if not access.questions:
            raise HTTPException(409, "No interview questions are configured for this position. Please contact HR.")
        interview = await begin_interview(store, access)
    except InvalidInterviewLink as exc:
        raise HTTPException(404, exc.message)
    except StoreError as exc:
        raise HTTPException(503, f"Interview data is temporarily unavailable: {exc}")
    return {"interview": interview.to_dict(), "total_questions": len(access.questions)}


@router.get("/interviews/{interview_id}/transcripts")
async def interview_transcripts(interview_id: str, request: Request, user_id: str = Depends(get_hr_user_id)):
    try:
        entries = await _context(request).review.transcripts(interview_id)
    except InterviewNotFound:
        raise HTTPException(404, "Interview not found")
    except StoreError as exc:
        raise HTTPException(503, str(exc))
    return {"interview_id": interview_id, "transcripts": [entry.to_dict() for entry in entries]}


@router.post("/interviews/{interview_id}/summary")
async def interview_summary(interview_id: str, request: Request, user_id: str = Depends(get_hr_user_id)):
    try:
        interview, assessment = await _context(request).review.summarize(interview_id)
    except InterviewNotFound:
        raise HTTPException(404, "Interview not found")
    except NothingToReview as exc:
        raise HTTPException(400, str(exc))
    except CompletionUnavailable as exc:
        raise HTTPException(502, str(exc))
    except StoreError as exc:
        raise HTTPException(503, str(exc))
    logger.info("summary generated | interview_id=%s by=%s", interview_id, user_id)
    return {"interview": interview.to_dict(), **assessment.to_dict()}
