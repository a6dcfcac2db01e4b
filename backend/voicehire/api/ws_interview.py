from fastapi import APIRouter, WebSocket
import asyncio
import json
import logging
import uuid
import os

from starlette.websockets import WebSocketState

from core.logger import log_event
from voicehire.adapters.livekit_transport import parse_device_error
from voicehire.context import AppContext
from voicehire.db.store import StoreError
from voicehire.interview.controller import InterviewNotStartable, SendFn, SessionController
from voicehire.interview.events import OpTag, SessionEvent
from voicehire.models import Interview, InterviewStatus
from voicehire.portal import InvalidInterviewLink, PortalAccess, begin_interview, resolve_access
from voicehire.system_metrics import decrement_metric, increment_metric
from voicehire.transcript.log import TranscriptLog

logger = logging.getLogger("ws_interview")

MAX_WS_TEXT_BYTES = max(1024, int(os.getenv("WS_MAX_TEXT_BYTES", "65536")))

router = APIRouter()


async def build_session_controller(
    context: AppContext,
    access: PortalAccess,
    interview: Interview,
    send_fn: SendFn,
) -> SessionController:
    policy = context.settings.policy
    provider = context.provider
    transport = provider.create_transport()
    transcript = TranscriptLog(
        interview.id,
        context.store,
        retries=policy.transcript_append_retries,
        retry_delay_sec=policy.transcript_retry_delay_sec,
    )
    await transcript.load()
    return SessionController(
        interview,
        access.candidate,
        access.questions,
        transport=transport,
        capture=provider.create_capture(transport),
        playback=provider.create_playback(transport),
        transcript=transcript,
        store=context.store,
        credentials=context.tokens,
        policy=policy,
        send_fn=send_fn,
        participant_name=context.settings.agent_identity,
    )


def _as_index(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@router.websocket("/ws/interview/{access_token}")
async def interview_ws(websocket: WebSocket, access_token: str):
    # ================= LIFECYCLE OWNER =================
    context: AppContext = websocket.app.state.context
    connection_id = f"ws-{uuid.uuid4()}"
    send_lock = asyncio.Lock()

    await websocket.accept()

    async def _safe_send(payload: dict):
        if websocket.client_state != WebSocketState.CONNECTED:
            return
        try:
            encoded = json.dumps(payload, default=str)
        except (TypeError, ValueError) as exc:
            logger.warning("ws payload encode failed | connection=%s err=%s", connection_id, exc)
            return
        try:
            async with send_lock:
                await websocket.send_text(encoded)
        except Exception as exc:
            logger.warning("ws send failed | connection=%s err=%s", connection_id, exc)

    async def _reject(code: str, message: str, close_code: int = 1008):
        await _safe_send({"type": "error", "code": code, "message": message})
        await websocket.close(code=close_code, reason=code)

    # ================= LINK =================
    try:
        access = await resolve_access(context.store, access_token)
        if not access.questions:
            await _reject("no_questions", "No interview questions are configured for this position. Please contact HR.")
            return
        interview = await begin_interview(context.store, access)
    except InvalidInterviewLink as exc:
        await _reject("invalid_link", exc.message)
        return
    except StoreError as exc:
        logger.warning("portal lookup failed | err=%s", exc)
        await _reject("store_unavailable", "Interview data is temporarily unavailable. Please try again shortly.", 1011)
        return

    if interview.status is InterviewStatus.COMPLETED:
        await _reject("completed", "This interview has already been completed. Thank you!")
        return

    if not await context.registry.claim(interview.id, connection_id):
        await _reject("already_active", "This interview is already open in another window. Close it and try again.")
        return

    def _log_event(event: str, **fields):
        log_event("ws_interview", event, interview.id, connection=connection_id, **fields)

    increment_metric("sessions_active")
    _log_event("connect", candidate_id=access.candidate.id)
    controller = None
    try:
        controller = await build_session_controller(context, access, interview, _safe_send)
        await _safe_send({"type": "phase", **controller.snapshot()})

        while True:
            msg = await websocket.receive()
            if msg["type"] == "websocket.disconnect":
                _log_event("disconnect", reason="client_disconnect")
                break

            text_payload = str(msg.get("text") or "")
            if not text_payload:
                continue
            if len(text_payload.encode("utf-8")) > MAX_WS_TEXT_BYTES:
                await _safe_send({"type": "error", "code": "message_too_large", "message": "Message too large."})
                continue
            try:
                payload = json.loads(text_payload)
            except ValueError:
                await _safe_send({"type": "error", "code": "bad_message", "message": "Messages must be JSON objects."})
                continue
            if not isinstance(payload, dict):
                continue

            payload_type = str(payload.get("type") or "").strip().lower()
            _log_event("message_received", message_type=payload_type or "unknown")

            if payload_type == "ping":
                await _safe_send({"type": "pong"})
            elif payload_type in {"start", "restart"}:
                try:
                    await controller.start()
                except InterviewNotStartable as exc:
                    await _safe_send({"type": "error", "code": "not_startable", "message": str(exc)})
            elif payload_type == "answer":
                accepted = controller.submit_answer(payload.get("text"), _as_index(payload.get("question_index")))
                if not accepted:
                    await _safe_send({
                        "type": "error",
                        "code": "answer_rejected",
                        "message": "The answer was not accepted. Type a response while the interview is listening.",
                    })
            elif payload_type == "exit":
                controller.exit()
            elif payload_type == "device_error":
                controller.post(SessionEvent.device_error(OpTag(controller.session), parse_device_error(payload)))
            else:
                await _safe_send({"type": "error", "code": "unknown_message", "message": f"Unknown message type: {payload_type}"})
    finally:
        if controller is not None:
            await controller.close()
        await context.registry.release(interview.id, connection_id)
        decrement_metric("sessions_active")
        _log_event("closed", phase=controller.phase if controller else None)
