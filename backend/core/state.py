# backend/core/state.py

from enum import Enum


class SessionPhase(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ASKING_QUESTION = "asking_question"
    LISTENING = "listening"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({SessionPhase.COMPLETED, SessionPhase.FAILED})
