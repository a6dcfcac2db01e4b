import asyncio
from enum import Enum
import time
import logging

logger = logging.getLogger("turn")


class TurnState(Enum):
    ASKING = "asking"
    LISTENING = "listening"
    ANSWERED = "answered"


class QuestionTurn:
    """One question/answer exchange. An answer is accepted at most once."""

    def __init__(self, question_index: int, question: str):
        self.question_index = question_index
        self.question = question
        self.state = TurnState.ASKING
        self.answer_source = None
        self.lock = asyncio.Lock()
        self.started_at = time.monotonic()
        self.listening_at = None
        self.answered_at = None

    def mark_listening(self):
        if self.state is TurnState.ASKING:
            self.state = TurnState.LISTENING
            self.listening_at = time.monotonic()
            logger.info(f"[TURN {self.question_index}] ASKING -> LISTENING | ask_latency={self.listening_at - self.started_at:.2f}s")

    async def try_answer(self, source: str) -> bool:
        async with self.lock:
            if self.state is TurnState.ANSWERED:
                logger.info(f"[TURN {self.question_index}] Answer skipped (already answered) | source={source}")
                return False

            self.state = TurnState.ANSWERED
            self.answer_source = source
            self.answered_at = time.monotonic()
            logger.info(f"[TURN {self.question_index}] ANSWERED | source={source} latency={self.answered_at - self.started_at:.2f}s")
            return True

    @property
    def answered(self) -> bool:
        return self.state is TurnState.ANSWERED
