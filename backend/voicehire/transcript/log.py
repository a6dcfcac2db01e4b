from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from voicehire.db.store import InterviewStore
from voicehire.models import Speaker, TranscriptEntry
from voicehire.system_metrics import increment_metric

logger = logging.getLogger("voicehire.transcript")

WarningFn = Callable[[TranscriptEntry, Exception], Awaitable[None]]


class TranscriptLog:
    """
    Ordered conversation record for one interview.

    ``entries`` is the live source of truth. Each append is mirrored to the
    store by a single writer task, so durable rows keep the in-memory order.
    A failed mirror write is retried and then reported through ``on_warning``;
    it never raises into the caller.
    """

    def __init__(
        self,
        interview_id: str,
        store: InterviewStore,
        retries: int = 1,
        retry_delay_sec: float = 0.25,
        on_warning: WarningFn | None = None,
    ):
        self.interview_id = interview_id
        self.store = store
        self.retries = max(1, int(retries))
        self.retry_delay_sec = max(0.0, float(retry_delay_sec))
        self.on_warning = on_warning
        self.entries: list[TranscriptEntry] = []
        self.failed: list[TranscriptEntry] = []
        self._pending: asyncio.Queue[TranscriptEntry] | None = None
        self._writer: asyncio.Task | None = None

    async def load(self) -> list[TranscriptEntry]:
        """Seed from the durable log when resuming an interview."""
        rows = await self.store.list_transcripts(self.interview_id)
        self.entries = [
            TranscriptEntry(
                interview_id=row.interview_id,
                speaker=row.speaker,
                message=row.message,
                question_index=row.question_index,
                timestamp=row.timestamp,
                sequence=index,
            )
            for index, row in enumerate(rows)
        ]
        return list(self.entries)

    def append(self, speaker: Speaker, message: str, question_index: int | None) -> TranscriptEntry:
        entry = TranscriptEntry(
            interview_id=self.interview_id,
            speaker=speaker,
            message=message,
            question_index=question_index,
            sequence=len(self.entries),
        )
        self.entries.append(entry)
        self._ensure_writer()
        self._pending.put_nowait(entry)
        return entry

    def has_prompt(self, question_index: int) -> bool:
        return any(e.speaker is Speaker.AI and e.question_index == question_index for e in self.entries)

    def resume_point(self, total_questions: int) -> int:
        """First question without a candidate answer; ``total_questions`` when all are answered."""
        answered = {
            e.question_index
            for e in self.entries
            if e.speaker is Speaker.CANDIDATE and e.question_index is not None
        }
        for index in range(total_questions):
            if index not in answered:
                return index
        return total_questions

    def as_conversation(self) -> list[dict]:
        return [{"speaker": e.speaker.value, "message": e.message} for e in self.entries]

    async def flush(self) -> None:
        if self._pending is not None:
            await self._pending.join()

    async def close(self) -> None:
        await self.flush()
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            await asyncio.gather(self._writer, return_exceptions=True)
        self._writer = None

    def _ensure_writer(self) -> None:
        if self._pending is None:
            self._pending = asyncio.Queue()
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._write_loop())

    async def _write_loop(self) -> None:
        while True:
            entry = await self._pending.get()
            try:
                await self._mirror(entry)
            finally:
                self._pending.task_done()

    async def _mirror(self, entry: TranscriptEntry) -> None:
        last_error: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                await self.store.append_transcript(entry)
                return
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "transcript append failed | interview_id=%s seq=%s attempt=%s err=%s",
                    self.interview_id,
                    entry.sequence,
                    attempt + 1,
                    exc,
                )
                if attempt < self.retries:
                    increment_metric("transcript_append_retries")
                    await asyncio.sleep(self.retry_delay_sec * (attempt + 1))

        increment_metric("transcript_append_failures")
        self.failed.append(entry)
        if self.on_warning is not None:
            try:
                await self.on_warning(entry, last_error)
            except Exception as exc:
                logger.warning("transcript warning callback failed | err=%s", exc)
