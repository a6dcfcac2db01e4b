import asyncio
import json
import logging

from openai import AsyncOpenAI

from voicehire.models import InterviewAssessment
from voicehire.services.prompts import (
    SUMMARY_SYSTEM_PROMPT,
    build_follow_up_prompt,
    build_follow_up_system_prompt,
    build_summary_prompt,
)

logger = logging.getLogger("voicehire.services.completion")

DEFAULT_SUMMARY = "Analysis completed"
DEFAULT_SCORE = 5


class CompletionUnavailable(Exception):
    """Language model not configured, or every attempt failed."""


def clamp_score(value) -> int:
    try:
        score = int(round(float(value)))
    except (TypeError, ValueError):
        return DEFAULT_SCORE
    return max(1, min(10, score))


def parse_assessment(raw: str) -> InterviewAssessment:
    try:
        data = json.loads(raw or "{}")
    except json.JSONDecodeError:
        logger.warning("summary response was not JSON; using defaults")
        data = {}
    if not isinstance(data, dict):
        data = {}
    summary = str(data.get("summary") or "").strip() or DEFAULT_SUMMARY
    score = clamp_score(data.get("score")) if data.get("score") not in (None, "") else DEFAULT_SCORE
    return InterviewAssessment(summary=summary, score=score)


class CompletionService:
    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        timeout_sec: float = 30.0,
        retries: int = 2,
        client: AsyncOpenAI | None = None,
    ):
        self.model = model
        self.timeout_sec = timeout_sec
        self.retries = max(0, int(retries))
        if client is not None:
            self.client = client
        elif api_key:
            self.client = AsyncOpenAI(api_key=api_key)
        else:
            self.client = None

    @property
    def configured(self) -> bool:
        return self.client is not None

    async def _complete(self, messages: list[dict], **params) -> str:
        if self.client is None:
            raise CompletionUnavailable("OpenAI API key not configured")

        last_error: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                response = await asyncio.wait_for(
                    self.client.chat.completions.create(
                        model=self.model,
                        messages=messages,
                        **params,
                    ),
                    timeout=self.timeout_sec,
                )
                message = response.choices[0].message.content
                return str(message or "").strip()
            except asyncio.TimeoutError as exc:
                last_error = exc
                logger.warning("completion timeout | attempt=%s", attempt + 1)
            except Exception as exc:
                last_error = exc
                logger.warning("completion failure | attempt=%s err=%s", attempt + 1, exc)

            if attempt < self.retries:
                await asyncio.sleep(0.35 * (attempt + 1))

        raise CompletionUnavailable(f"completion failed after {self.retries + 1} attempts: {last_error}")

    async def summarize_interview(self, candidate_name: str, job_title: str, transcripts: list[dict]) -> InterviewAssessment:
        raw = await self._complete(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": build_summary_prompt(candidate_name, job_title, transcripts)},
            ],
            temperature=0.7,
            response_format={"type": "json_object"},
        )
        return parse_assessment(raw)

    async def follow_up(self, question: str, candidate_answer: str, context: str | None = None) -> str:
        return await self._complete(
            [
                {"role": "system", "content": build_follow_up_system_prompt(context)},
                {"role": "user", "content": build_follow_up_prompt(question, candidate_answer)},
            ],
            temperature=0.7,
            max_tokens=150,
        )
