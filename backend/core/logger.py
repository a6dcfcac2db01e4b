import json
import logging
import time
from typing import Any

logger = logging.getLogger("voicehire.events")

# candidate speech and credentials never reach the structured log verbatim
_REDACTED_KEYS = {"text", "message", "answer", "question", "transcript", "partial", "prompt", "token"}


def _scrub(key: str, value: Any) -> Any:
	lowered = str(key or "").lower()
	if lowered in _REDACTED_KEYS:
		return {"redacted": True, "length": len(str(value or ""))}
	if value is None or isinstance(value, (str, int, float, bool)):
		return value
	if isinstance(getattr(value, "value", None), str):
		return value.value
	if isinstance(value, dict):
		return {str(k): _scrub(str(k), v) for k, v in value.items()}
	if isinstance(value, (list, tuple, set)):
		return [_scrub(lowered, item) for item in value]
	return str(value)


def log_event(component: str, event: str, interview_id: str, **fields) -> None:
	"""One JSON line per lifecycle event, keyed by interview id."""
	record = {
		"ts": round(time.time(), 3),
		"component": str(component or "session"),
		"event": str(event or "unknown"),
		"interview_id": str(interview_id or ""),
	}
	record.update({str(k): _scrub(str(k), v) for k, v in fields.items()})
	logger.info(json.dumps(record, ensure_ascii=False, default=str))
