import threading
import time
from typing import Any


_lock = threading.Lock()
_COUNTERS = (
    "sessions_active",
    "interviews_started",
    "interviews_resumed",
    "interviews_completed",
    "interviews_failed",
    "interviews_exited",
    "questions_asked",
    "answers_recorded",
    "answers_manual",
    "playback_fallbacks",
    "playback_unavailable",
    "capture_restarts",
    "capture_manual_fallbacks",
    "capture_deadline_hits",
    "transcript_append_retries",
    "transcript_append_failures",
    "stale_events_dropped",
    "store_write_failures",
    "invalid_links",
)
_metrics: dict[str, float] = {name: 0.0 for name in _COUNTERS}
_metrics.update({
    "answer_latency_total_sec": 0.0,
    "answer_latency_samples": 0.0,
})


def increment_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        _metrics[key] = float(_metrics.get(key, 0.0)) + float(amount)


def decrement_metric(name: str, amount: float = 1.0) -> None:
    key = str(name or "").strip()
    if not key:
        return
    with _lock:
        next_value = float(_metrics.get(key, 0.0)) - float(amount)
        _metrics[key] = max(0.0, next_value)


def observe_answer_latency(seconds: float) -> None:
    duration = max(0.0, float(seconds or 0.0))
    with _lock:
        _metrics["answer_latency_total_sec"] = float(_metrics.get("answer_latency_total_sec", 0.0)) + duration
        _metrics["answer_latency_samples"] = float(_metrics.get("answer_latency_samples", 0.0)) + 1.0


def reset_metrics() -> None:
    with _lock:
        for key in list(_metrics.keys()):
            _metrics[key] = 0.0


def get_metrics_snapshot(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    with _lock:
        data = dict(_metrics)

    samples = max(1.0, float(data.get("answer_latency_samples") or 0.0))
    payload: dict[str, Any] = {"generated_at": time.time()}
    for name in _COUNTERS:
        payload[name] = int(data.get(name) or 0.0)
    payload["answer_latency_samples"] = int(data.get("answer_latency_samples") or 0.0)
    payload["avg_answer_latency_sec"] = round(float(data.get("answer_latency_total_sec") or 0.0) / samples, 3)

    if extra:
        payload.update(extra)
    return payload
