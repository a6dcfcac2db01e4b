import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

_BACKEND_ROOT = Path(__file__).resolve().parents[1]
_BACKEND_ENV_PATH = _BACKEND_ROOT / ".env"
load_dotenv(dotenv_path=_BACKEND_ENV_PATH, override=False)

TRUTHY = {"1", "true", "yes", "on"}


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name) or default).strip()


def _env_bool(name: str, default: str = "false") -> bool:
    return str(os.getenv(name, default)).strip().lower() in TRUTHY


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        value = default
    return max(minimum, value)


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        value = default
    return max(minimum, value)


@dataclass(frozen=True)
class SessionPolicy:
    """Timing and retry knobs for one live interview session."""

    connect_timeout_sec: float = 30.0
    playback_fallback_sec: float = 8.0
    playback_max_sec: float = 60.0
    silent_delay_sec: float = 2.0
    capture_restart_cap: int = 5
    capture_restart_backoff_sec: float = 0.5
    capture_max_sec: float = 60.0
    answer_pause_sec: float = 1.0
    transcript_append_retries: int = 1
    transcript_retry_delay_sec: float = 0.25

    @classmethod
    def from_env(cls) -> "SessionPolicy":
        silent_delay = _env_float("SESSION_SILENT_DELAY_SEC", 2.0)
        return cls(
            connect_timeout_sec=_env_float("SESSION_CONNECT_TIMEOUT_SEC", 30.0, minimum=5.0),
            # silent wait must never outlast the fallback it stands in for
            playback_fallback_sec=_env_float("SESSION_PLAYBACK_FALLBACK_SEC", 8.0, minimum=silent_delay),
            playback_max_sec=_env_float("SESSION_PLAYBACK_MAX_SEC", 60.0, minimum=5.0),
            silent_delay_sec=silent_delay,
            capture_restart_cap=_env_int("SESSION_CAPTURE_RESTART_CAP", 5),
            capture_restart_backoff_sec=_env_float("SESSION_CAPTURE_RESTART_BACKOFF_SEC", 0.5),
            capture_max_sec=_env_float("SESSION_CAPTURE_MAX_SEC", 60.0, minimum=5.0),
            answer_pause_sec=_env_float("SESSION_ANSWER_PAUSE_SEC", 1.0),
            transcript_append_retries=_env_int("TRANSCRIPT_APPEND_RETRIES", 1, minimum=1),
            transcript_retry_delay_sec=_env_float("TRANSCRIPT_RETRY_DELAY_SEC", 0.25),
        )


@dataclass(frozen=True)
class Settings:
    environment: str
    qa_mode: bool
    openai_api_key: str
    model_name: str
    tts_model: str
    tts_voice: str
    deepgram_api_key: str
    deepgram_endpointing_ms: int
    deepgram_silence_sec: float
    livekit_api_key: str
    livekit_api_secret: str
    livekit_url: str
    livekit_token_ttl_sec: int
    agent_identity: str
    supabase_url: str
    supabase_service_key: str
    supabase_jwt_secret: str
    allow_unverified_jwt_dev: bool
    use_redis_session_registry: bool
    redis_url: str
    session_lease_sec: int
    cors_allow_origins: tuple[str, ...]
    policy: SessionPolicy

    @classmethod
    def from_env(cls) -> "Settings":
        raw_origins = _env_str("CORS_ALLOW_ORIGINS")
        origins = tuple(item.strip() for item in raw_origins.split(",") if item.strip()) or (
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
        )
        return cls(
            environment=_env_str("ENV", "development").lower(),
            qa_mode=_env_bool("QA_MODE"),
            openai_api_key=_env_str("OPENAI_API_KEY"),
            model_name=_env_str("MODEL_NAME", "gpt-4o"),
            tts_model=_env_str("TTS_MODEL", "tts-1"),
            tts_voice=_env_str("TTS_VOICE", "nova"),
            deepgram_api_key=_env_str("DEEPGRAM_API_KEY"),
            deepgram_endpointing_ms=_env_int("DEEPGRAM_ENDPOINTING_MS", 700, minimum=300),
            deepgram_silence_sec=_env_float("DEEPGRAM_SILENCE_SEC", 12.0, minimum=3.0),
            livekit_api_key=_env_str("LIVEKIT_API_KEY"),
            livekit_api_secret=_env_str("LIVEKIT_API_SECRET"),
            livekit_url=_env_str("LIVEKIT_URL"),
            livekit_token_ttl_sec=_env_int("LIVEKIT_TOKEN_TTL_SEC", 6 * 3600, minimum=60),
            agent_identity=_env_str("AGENT_IDENTITY", "ai-interviewer"),
            supabase_url=_env_str("SUPABASE_URL"),
            supabase_service_key=_env_str("SUPABASE_SERVICE_KEY") or _env_str("SUPABASE_SERVICE_ROLE_KEY"),
            supabase_jwt_secret=_env_str("SUPABASE_JWT_SECRET"),
            allow_unverified_jwt_dev=_env_bool("ALLOW_UNVERIFIED_JWT_DEV"),
            use_redis_session_registry=_env_bool("USE_REDIS_SESSION_REGISTRY"),
            redis_url=_env_str("REDIS_URL"),
            session_lease_sec=_env_int("SESSION_LEASE_SEC", 3 * 3600, minimum=60),
            cors_allow_origins=origins,
            policy=SessionPolicy.from_env(),
        )

    def livekit_ready(self) -> bool:
        return bool(self.livekit_api_key and self.livekit_api_secret and self.livekit_url)

    def supabase_ready(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)
