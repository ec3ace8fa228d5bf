import logging
import os
from typing import Any
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger("course-nlu.config")

DEFAULT_TIMEZONE = "Asia/Taipei"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(item.strip() for item in raw.split(",") if item.strip())


class NluSettings(BaseModel):
    """Runtime switches for the NLU core, passed explicitly into every component."""

    model_config = ConfigDict(frozen=True)

    enable_ai_fallback: bool = False
    ai_confidence_threshold: float = Field(default=0.6, ge=0.6, le=0.7)
    ai_base_url: str = "https://api.openai.com/v1"
    ai_api_key: str = ""
    ai_model: str = "gpt-4.1-mini"
    ai_timeout_s: float = Field(default=8.0, gt=0.0, le=60.0)

    enable_daily_recurring: bool = False
    modify_bare_hour_afternoon: bool = True
    context_inference_enabled: bool = False
    safe_inference_intents: tuple[str, ...] = ("cancel_course",)

    pending_input_ttl_s: float = Field(default=120.0, gt=0.0)
    context_ttl_s: float = Field(default=1800.0, gt=0.0)
    query_session_ttl_s: float = Field(default=300.0, gt=0.0)

    low_confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    review_confidence_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    review_queue_size: int = Field(default=256, ge=1, le=100_000)

    course_duration_minutes: int = Field(default=60, ge=1, le=24 * 60)
    execution_history_size: int = Field(default=100, ge=1, le=10_000)
    timezone: str = DEFAULT_TIMEZONE

    @classmethod
    def from_env(cls, **overrides: Any) -> "NluSettings":
        values: dict[str, Any] = {
            "enable_ai_fallback": _env_bool("ENABLE_AI_FALLBACK", "false"),
            "ai_confidence_threshold": float(os.getenv("AI_CONFIDENCE_THRESHOLD", "0.6")),
            "ai_base_url": os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            "ai_api_key": os.getenv("OPENAI_API_KEY", ""),
            "ai_model": os.getenv("LLM_MODEL", "gpt-4.1-mini"),
            "ai_timeout_s": float(os.getenv("AI_TIMEOUT_S", "8")),
            "enable_daily_recurring": _env_bool("ENABLE_DAILY_RECURRING", "false"),
            "modify_bare_hour_afternoon": _env_bool("MODIFY_BARE_HOUR_AFTERNOON", "true"),
            "context_inference_enabled": _env_bool("CONTEXT_INFERENCE_ENABLED", "false"),
            "safe_inference_intents": _env_list("SAFE_INFERENCE_INTENTS", "cancel_course"),
            "pending_input_ttl_s": float(os.getenv("PENDING_INPUT_TTL_S", "120")),
            "context_ttl_s": float(os.getenv("CONTEXT_TTL_S", "1800")),
            "query_session_ttl_s": float(os.getenv("QUERY_SESSION_TTL_S", "300")),
            "low_confidence_threshold": float(os.getenv("LOW_CONFIDENCE_THRESHOLD", "0.5")),
            "review_confidence_threshold": float(os.getenv("REVIEW_CONFIDENCE_THRESHOLD", "0.3")),
            "review_queue_size": int(os.getenv("REVIEW_QUEUE_SIZE", "256")),
            "course_duration_minutes": int(os.getenv("COURSE_DURATION_MINUTES", "60")),
            "timezone": os.getenv("COURSE_NLU_TIMEZONE", DEFAULT_TIMEZONE),
        }
        values.update(overrides)
        return cls(**values)

    @property
    def zone(self) -> ZoneInfo:
        return safe_zoneinfo(self.timezone)


def safe_zoneinfo(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except Exception:
        logger.warning("invalid timezone=%s fallback=%s", tz_name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)
