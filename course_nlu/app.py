import logging
import os
import time
import uuid
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from pydantic import BaseModel, Field

from course_nlu import time_parser
from course_nlu.config import NluSettings, safe_zoneinfo
from course_nlu.intent_classifier import ClassificationResult
from course_nlu.models import ExtractionResult
from course_nlu.pipeline import DialoguePipeline, TurnResult, build_pipeline

logger = logging.getLogger("course-nlu")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

SERVICE_VERSION = "0.1.0"


class TurnRequest(BaseModel):
    request_id: str | None = None
    user_id: str = Field(..., min_length=1, max_length=128)
    text: str = Field(..., min_length=1, max_length=500, description="本輪使用者語句")


class TurnResponse(BaseModel):
    request_id: str
    result: TurnResult
    meta: dict[str, Any] = Field(default_factory=dict)


class ClassifyRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    text: str = Field(..., min_length=1, max_length=500)


class ExtractRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    text: str = Field(..., min_length=1, max_length=500)
    intent: str = Field(..., min_length=1)
    now: str | None = Field(default=None, description="ISO-8601 reference time")


class TimeParseRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=500)
    now: str | None = None
    enable_daily_recurring: bool | None = None


class RecurrenceOut(BaseModel):
    kind: str
    days_of_week: list[int] = Field(default_factory=list)
    month_day: int | None = None
    next_date: str | None = None


class TimeParseResponse(BaseModel):
    time: str | None = None
    period: str | None = None
    date: str | None = None
    time_reference: str | None = None
    days_of_week: list[int] = Field(default_factory=list)
    recurrence: RecurrenceOut | None = None
    duration_minutes: int | None = None
    now: str


def _resolve_now(now: str | None, settings: NluSettings) -> datetime:
    tz = safe_zoneinfo(settings.timezone)
    if not now:
        return datetime.now(tz)

    normalized = now.replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        logger.warning("invalid now=%s fallback=system_clock", now)
        return datetime.now(tz)

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


app = FastAPI(title="course-nlu-service", version=SERVICE_VERSION)
app.state.settings = NluSettings.from_env()
app.state.pipeline = build_pipeline(app.state.settings)


def _pipeline(request: Request) -> DialoguePipeline:
    return request.app.state.pipeline


@app.get("/healthz")
def healthz(request: Request) -> dict[str, Any]:
    settings: NluSettings = request.app.state.settings
    return {
        "ok": True,
        "engine": "course-nlu-rules",
        "version": SERVICE_VERSION,
        "ai_fallback": settings.enable_ai_fallback,
        "timezone": settings.timezone,
    }


@app.post("/v1/turns", response_model=TurnResponse)
def process_turn(payload: TurnRequest, request: Request) -> TurnResponse:
    start = time.perf_counter()
    request_id = payload.request_id or f"turn-{uuid.uuid4().hex}"
    result = _pipeline(request).process_turn(payload.text, payload.user_id)
    latency_ms = (time.perf_counter() - start) * 1000.0
    return TurnResponse(request_id=request_id, result=result, meta={"latency_ms": round(latency_ms, 3)})


@app.post("/v1/intents/classify", response_model=ClassificationResult)
def classify_intent(payload: ClassifyRequest, request: Request) -> ClassificationResult:
    pipeline = _pipeline(request)
    with pipeline.state.session(payload.user_id):
        return pipeline.classifier.classify(payload.text, payload.user_id)


@app.post("/v1/slots/extract", response_model=ExtractionResult)
def extract_slots(payload: ExtractRequest, request: Request) -> ExtractionResult:
    pipeline = _pipeline(request)
    now = _resolve_now(payload.now, pipeline.settings)
    with pipeline.state.session(payload.user_id):
        return pipeline.extractor.extract(payload.text, payload.intent, payload.user_id, now=now)


@app.post("/v1/time/parse", response_model=TimeParseResponse)
def parse_time(payload: TimeParseRequest, request: Request) -> TimeParseResponse:
    settings: NluSettings = request.app.state.settings
    now = _resolve_now(payload.now, settings)
    text = time_parser.normalize_text(payload.text)
    daily = settings.enable_daily_recurring if payload.enable_daily_recurring is None else payload.enable_daily_recurring

    token = time_parser.tokenize_time(text)
    period = time_parser.identify_period(text)
    recurrence = time_parser.parse_recurrence(text, daily)
    recurrence_out = None
    if recurrence is not None:
        upcoming = time_parser.next_occurrence(
            recurrence.kind,
            now,
            token.formatted() if token else None,
            list(recurrence.days_of_week),
            recurrence.month_day,
        )
        recurrence_out = RecurrenceOut(
            kind=recurrence.kind,
            days_of_week=list(recurrence.days_of_week),
            month_day=recurrence.month_day,
            next_date=upcoming.isoformat() if upcoming else None,
        )

    return TimeParseResponse(
        time=token.formatted() if token else None,
        period=period.word if period else None,
        date=time_parser.parse_date(text, now.date()),
        time_reference=time_parser.parse_time_reference(text),
        days_of_week=time_parser.parse_days_of_week(text),
        recurrence=recurrence_out,
        duration_minutes=time_parser.parse_duration_minutes(text),
        now=now.isoformat(),
    )


@app.get("/v1/stats")
def stats(request: Request) -> dict[str, Any]:
    pipeline = _pipeline(request)
    review = pipeline.extractor.review
    return {
        "executions": pipeline.trigger.stats(),
        "review": {"written": review.written, "dropped": review.dropped} if review is not None else None,
    }
