import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from datetime import date, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field

from course_nlu import time_parser
from course_nlu.config import NluSettings
from course_nlu.conversation_state import ConversationState
from course_nlu.models import SlotSet

logger = logging.getLogger("course-nlu.trigger")

RETRY_MESSAGE = "執行時發生問題，請稍後再試一次，或修改內容後重新送出。"

# substring -> category, first hit wins
ERROR_CATEGORIES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("taskservice", "任務服務"), "taskservice_error"),
    (("entities", "實體"), "entities_conversion_error"),
    (("state", "狀態"), "state_management_error"),
    (("validation", "驗證"), "validation_error"),
    (("timeout", "timed out", "超時"), "timeout_error"),
)

_REFERENCE_OFFSETS = {
    "today": 0,
    "tomorrow": 1,
    "day_after_tomorrow": 2,
    "yesterday": -1,
    "day_before_yesterday": -2,
}


class TaskExecutionError(RuntimeError):
    """Raised by executors for a failure the user may retry."""


class ExecutionOutcome(BaseModel):
    success: bool
    message: str = ""
    error: str | None = None


class TaskExecutor(ABC):
    @abstractmethod
    def execute(self, intent: str, entities: dict[str, Any], user_id: str) -> ExecutionOutcome:
        raise NotImplementedError


class DryRunExecutor(TaskExecutor):
    """Acknowledges every task without side effects."""

    def execute(self, intent: str, entities: dict[str, Any], user_id: str) -> ExecutionOutcome:
        course = entities.get("course_name") or ""
        student = entities.get("student_name") or ""
        subject = f"{student}的{course}" if student and course else (course or student or intent)
        return ExecutionOutcome(success=True, message=f"已收到：{subject}")


class TriggerResult(BaseModel):
    success: bool
    intent: str
    execution_id: str
    message: str = ""
    entities: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_type: str | None = None
    retry_count: int = 0
    execution_time_ms: float = 0.0


def categorize_error(error: BaseException | str) -> str:
    message = str(error).lower()
    if isinstance(error, TimeoutError):
        return "timeout_error"
    for needles, category in ERROR_CATEGORIES:
        if any(needle in message for needle in needles):
            return category
    return "unknown_error"


def _end_time(start: datetime, minutes: int) -> datetime:
    return start + timedelta(minutes=minutes)


def resolve_lesson_date(slots: SlotSet, now: datetime) -> date:
    """Concrete lesson date: explicit date, then recurrence, then relative words, then today or tomorrow."""
    if slots.course_date:
        return date.fromisoformat(slots.course_date)

    days = slots.day_of_week
    day_list = [days] if isinstance(days, int) else list(days or [])

    if slots.recurring:
        kind = slots.recurrence_type or ("weekly" if day_list else None)
        if kind:
            upcoming = time_parser.next_occurrence(kind, now, slots.schedule_time, day_list, slots.month_day)
            if upcoming is not None:
                return upcoming

    offset = _REFERENCE_OFFSETS.get(slots.time_reference or "")
    if offset is not None:
        return now.date() + timedelta(days=offset)

    if day_list:
        upcoming = time_parser.next_occurrence("weekly", now, slots.schedule_time, day_list)
        if upcoming is not None:
            return upcoming

    today = now.date()
    if slots.schedule_time:
        hour, minute = (int(part) for part in slots.schedule_time.split(":"))
        if (hour, minute) <= (now.hour, now.minute):
            return today + timedelta(days=1)
    return today


def convert_slots_to_entities(slots: SlotSet, now: datetime, duration_minutes: int = 60) -> dict[str, Any]:
    """Rename slots into the executor contract and compose the timeInfo block."""
    entities: dict[str, Any] = {}
    if slots.course_name:
        entities["course_name"] = slots.course_name
    if slots.student_name:
        entities["student_name"] = slots.student_name
    if slots.content:
        entities["content"] = slots.content
    if slots.reminder_time is not None:
        entities["reminder"] = {"minutes_before": slots.reminder_time, "note": slots.reminder_note}
    elif slots.reminder_note:
        entities["reminder"] = {"note": slots.reminder_note}
    if slots.scope:
        entities["scope"] = slots.scope

    if slots.schedule_time or slots.course_date or slots.day_of_week is not None or slots.time_reference:
        lesson_date = resolve_lesson_date(slots, now)
        time_info: dict[str, Any] = {"date": lesson_date.isoformat()}
        if slots.time_reference:
            time_info["reference"] = slots.time_reference
        if slots.schedule_time:
            hour, minute = (int(part) for part in slots.schedule_time.split(":"))
            start = datetime(lesson_date.year, lesson_date.month, lesson_date.day, hour, minute, tzinfo=now.tzinfo)
            time_info["time"] = slots.schedule_time
            time_info["display"] = slots.schedule_time
            time_info["start"] = start.isoformat()
            time_info["end"] = _end_time(start, duration_minutes).isoformat()
        if slots.recurring:
            days = slots.day_of_week
            time_info["recurring"] = {
                "type": slots.recurrence_type or "weekly",
                "days_of_week": [days] if isinstance(days, int) else list(days or []),
                "month_day": slots.month_day,
            }
        entities["timeInfo"] = time_info
    return entities


class TaskTrigger:
    def __init__(
        self,
        settings: NluSettings,
        state: ConversationState,
        executor: TaskExecutor | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self.state = state
        self.executor = executor or DryRunExecutor()
        self.clock = clock or state.clock or time.time
        self._lock = threading.Lock()
        self._history: deque[dict[str, Any]] = deque(maxlen=settings.execution_history_size)
        self._stats: dict[str, Any] = {
            "total": 0,
            "success": 0,
            "failure": 0,
            "total_time_ms": 0.0,
            "by_intent": {},
        }

    def _record(self, result: TriggerResult, user_id: str) -> None:
        with self._lock:
            stats = self._stats
            stats["total"] += 1
            stats["success" if result.success else "failure"] += 1
            stats["total_time_ms"] += result.execution_time_ms
            per_intent = stats["by_intent"].setdefault(result.intent, {"total": 0, "success": 0, "failure": 0})
            per_intent["total"] += 1
            per_intent["success" if result.success else "failure"] += 1
            self._history.append(
                {
                    "execution_id": result.execution_id,
                    "user_id": user_id,
                    "intent": result.intent,
                    "success": result.success,
                    "error_type": result.error_type,
                    "execution_time_ms": result.execution_time_ms,
                    "at": self.clock(),
                }
            )

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._stats["total"]
            return {
                "total": total,
                "success": self._stats["success"],
                "failure": self._stats["failure"],
                "success_rate": round(self._stats["success"] / total, 3) if total else 0.0,
                "average_time_ms": round(self._stats["total_time_ms"] / total, 3) if total else 0.0,
                "by_intent": {k: dict(v) for k, v in self._stats["by_intent"].items()},
                "history": list(self._history),
            }

    def execute(self, user_id: str, intent: str, slots: SlotSet) -> TriggerResult:
        execution_id = f"exec-{uuid.uuid4().hex[:12]}"
        started = time.perf_counter()
        now = datetime.fromtimestamp(self.clock(), self.settings.zone)
        entities: dict[str, Any] = {}

        try:
            try:
                entities = convert_slots_to_entities(slots, now, self.settings.course_duration_minutes)
            except (ValueError, TypeError) as exc:
                raise TaskExecutionError(f"entities conversion failed: {exc}") from exc
            outcome = self.executor.execute(intent, entities, user_id)
            if not outcome.success:
                raise TaskExecutionError(outcome.error or outcome.message or "taskservice reported failure")
        except Exception as exc:
            error_type = categorize_error(exc)
            pending = self.state.mark_execution_failed(user_id, intent, slots, str(exc), error_type)
            result = TriggerResult(
                success=False,
                intent=intent,
                execution_id=execution_id,
                message=RETRY_MESSAGE,
                entities=entities,
                error=str(exc),
                error_type=error_type,
                retry_count=pending.retry_count,
                execution_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
            )
            self._record(result, user_id)
            return result

        self.state.complete_pending(user_id, intent, slots, execution_id, outcome.message)
        result = TriggerResult(
            success=True,
            intent=intent,
            execution_id=execution_id,
            message=outcome.message or "任務已完成",
            entities=entities,
            execution_time_ms=round((time.perf_counter() - started) * 1000.0, 3),
        )
        self._record(result, user_id)
        logger.info("executed user=%s intent=%s id=%s ms=%.1f", user_id, intent, execution_id, result.execution_time_ms)
        return result
