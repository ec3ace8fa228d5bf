import re
from datetime import date
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ADD_COURSE = "add_course"
QUERY_SCHEDULE = "query_schedule"
CANCEL_COURSE = "cancel_course"
SET_REMINDER = "set_reminder"
RECORD_CONTENT = "record_content"
MODIFY_COURSE = "modify_course"
CONFIRM_ACTION = "confirm_action"
MODIFY_ACTION = "modify_action"
CANCEL_ACTION = "cancel_action"
CORRECTION_INTENT = "correction_intent"
RESTART_INPUT = "restart_input"
UNKNOWN = "unknown"

SUPPLEMENT_PREFIX = "supplement_"

TASK_INTENTS = (ADD_COURSE, QUERY_SCHEDULE, CANCEL_COURSE, SET_REMINDER, RECORD_CONTENT, MODIFY_COURSE)
CONTEXT_INTENTS = (CONFIRM_ACTION, MODIFY_ACTION, CANCEL_ACTION, CORRECTION_INTENT)

# slot name -> expecting-input type recorded while a pending task waits for it
INPUT_TYPES: dict[str, str] = {
    "studentName": "student_name_input",
    "courseName": "course_name_input",
    "scheduleTime": "schedule_time_input",
    "courseDate": "course_date_input",
    "dayOfWeek": "day_of_week_input",
    "content": "content_input",
}
SLOT_FOR_INPUT: dict[str, str] = {v: k for k, v in INPUT_TYPES.items()}

SUPPLEMENT_INTENTS: dict[str, str] = {
    "student_name_input": "supplement_student_name",
    "course_name_input": "supplement_course_name",
    "schedule_time_input": "supplement_schedule_time",
    "course_date_input": "supplement_course_date",
    "day_of_week_input": "supplement_day_of_week",
}

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
NULL_LIKE = {"", "null", "none", "undefined", "nil", "n/a"}

TimeReference = Literal[
    "today",
    "tomorrow",
    "day_after_tomorrow",
    "yesterday",
    "day_before_yesterday",
    "this_week",
    "next_week",
    "last_week",
]
DayIndex = Annotated[int, Field(ge=0, le=6)]
Phase = Literal["idle", "awaiting_input", "fulfilled", "expired", "cancelled"]


def is_supplement(intent: str) -> bool:
    return intent.startswith(SUPPLEMENT_PREFIX)


def is_valid_time(value: Any) -> bool:
    return isinstance(value, str) and bool(TIME_PATTERN.match(value))


def is_valid_date(value: Any) -> bool:
    if not isinstance(value, str) or not DATE_PATTERN.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def is_null_like(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in NULL_LIKE
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")


class SlotSet(CamelModel):
    """Typed task parameters; an unset slot is None and never serialized."""

    student_name: str | None = Field(default=None, min_length=1)
    student_candidates: list[str] | None = None
    course_name: str | None = Field(default=None, min_length=1)
    schedule_time: str | None = None
    course_date: str | None = None
    time_reference: TimeReference | None = None
    day_of_week: DayIndex | list[DayIndex] | None = None
    recurring: bool | None = None
    recurrence_type: Literal["daily", "weekly", "monthly"] | None = None
    month_day: int | None = Field(default=None, ge=1, le=31)
    reminder_time: int | None = Field(default=None, ge=0, le=24 * 60)
    reminder_note: str | None = Field(default=None, min_length=1)
    content: str | None = Field(default=None, min_length=1)
    scope: Literal["single", "recurring", "all"] | None = None

    @field_validator("schedule_time")
    @classmethod
    def _check_time(cls, value: str | None) -> str | None:
        if value is not None and not is_valid_time(value):
            raise ValueError("scheduleTime must be HH:MM")
        return value

    @field_validator("course_date")
    @classmethod
    def _check_date(cls, value: str | None) -> str | None:
        if value is not None and not is_valid_date(value):
            raise ValueError("courseDate must be YYYY-MM-DD")
        return value

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def get(self, name: str) -> Any:
        return getattr(self, slot_attr(name), None)

    def has(self, name: str) -> bool:
        return not is_null_like(self.get(name))

    def merged(self, other: "SlotSet", overwrite: bool = False) -> "SlotSet":
        """Copy of self with other's present values filled in (only into empty fields unless overwrite)."""
        data = self.to_dict()
        for key, value in other.to_dict().items():
            if overwrite or is_null_like(data.get(key)):
                data[key] = value
        return SlotSet.model_validate(data)


SLOT_ALIASES: dict[str, str] = {
    (info.alias or name): name for name, info in SlotSet.model_fields.items()
}


def slot_attr(name: str) -> str:
    return SLOT_ALIASES.get(name, name)


class ExtractionResult(BaseModel):
    slots: SlotSet = Field(default_factory=SlotSet)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    issues: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)


class ActionRecord(CamelModel):
    intent: str
    slots: SlotSet = Field(default_factory=SlotSet)
    success: bool = True
    message: str = ""
    timestamp: float


class PendingTask(CamelModel):
    intent: str
    slots: SlotSet = Field(default_factory=SlotSet)
    missing_fields: list[str] = Field(default_factory=list)
    timestamp: float
    status: Literal["awaiting_input", "execution_failed"] = "awaiting_input"
    retry_count: int = Field(default=0, ge=0)
    last_error: str | None = None
    error_type: str | None = None


class CompletedTask(CamelModel):
    intent: str
    slots: SlotSet = Field(default_factory=SlotSet)
    execution_id: str
    completed_at: float
    message: str = ""


class MentionedEntities(CamelModel):
    students: list[str] = Field(default_factory=list)
    courses: list[str] = Field(default_factory=list)
    times: list[str] = Field(default_factory=list)
    dates: list[str] = Field(default_factory=list)


class QuerySession(CamelModel):
    student_name: str | None = None
    time_reference: str | None = None
    expires_at: float


class ConversationContext(CamelModel):
    user_id: str
    phase: Phase = "idle"
    last_actions: dict[str, ActionRecord] = Field(default_factory=dict)
    pending_task: PendingTask | None = None
    expecting_input: list[str] = Field(default_factory=list)
    mentioned_entities: MentionedEntities = Field(default_factory=MentionedEntities)
    query_session: QuerySession | None = None
    last_completed_task: CompletedTask | None = None
    created_at: float
    updated_at: float
