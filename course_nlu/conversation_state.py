"""Per-user dialogue state behind a narrow interface.

Phase transitions: idle -> awaiting_input -> fulfilled | expired | cancelled,
and any of those back to awaiting_input when a new task is left incomplete.
Expired state is treated as absent, never as an error.
"""

import logging
import threading
import time
import weakref
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from pydantic import ValidationError

from course_nlu.config import NluSettings
from course_nlu.models import (
    ADD_COURSE,
    CANCEL_COURSE,
    INPUT_TYPES,
    MODIFY_COURSE,
    QUERY_SCHEDULE,
    RECORD_CONTENT,
    SET_REMINDER,
    ActionRecord,
    CompletedTask,
    ConversationContext,
    PendingTask,
    QuerySession,
    SlotSet,
)

logger = logging.getLogger("course-nlu.state")

MAX_MENTIONED = 10
RETRY_INPUT = "retry"
AFTER_SUCCESS_INPUTS = ["confirmation", "modification"]


class ConversationStore(ABC):
    """Key-value persistence with per-key TTL."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: str, ttl_s: float) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, key: str) -> None:
        raise NotImplementedError


class InMemoryStore(ConversationStore):
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_s: float) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_s)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


def _time_anchor(slots: SlotSet) -> bool:
    return slots.has("scheduleTime") or (slots.has("courseDate") and slots.has("dayOfWeek"))


def _missing_add_course(slots: SlotSet) -> list[str]:
    missing = [name for name in ("studentName", "courseName") if not slots.has(name)]
    if not _time_anchor(slots):
        missing.append("scheduleTime")
    return missing


def _missing_query(slots: SlotSet) -> list[str]:
    if any(slots.has(name) for name in ("studentName", "courseName", "courseDate", "timeReference")):
        return []
    return ["studentName"]


def _missing_student_course(slots: SlotSet) -> list[str]:
    return [name for name in ("studentName", "courseName") if not slots.has(name)]


def _missing_modify(slots: SlotSet) -> list[str]:
    missing = _missing_student_course(slots)
    if not any(slots.has(name) for name in ("scheduleTime", "courseDate", "dayOfWeek")):
        missing.append("scheduleTime")
    return missing


MISSING_FIELD_RULES: dict[str, Callable[[SlotSet], list[str]]] = {
    ADD_COURSE: _missing_add_course,
    QUERY_SCHEDULE: _missing_query,
    RECORD_CONTENT: _missing_student_course,
    CANCEL_COURSE: _missing_student_course,
    SET_REMINDER: _missing_student_course,
    MODIFY_COURSE: _missing_modify,
}


def missing_fields(intent: str, slots: SlotSet) -> list[str]:
    rule = MISSING_FIELD_RULES.get(intent)
    return rule(slots) if rule else []


def is_complete(intent: str, slots: SlotSet) -> bool:
    """Completion predicate: intents without a slot contract are always complete."""
    return not missing_fields(intent, slots)


def _push_recent(items: list[str], value: str | None) -> None:
    if not value:
        return
    if value in items:
        items.remove(value)
    items.append(value)
    del items[:-MAX_MENTIONED]


class _UserLock:
    """Reentrant lock that can be weakly referenced."""

    def __init__(self) -> None:
        self._lock = threading.RLock()

    def __enter__(self) -> bool:
        return self._lock.acquire()

    def __exit__(self, *exc_info) -> None:
        self._lock.release()


class ConversationState:
    def __init__(
        self,
        settings: NluSettings,
        store: ConversationStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.store = store or InMemoryStore(clock=clock)
        # entries vanish once no turn holds the lock
        self._locks: weakref.WeakValueDictionary[str, _UserLock] = weakref.WeakValueDictionary()
        self._registry_lock = threading.Lock()

    @staticmethod
    def _key(user_id: str) -> str:
        return f"conversation:{user_id}"

    def _lock_for(self, user_id: str) -> _UserLock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = _UserLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def session(self, user_id: str) -> Iterator[None]:
        """Serialize every read-modify-write of one user's state for the duration of a turn."""
        lock = self._lock_for(user_id)
        with lock:
            yield

    def _fresh(self, user_id: str) -> ConversationContext:
        now = self.clock()
        return ConversationContext(user_id=user_id, created_at=now, updated_at=now)

    def _load(self, user_id: str) -> ConversationContext:
        raw = self.store.get(self._key(user_id))
        if raw is None:
            return self._fresh(user_id)
        try:
            context = ConversationContext.model_validate_json(raw)
        except (ValidationError, ValueError) as exc:
            logger.warning("state corrupt user=%s err=%s reset=true", user_id, exc.__class__.__name__)
            return self._fresh(user_id)
        if self.clock() - context.updated_at > self.settings.context_ttl_s:
            logger.info("context expired user=%s", user_id)
            return self._fresh(user_id)
        return context

    def get_context(self, user_id: str) -> ConversationContext:
        with self.session(user_id):
            context = self._load(user_id)
            now = self.clock()
            changed = False

            pending = context.pending_task
            if pending is not None and now - pending.timestamp > self.settings.pending_input_ttl_s:
                logger.info("pending expired user=%s intent=%s", user_id, pending.intent)
                context.pending_task = None
                context.expecting_input = []
                context.phase = "expired"
                changed = True

            if context.query_session is not None and now >= context.query_session.expires_at:
                context.query_session = None
                changed = True

            if changed:
                self.save_context(context)
            return context

    def save_context(self, context: ConversationContext) -> None:
        with self.session(context.user_id):
            context.updated_at = self.clock()
            self.store.set(
                self._key(context.user_id),
                context.model_dump_json(by_alias=True),
                self.settings.context_ttl_s,
            )

    def reset(self, user_id: str) -> None:
        with self.session(user_id):
            self.store.delete(self._key(user_id))
            logger.info("context reset user=%s", user_id)

    def clear_expected_input(self, user_id: str) -> None:
        with self.session(user_id):
            context = self.get_context(user_id)
            context.expecting_input = []
            self.save_context(context)

    def cancel_pending(self, user_id: str) -> PendingTask | None:
        """Drop the pending task and the expecting-input queue together."""
        with self.session(user_id):
            context = self.get_context(user_id)
            dropped = context.pending_task
            context.pending_task = None
            context.expecting_input = []
            context.phase = "cancelled"
            self.save_context(context)
            if dropped is not None:
                logger.info("pending cancelled user=%s intent=%s", user_id, dropped.intent)
            return dropped

    def get_last_action(self, user_id: str, intent: str) -> ActionRecord | None:
        return self.get_context(user_id).last_actions.get(intent)

    def get_active_query_session(self, user_id: str) -> QuerySession | None:
        return self.get_context(user_id).query_session

    def set_query_session(self, user_id: str, student_name: str | None, time_reference: str | None) -> None:
        with self.session(user_id):
            context = self.get_context(user_id)
            context.query_session = QuerySession(
                student_name=student_name,
                time_reference=time_reference,
                expires_at=self.clock() + self.settings.query_session_ttl_s,
            )
            self.save_context(context)

    def set_pending_task(self, user_id: str, intent: str, slots: SlotSet, missing: list[str]) -> PendingTask:
        with self.session(user_id):
            context = self.get_context(user_id)
            pending = PendingTask(intent=intent, slots=slots, missing_fields=missing, timestamp=self.clock())
            context.pending_task = pending
            context.expecting_input = [INPUT_TYPES[name] for name in missing if name in INPUT_TYPES]
            context.phase = "awaiting_input"
            self.save_context(context)
            logger.info("pending set user=%s intent=%s missing=%s", user_id, intent, missing)
            return pending

    def update_pending_slots(self, user_id: str, slots: SlotSet, missing: list[str]) -> PendingTask | None:
        """Store the merged slots of a supplement turn; refreshes the pending timestamp."""
        with self.session(user_id):
            context = self.get_context(user_id)
            pending = context.pending_task
            if pending is None:
                return None
            pending.slots = slots
            pending.missing_fields = missing
            pending.timestamp = self.clock()
            if pending.status == "awaiting_input":
                context.expecting_input = [INPUT_TYPES[name] for name in missing if name in INPUT_TYPES]
            self.save_context(context)
            return pending

    def complete_pending(self, user_id: str, intent: str, slots: SlotSet, execution_id: str, message: str = "") -> None:
        with self.session(user_id):
            context = self.get_context(user_id)
            now = self.clock()
            context.pending_task = None
            context.expecting_input = list(AFTER_SUCCESS_INPUTS)
            context.last_completed_task = CompletedTask(
                intent=intent, slots=slots, execution_id=execution_id, completed_at=now, message=message
            )
            context.last_actions[intent] = ActionRecord(intent=intent, slots=slots, success=True, message=message, timestamp=now)
            context.phase = "fulfilled"
            self._remember(context, slots)
            self.save_context(context)

    def mark_execution_failed(self, user_id: str, intent: str, slots: SlotSet, error: str, error_type: str) -> PendingTask:
        """Keep the task pending with its slots so the user can correct and resubmit."""
        with self.session(user_id):
            context = self.get_context(user_id)
            now = self.clock()
            previous = context.pending_task
            retry_count = previous.retry_count + 1 if previous is not None and previous.intent == intent else 1
            pending = PendingTask(
                intent=intent,
                slots=slots,
                missing_fields=[],
                timestamp=now,
                status="execution_failed",
                retry_count=retry_count,
                last_error=error,
                error_type=error_type,
            )
            context.pending_task = pending
            context.expecting_input = [RETRY_INPUT]
            context.last_actions[intent] = ActionRecord(intent=intent, slots=slots, success=False, message=error, timestamp=now)
            context.phase = "awaiting_input"
            self.save_context(context)
            logger.warning("execution failed user=%s intent=%s retry=%d type=%s", user_id, intent, retry_count, error_type)
            return pending

    def _remember(self, context: ConversationContext, slots: SlotSet) -> None:
        entities = context.mentioned_entities
        _push_recent(entities.students, slots.student_name)
        _push_recent(entities.courses, slots.course_name)
        _push_recent(entities.times, slots.schedule_time)
        _push_recent(entities.dates, slots.course_date)

    def remember_entities(self, user_id: str, slots: SlotSet) -> None:
        with self.session(user_id):
            context = self.get_context(user_id)
            self._remember(context, slots)
            self.save_context(context)
