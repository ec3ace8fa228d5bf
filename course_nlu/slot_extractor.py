import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from course_nlu import rules, time_parser
from course_nlu.ai_client import AICapability, AICapabilityError
from course_nlu.config import NluSettings
from course_nlu.conversation_state import ConversationState
from course_nlu.entity_matcher import EntityPatternMatcher
from course_nlu.models import (
    ADD_COURSE,
    CANCEL_COURSE,
    MODIFY_COURSE,
    RECORD_CONTENT,
    SET_REMINDER,
    UNKNOWN,
    ExtractionResult,
    SlotSet,
    is_null_like,
    slot_attr,
)
from course_nlu.review_log import ReviewLog

logger = logging.getLogger("course-nlu.slots")

DEFECT_PENALTY = 0.15


def coerce_slots(data: dict[str, Any], allowed: tuple[str, ...] | None = None) -> tuple[SlotSet, list[str]]:
    """Build a SlotSet field by field; null-like values vanish and invalid ones are dropped with an issue."""
    kept: dict[str, Any] = {}
    issues: list[str] = []
    for key, value in data.items():
        key = rules.SLOT_SYNONYMS.get(key, key)
        if allowed is not None and key not in allowed:
            continue
        if key not in SlotSet.model_fields and slot_attr(key) == key:
            continue
        if is_null_like(value):
            continue
        try:
            SlotSet.model_validate({key: value})
        except ValidationError:
            issues.append(f"invalid_{key}")
            continue
        kept[key] = value
    return SlotSet.model_validate(kept), issues


def _strip_leaked_verbs(value: str) -> str:
    result = value
    changed = True
    while changed and result:
        changed = False
        for verb in rules.LEAKED_VERBS:
            if result.startswith(verb) and len(result) > len(verb):
                result = result[len(verb):]
                changed = True
            if result.endswith(verb) and len(result) > len(verb):
                result = result[: -len(verb)]
                changed = True
    return result


def _name_defects(value: str | None, max_len: int) -> int:
    if not value:
        return 0
    defects = 0
    if not 2 <= len(value) <= max_len:
        defects += 1
    if any(ch.isdigit() for ch in value):
        defects += 1
    if any(verb in value for verb in rules.LEAKED_VERBS):
        defects += 1
    return defects


def score_confidence(intent: str, slots: SlotSet) -> float:
    """Fill rate over the intent's expected field groups, minus a penalty per quality defect."""
    groups = rules.EXPECTED_FIELDS.get(intent)
    if not groups:
        return 0.0 if intent == UNKNOWN else 1.0
    filled = sum(1 for group in groups if any(slots.has(name) for name in group))
    score = filled / len(groups)
    defects = _name_defects(slots.student_name, 6) + _name_defects(slots.course_name, 9)
    if slots.student_candidates and len(slots.student_candidates) > 1:
        defects += 1
    return round(max(0.0, min(1.0, score - DEFECT_PENALTY * defects)), 3)


class SlotExtractor:
    """Rule extraction, context enhancement, confidence, AI assist, cleanup and normalization."""

    def __init__(
        self,
        settings: NluSettings,
        state: ConversationState,
        matcher: EntityPatternMatcher | None = None,
        ai: AICapability | None = None,
        review: ReviewLog | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.settings = settings
        self.state = state
        self.matcher = matcher or EntityPatternMatcher()
        self.ai = ai
        self.review = review
        self.clock = clock or state.clock or time.time

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), self.settings.zone)

    # rule stage

    def _student_slots(self, text: str, data: dict[str, Any], issues: list[str]) -> None:
        candidates = self.matcher.extract_student_candidates(text)
        if len(candidates) > 1:
            data["studentCandidates"] = candidates
            issues.append("ambiguous_student")
            return
        name = candidates[0] if candidates else self.matcher.extract_student_name(text)
        if name:
            data["studentName"] = name

    def _schedule_slots(self, text: str, intent: str, now: datetime, data: dict[str, Any], issues: list[str]) -> None:
        token = self.matcher.extract_time(text)
        if token is not None and token.hour is not None:
            hour = token.hour
            if (
                intent == MODIFY_COURSE
                and self.settings.modify_bare_hour_afternoon
                and token.period_hint is None
                and 1 <= hour <= 7
            ):
                hour += 12
                issues.append("bare_hour_afternoon")
            data["scheduleTime"] = f"{hour:02d}:{token.minute:02d}"

        data["courseDate"] = self.matcher.extract_date(text, now.date())
        data["timeReference"] = time_parser.parse_time_reference(text)

        recurrence = time_parser.parse_recurrence(text, self.settings.enable_daily_recurring)
        days = list(recurrence.days_of_week) if recurrence and recurrence.days_of_week else self.matcher.extract_days_of_week(text)
        if days:
            data["dayOfWeek"] = days[0] if len(days) == 1 else days
        if recurrence is not None:
            data["recurring"] = True
            data["recurrenceType"] = recurrence.kind
            data["monthDay"] = recurrence.month_day
        elif time_parser.is_recurring(text, self.settings.enable_daily_recurring):
            data["recurring"] = True
        if not self.settings.enable_daily_recurring and any(word in text for word in time_parser.DAILY_KEYWORDS):
            issues.append("daily_recurrence_disabled")

    def extract_by_rules(self, text: str, intent: str, now: datetime) -> tuple[dict[str, Any], list[str]]:
        data: dict[str, Any] = {}
        issues: list[str] = []
        if intent not in rules.INTENT_FIELDS:
            return data, issues

        self._student_slots(text, data, issues)
        data["courseName"] = self.matcher.extract_course_name(text)

        if intent in (ADD_COURSE, MODIFY_COURSE):
            self._schedule_slots(text, intent, now, data, issues)
            return data, issues

        data["courseDate"] = self.matcher.extract_date(text, now.date())
        data["timeReference"] = time_parser.parse_time_reference(text)

        if intent == SET_REMINDER:
            data["reminderTime"] = time_parser.parse_duration_minutes(text)
            data["reminderNote"] = self.matcher.extract_reminder_note(text)
        elif intent == CANCEL_COURSE:
            data["scope"] = self.matcher.extract_scope(text)
        elif intent == RECORD_CONTENT:
            data["content"] = self.matcher.extract_content(text)
        return data, issues

    # context stage

    def _enhance_from_context(self, text: str, intent: str, slots: SlotSet, user_id: str, issues: list[str]) -> SlotSet:
        if slots.has("studentName") or slots.has("studentCandidates"):
            return slots

        context = self.state.get_context(user_id)
        known = context.mentioned_entities.students
        recognized = self.matcher.match_known_student(text, known) if known else None
        if recognized:
            issues.append("student_recognized")
            return slots.merged(SlotSet(student_name=recognized))

        if intent not in rules.CRITICAL_INTENTS:
            return slots

        fill: dict[str, Any] = {}
        if self.settings.context_inference_enabled:
            if known:
                fill["studentName"] = known[-1]
            if not slots.has("courseName") and context.mentioned_entities.courses:
                fill["courseName"] = context.mentioned_entities.courses[-1]
        elif intent in self.settings.safe_inference_intents:
            session = context.query_session
            if session is not None and session.student_name:
                fill["studentName"] = session.student_name

        if fill:
            issues.append("context_inferred")
            logger.info("context inferred user=%s intent=%s fields=%s", user_id, intent, sorted(fill))
            return slots.merged(SlotSet.model_validate(fill))
        return slots

    # ai stage

    def _needs_ai(self, intent: str, slots: SlotSet, confidence: float) -> bool:
        if self.ai is None or not self.settings.enable_ai_fallback:
            return False
        groups = rules.EXPECTED_FIELDS.get(intent, ())
        empty = any(not any(slots.has(name) for name in group) for group in groups)
        return confidence < self.settings.low_confidence_threshold or empty

    def _ai_assist(self, text: str, intent: str, slots: SlotSet, issues: list[str]) -> tuple[SlotSet, bool]:
        try:
            raw = self.ai.extract_slots(text, intent, slots.to_dict())
        except AICapabilityError as exc:
            logger.warning("ai extract failed intent=%s err=%s", intent, exc)
            issues.append("ai_unavailable")
            return slots, False
        ai_slots, ai_issues = coerce_slots(raw, rules.INTENT_FIELDS.get(intent))
        issues.extend(f"ai_{issue}" for issue in ai_issues)
        return slots.merged(ai_slots), bool(ai_slots.to_dict())

    # cleanup stage

    def _cleanup(self, slots: SlotSet, known_students: list[str], issues: list[str]) -> dict[str, Any]:
        data = slots.to_dict()

        student = data.get("studentName")
        if student:
            cleaned = _strip_leaked_verbs(student)
            if cleaned != student:
                issues.append("student_verb_stripped")
            if self.matcher.is_valid_student_name(cleaned):
                data["studentName"] = cleaned
            else:
                issues.append("student_dropped")
                data.pop("studentName")

        course = data.get("courseName")
        if course:
            cleaned = _strip_leaked_verbs(course)
            owner = data.get("studentName")
            if not owner:
                owner = next((name for name in known_students if cleaned.startswith(name)), None)
            if owner and cleaned.startswith(owner) and len(cleaned) > len(owner) + 1:
                cleaned = cleaned[len(owner):]
                data.setdefault("studentName", owner)
                issues.append("student_rehomed")
            cleaned = self.matcher.normalize_course_name(cleaned)
            if self.matcher.is_valid_course_name(cleaned):
                data["courseName"] = cleaned
            else:
                issues.append("course_dropped")
                data.pop("courseName")
        return data

    def extract(self, text: str, intent: str, user_id: str, now: datetime | None = None) -> ExtractionResult:
        """Best-effort SlotSet for intent; never raises."""
        now = now or self._now()
        normalized = time_parser.normalize_text(text)
        sources = ["rules"]

        raw, issues = self.extract_by_rules(normalized, intent, now)
        slots, invalid = coerce_slots(raw, rules.INTENT_FIELDS.get(intent))
        issues.extend(invalid)

        slots = self._enhance_from_context(normalized, intent, slots, user_id, issues)
        confidence = score_confidence(intent, slots)

        if self._needs_ai(intent, slots, confidence):
            slots, used = self._ai_assist(normalized, intent, slots, issues)
            if used:
                sources.append("ai")

        known = self.state.get_context(user_id).mentioned_entities.students
        cleaned = self._cleanup(slots, known, issues)
        slots, invalid = coerce_slots(cleaned, rules.INTENT_FIELDS.get(intent))
        issues.extend(invalid)
        confidence = score_confidence(intent, slots)

        logger.info(
            "slots user=%s intent=%s confidence=%.2f fields=%s issues=%s",
            user_id,
            intent,
            confidence,
            sorted(slots.to_dict()),
            issues,
        )

        if self.review is not None and confidence < self.settings.review_confidence_threshold:
            try:
                self.review.submit(user_id, normalized, intent, confidence, slots.to_dict(), issues)
            except Exception:
                logger.debug("review submit failed user=%s", user_id, exc_info=True)

        return ExtractionResult(slots=slots, confidence=confidence, issues=issues, sources=sources)
