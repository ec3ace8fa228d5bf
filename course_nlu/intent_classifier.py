import logging
import re

from pydantic import BaseModel, Field
from rapidfuzz import fuzz

from course_nlu import rules, time_parser
from course_nlu.ai_client import AICapability, AICapabilityError, AIClassification
from course_nlu.config import NluSettings
from course_nlu.conversation_state import ConversationState, missing_fields
from course_nlu.models import (
    CANCEL_ACTION,
    CONFIRM_ACTION,
    CORRECTION_INTENT,
    MODIFY_ACTION,
    SUPPLEMENT_INTENTS,
    TASK_INTENTS,
    UNKNOWN,
    ConversationContext,
    PendingTask,
    SlotSet,
)
from course_nlu.rules import IntentRule
from course_nlu.slot_extractor import SlotExtractor

logger = logging.getLogger("course-nlu.intent")

_BARE_NAME = re.compile(r"^(?:[小大]?[一-鿿]{1,3}|[A-Za-z]{3,8})$")
_BARE_COURSE = re.compile(r"^[一-鿿A-Za-z]{2,6}$")
_REPLY_PUNCT = " 。.!！~～,，"


class RuleCandidate(BaseModel):
    intent: str
    score: int
    priority: int
    keywords: list[str] = Field(default_factory=list)
    patterns: list[str] = Field(default_factory=list)


class ClassificationResult(BaseModel):
    intent: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source: str = "rules"
    slots: SlotSet | None = None
    pending_cleared: bool = False
    reason: str = ""
    candidates: list[RuleCandidate] = Field(default_factory=list)


def score_rules(text: str, intent_rules: tuple[IntentRule, ...] = rules.INTENT_RULES) -> list[RuleCandidate]:
    """+10 for a keyword hit, +15 for a pattern hit, +(20 - priority); best first, ties by priority."""
    candidates: list[RuleCandidate] = []
    for rule in intent_rules:
        keywords = [kw for kw in rule.keywords if kw and kw in text]
        patterns = [p.pattern for p in rule.patterns if p.search(text)]
        if not keywords and not patterns:
            continue
        if rule.required_keywords and not any(kw in text for kw in rule.required_keywords):
            continue
        if any(word in text for word in rule.exclusions):
            continue

        score = (10 if keywords else 0) + (15 if patterns else 0) + (20 - rule.priority)
        candidates.append(
            RuleCandidate(intent=rule.intent, score=score, priority=rule.priority, keywords=keywords, patterns=patterns)
        )

    candidates.sort(key=lambda c: (-c.score, c.priority))
    return candidates


def _rule_confidence(candidate: RuleCandidate) -> float:
    confidence = 0.8 + 0.1 * max(0, len(candidate.keywords) - 1) + 0.05 * len(candidate.patterns)
    return round(min(confidence, 1.0), 3)


class LocalExampleClassifier:
    """Keyword and fuzzy-example classifier used when the AI backend is unavailable."""

    def __init__(self, intent_rules: tuple[IntentRule, ...] = rules.INTENT_RULES) -> None:
        self.intent_rules = tuple(rule for rule in intent_rules if rule.intent in TASK_INTENTS)

    def classify(self, text: str) -> AIClassification:
        best_intent, best_score = UNKNOWN, 0.0
        for rule in self.intent_rules:
            if any(word in text for word in rule.exclusions):
                continue
            similarity = max((fuzz.partial_ratio(text, sample) / 100.0 for sample in rule.examples), default=0.0)
            keyword_bonus = 0.2 if any(kw in text for kw in rule.keywords) else 0.0
            score = min(1.0, 0.8 * similarity + keyword_bonus)
            if score > best_score:
                best_intent, best_score = rule.intent, score
        return AIClassification(intent=best_intent, confidence=round(best_score, 3))


class IntentClassifier:
    def __init__(
        self,
        settings: NluSettings,
        state: ConversationState,
        extractor: SlotExtractor,
        ai: AICapability | None = None,
        intent_rules: tuple[IntentRule, ...] = rules.INTENT_RULES,
    ) -> None:
        self.settings = settings
        self.state = state
        self.extractor = extractor
        self.ai = ai
        self.intent_rules = intent_rules
        self.local = LocalExampleClassifier(intent_rules)

    # pending-input resolution

    def _shape_fill(self, text: str, expecting: list[str]) -> tuple[str | None, dict[str, object]]:
        """Supplement values recognized purely by the shape of the utterance."""
        cleaned = text.strip(_REPLY_PUNCT)
        matched: str | None = None
        fill: dict[str, object] = {}
        matcher = self.extractor.matcher
        today = self.extractor._now().date()

        for input_type in expecting:
            slot = None
            value: object = None
            if input_type == "student_name_input" and _BARE_NAME.match(cleaned) and matcher.is_valid_student_name(cleaned):
                slot, value = "studentName", cleaned
            elif input_type == "schedule_time_input":
                slot, value = "scheduleTime", time_parser.parse(cleaned)
            elif input_type == "course_date_input" and any(word in cleaned for word in rules.DATE_HINT_KEYWORDS):
                slot, value = "courseDate", time_parser.parse_date(cleaned, today)
            elif input_type == "day_of_week_input" and any(word in cleaned for word in rules.WEEKDAY_HINT_KEYWORDS):
                days = time_parser.parse_days_of_week(cleaned)
                slot, value = "dayOfWeek", (days[0] if len(days) == 1 else days) if days else None
            elif input_type == "course_name_input":
                course = matcher.extract_course_name(cleaned)
                if not course and _BARE_COURSE.match(cleaned) and matcher.is_valid_course_name(cleaned):
                    course = matcher.normalize_course_name(cleaned)
                slot, value = "courseName", course
            if slot and value not in (None, "", []):
                fill[slot] = value
                matched = matched or SUPPLEMENT_INTENTS.get(input_type)
        return matched, fill

    @staticmethod
    def _is_retry(text: str) -> bool:
        cleaned = text.strip(_REPLY_PUNCT)
        return cleaned in rules.RETRY_KEYWORDS or cleaned.startswith(rules.RETRY_KEYWORDS[:4])

    def _resolve_pending(
        self, text: str, user_id: str, pending: PendingTask, context: ConversationContext
    ) -> ClassificationResult | None:
        candidates = score_rules(text, self.intent_rules)
        if candidates and candidates[0].intent in TASK_INTENTS and candidates[0].intent != pending.intent:
            logger.info("pending skipped user=%s pending=%s new=%s", user_id, pending.intent, candidates[0].intent)
            return None

        extraction = self.extractor.extract(text, pending.intent, user_id)
        supplement, shaped = self._shape_fill(text, context.expecting_input)
        new = extraction.slots.merged(SlotSet.model_validate(shaped))
        new_fields = new.to_dict()

        if pending.status == "execution_failed":
            if not new_fields and not self._is_retry(text):
                return None
            merged = pending.slots.merged(new, overwrite=True)
        else:
            if not new_fields:
                return None
            merged = pending.slots.merged(new)

        missing = missing_fields(pending.intent, merged)
        if not missing:
            self.state.update_pending_slots(user_id, merged, [])
            self.state.clear_expected_input(user_id)
            logger.info("pending completed in context user=%s intent=%s", user_id, pending.intent)
            return ClassificationResult(
                intent=pending.intent, confidence=1.0, source="pending", slots=merged, reason="completed_in_context"
            )

        if supplement is None:
            # the utterance does not answer what we asked for; leave the pending task untouched
            return None

        self.state.update_pending_slots(user_id, merged, missing)
        logger.info("supplement user=%s intent=%s missing=%s", user_id, supplement, missing)
        return ClassificationResult(
            intent=supplement, confidence=0.9, source="supplement", slots=merged, reason="pending_still_incomplete"
        )

    # context-aware gating

    @staticmethod
    def _gate(intent: str, context: ConversationContext) -> str:
        has_actions = bool(context.last_actions)
        if intent == CANCEL_ACTION and context.pending_task is not None:
            return intent
        if intent in (CONFIRM_ACTION, MODIFY_ACTION, CANCEL_ACTION):
            expecting = any(item in rules.CONFIRMATION_INPUTS for item in context.expecting_input)
            return intent if has_actions or expecting else UNKNOWN
        if intent == CORRECTION_INTENT:
            return intent if has_actions else UNKNOWN
        return intent

    def _ai_classify(self, text: str) -> tuple[AIClassification, str]:
        if self.ai is None:
            return self.local.classify(text), "local_fallback"
        try:
            return self.ai.classify(text), "ai"
        except AICapabilityError as exc:
            logger.warning("ai classify failed err=%s fallback=local", exc)
            return self.local.classify(text), "local_fallback"

    def classify(self, text: str, user_id: str) -> ClassificationResult:
        normalized = time_parser.normalize_text(text)
        if not normalized:
            return ClassificationResult(intent=UNKNOWN, source="none", reason="empty_text")

        context = self.state.get_context(user_id)
        pending_cleared = False
        if context.pending_task is not None and context.expecting_input:
            if any(word in normalized for word in rules.INTENT_SWITCH_KEYWORDS):
                self.state.cancel_pending(user_id)
                pending_cleared = True
                logger.info("intent switch user=%s dropped=%s", user_id, context.pending_task.intent)
                context = self.state.get_context(user_id)
            else:
                resolved = self._resolve_pending(normalized, user_id, context.pending_task, context)
                if resolved is not None:
                    return resolved

        candidates = score_rules(normalized, self.intent_rules)
        logger.debug("rule candidates=%s", [(c.intent, c.score) for c in candidates])

        if candidates:
            top = candidates[0]
            intent = self._gate(top.intent, context)
            if intent != top.intent:
                logger.info("context gate user=%s intent=%s -> %s", user_id, top.intent, intent)
            return ClassificationResult(
                intent=intent,
                confidence=_rule_confidence(top) if intent != UNKNOWN else 0.0,
                source="rules",
                pending_cleared=pending_cleared,
                reason="rule_match" if intent != UNKNOWN else "no_context_for_action",
                candidates=candidates,
            )

        if self.settings.enable_ai_fallback:
            result, source = self._ai_classify(normalized)
            intent = rules.INTENT_SYNONYMS.get(result.intent, result.intent)
            if intent in TASK_INTENTS and result.confidence >= self.settings.ai_confidence_threshold:
                logger.info("ai intent user=%s intent=%s confidence=%.2f source=%s", user_id, intent, result.confidence, source)
                return ClassificationResult(
                    intent=intent, confidence=result.confidence, source=source, pending_cleared=pending_cleared, reason="ai_match"
                )
            logger.info("ai below threshold user=%s intent=%s confidence=%.2f", user_id, result.intent, result.confidence)

        return ClassificationResult(intent=UNKNOWN, source="none", pending_cleared=pending_cleared, reason="no_match")
