"""One dialogue turn: classify, extract, decide, and trigger execution when the task is complete."""

import logging
import time
from collections.abc import Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

from course_nlu.ai_client import AICapability, build_ai_capability
from course_nlu.config import NluSettings
from course_nlu.conversation_state import ConversationState, ConversationStore, missing_fields
from course_nlu.entity_matcher import EntityPatternMatcher
from course_nlu.intent_classifier import ClassificationResult, IntentClassifier
from course_nlu.models import (
    CANCEL_ACTION,
    CONFIRM_ACTION,
    CORRECTION_INTENT,
    MODIFY_ACTION,
    QUERY_SCHEDULE,
    RESTART_INPUT,
    TASK_INTENTS,
    UNKNOWN,
    SlotSet,
    is_supplement,
)
from course_nlu.review_log import ReviewLog
from course_nlu.slot_extractor import SlotExtractor
from course_nlu.task_trigger import TaskExecutor, TaskTrigger, TriggerResult

logger = logging.getLogger("course-nlu.intent")

TurnAction = Literal["execute", "ask", "clarify", "retry", "reset", "none"]

FIELD_PROMPTS: dict[str, str] = {
    "studentName": "請問是哪位學生的課程呢？",
    "courseName": "請問是什麼課程呢？",
    "scheduleTime": "請問幾點上課呢？例如「下午3點」或「19:30」。",
    "courseDate": "請問是哪一天呢？",
    "dayOfWeek": "請問是星期幾呢？",
    "content": "請問上課內容是什麼呢？",
}
UNKNOWN_PROMPT = "抱歉，我不太明白，可以換個說法嗎？例如「小明明天下午3點上數學課」。"
RESET_PROMPT = "好的，已取消剛才的操作，請重新告訴我需要什麼。"
RESTART_PROMPT = "好的，我們重新開始，請再說一次。"
CONFIRM_PROMPT = "好的，已確認。"
MODIFY_PROMPT = "請直接告訴我要修改的內容，例如「改成下午4點」。"


class TurnResult(BaseModel):
    user_id: str
    text: str
    action: TurnAction
    intent: str
    slots: dict[str, Any] = Field(default_factory=dict)
    intent_confidence: float = 0.0
    slot_confidence: float = 0.0
    missing_fields: list[str] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    prompt: str = ""
    execution: TriggerResult | None = None


def prompt_for(missing: list[str]) -> str:
    if not missing:
        return ""
    return FIELD_PROMPTS.get(missing[0], f"請提供{missing[0]}。")


class DialoguePipeline:
    def __init__(
        self,
        settings: NluSettings,
        state: ConversationState,
        classifier: IntentClassifier,
        extractor: SlotExtractor,
        trigger: TaskTrigger,
    ) -> None:
        self.settings = settings
        self.state = state
        self.classifier = classifier
        self.extractor = extractor
        self.trigger = trigger

    def _execute(self, turn: dict[str, Any], intent: str, slots: SlotSet) -> TurnResult:
        user_id = turn["user_id"]
        result = self.trigger.execute(user_id, intent, slots)
        if intent == QUERY_SCHEDULE and result.success:
            self.state.set_query_session(user_id, slots.student_name, slots.time_reference)
        return TurnResult(
            **turn,
            action="execute" if result.success else "retry",
            intent=intent,
            slots=slots.to_dict(),
            prompt=result.message,
            execution=result,
        )

    def _ask(self, turn: dict[str, Any], intent: str, slots: SlotSet, missing: list[str], **extra: Any) -> TurnResult:
        self.state.set_pending_task(turn["user_id"], intent, slots, missing)
        return TurnResult(
            **turn,
            action="ask",
            intent=intent,
            slots=slots.to_dict(),
            missing_fields=missing,
            prompt=prompt_for(missing),
            **extra,
        )

    def _context_turn(self, turn: dict[str, Any], classification: ClassificationResult) -> TurnResult:
        user_id = turn["user_id"]
        intent = classification.intent
        if intent == CANCEL_ACTION:
            dropped = self.state.cancel_pending(user_id)
            self.state.clear_expected_input(user_id)
            return TurnResult(**turn, action="reset" if dropped else "none", intent=intent, prompt=RESET_PROMPT)
        self.state.clear_expected_input(user_id)
        if intent == CONFIRM_ACTION:
            return TurnResult(**turn, action="none", intent=intent, prompt=CONFIRM_PROMPT)
        # modify_action / correction_intent
        return TurnResult(**turn, action="none", intent=intent, prompt=MODIFY_PROMPT)

    def _task_turn(self, turn: dict[str, Any], text: str, intent: str) -> TurnResult:
        user_id = turn["user_id"]
        extraction = self.extractor.extract(text, intent, user_id)
        slots = extraction.slots
        turn = {**turn, "slot_confidence": extraction.confidence, "issues": extraction.issues}

        candidates = slots.student_candidates or []
        if len(candidates) > 1 and not slots.student_name:
            missing = missing_fields(intent, slots)
            self.state.set_pending_task(user_id, intent, slots, missing)
            return TurnResult(
                **turn,
                action="clarify",
                intent=intent,
                slots=slots.to_dict(),
                missing_fields=missing,
                prompt=f"請問是哪一位學生呢？{'、'.join(candidates)}",
            )

        missing = missing_fields(intent, slots)
        if missing:
            self.state.remember_entities(user_id, slots)
            return self._ask(turn, intent, slots, missing)
        return self._execute(turn, intent, slots)

    def process_turn(self, text: str, user_id: str) -> TurnResult:
        """Run one utterance through the whole core; per-user turns are serialized."""
        with self.state.session(user_id):
            classification = self.classifier.classify(text, user_id)
            intent = classification.intent
            turn: dict[str, Any] = {
                "user_id": user_id,
                "text": text,
                "intent_confidence": classification.confidence,
            }
            logger.info(
                "turn user=%s intent=%s source=%s confidence=%.2f",
                user_id,
                intent,
                classification.source,
                classification.confidence,
            )

            if intent == RESTART_INPUT:
                self.state.reset(user_id)
                return TurnResult(**turn, action="reset", intent=intent, prompt=RESTART_PROMPT)

            if classification.pending_cleared and intent in (CANCEL_ACTION, UNKNOWN):
                return TurnResult(**turn, action="reset", intent=intent, prompt=RESET_PROMPT)

            if classification.source == "pending" and classification.slots is not None:
                return self._execute(turn, intent, classification.slots)

            if is_supplement(intent):
                pending = self.state.get_context(user_id).pending_task
                slots = classification.slots or (pending.slots if pending else SlotSet())
                missing = pending.missing_fields if pending else []
                return TurnResult(
                    **turn,
                    action="ask",
                    intent=intent,
                    slots=slots.to_dict(),
                    missing_fields=missing,
                    prompt=prompt_for(missing),
                )

            if intent in (CONFIRM_ACTION, MODIFY_ACTION, CANCEL_ACTION, CORRECTION_INTENT):
                return self._context_turn(turn, classification)

            if intent in TASK_INTENTS:
                return self._task_turn(turn, text, intent)

            return TurnResult(**turn, action="none", intent=UNKNOWN, prompt=UNKNOWN_PROMPT)


def build_pipeline(
    settings: NluSettings,
    store: ConversationStore | None = None,
    executor: TaskExecutor | None = None,
    ai: AICapability | None = None,
    review: ReviewLog | None = None,
    clock: Callable[[], float] = time.time,
) -> DialoguePipeline:
    """Wire every component around one shared ConversationState."""
    state = ConversationState(settings, store=store, clock=clock)
    ai = ai if ai is not None else build_ai_capability(settings)
    review = review if review is not None else ReviewLog(settings.review_queue_size)
    extractor = SlotExtractor(settings, state, EntityPatternMatcher(), ai=ai, review=review, clock=clock)
    classifier = IntentClassifier(settings, state, extractor, ai=ai)
    trigger = TaskTrigger(settings, state, executor=executor, clock=clock)
    return DialoguePipeline(settings, state, classifier, extractor, trigger)
