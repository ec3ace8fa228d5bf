import unittest
from datetime import datetime
from zoneinfo import ZoneInfo

from course_nlu.ai_client import AICapability, AICapabilityError, AIClassification
from course_nlu.config import NluSettings
from course_nlu.conversation_state import ConversationState
from course_nlu.intent_classifier import IntentClassifier, LocalExampleClassifier, score_rules
from course_nlu.models import (
    ADD_COURSE,
    CANCEL_ACTION,
    CANCEL_COURSE,
    CONFIRM_ACTION,
    MODIFY_COURSE,
    QUERY_SCHEDULE,
    RECORD_CONTENT,
    RESTART_INPUT,
    SET_REMINDER,
    TASK_INTENTS,
    UNKNOWN,
    SlotSet,
)
from course_nlu.slot_extractor import SlotExtractor
from course_nlu.test_conversation_state import FakeClock

NOW = datetime(2026, 10, 19, 10, 0, tzinfo=ZoneInfo("Asia/Taipei"))


class StubAI(AICapability):
    def __init__(self, intent: str = UNKNOWN, confidence: float = 0.0, fail: bool = False) -> None:
        self.result = AIClassification(intent=intent, confidence=confidence)
        self.fail = fail

    def classify(self, text: str) -> AIClassification:
        if self.fail:
            raise AICapabilityError("timeout")
        return self.result

    def extract_slots(self, text, intent, existing):
        return {}


def build(settings: NluSettings | None = None, ai: AICapability | None = None):
    settings = settings or NluSettings()
    clock = FakeClock(NOW.timestamp())
    state = ConversationState(settings, clock=clock)
    extractor = SlotExtractor(settings, state, clock=clock)
    return IntentClassifier(settings, state, extractor, ai=ai), state, clock


class RuleScoringTestCase(unittest.TestCase):
    def test_task_intents(self) -> None:
        cases = {
            "小明明天下午三點上數學課": ADD_COURSE,
            "幫我新增小美的鋼琴課": ADD_COURSE,
            "查詢小明這週的課": QUERY_SCHEDULE,
            "明天有什麼課": QUERY_SCHEDULE,
            "取消小明明天的數學課": CANCEL_COURSE,
            "小明的數學課提前十分鐘提醒我": SET_REMINDER,
            "小明今天數學課學了分數": RECORD_CONTENT,
            "把小明的數學課改到下午四點": MODIFY_COURSE,
            "重新開始": RESTART_INPUT,
        }
        for text, intent in cases.items():
            with self.subTest(text=text):
                candidates = score_rules(text)
                self.assertTrue(candidates)
                self.assertEqual(candidates[0].intent, intent)

    def test_score_formula(self) -> None:
        top = score_rules("查詢")[0]
        self.assertEqual(top.intent, QUERY_SCHEDULE)
        self.assertEqual(top.score, 10 + (20 - 3))

    def test_exclusions_skip_rule(self) -> None:
        intents = [c.intent for c in score_rules("取消小明明天的數學課")]
        self.assertNotIn(ADD_COURSE, intents)

    def test_nothing_matches(self) -> None:
        self.assertEqual(score_rules("今天天氣真好"), [])


class IntentClassifierTestCase(unittest.TestCase):
    def test_rule_match_confidence(self) -> None:
        classifier, _, _ = build()
        result = classifier.classify("小明明天下午三點上數學課", "u1")
        self.assertEqual(result.intent, ADD_COURSE)
        self.assertEqual(result.source, "rules")
        self.assertGreaterEqual(result.confidence, 0.8)

    def test_unknown_without_ai(self) -> None:
        classifier, _, _ = build()
        result = classifier.classify("今天天氣真好", "u1")
        self.assertEqual(result.intent, UNKNOWN)
        self.assertEqual(result.confidence, 0.0)
        self.assertIsNone(result.slots)

    def test_supplement_completes_pending_task(self) -> None:
        classifier, state, _ = build()
        state.set_pending_task("u1", ADD_COURSE, SlotSet(course_name="數學課", schedule_time="15:00"), ["studentName"])
        result = classifier.classify("小明", "u1")
        self.assertEqual(result.intent, ADD_COURSE)
        self.assertEqual(result.source, "pending")
        self.assertEqual(result.slots.course_name, "數學課")
        self.assertEqual(result.slots.student_name, "小明")
        self.assertEqual(state.get_context("u1").expecting_input, [])

    def test_supplement_still_incomplete(self) -> None:
        classifier, state, _ = build()
        state.set_pending_task("u1", ADD_COURSE, SlotSet(course_name="數學課"), ["studentName", "scheduleTime"])
        result = classifier.classify("小明", "u1")
        self.assertEqual(result.intent, "supplement_student_name")
        pending = state.get_context("u1").pending_task
        self.assertEqual(pending.slots.student_name, "小明")
        self.assertEqual(pending.missing_fields, ["scheduleTime"])

        result = classifier.classify("下午三點", "u1")
        self.assertEqual(result.intent, ADD_COURSE)
        self.assertEqual(result.slots.schedule_time, "15:00")

    def test_switch_keyword_drops_pending(self) -> None:
        classifier, state, _ = build()
        state.set_pending_task("u1", ADD_COURSE, SlotSet(course_name="數學課"), ["studentName"])
        result = classifier.classify("查詢", "u1")
        self.assertEqual(result.intent, QUERY_SCHEDULE)
        self.assertTrue(result.pending_cleared)
        context = state.get_context("u1")
        self.assertIsNone(context.pending_task)
        self.assertEqual(context.expecting_input, [])

    def test_expired_pending_is_never_a_supplement_target(self) -> None:
        classifier, state, clock = build()
        state.set_pending_task("u1", ADD_COURSE, SlotSet(course_name="數學課", schedule_time="15:00"), ["studentName"])
        clock.advance(NluSettings().pending_input_ttl_s + 1)
        for text in ("小明", "下午三點", "小華"):
            with self.subTest(text=text):
                result = classifier.classify(text, "u1")
                self.assertNotEqual(result.source, "pending")
                self.assertFalse(result.intent.startswith("supplement_"))
        self.assertIsNone(state.get_context("u1").pending_task)

    def test_reply_words_do_not_fill_names(self) -> None:
        classifier, state, _ = build()
        state.set_pending_task("u1", ADD_COURSE, SlotSet(course_name="數學課", schedule_time="15:00"), ["studentName"])
        result = classifier.classify("好的", "u1")
        self.assertNotEqual(result.source, "pending")
        self.assertIsNotNone(state.get_context("u1").pending_task)

    def test_unrelated_request_is_not_a_supplement(self) -> None:
        classifier, state, _ = build()
        waiting = SlotSet(student_name="小明", course_name="數學課")
        state.set_pending_task("u1", ADD_COURSE, waiting, ["scheduleTime"])
        result = classifier.classify("小華明天有什麼課", "u1")
        self.assertEqual(result.intent, QUERY_SCHEDULE)
        self.assertEqual(result.source, "rules")
        pending = state.get_context("u1").pending_task
        self.assertEqual(pending.slots, waiting)
        self.assertEqual(pending.missing_fields, ["scheduleTime"])

    def test_incidental_fields_do_not_fill_pending(self) -> None:
        classifier, state, _ = build()
        waiting = SlotSet(student_name="小明", course_name="數學課")
        state.set_pending_task("u1", ADD_COURSE, waiting, ["scheduleTime"])
        result = classifier.classify("明天", "u1")
        self.assertFalse(result.intent.startswith("supplement_"))
        self.assertEqual(state.get_context("u1").pending_task.slots, waiting)

    def test_new_task_is_not_taken_as_correction(self) -> None:
        classifier, state, _ = build()
        slots = SlotSet(student_name="小明", course_name="數學課", schedule_time="15:00")
        state.mark_execution_failed("u1", ADD_COURSE, slots, "boom", "unknown_error")
        result = classifier.classify("小華明天有什麼課", "u1")
        self.assertEqual(result.intent, QUERY_SCHEDULE)
        self.assertEqual(state.get_context("u1").pending_task.slots, slots)

    def test_give_up_words_cancel_waiting_task(self) -> None:
        for text in ("算了", "不要了"):
            with self.subTest(text=text):
                classifier, state, _ = build()
                state.set_pending_task("u1", ADD_COURSE, SlotSet(course_name="數學課"), ["studentName", "scheduleTime"])
                self.assertEqual(classifier.classify(text, "u1").intent, CANCEL_ACTION)

        classifier, _, _ = build()
        self.assertEqual(classifier.classify("算了", "u1").intent, UNKNOWN)

    def test_confirmation_needs_context(self) -> None:
        classifier, state, _ = build()
        self.assertEqual(classifier.classify("好", "u1").intent, UNKNOWN)

        slots = SlotSet(student_name="小明", course_name="數學課", schedule_time="15:00")
        state.complete_pending("u1", ADD_COURSE, slots, "exec-1")
        self.assertEqual(classifier.classify("好", "u1").intent, CONFIRM_ACTION)

    def test_retry_after_failed_execution(self) -> None:
        classifier, state, _ = build()
        slots = SlotSet(student_name="小明", course_name="數學課", schedule_time="15:00")
        state.mark_execution_failed("u1", ADD_COURSE, slots, "boom", "unknown_error")
        result = classifier.classify("重試", "u1")
        self.assertEqual(result.intent, ADD_COURSE)
        self.assertEqual(result.source, "pending")
        self.assertEqual(result.slots, slots)

    def test_correction_overrides_failed_slots(self) -> None:
        classifier, state, _ = build()
        slots = SlotSet(student_name="小明", course_name="數學課", schedule_time="15:00")
        state.mark_execution_failed("u1", ADD_COURSE, slots, "conflict", "validation_error")
        result = classifier.classify("下午四點", "u1")
        self.assertEqual(result.intent, ADD_COURSE)
        self.assertEqual(result.slots.schedule_time, "16:00")


class AIFallbackTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = NluSettings(enable_ai_fallback=True)

    def test_ai_result_above_threshold(self) -> None:
        classifier, _, _ = build(self.settings, StubAI(ADD_COURSE, 0.9))
        result = classifier.classify("今天天氣真好", "u1")
        self.assertEqual(result.intent, ADD_COURSE)
        self.assertEqual(result.source, "ai")

    def test_ai_result_below_threshold(self) -> None:
        classifier, _, _ = build(self.settings, StubAI(ADD_COURSE, 0.5))
        self.assertEqual(classifier.classify("今天天氣真好", "u1").intent, UNKNOWN)

    def test_ai_synonym(self) -> None:
        classifier, _, _ = build(self.settings, StubAI("create_recurring_course", 0.8))
        self.assertEqual(classifier.classify("今天天氣真好", "u1").intent, ADD_COURSE)

    def test_ai_failure_falls_back_locally(self) -> None:
        classifier, _, _ = build(self.settings, StubAI(fail=True))
        result = classifier.classify("今天天氣真好", "u1")
        self.assertIn(result.intent, (UNKNOWN,) + TASK_INTENTS)
        self.assertIn(result.source, ("local_fallback", "none"))

    def test_rules_win_over_ai(self) -> None:
        classifier, _, _ = build(self.settings, StubAI(CANCEL_COURSE, 0.99))
        self.assertEqual(classifier.classify("查詢小明這週的課", "u1").intent, QUERY_SCHEDULE)

    def test_local_classifier_uses_examples(self) -> None:
        result = LocalExampleClassifier().classify("小明明天下午三點上數學課")
        self.assertEqual(result.intent, ADD_COURSE)
        self.assertGreaterEqual(result.confidence, 0.6)


if __name__ == "__main__":
    unittest.main()
