import unittest
from datetime import date, datetime
from typing import Any
from zoneinfo import ZoneInfo

from course_nlu.config import NluSettings
from course_nlu.conversation_state import ConversationState
from course_nlu.models import ADD_COURSE, QUERY_SCHEDULE, SlotSet
from course_nlu.task_trigger import (
    DryRunExecutor,
    ExecutionOutcome,
    TaskExecutionError,
    TaskExecutor,
    TaskTrigger,
    categorize_error,
    convert_slots_to_entities,
    resolve_lesson_date,
)
from course_nlu.test_conversation_state import FakeClock

TZ = ZoneInfo("Asia/Taipei")
MONDAY_4PM = datetime(2026, 10, 19, 16, 0, tzinfo=TZ)


class ScriptedExecutor(TaskExecutor):
    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, dict[str, Any], str]] = []

    def execute(self, intent: str, entities: dict[str, Any], user_id: str) -> ExecutionOutcome:
        self.calls.append((intent, entities, user_id))
        outcome = self.outcomes.pop(0) if self.outcomes else ExecutionOutcome(success=True, message="ok")
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class EntityConversionTestCase(unittest.TestCase):
    def test_start_and_end_timestamps(self) -> None:
        slots = SlotSet(student_name="小明", course_name="數學課", schedule_time="15:00", course_date="2026-10-20")
        entities = convert_slots_to_entities(slots, MONDAY_4PM, duration_minutes=60)
        self.assertEqual(entities["course_name"], "數學課")
        self.assertEqual(entities["student_name"], "小明")
        self.assertEqual(entities["timeInfo"]["date"], "2026-10-20")
        self.assertEqual(entities["timeInfo"]["start"], "2026-10-20T15:00:00+08:00")
        self.assertEqual(entities["timeInfo"]["end"], "2026-10-20T16:00:00+08:00")

    def test_weekly_recurrence_descriptor(self) -> None:
        slots = SlotSet(
            student_name="Lumi",
            course_name="英文課",
            schedule_time="19:00",
            day_of_week=3,
            recurring=True,
            recurrence_type="weekly",
        )
        entities = convert_slots_to_entities(slots, MONDAY_4PM)
        self.assertEqual(entities["timeInfo"]["date"], "2026-10-21")
        self.assertEqual(entities["timeInfo"]["recurring"], {"type": "weekly", "days_of_week": [3], "month_day": None})

    def test_date_resolution(self) -> None:
        self.assertEqual(resolve_lesson_date(SlotSet(schedule_time="15:00"), MONDAY_4PM), date(2026, 10, 20))
        self.assertEqual(resolve_lesson_date(SlotSet(schedule_time="18:00"), MONDAY_4PM), date(2026, 10, 19))
        self.assertEqual(resolve_lesson_date(SlotSet(time_reference="tomorrow"), MONDAY_4PM), date(2026, 10, 20))
        self.assertEqual(resolve_lesson_date(SlotSet(day_of_week=5, schedule_time="10:00"), MONDAY_4PM), date(2026, 10, 23))

    def test_no_time_info_without_time_slots(self) -> None:
        entities = convert_slots_to_entities(SlotSet(student_name="小明", content="分數"), MONDAY_4PM)
        self.assertNotIn("timeInfo", entities)
        self.assertEqual(entities["content"], "分數")


class CategorizeErrorTestCase(unittest.TestCase):
    def test_categories(self) -> None:
        self.assertEqual(categorize_error(RuntimeError("TaskService unavailable")), "taskservice_error")
        self.assertEqual(categorize_error(ValueError("bad entities")), "entities_conversion_error")
        self.assertEqual(categorize_error(RuntimeError("state lost")), "state_management_error")
        self.assertEqual(categorize_error("驗證失敗"), "validation_error")
        self.assertEqual(categorize_error(TimeoutError()), "timeout_error")
        self.assertEqual(categorize_error(RuntimeError("boom")), "unknown_error")


class TaskTriggerTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(MONDAY_4PM.timestamp())
        self.settings = NluSettings(execution_history_size=2)
        self.state = ConversationState(self.settings, clock=self.clock)
        self.slots = SlotSet(student_name="小明", course_name="數學課", schedule_time="17:00")

    def test_success_completes_pending(self) -> None:
        self.state.set_pending_task("u1", ADD_COURSE, self.slots, [])
        trigger = TaskTrigger(self.settings, self.state, executor=DryRunExecutor())
        result = trigger.execute("u1", ADD_COURSE, self.slots)
        self.assertTrue(result.success)
        self.assertEqual(result.message, "已收到：小明的數學課")
        context = self.state.get_context("u1")
        self.assertIsNone(context.pending_task)
        self.assertEqual(context.last_completed_task.execution_id, result.execution_id)

    def test_failure_keeps_pending_and_counts_retries(self) -> None:
        executor = ScriptedExecutor(
            ExecutionOutcome(success=False, error="validation failed: time conflict"),
            TaskExecutionError("taskservice down"),
        )
        trigger = TaskTrigger(self.settings, self.state, executor=executor)

        first = trigger.execute("u1", ADD_COURSE, self.slots)
        self.assertFalse(first.success)
        self.assertEqual(first.error_type, "validation_error")
        self.assertEqual(first.retry_count, 1)
        self.assertIn("再試", first.message)

        second = trigger.execute("u1", ADD_COURSE, self.slots)
        self.assertEqual(second.error_type, "taskservice_error")
        self.assertEqual(second.retry_count, 2)

        pending = self.state.get_context("u1").pending_task
        self.assertEqual(pending.status, "execution_failed")
        self.assertEqual(pending.slots, self.slots)

    def test_unexpected_exception_is_contained(self) -> None:
        trigger = TaskTrigger(self.settings, self.state, executor=ScriptedExecutor(TimeoutError("slow")))
        result = trigger.execute("u1", QUERY_SCHEDULE, SlotSet(student_name="小明"))
        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "timeout_error")

    def test_stats_and_bounded_history(self) -> None:
        executor = ScriptedExecutor(
            ExecutionOutcome(success=True),
            ExecutionOutcome(success=False, error="boom"),
            ExecutionOutcome(success=True),
        )
        trigger = TaskTrigger(self.settings, self.state, executor=executor)
        for _ in range(3):
            trigger.execute("u1", ADD_COURSE, self.slots)

        stats = trigger.stats()
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["success"], 2)
        self.assertEqual(stats["failure"], 1)
        self.assertEqual(stats["by_intent"][ADD_COURSE], {"total": 3, "success": 2, "failure": 1})
        self.assertEqual(len(stats["history"]), 2)
        self.assertEqual(len(executor.calls), 3)
        self.assertIn("timeInfo", executor.calls[0][1])


if __name__ == "__main__":
    unittest.main()
