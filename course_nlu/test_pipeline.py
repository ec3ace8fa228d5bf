import threading
import unittest
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from course_nlu.config import NluSettings
from course_nlu.conversation_state import InMemoryStore
from course_nlu.models import ADD_COURSE, CANCEL_COURSE, CONFIRM_ACTION, QUERY_SCHEDULE, UNKNOWN
from course_nlu.pipeline import FIELD_PROMPTS, build_pipeline
from course_nlu.review_log import ReviewLog
from course_nlu.task_trigger import ExecutionOutcome, TaskExecutor
from course_nlu.test_conversation_state import FakeClock

NOW = datetime(2026, 10, 19, 10, 0, tzinfo=ZoneInfo("Asia/Taipei"))


class FlakyExecutor(TaskExecutor):
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def execute(self, intent: str, entities: dict[str, Any], user_id: str) -> ExecutionOutcome:
        self.calls.append((intent, entities))
        if self.failures > 0:
            self.failures -= 1
            return ExecutionOutcome(success=False, error="taskservice busy")
        return ExecutionOutcome(success=True, message="完成")


class DialoguePipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(NOW.timestamp())
        self.settings = NluSettings()
        self.executor = FlakyExecutor()
        self.review = ReviewLog(maxsize=8)
        self.pipeline = build_pipeline(
            self.settings,
            store=InMemoryStore(clock=self.clock),
            executor=self.executor,
            review=self.review,
            clock=self.clock,
        )

    def tearDown(self) -> None:
        self.review.close()

    def test_complete_request_executes(self) -> None:
        result = self.pipeline.process_turn("小明明天下午三點上數學課", "u1")
        self.assertEqual(result.action, "execute")
        self.assertEqual(result.intent, ADD_COURSE)
        self.assertEqual(result.slots["studentName"], "小明")
        self.assertEqual(result.slots["scheduleTime"], "15:00")
        self.assertEqual(result.execution.entities["timeInfo"]["start"], "2026-10-20T15:00:00+08:00")
        self.assertEqual(len(self.executor.calls), 1)

        follow_up = self.pipeline.process_turn("好", "u1")
        self.assertEqual(follow_up.intent, CONFIRM_ACTION)
        self.assertEqual(follow_up.action, "none")

    def test_missing_field_is_asked_then_filled(self) -> None:
        first = self.pipeline.process_turn("新增小明的數學課", "u1")
        self.assertEqual(first.action, "ask")
        self.assertEqual(first.missing_fields, ["scheduleTime"])
        self.assertEqual(first.prompt, FIELD_PROMPTS["scheduleTime"])

        second = self.pipeline.process_turn("下午三點", "u1")
        self.assertEqual(second.action, "execute")
        self.assertEqual(second.intent, ADD_COURSE)
        self.assertEqual(second.slots, {"studentName": "小明", "courseName": "數學課", "scheduleTime": "15:00"})

    def test_partial_supplement_keeps_asking(self) -> None:
        self.pipeline.process_turn("幫我新增數學課", "u1")
        result = self.pipeline.process_turn("小明", "u1")
        self.assertEqual(result.action, "ask")
        self.assertEqual(result.intent, "supplement_student_name")
        self.assertEqual(result.missing_fields, ["scheduleTime"])
        self.assertEqual(result.slots["studentName"], "小明")

    def test_ambiguous_students_are_clarified(self) -> None:
        result = self.pipeline.process_turn("小明和小華明天下午三點上鋼琴課", "u1")
        self.assertEqual(result.action, "clarify")
        self.assertIn("小明", result.prompt)
        self.assertIn("小華", result.prompt)
        self.assertEqual(self.executor.calls, [])

    def test_switch_keyword_abandons_pending(self) -> None:
        self.pipeline.process_turn("新增小明的數學課", "u1")
        result = self.pipeline.process_turn("查詢小明這週的課", "u1")
        self.assertEqual(result.intent, QUERY_SCHEDULE)
        self.assertEqual(result.action, "execute")
        session = self.pipeline.state.get_active_query_session("u1")
        self.assertEqual(session.student_name, "小明")

    def test_cancel_uses_query_session(self) -> None:
        self.pipeline.process_turn("查詢小明這週的課", "u1")
        result = self.pipeline.process_turn("取消明天的數學課", "u1")
        self.assertEqual(result.intent, CANCEL_COURSE)
        self.assertEqual(result.action, "execute")
        self.assertEqual(result.slots["studentName"], "小明")

    def test_cancel_while_waiting_resets(self) -> None:
        self.pipeline.process_turn("新增小明的數學課", "u1")
        result = self.pipeline.process_turn("取消", "u1")
        self.assertEqual(result.action, "reset")
        self.assertIsNone(self.pipeline.state.get_context("u1").pending_task)

    def test_restart(self) -> None:
        self.pipeline.process_turn("新增小明的數學課", "u1")
        result = self.pipeline.process_turn("重新開始", "u1")
        self.assertEqual(result.action, "reset")
        self.assertIsNone(self.pipeline.state.get_context("u1").pending_task)

    def test_failed_execution_can_be_retried(self) -> None:
        self.executor.failures = 1
        failed = self.pipeline.process_turn("小明明天下午三點上數學課", "u1")
        self.assertEqual(failed.action, "retry")
        self.assertEqual(failed.execution.error_type, "taskservice_error")

        retried = self.pipeline.process_turn("重試", "u1")
        self.assertEqual(retried.action, "execute")
        self.assertEqual(retried.slots["courseName"], "數學課")
        self.assertEqual(len(self.executor.calls), 2)

    def test_unrecognized_text(self) -> None:
        result = self.pipeline.process_turn("今天天氣真好", "u1")
        self.assertEqual(result.intent, UNKNOWN)
        self.assertEqual(result.action, "none")
        self.assertEqual(result.slots, {})

    def test_users_are_isolated(self) -> None:
        self.pipeline.process_turn("新增小明的數學課", "u1")
        result = self.pipeline.process_turn("小華", "u2")
        self.assertEqual(result.intent, UNKNOWN)
        self.assertIsNotNone(self.pipeline.state.get_context("u1").pending_task)

    def test_concurrent_supplements_are_serialized(self) -> None:
        for round_no in range(20):
            user_id = f"race-{round_no}"
            self.pipeline.process_turn("幫我新增數學課", user_id)
            barrier = threading.Barrier(2)
            results = []

            def reply(text: str) -> None:
                barrier.wait()
                results.append(self.pipeline.process_turn(text, user_id))

            workers = [threading.Thread(target=reply, args=(text,)) for text in ("小明", "下午三點")]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join(timeout=5)

            with self.subTest(round=round_no):
                self.assertEqual(sorted(r.action for r in results), ["ask", "execute"])
                done = next(r for r in results if r.action == "execute")
                self.assertEqual(done.slots, {"studentName": "小明", "courseName": "數學課", "scheduleTime": "15:00"})
                self.assertIsNone(self.pipeline.state.get_context(user_id).pending_task)

        self.assertEqual(len(self.executor.calls), 20)
        for _, entities in self.executor.calls:
            self.assertEqual(entities["student_name"], "小明")
            self.assertEqual(entities["timeInfo"]["time"], "15:00")


if __name__ == "__main__":
    unittest.main()
