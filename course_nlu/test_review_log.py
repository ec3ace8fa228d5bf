import json
import threading
import unittest
from typing import Any

from course_nlu.models import ADD_COURSE
from course_nlu.review_log import ReviewLog


class BlockingSink:
    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()
        self.lines: list[str] = []

    def info(self, msg: str, *args: Any) -> None:
        self.entered.set()
        self.release.wait(2.0)
        self.lines.append(msg % args)


class ReviewLogTestCase(unittest.TestCase):
    def test_record_is_written(self) -> None:
        sink = BlockingSink()
        sink.release.set()
        review = ReviewLog(maxsize=4, sink=sink)
        self.assertTrue(review.submit("u1", "嗯", ADD_COURSE, 0.1234, {"courseName": "數學課"}, ["ambiguous_student"]))
        self.assertTrue(review.flush())
        review.close()

        self.assertEqual(review.written, 1)
        prefix, payload = sink.lines[0].split(" ", 1)
        self.assertEqual(prefix, "low_confidence_turn")
        record = json.loads(payload)
        self.assertEqual(record["text"], "嗯")
        self.assertEqual(record["confidence"], 0.123)
        self.assertEqual(record["slots"], {"courseName": "數學課"})

    def test_full_queue_drops_without_blocking(self) -> None:
        sink = BlockingSink()
        review = ReviewLog(maxsize=1, sink=sink)
        self.assertTrue(review.submit("u1", "嗯", ADD_COURSE, 0.0, {}, []))
        self.assertTrue(sink.entered.wait(2.0))
        self.assertTrue(review.submit("u1", "喔", ADD_COURSE, 0.0, {}, []))
        self.assertFalse(review.submit("u1", "哦", ADD_COURSE, 0.0, {}, []))
        self.assertEqual(review.dropped, 1)

        sink.release.set()
        self.assertTrue(review.flush())
        self.assertEqual(review.written, 2)
        review.close()


if __name__ == "__main__":
    unittest.main()
