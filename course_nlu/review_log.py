import json
import logging
import queue
import threading
import time
from typing import Any

logger = logging.getLogger("course-nlu.review")


class ReviewLog:
    """Bounded, non-blocking side channel for low-confidence turns.

    submit() never raises and never waits; one daemon worker drains the queue
    into the review logger. A full queue drops the record.
    """

    def __init__(self, maxsize: int = 256, sink: logging.Logger | None = None) -> None:
        self._queue: queue.Queue[dict[str, Any] | None] = queue.Queue(maxsize=maxsize)
        self._sink = sink or logger
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()
        self.dropped = 0
        self.written = 0

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._drain, name="course-nlu-review", daemon=True)
                self._worker.start()

    def _drain(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is None:
                    return
                self._sink.info("low_confidence_turn %s", json.dumps(record, ensure_ascii=False, default=str))
                self.written += 1
            except Exception:
                logger.exception("review record write failed")
            finally:
                self._queue.task_done()

    def submit(self, user_id: str, text: str, intent: str, confidence: float, slots: dict[str, Any], issues: list[str]) -> bool:
        record = {
            "ts": time.time(),
            "user_id": user_id,
            "text": text,
            "intent": intent,
            "confidence": round(confidence, 3),
            "slots": slots,
            "issues": issues,
        }
        try:
            self._ensure_worker()
            self._queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1
            logger.debug("review queue full dropped=%d user=%s", self.dropped, user_id)
            return False
        except RuntimeError as exc:
            logger.debug("review worker unavailable err=%s", exc)
            return False
        return True

    def flush(self, timeout: float = 2.0) -> bool:
        """Wait until every queued record has been written; test helper."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        return self._queue.unfinished_tasks == 0

    def close(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            try:
                self._queue.put(None, timeout=1.0)
            except queue.Full:
                logger.debug("review queue full on close")
            self._worker.join(timeout=1.0)
