import http.client
import json
import logging
import re
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from course_nlu.config import NluSettings
from course_nlu.models import TASK_INTENTS, UNKNOWN

logger = logging.getLogger("course-nlu.ai")

CLASSIFY_PROMPT = """你是課程管理聊天機器人的意圖分析師。僅處理課程相關語句，嚴格排除無關查詢。

語句：「{text}」

可能的意圖：{intents}, unknown
- 天氣、心情、時間等非課程語句一律回傳 unknown
- 對模糊或不確定的語句設置低信心度

回傳格式（僅JSON）：{{"intent": "意圖名稱", "confidence": 0.0到1.0的數字}}"""

EXTRACT_PROMPT = """請從以下語句中提取結構化資料，補充已提取的欄位。

語句：「{text}」
意圖：{intent}
已提取欄位：{existing}

可提取欄位：studentName, courseName, scheduleTime (HH:MM), courseDate (YYYY-MM-DD),
timeReference, recurring, dayOfWeek (0=週日...6=週六), content, reminderTime (分鐘), reminderNote

回傳 JSON，只包含能確定提取的欄位。"""


class AICapabilityError(RuntimeError):
    """The AI backend was unreachable, timed out or returned an unusable payload."""


class AIClassification(BaseModel):
    intent: str = UNKNOWN
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


class AICapability(ABC):
    @abstractmethod
    def classify(self, text: str) -> AIClassification:
        raise NotImplementedError

    @abstractmethod
    def extract_slots(self, text: str, intent: str, existing: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError


def _safe_json_parse(raw: str) -> dict[str, Any]:
    text = (raw or "").strip()
    fenced = re.search(r"```(?:json)?\s*(.*?)```", text, re.DOTALL)
    if fenced:
        text = fenced.group(1).strip()
    if not text.startswith("{"):
        brace = re.search(r"\{.*\}", text, re.DOTALL)
        if not brace:
            raise AICapabilityError(f"no json object in reply: {raw[:80]!r}")
        text = brace.group(0)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AICapabilityError(f"invalid json reply: {exc}") from exc
    if not isinstance(data, dict):
        raise AICapabilityError("json reply is not an object")
    return data


class OpenAICompatibleClient(AICapability):
    """Chat-completions client for any OpenAI-compatible endpoint, bounded by settings.ai_timeout_s."""

    def __init__(self, settings: NluSettings) -> None:
        self.base_url = settings.ai_base_url.rstrip("/")
        self.api_key = settings.ai_api_key
        self.model = settings.ai_model
        self.timeout = settings.ai_timeout_s

    def _chat(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0,
        }
        req = urllib.request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            raise AICapabilityError(f"http status={exc.code}") from exc
        except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as exc:
            raise AICapabilityError(f"transport error={exc!r}") from exc

        body = _safe_json_parse(raw)
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AICapabilityError("unexpected chat completion shape") from exc
        if not isinstance(content, str):
            raise AICapabilityError(f"non-text completion content: {type(content).__name__}")
        return content

    def classify(self, text: str) -> AIClassification:
        content = self._chat(CLASSIFY_PROMPT.format(text=text, intents=", ".join(TASK_INTENTS)))
        data = _safe_json_parse(content)
        try:
            result = AIClassification.model_validate(data)
        except ValueError as exc:
            raise AICapabilityError(f"invalid classification: {exc}") from exc
        logger.info("ai classify intent=%s confidence=%.2f", result.intent, result.confidence)
        return result

    def extract_slots(self, text: str, intent: str, existing: dict[str, Any]) -> dict[str, Any]:
        prompt = EXTRACT_PROMPT.format(text=text, intent=intent, existing=json.dumps(existing, ensure_ascii=False))
        data = _safe_json_parse(self._chat(prompt))
        logger.info("ai extract intent=%s fields=%s", intent, sorted(data))
        return data


def build_ai_capability(settings: NluSettings) -> AICapability | None:
    if not settings.enable_ai_fallback:
        return None
    if not settings.ai_api_key:
        logger.warning("ai fallback enabled without api key, disabled")
        return None
    return OpenAICompatibleClient(settings)
