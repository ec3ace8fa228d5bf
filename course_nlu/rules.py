"""Immutable rule tables: intent rules, entity patterns and deny-lists.

Everything here is plain data validated once at import time. Matching engines
live in ``entity_matcher`` and ``intent_classifier``.
"""

import re

from pydantic import BaseModel, ConfigDict, Field

from course_nlu.models import (
    ADD_COURSE,
    CANCEL_ACTION,
    CANCEL_COURSE,
    CONFIRM_ACTION,
    CORRECTION_INTENT,
    MODIFY_ACTION,
    MODIFY_COURSE,
    QUERY_SCHEDULE,
    RECORD_CONTENT,
    RESTART_INPUT,
    SET_REMINDER,
)

_NAME = "[一-鿿A-Za-z]"
_CN_NUM = "[零一二三四五六七八九十兩]"


class IntentRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    intent: str
    keywords: tuple[str, ...] = ()
    patterns: tuple[re.Pattern[str], ...] = ()
    required_keywords: tuple[str, ...] = ()
    exclusions: tuple[str, ...] = ()
    priority: int = Field(default=10, ge=1, le=19)
    requires_context: bool = False
    examples: tuple[str, ...] = ()


class PatternRule(BaseModel):
    """One extraction regex; lower precedence values are tried first."""

    model_config = ConfigDict(frozen=True)

    name: str
    pattern: re.Pattern[str]
    precedence: int


INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        intent=ADD_COURSE,
        keywords=("新增", "預約", "報名", "要上", "排課", "加課", "幫我加", "安排一堂", "上課時間"),
        patterns=(
            rf"[點点時:：].{{0,6}}(課|教學|訓練|班)",
            r"(每週|每周|星期|週|周)[一二三四五六日天].{0,12}(課|教學|訓練|班)",
        ),
        exclusions=(
            "取消", "刪除", "刪掉", "移除", "不要上", "不上", "查詢", "查一下", "有什麼課", "有哪些課",
            "有課嗎", "課表", "表現", "學了", "教了", "內容", "提醒", "修改", "改成", "改到", "換到", "調整", "老師說",
        ),
        priority=2,
        examples=("小明明天下午三點上數學課", "幫小美新增每週三的鋼琴課", "Lumi星期五晚上七點英文課"),
    ),
    IntentRule(
        intent=QUERY_SCHEDULE,
        keywords=("查詢", "查一下", "查看", "課表", "有什麼課", "有哪些課", "有課嗎", "什麼課", "幾點上課"),
        patterns=(
            r"(今天|明天|後天|這週|下週|本週)[^點点時:]{0,4}(有|的)(什麼|哪些)?課",
            r"課.{0,3}(嗎|？|\?)$",
        ),
        exclusions=("取消", "刪除", "新增", "提醒我"),
        priority=3,
        examples=("查詢小明這週的課", "明天有什麼課", "看一下Lumi的課表"),
    ),
    IntentRule(
        intent=CANCEL_COURSE,
        keywords=("取消", "刪除", "刪掉", "移除", "不要上", "不上", "停止", "撤銷", "請假"),
        exclusions=("新增", "剛才", "剛剛", "上一個"),
        priority=2,
        examples=("取消小明明天的數學課", "刪掉Lumi每週的鋼琴課", "小美今天請假"),
    ),
    IntentRule(
        intent=SET_REMINDER,
        keywords=("提醒", "通知我", "叫我", "記得"),
        patterns=(r"提前.{0,4}(分鐘|小時|鐘頭)", rf"(\d+|{_CN_NUM}+)\s*分鐘前"),
        exclusions=("不用提醒",),
        priority=2,
        examples=("提醒我小明明天的數學課", "數學課前30分鐘提醒我", "記得帶直笛"),
    ),
    IntentRule(
        intent=RECORD_CONTENT,
        keywords=("記錄", "學了", "教了", "內容", "表現", "老師說", "筆記", "作業"),
        patterns=(r"(學了|教了|練了).+", r"老師說.+"),
        exclusions=("取消", "刪除", "查詢", "提醒我"),
        priority=3,
        examples=("小明今天數學課學了分數", "老師說小光表現很好", "記錄Lumi英文課內容"),
    ),
    IntentRule(
        intent=MODIFY_COURSE,
        keywords=("修改", "改成", "改到", "改為", "換到", "調整", "延後", "改時間", "改期"),
        patterns=(r"改.{0,8}(點|时|時|週|星期|號)",),
        exclusions=("取消", "刪除", "剛才", "剛剛", "上一個"),
        priority=2,
        examples=("把小明的數學課改到下午四點", "Lumi的英文課改成週五"),
    ),
    IntentRule(
        intent=CONFIRM_ACTION,
        keywords=("確認", "沒問題", "沒錯"),
        patterns=(r"^(好|好的|對|對的|是|是的|確認|沒錯|可以|嗯|ok|OK|Ok)[。.!！]?$",),
        priority=1,
        requires_context=True,
    ),
    IntentRule(
        intent=MODIFY_ACTION,
        keywords=("修改剛才", "修改剛剛", "改一下剛才", "修改上一個"),
        patterns=(r"^(修改|改一下|我要改|要改)[。.!！]?$",),
        priority=1,
        requires_context=True,
    ),
    IntentRule(
        intent=CANCEL_ACTION,
        keywords=("取消剛才", "取消剛剛", "取消上一個", "撤回", "算了"),
        patterns=(r"^(取消|不要了|算了)[。.!！]?$",),
        priority=1,
        requires_context=True,
    ),
    IntentRule(
        intent=CORRECTION_INTENT,
        keywords=("不對", "錯了", "搞錯", "更正", "說錯"),
        patterns=(r"^(不對|錯了|不是)",),
        priority=1,
        requires_context=True,
    ),
    IntentRule(
        intent=RESTART_INPUT,
        keywords=("重新開始", "重來", "重新輸入", "從頭"),
        patterns=(r"^(重新|重來)",),
        priority=1,
    ),
)

# an explicit switch keyword aborts a waiting supplement turn
INTENT_SWITCH_KEYWORDS: tuple[str, ...] = (
    "查詢", "查一下", "新增", "取消", "刪除", "刪掉", "修改", "提醒", "記錄", "重新開始", "重來",
)

# shape checks for supplement turns
CONFIRMATION_INPUTS: tuple[str, ...] = ("confirmation", "modification", "cancellation")
DATE_HINT_KEYWORDS: tuple[str, ...] = ("今天", "明天", "後天", "昨天", "前天", "號", "日", "月", "/")
WEEKDAY_HINT_KEYWORDS: tuple[str, ...] = ("週", "周", "星期", "禮拜")

STUDENT_NAME_RULES: tuple[PatternRule, ...] = (
    PatternRule(name="possessive_course", pattern=rf"(?P<name>{_NAME}{{2,10}}?)的[^的]{{0,10}}?(課|教學|訓練|班)", precedence=10),
    PatternRule(name="name_recurring", pattern=rf"^(?P<name>[小大]?{_NAME}{{1,6}}?)(?=每週|每周|每天|每日|每月|每個)", precedence=20),
    PatternRule(name="latin_before_time", pattern=r"(?P<name>[A-Za-z]{3,8})\s*(?=星期|週|周|禮拜|今天|明天|後天|昨天|下週|這週|上週|每)", precedence=30),
    PatternRule(name="teacher_said", pattern=rf"老師說(?P<name>[小大]?{_NAME}{{2,6}}?)(?=表現|很|非常|今天|上課|的)", precedence=40),
    PatternRule(name="cancel_possessive", pattern=rf"(?:取消|刪除|刪掉)(?P<name>{_NAME}{{2,6}}?)的", precedence=50),
    PatternRule(
        name="query_target",
        pattern=r"(?:查詢|查一下|查|看一下|看看)(?P<name>[A-Za-z]{3,8}|[小大]?[一-鿿]{2,4}?)(?=這週|下週|上週|本週|的|今天|明天|後天|昨天|有|星期|週)",
        precedence=60,
    ),
    PatternRule(name="cancel_target", pattern=rf"(?:取消|刪除|刪掉)(?P<name>{_NAME}{{2,6}}?)(?=今天|明天|後天|昨天|這週|下週|星期|週|每)", precedence=70),
    PatternRule(name="day_possessive", pattern=rf"(?:今天|昨天|明天|後天)(?P<name>[小大]?{_NAME}{{2,6}}?)的", precedence=80),
    PatternRule(name="remind_target", pattern=rf"提醒我?(?P<name>[小大]?{_NAME}{{2,3}}?)(?=明天|今天|後天|的|上|下週|這週)", precedence=90),
    PatternRule(
        name="leading_before_time",
        pattern=rf"^(?P<name>[小大]?{_NAME}{{2,6}}?)(?=[今昨明後]天|星期|週|周|禮拜|下週|這週|上週|早上|上午|下午|中午|晚上|\d|{_CN_NUM}+[點点時])",
        precedence=100,
    ),
    PatternRule(name="leading_before_verb", pattern=rf"^(?P<name>[小大]?{_NAME}{{2,4}}?)(?=要上|要學|上|的)", precedence=110),
    PatternRule(name="leading_with_space", pattern=r"^(?P<name>[一-鿿]{2,4})\s", precedence=120),
    PatternRule(name="bare_name", pattern=r"^(?P<name>[小大]?[一-鿿]{1,3}|[A-Za-z]{3,8})[。.!！]?$", precedence=130),
)

# "小明和小華" style lists feed the candidate list
STUDENT_LIST_PATTERN = re.compile(rf"(?P<first>[小大]?{_NAME}{{1,4}}?)(?:和|跟|與|与|、)(?P<second>[小大]?{_NAME}{{2,4}}?)(?=的|今天|明天|後天|每|這週|下週|星期|週|都|一起|$)")

COURSE_NAME_RULES: tuple[PatternRule, ...] = (
    PatternRule(name="verb_course", pattern=rf"(?:要上|去上|上|要學|學)(?P<name>{_NAME}{{2,8}}?)(?=課|$|[，。,.!！?？\s]|的|時|在)", precedence=10),
    PatternRule(name="possessive_course", pattern=rf"的(?P<name>{_NAME}{{2,6}})課", precedence=20),
    PatternRule(name="suffix_course", pattern=rf"(?P<name>{_NAME}{{2,8}})課(?!了)", precedence=30),
    PatternRule(name="teaching", pattern=rf"(?P<name>{_NAME}{{2,6}}教學)", precedence=40),
    PatternRule(name="training", pattern=rf"(?P<name>{_NAME}{{2,6}}訓練)", precedence=50),
    PatternRule(name="class", pattern=rf"(?P<name>{_NAME}{{2,6}}班)", precedence=60),
    PatternRule(name="time_course", pattern=rf"[點点時](?P<name>{_NAME}{{2,6}})課", precedence=70),
)

STUDENT_DENY: tuple[str, ...] = (
    "今天", "明天", "昨天", "後天", "前天", "每週", "每周", "查詢", "提醒", "取消", "看一下", "記錄",
    "老師說", "這週", "下週", "上週", "本週", "安排", "刪掉", "刪除", "表現", "很好", "內容", "一下",
    "表現很", "提醒我", "明天的", "今天的", "昨天的", "新增", "修改", "早上", "上午", "中午", "下午",
    "晚上", "星期", "禮拜", "什麼", "哪些", "課表", "老師", "學生", "我", "你", "他", "她", "點",
)

# short replies that must never be taken for a name in a supplement turn
REPLY_WORDS: tuple[str, ...] = (
    "好", "好的", "是", "是的", "對", "對的", "不對", "確認", "沒錯", "可以", "不用", "不要", "不要了",
    "算了", "謝謝", "錯了", "重新", "重來", "嗯", "喔", "哦", "沒事", "不是", "重試", "再試", "再一次", "再送",
)

COURSE_DENY: tuple[str, ...] = (
    "今天", "明天", "昨天", "後天", "每天", "這週", "下週", "上週", "老師", "學生", "查詢", "提醒",
    "取消", "記錄", "看一下", "安排", "刪掉", "刪除", "內容", "表現", "很好", "分數", "點的", "期五",
    "我", "學了", "課學", "天學", "點天", "星期", "課前", "了", "修改", "新增",
)

# question fragments that are never a course name
QUESTION_FRAGMENTS: tuple[str, ...] = ("什麼", "哪些", "哪個", "哪", "幾", "嗎", "多少", "有")

# the whole sentence asks about the timetable, so no single course is named
COURSE_QUERY_BLOCKERS: tuple[str, ...] = ("有什麼課", "有課嗎", "課表", "安排", "哪些課", "什麼課", "幾堂課")

CATEGORY_SUFFIXES: tuple[str, ...] = ("教學", "訓練", "班", "評鑑", "課")
COURSE_SUFFIX = "課"

# text before the last of these inside a course candidate belongs to the context, not the course
COURSE_SPLITTERS: tuple[str, ...] = (
    "的", "點", "点", "時", "天", "要上", "去上", "上", "要學", "和", "跟", "在", "週", "周",
    "新增", "預約", "報名", "取消", "刪除", "查詢", "提醒", "記錄",
)

# leading noise peeled off a student candidate, longest first
NAME_PREFIXES: tuple[str, ...] = tuple(
    sorted(
        (
            "今天", "明天", "後天", "昨天", "前天", "這週", "下週", "上週", "本週", "早上", "上午", "中午",
            "下午", "晚上", "幫我", "請幫", "查詢", "查一下", "看一下", "取消", "刪除", "刪掉", "提醒我",
            "提醒", "記錄", "新增", "安排", "修改", "我要", "我想", "幫", "請", "給", "替", "為", "查", "看",
            "要", "讓", "我", "把",
        ),
        key=len,
        reverse=True,
    )
)

# action verbs that leak into the front or back of name fields
LEAKED_VERBS: tuple[str, ...] = tuple(
    sorted(
        (
            "取消", "刪除", "刪掉", "查詢", "查一下", "提醒", "記錄", "新增", "安排", "修改", "改到", "改成",
            "要上", "去上", "看一下", "幫我", "幫", "請",
        ),
        key=len,
        reverse=True,
    )
)

CONTENT_PATTERNS: tuple[PatternRule, ...] = (
    PatternRule(name="learned", pattern=r"學了(?P<value>.+)", precedence=10),
    PatternRule(name="taught", pattern=r"教了(?P<value>.+)", precedence=20),
    PatternRule(name="content_is", pattern=r"內容[是:：](?P<value>.+)", precedence=30),
    PatternRule(name="record", pattern=r"記錄(?P<value>.+)", precedence=40),
    PatternRule(name="teacher_performance", pattern=r"老師說.*表現(?P<value>.+)", precedence=50),
    PatternRule(name="performance", pattern=r"表現(?P<value>.+)", precedence=60),
    PatternRule(name="teacher_adverb", pattern=r"老師說.*?(?P<value>[很非常超].+)", precedence=70),
    PatternRule(name="teacher_said", pattern=r"老師說(?P<value>.+)", precedence=80),
)

REMINDER_NOTE_PATTERN = re.compile(r"記得(?P<value>.+)")

SCOPE_ALL_KEYWORDS: tuple[str, ...] = ("全部", "所有", "整個")
SCOPE_RECURRING_KEYWORDS: tuple[str, ...] = ("重複", "每週", "每周", "以後的", "之後的")

_SCHEDULING_FIELDS = (
    "studentName", "studentCandidates", "courseName", "scheduleTime", "courseDate",
    "timeReference", "dayOfWeek", "recurring", "recurrenceType", "monthDay",
)

# known slot fields per intent; anything else is ignored for that intent
INTENT_FIELDS: dict[str, tuple[str, ...]] = {
    ADD_COURSE: _SCHEDULING_FIELDS,
    MODIFY_COURSE: _SCHEDULING_FIELDS,
    QUERY_SCHEDULE: ("studentName", "studentCandidates", "courseName", "courseDate", "timeReference"),
    SET_REMINDER: ("studentName", "studentCandidates", "courseName", "courseDate", "timeReference", "reminderTime", "reminderNote"),
    CANCEL_COURSE: ("studentName", "studentCandidates", "courseName", "courseDate", "timeReference", "scope"),
    RECORD_CONTENT: ("studentName", "studentCandidates", "courseName", "courseDate", "timeReference", "content"),
}

# expected field groups for the fill-rate confidence; any member fills its group
EXPECTED_FIELDS: dict[str, tuple[tuple[str, ...], ...]] = {
    ADD_COURSE: (("studentName",), ("courseName",), ("scheduleTime", "courseDate", "dayOfWeek")),
    MODIFY_COURSE: (("studentName",), ("courseName",), ("scheduleTime", "courseDate", "dayOfWeek")),
    QUERY_SCHEDULE: (("studentName",), ("timeReference", "courseDate")),
    SET_REMINDER: (("studentName",), ("courseName",)),
    CANCEL_COURSE: (("studentName",), ("courseName",)),
    RECORD_CONTENT: (("studentName",), ("courseName",), ("content",)),
}

# intents whose student/course must never be guessed from earlier turns
CRITICAL_INTENTS: tuple[str, ...] = (ADD_COURSE, MODIFY_COURSE, CANCEL_COURSE, RECORD_CONTENT, SET_REMINDER)

# field names other producers use for the same slot
SLOT_SYNONYMS: dict[str, str] = {"specificDate": "courseDate", "date": "courseDate", "time": "scheduleTime"}

# a failed task is resubmitted unchanged on one of these
RETRY_KEYWORDS: tuple[str, ...] = ("重試", "再試", "再一次", "再送", "確認", "好", "可以", "是", "對")

# intent names other classifiers use for ours
INTENT_SYNONYMS: dict[str, str] = {
    "create_recurring_course": ADD_COURSE,
    "add_course_content": RECORD_CONTENT,
    "record_course": ADD_COURSE,
}
