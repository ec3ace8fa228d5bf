"""Chinese time, date, weekday and recurrence expressions.

Every public function returns ``None`` (or an empty list) when nothing usable
is found; no exception leaves this module.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, timedelta

logger = logging.getLogger("course-nlu.time")

CN_DIGITS = "零〇一二三四五六七八九十兩两倆"
_CN = f"[{CN_DIGITS}]+"
_HOUR_MARK = "[點点時时]"
_PERIOD_WORDS = "早上|上午|早晨|清晨|中午|正午|下午|午後|午后|晚上|夜晚|夜間|夜间|深夜"
_MINUTE_TAIL = rf"(?:(?P<half>半)|(?P<quarter>[一三])刻|(?P<minute>\d{{1,2}}|{_CN})\s*分?)?"

WEEKDAY_CHARS = {"一": 1, "二": 2, "三": 3, "四": 4, "五": 5, "六": 6, "日": 0, "天": 0}
_WEEK_WORDS = "週|周|星期|禮拜|礼拜"

RELATIVE_DAYS = (
    ("大後天", 3),
    ("大后天", 3),
    ("後天", 2),
    ("后天", 2),
    ("大前天", -3),
    ("前天", -2),
    ("今天", 0),
    ("今日", 0),
    ("今晚", 0),
    ("明天", 1),
    ("明日", 1),
    ("明晚", 1),
    ("昨天", -1),
    ("昨日", -1),
)

TIME_REFERENCES = (
    ("後天", "day_after_tomorrow"),
    ("后天", "day_after_tomorrow"),
    ("前天", "day_before_yesterday"),
    ("今天", "today"),
    ("今日", "today"),
    ("今晚", "today"),
    ("明天", "tomorrow"),
    ("明日", "tomorrow"),
    ("明晚", "tomorrow"),
    ("昨天", "yesterday"),
    ("昨日", "yesterday"),
    ("這週", "this_week"),
    ("這周", "this_week"),
    ("这周", "this_week"),
    ("本週", "this_week"),
    ("本周", "this_week"),
    ("這星期", "this_week"),
    ("這禮拜", "this_week"),
    ("下週", "next_week"),
    ("下周", "next_week"),
    ("下星期", "next_week"),
    ("下禮拜", "next_week"),
    ("上週", "last_week"),
    ("上周", "last_week"),
    ("上星期", "last_week"),
    ("上禮拜", "last_week"),
)

RECURRING_KEYWORDS = ("每週", "每周", "每星期", "每個星期", "每禮拜", "每個禮拜", "每月", "每個月", "重複", "定期", "固定", "循環", "週期性")
DAILY_KEYWORDS = ("每天", "每日")
WEEKLY_KEYWORDS = ("每週", "每周", "每星期", "每個星期", "每禮拜", "每個禮拜")
MONTHLY_KEYWORDS = ("每月", "每個月")


@dataclass(frozen=True)
class Period:
    word: str
    start: int
    end: int
    priority: int
    # night periods whose range runs past midnight into the small hours
    wraps: bool = False


# higher priority wins when several period words appear in the same fragment
PERIODS: tuple[Period, ...] = (
    Period("早上", 6, 11, 1),
    Period("上午", 6, 11, 1),
    Period("早晨", 6, 9, 2),
    Period("清晨", 5, 8, 2),
    Period("中午", 12, 13, 1),
    Period("正午", 12, 12, 2),
    Period("下午", 12, 17, 1),
    Period("午後", 13, 17, 2),
    Period("午后", 13, 17, 2),
    Period("晚上", 18, 23, 1),
    Period("夜晚", 19, 23, 2),
    Period("夜間", 20, 23, 2, wraps=True),
    Period("夜间", 20, 23, 2, wraps=True),
    Period("深夜", 22, 24, 2, wraps=True),
    Period("AM", 0, 11, 3),
    Period("PM", 12, 23, 3),
)


@dataclass(frozen=True)
class TimeToken:
    hour: int | None
    minute: int
    period_hint: str | None
    pattern: str = ""
    start: int = 0
    end: int = 0

    def formatted(self) -> str | None:
        if self.hour is None:
            return None
        return f"{self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Recurrence:
    kind: str
    days_of_week: tuple[int, ...] = ()
    month_day: int | None = None


# tried in order; every period-qualified form comes before the bare numerals
TIME_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "period_chinese",
        re.compile(rf"(?P<period>{_PERIOD_WORDS})\s*(?P<hour>{_CN})\s*{_HOUR_MARK}(?!{_HOUR_MARK})\s*{_MINUTE_TAIL}"),
    ),
    (
        "period_arabic",
        re.compile(rf"(?P<period>{_PERIOD_WORDS})\s*(?P<hour>\d{{1,2}})\s*(?:{_HOUR_MARK}|:(?=\d))\s*{_MINUTE_TAIL}"),
    ),
    (
        "ampm_prefix",
        re.compile(
            rf"(?<![A-Za-z])(?P<period>am|pm)(?![A-Za-z])\s*(?P<hour>\d{{1,2}}|{_CN})\s*(?:(?:{_HOUR_MARK}|:(?=\d))\s*{_MINUTE_TAIL})?",
            re.IGNORECASE,
        ),
    ),
    (
        "ampm_suffix",
        re.compile(
            r"(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<period>am|pm)(?![A-Za-z])",
            re.IGNORECASE,
        ),
    ),
    (
        "numeric_24h",
        re.compile(rf"(?<!\d)(?P<hour>\d{{1,2}})\s*(?:{_HOUR_MARK}|:(?=\d))\s*{_MINUTE_TAIL}"),
    ),
    (
        "pure_chinese",
        re.compile(rf"(?P<hour>{_CN})\s*{_HOUR_MARK}(?!{_HOUR_MARK})\s*{_MINUTE_TAIL}"),
    ),
)

_YMD_PATTERN = re.compile(r"(?<!\d)(?P<year>\d{4})[/\-.](?P<month>\d{1,2})[/\-.](?P<day>\d{1,2})(?!\d)")
_MD_SLASH_PATTERN = re.compile(r"(?<![\d/])(?P<month>\d{1,2})/(?P<day>\d{1,2})(?![\d/])")
_MD_CHINESE_PATTERN = re.compile(rf"(?P<month>\d{{1,2}}|{_CN})月(?P<day>\d{{1,2}}|{_CN})[日號号]")
_WEEK_DAY_PATTERN = re.compile(rf"(?P<week>這|这|本|下|上)(?:個)?(?:{_WEEK_WORDS})(?P<day>[一二三四五六日天])")
_DAYS_PATTERN = re.compile(rf"(?:{_WEEK_WORDS})(?P<days>[一二三四五六日天](?:[、,，和跟及與与]?[一二三四五六日天])*)(?![次堂])")
_MONTH_DAY_PATTERN = re.compile(rf"(?P<day>\d{{1,2}}|{_CN})\s*[號号]")
_MINUTES_PATTERN = re.compile(rf"(?P<num>\d+|{_CN})\s*分鐘|(?P<num_h>\d+|{_CN})\s*(?:個)?(?:小時|小时|鐘頭)|(?P<half>半)(?:個)?(?:小時|小时|鐘頭)")


def normalize_text(text: str) -> str:
    return unicodedata.normalize("NFKC", text or "").strip()


def chinese_to_int(token: str) -> int | None:
    """Arabic digits or a Chinese numeral such as 十五, 二十三 or 兩 to an int."""
    token = (token or "").strip()
    if not token:
        return None
    if token.isdigit():
        return int(token)

    nums = {"零": 0, "〇": 0, "一": 1, "二": 2, "兩": 2, "两": 2, "倆": 2, "三": 3, "四": 4, "五": 5, "六": 6, "七": 7, "八": 8, "九": 9}
    units = {"十": 10, "百": 100}

    total = 0
    current = 0
    seen = False
    for ch in token:
        if ch in nums:
            current = nums[ch]
            seen = True
        elif ch in units:
            unit = units[ch]
            if current == 0:
                current = 1
            total += current * unit
            current = 0
            seen = True
        else:
            return None

    total += current
    return total if seen else None


def identify_period(text: str) -> Period | None:
    best: Period | None = None
    upper = text.upper()
    for period in PERIODS:
        haystack = upper if period.word.isascii() else text
        if period.word in haystack and (best is None or period.priority > best.priority):
            best = period
    return best


SMALL_HOURS_END = 5


def infer_hour(hour: int, period: Period | None) -> int | None:
    """Reconcile a 12-hour numeral with the range of the period word that qualifies it.

    Returns None when no reading of the numeral falls inside the period.
    """
    if period is None:
        return hour
    if period.start <= hour <= period.end:
        return hour
    if hour < 12 and period.start <= hour + 12 <= period.end:
        return hour + 12
    if hour == 12 and (period.start < 12 or period.start >= 18):
        return 0
    if period.wraps and hour <= SMALL_HOURS_END:
        return hour
    return None


def _minute_from_match(match: re.Match[str]) -> int | None:
    groups = match.groupdict()
    if groups.get("half"):
        return 30
    if groups.get("quarter"):
        return 15 if groups["quarter"] == "一" else 45
    if groups.get("minute"):
        return chinese_to_int(groups["minute"])
    return 0


def tokenize_time(text: str) -> TimeToken | None:
    """First time expression in text as a TimeToken, trying patterns in precedence order."""
    normalized = normalize_text(text)
    if not normalized:
        return None

    # spans whose period word ruled the numeral out; bare patterns may not reuse them
    rejected: list[tuple[int, int]] = []
    for name, pattern in TIME_PATTERNS:
        for match in pattern.finditer(normalized):
            if any(start <= match.start() < end for start, end in rejected):
                continue
            hour = chinese_to_int(match.group("hour"))
            minute = _minute_from_match(match)
            if hour is None or minute is None or hour > 24:
                continue

            period_text = match.groupdict().get("period")
            period = identify_period(period_text) if period_text else None
            inferred = infer_hour(hour, period)
            if inferred is None:
                logger.debug("time outside period pattern=%s raw=%s", name, match.group(0))
                rejected.append((match.start(), match.end()))
                continue
            hour = inferred
            if not (0 <= hour < 24 and 0 <= minute < 60):
                logger.debug("time out of range pattern=%s raw=%s", name, match.group(0))
                continue

            return TimeToken(
                hour=hour,
                minute=minute,
                period_hint=period.word if period else None,
                pattern=name,
                start=match.start(),
                end=match.end(),
            )
    return None


def parse(text: str) -> str | None:
    token = tokenize_time(text)
    if token is None:
        logger.debug("time parse miss text=%s", text)
        return None
    return token.formatted()


def parse_time_reference(text: str) -> str | None:
    normalized = normalize_text(text)
    for word, reference in TIME_REFERENCES:
        if word in normalized:
            return reference
    return None


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(text: str, today: date) -> str | None:
    """Explicit or relative calendar date in text resolved to YYYY-MM-DD."""
    normalized = normalize_text(text)
    if not normalized:
        return None

    match = _YMD_PATTERN.search(normalized)
    if match:
        resolved = _safe_date(int(match.group("year")), int(match.group("month")), int(match.group("day")))
        return resolved.isoformat() if resolved else None

    match = _MD_CHINESE_PATTERN.search(normalized) or _MD_SLASH_PATTERN.search(normalized)
    if match:
        month = chinese_to_int(match.group("month"))
        day = chinese_to_int(match.group("day"))
        resolved = _safe_date(today.year, month, day) if month and day else None
        return resolved.isoformat() if resolved else None

    match = _WEEK_DAY_PATTERN.search(normalized)
    if match:
        weekday = WEEKDAY_CHARS[match.group("day")]
        monday = today - timedelta(days=today.weekday())
        offset = {"下": 7, "上": -7}.get(match.group("week"), 0)
        # weeks run Monday..Sunday, so Sunday (0) is the seventh day
        resolved = monday + timedelta(days=offset + (weekday - 1) % 7)
        return resolved.isoformat()

    for word, delta in RELATIVE_DAYS:
        if word in normalized:
            return (today + timedelta(days=delta)).isoformat()
    return None


def parse_days_of_week(text: str) -> list[int]:
    normalized = normalize_text(text)
    days: list[int] = []
    for match in _DAYS_PATTERN.finditer(normalized):
        for ch in match.group("days"):
            day = WEEKDAY_CHARS.get(ch)
            if day is not None and day not in days:
                days.append(day)
    return days


def is_recurring(text: str, enable_daily: bool = False) -> bool:
    normalized = normalize_text(text)
    keywords = RECURRING_KEYWORDS + (DAILY_KEYWORDS if enable_daily else ())
    return any(keyword in normalized for keyword in keywords)


def parse_recurrence(text: str, enable_daily: bool = False) -> Recurrence | None:
    normalized = normalize_text(text)

    if any(keyword in normalized for keyword in DAILY_KEYWORDS):
        if enable_daily:
            return Recurrence(kind="daily")
        logger.debug("daily recurrence disabled text=%s", normalized)

    if any(keyword in normalized for keyword in MONTHLY_KEYWORDS):
        match = _MONTH_DAY_PATTERN.search(normalized)
        day = chinese_to_int(match.group("day")) if match else None
        return Recurrence(kind="monthly", month_day=day if day and 1 <= day <= 31 else None)

    if any(keyword in normalized for keyword in WEEKLY_KEYWORDS):
        return Recurrence(kind="weekly", days_of_week=tuple(parse_days_of_week(normalized)))

    return None


def parse_duration_minutes(text: str) -> int | None:
    """Minutes in expressions such as 提前十分鐘, 30分鐘前 or 一小時前."""
    match = _MINUTES_PATTERN.search(normalize_text(text))
    if not match:
        return None
    if match.group("half"):
        return 30
    if match.group("num"):
        return chinese_to_int(match.group("num"))
    hours = chinese_to_int(match.group("num_h"))
    return hours * 60 if hours is not None else None


def _time_ahead(now: datetime, on: date, time_text: str | None) -> bool:
    if on != now.date():
        return on > now.date()
    if not time_text:
        return True
    hour, minute = (int(part) for part in time_text.split(":"))
    return (hour, minute) > (now.hour, now.minute)


def next_occurrence(
    kind: str,
    now: datetime,
    time_text: str | None = None,
    days_of_week: list[int] | tuple[int, ...] = (),
    month_day: int | None = None,
) -> date | None:
    """Next lesson date for a daily, weekly or monthly recurrence, counting from now."""
    today = now.date()

    if kind == "daily":
        return today if _time_ahead(now, today, time_text) else today + timedelta(days=1)

    if kind == "weekly":
        if not days_of_week:
            return None
        for offset in range(0, 8):
            candidate = today + timedelta(days=offset)
            if (candidate.weekday() + 1) % 7 in days_of_week and _time_ahead(now, candidate, time_text):
                return candidate
        return None

    if kind == "monthly":
        if not month_day:
            return None
        year, month = today.year, today.month
        for _ in range(0, 13):
            candidate = _safe_date(year, month, month_day)
            if candidate is not None and _time_ahead(now, candidate, time_text):
                return candidate
            month += 1
            if month > 12:
                year, month = year + 1, 1
        return None

    return None
