import logging
import re
from datetime import date

from rapidfuzz import fuzz

from course_nlu import rules, time_parser
from course_nlu.rules import PatternRule

logger = logging.getLogger("course-nlu.slots")

_LEADING_TIME = re.compile(rf"^(?:\d{{1,2}}|[{time_parser.CN_DIGITS}]+)\s*[點点時:：](?:\d{{1,2}}|半|[{time_parser.CN_DIGITS}]+分?)?")
_NAME_SUFFIXES = tuple(
    sorted(
        ("今天", "明天", "後天", "昨天", "前天", "這週", "下週", "上週", "本週", "每週", "每周", "早上", "上午", "中午", "下午", "晚上", "星期", "禮拜"),
        key=len,
        reverse=True,
    )
)
_WEEK_QUALIFIERS = ("下", "這", "上", "本")
_WEEK_HEADS = ("週", "周", "星期", "禮拜")


def _sorted_rules(items: tuple[PatternRule, ...]) -> tuple[PatternRule, ...]:
    return tuple(sorted(items, key=lambda rule: rule.precedence))


class EntityPatternMatcher:
    """Ordered regex rules for students, courses and the other slot values.

    Rule tables are injected so precedence can be tested apart from the engine.
    Every extract_* method returns None (or []) instead of raising.
    """

    def __init__(
        self,
        student_rules: tuple[PatternRule, ...] = rules.STUDENT_NAME_RULES,
        course_rules: tuple[PatternRule, ...] = rules.COURSE_NAME_RULES,
        student_deny: tuple[str, ...] = rules.STUDENT_DENY,
        course_deny: tuple[str, ...] = rules.COURSE_DENY,
    ) -> None:
        self.student_rules = _sorted_rules(student_rules)
        self.course_rules = _sorted_rules(course_rules)
        self.student_deny = student_deny
        self.course_deny = course_deny

    # students

    def _strip_name_affixes(self, candidate: str) -> str:
        name = candidate.strip()
        changed = True
        while changed:
            changed = False
            time_match = _LEADING_TIME.match(name)
            if time_match and len(name) - time_match.end() >= 2:
                name = name[time_match.end():]
                changed = True
                continue
            for prefix in rules.NAME_PREFIXES:
                if name.startswith(prefix) and len(name) - len(prefix) >= 2:
                    name = name[len(prefix):]
                    changed = True
                    break
            for suffix in _NAME_SUFFIXES:
                if name.endswith(suffix) and len(name) - len(suffix) >= 2:
                    name = name[: -len(suffix)]
                    changed = True
                    break
        return name

    def _trim_trailing_week(self, name: str, following: str) -> str:
        """Drop a trailing 下/這/上/本 that really belongs to a following 週/星期 token."""
        if len(name) > 2 and name.endswith(_WEEK_QUALIFIERS) and following.startswith(_WEEK_HEADS):
            return name[:-1]
        return name

    def is_valid_student_name(self, name: str | None) -> bool:
        if not name:
            return False
        if name in rules.REPLY_WORDS:
            return False
        if any(token in name for token in self.student_deny):
            return False
        if not 2 <= len(name) <= 6:
            return False
        if "課" in name or "天" in name or name[0].isdigit() or any(ch.isdigit() for ch in name):
            return False
        if time_parser.tokenize_time(name) is not None:
            return False
        return True

    def _student_from_match(self, text: str, match: re.Match[str]) -> str | None:
        name = self._strip_name_affixes(match.group("name"))
        name = self._trim_trailing_week(name, text[match.end("name"):])
        return name if self.is_valid_student_name(name) else None

    def extract_student_name(self, text: str) -> str | None:
        normalized = time_parser.normalize_text(text)
        if not normalized:
            return None
        for rule in self.student_rules:
            for match in rule.pattern.finditer(normalized):
                name = self._student_from_match(normalized, match)
                if name:
                    logger.debug("student rule=%s name=%s", rule.name, name)
                    return name
        return None

    def extract_student_candidates(self, text: str) -> list[str]:
        """Every plausible student name in text, in rule order, without guessing between them."""
        normalized = time_parser.normalize_text(text)
        found: list[str] = []
        if not normalized:
            return found

        for match in rules.STUDENT_LIST_PATTERN.finditer(normalized):
            for group in ("first", "second"):
                name = self._strip_name_affixes(match.group(group))
                if self.is_valid_student_name(name):
                    found.append(name)

        for rule in self.student_rules:
            for match in rule.pattern.finditer(normalized):
                name = self._student_from_match(normalized, match)
                if name:
                    found.append(name)

        # a longer candidate that contains a shorter one is the same person plus noise
        unique: list[str] = []
        for name in sorted(dict.fromkeys(found), key=len):
            if not any(kept in name for kept in unique):
                unique.append(name)
        return [name for name in dict.fromkeys(found) if name in unique]

    def match_known_student(self, text: str, known: list[str], threshold: float = 90.0) -> str | None:
        """A previously mentioned student that the text refers to, exactly or by a close spelling."""
        normalized = time_parser.normalize_text(text)
        best, best_score = None, 0.0
        for name in known:
            if not name:
                continue
            if name in normalized:
                return name
            score = fuzz.partial_ratio(name, normalized)
            if score > best_score:
                best, best_score = name, score
        return best if best_score >= threshold else None

    # courses

    def _trim_course(self, candidate: str) -> str:
        cut = 0
        for splitter in rules.COURSE_SPLITTERS:
            idx = candidate.rfind(splitter)
            if idx >= 0:
                cut = max(cut, idx + len(splitter))
        return candidate[cut:]

    def is_valid_course_name(self, name: str | None) -> bool:
        if not name:
            return False
        core = name[: -len(rules.COURSE_SUFFIX)] if name.endswith(rules.COURSE_SUFFIX) else name
        if not 2 <= len(core) <= 8:
            return False
        if any(ch.isdigit() for ch in core) or "點" in core or "天" in core:
            return False
        if any(token in core for token in self.course_deny):
            return False
        if any(token in core for token in rules.QUESTION_FRAGMENTS):
            return False
        return True

    @staticmethod
    def normalize_course_name(name: str) -> str:
        if "課" in name or name.endswith(rules.CATEGORY_SUFFIXES):
            return name
        return name + rules.COURSE_SUFFIX

    def extract_course_candidates(self, text: str) -> list[str]:
        normalized = time_parser.normalize_text(text)
        if not normalized or any(blocker in normalized for blocker in rules.COURSE_QUERY_BLOCKERS):
            return []

        found: list[str] = []
        for rule in self.course_rules:
            for match in rule.pattern.finditer(normalized):
                name = self._trim_course(match.group("name"))
                name = self._trim_trailing_week(name, normalized[match.end("name"):])
                if self.is_valid_course_name(name):
                    found.append(self.normalize_course_name(name))
        return list(dict.fromkeys(found))

    def extract_course_name(self, text: str) -> str | None:
        candidates = self.extract_course_candidates(text)
        if candidates:
            logger.debug("course candidates=%s", candidates)
            return candidates[0]
        return None

    # other slot values

    def extract_time(self, text: str) -> time_parser.TimeToken | None:
        return time_parser.tokenize_time(text)

    def extract_date(self, text: str, today: date) -> str | None:
        return time_parser.parse_date(text, today)

    def extract_days_of_week(self, text: str) -> list[int]:
        return time_parser.parse_days_of_week(text)

    def extract_content(self, text: str) -> str | None:
        normalized = time_parser.normalize_text(text)
        for rule in _sorted_rules(rules.CONTENT_PATTERNS):
            match = rule.pattern.search(normalized)
            if match:
                value = match.group("value").strip(" ，,。.!！")
                if value:
                    return value
        return None

    def extract_reminder_note(self, text: str) -> str | None:
        match = rules.REMINDER_NOTE_PATTERN.search(time_parser.normalize_text(text))
        if not match:
            return None
        value = match.group("value").strip(" ，,。.!！")
        return value or None

    def extract_scope(self, text: str) -> str:
        normalized = time_parser.normalize_text(text)
        if any(word in normalized for word in rules.SCOPE_ALL_KEYWORDS):
            return "all"
        if any(word in normalized for word in rules.SCOPE_RECURRING_KEYWORDS):
            return "recurring"
        return "single"
