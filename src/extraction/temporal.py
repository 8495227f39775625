"""Resolution of relative and absolute date/time expressions in Spanish and English.

All resolution happens against an explicit reference timestamp in a given
timezone, so results are deterministic for a fixed input. Each resolver
returns ``None`` instead of raising when nothing valid is found.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo

from dateutil.relativedelta import FR, MO, SA, SU, TH, TU, WE, relativedelta

WEEKDAYS = {
    "monday": MO,
    "lunes": MO,
    "tuesday": TU,
    "martes": TU,
    "wednesday": WE,
    "miércoles": WE,
    "miercoles": WE,
    "thursday": TH,
    "jueves": TH,
    "friday": FR,
    "viernes": FR,
    "saturday": SA,
    "sábado": SA,
    "sabado": SA,
    "sunday": SU,
    "domingo": SU,
}
MONTHS = {
    "enero": 1,
    "ene": 1,
    "january": 1,
    "jan": 1,
    "febrero": 2,
    "feb": 2,
    "february": 2,
    "marzo": 3,
    "march": 3,
    "abril": 4,
    "abr": 4,
    "april": 4,
    "apr": 4,
    "mayo": 5,
    "may": 5,
    "junio": 6,
    "jun": 6,
    "june": 6,
    "julio": 7,
    "jul": 7,
    "july": 7,
    "agosto": 8,
    "ago": 8,
    "august": 8,
    "aug": 8,
    "septiembre": 9,
    "setiembre": 9,
    "sept": 9,
    "sep": 9,
    "september": 9,
    "octubre": 10,
    "oct": 10,
    "october": 10,
    "noviembre": 11,
    "nov": 11,
    "november": 11,
    "diciembre": 12,
    "dic": 12,
    "december": 12,
    "dec": 12,
}
MEAL_MINUTES = {
    "desayuno": 45,
    "breakfast": 45,
    "almuerzo": 60,
    "comida": 60,
    "lunch": 60,
    "cena": 90,
    "dinner": 90,
    "merienda": 30,
    "snack": 30,
}

_MONTH_ALT = "|".join(sorted(MONTHS, key=len, reverse=True))
_WEEKDAY_ALT = "|".join(sorted(WEEKDAYS, key=len, reverse=True))
_MERIDIEM = r"([ap]\.?m\.?(?![a-záéíóúñ]))"

_DAY_MONTH = re.compile(
    rf"\b(\d{{1,2}})(?:\s+de)?\s+({_MONTH_ALT})\b\.?(?:\s+(?:de(?:l)?\s+)?(\d{{4}}))?",
    re.IGNORECASE,
)
_MONTH_DAY = re.compile(
    rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?\b(?:,?\s+(\d{{4}}))?",
    re.IGNORECASE,
)
_ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_NUMERIC_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")
_DAY_OF_MONTH = re.compile(
    r"\bel\s+(?:d[ií]a\s+)?(\d{1,2})\b(?![:.,/]\d)(?!\s*(?:%|pesos|mxn|usd|mil\b|horas?\b|min))",
    re.IGNORECASE,
)
_DAY_AFTER_TOMORROW = re.compile(r"\bpasado\s+mañana\b|\bday\s+after\s+tomorrow\b", re.IGNORECASE)
_TOMORROW = re.compile(r"(?<!la )(?<!por )\bmañana\b|\btomorrow\b", re.IGNORECASE)
_TODAY = re.compile(r"\bhoy\b|\btoday\b|\btonight\b|\besta\s+noche\b", re.IGNORECASE)
_IN_DAYS = re.compile(r"\b(?:en|in)\s+(\d{1,2})\s+(?:días|dias|days)\b", re.IGNORECASE)
_WEEKDAY = re.compile(
    rf"\b(?:(next|this|on|próximo|proximo|este|el)\s+)?({_WEEKDAY_ALT})\b",
    re.IGNORECASE,
)

_TIME_RANGE = re.compile(
    rf"(?:\bde\s+las?\s+|\bfrom\s+|\bentre\s+las?\s+)?\b(\d{{1,2}})(?::(\d{{2}}))?\s*{_MERIDIEM}?"
    rf"\s*(?:-|–|\ba\s+las?\b|\bto\b|\bhasta\s+las?\b|\by\s+las?\b)\s*"
    rf"(\d{{1,2}})(?::(\d{{2}}))?\s*{_MERIDIEM}?",
    re.IGNORECASE,
)
_CLOCK = re.compile(rf"\b(\d{{1,2}}):(\d{{2}})\s*{_MERIDIEM}?", re.IGNORECASE)
_AT_HOUR = re.compile(
    rf"(?:\ba\s+las?|\bat|@)\s*(\d{{1,2}})(?::(\d{{2}}))?\s*{_MERIDIEM}?", re.IGNORECASE
)
_RANGE_A_LAS = re.compile(r"\ba\s+las?\b", re.IGNORECASE)
_DAY_NUMBER_BEFORE = re.compile(r"\b(?:el|d[ií]a|the|on)\s*$", re.IGNORECASE)
_HOUR_MERIDIEM = re.compile(rf"\b(\d{{1,2}})\s*{_MERIDIEM}", re.IGNORECASE)
_NOON = re.compile(r"\bmediod[ií]a\b|\bnoon\b", re.IGNORECASE)
_MIDNIGHT = re.compile(r"\bmedianoche\b|\bmidnight\b", re.IGNORECASE)
_PM_WORDS = re.compile(
    r"^\s*(?:de\s+la\s+(?:tarde|noche)|in\s+the\s+(?:afternoon|evening)|at\s+night)", re.IGNORECASE
)
_AM_WORDS = re.compile(r"^\s*(?:de\s+la\s+mañana|in\s+the\s+morning)", re.IGNORECASE)

_DURATION_HOURS = re.compile(r"\b(\d+(?:[.,]\d+)?)\s*(?:horas?|hours?|hrs?|h)\b", re.IGNORECASE)
_DURATION_MINUTES = re.compile(r"\b(\d+)\s*(?:minutos?|minutes?|mins?)\b", re.IGNORECASE)
_HALF_HOUR = re.compile(r"\bmedia\s+hora\b|\bhalf\s+an?\s+hour\b", re.IGNORECASE)
_ONE_HOUR = re.compile(r"\buna\s+hora\b|\ban\s+hour\b", re.IGNORECASE)

# Hours without a meridiem below this are read as afternoon ("a las 3" -> 15:00).
_IMPLICIT_PM_BEFORE = 8


@dataclass(frozen=True)
class DateMatch:
    value: date
    span: tuple[int, int]


@dataclass(frozen=True)
class TimeMatch:
    hour: int
    minute: int
    span: tuple[int, int]
    end_hour: int | None = None
    end_minute: int | None = None

    @property
    def is_range(self) -> bool:
        return self.end_hour is not None


def resolve_date(
    text: str,
    reference: datetime,
    *,
    language: str = "en",
    prefer_future: bool = True,
) -> DateMatch | None:
    """Resolve the first date expression in ``text`` relative to ``reference``.

    Absolute dates without a year use the reference year; with
    ``prefer_future`` a date already past rolls over to the next year.
    """
    today = reference.date()

    match = _ISO_DATE.search(text)
    if match:
        value = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if value is not None:
            return DateMatch(value, match.span())

    for pattern, day_group, month_group in ((_DAY_MONTH, 1, 2), (_MONTH_DAY, 2, 1)):
        match = pattern.search(text)
        if not match:
            continue
        month = MONTHS.get(match.group(month_group).lower().rstrip("."))
        if month is None:
            continue
        value = _with_year(int(match.group(day_group)), month, match.group(3), today, prefer_future)
        if value is not None:
            return DateMatch(value, match.span())

    match = _NUMERIC_DATE.search(text)
    if match:
        first, second = int(match.group(1)), int(match.group(2))
        day, month = (first, second) if language == "es" else (second, first)
        value = _with_year(day, month, match.group(3), today, prefer_future)
        if value is not None:
            return DateMatch(value, match.span())

    match = _DAY_OF_MONTH.search(text) if language == "es" else None
    if match:
        day = int(match.group(1))
        value = _safe_date(today.year, today.month, day)
        if value is not None and prefer_future and value < today:
            following = today + relativedelta(months=1)
            value = _safe_date(following.year, following.month, day)
        if value is not None:
            return DateMatch(value, match.span())

    match = _DAY_AFTER_TOMORROW.search(text)
    if match:
        return DateMatch(today + relativedelta(days=2), match.span())

    match = _TOMORROW.search(text)
    if match:
        return DateMatch(today + relativedelta(days=1), match.span())

    match = _TODAY.search(text)
    if match:
        return DateMatch(today, match.span())

    match = _IN_DAYS.search(text)
    if match:
        return DateMatch(today + relativedelta(days=int(match.group(1))), match.span())

    match = _WEEKDAY.search(text)
    if match:
        qualifier = (match.group(1) or "").lower()
        weekday = WEEKDAYS[match.group(2).lower()]
        if qualifier in ("this", "este"):
            value = today + relativedelta(weekday=weekday(+1))
        else:
            value = today + relativedelta(days=1, weekday=weekday(+1))
        return DateMatch(value, match.span())

    return None


def resolve_time(text: str) -> TimeMatch | None:
    """Resolve the first valid clock time (or time range) in ``text``."""
    for match in _TIME_RANGE.finditer(text):
        # A bare "N-M" pair needs a meridiem somewhere to count as a time range.
        if not (match.group(3) or match.group(6) or _has_time_prefix(text, match.start())):
            continue
        prefixed = match.start(1) > match.start()
        if not prefixed and _DAY_NUMBER_BEFORE.search(text[: match.start(1)]):
            # "el 7 a las 3 pm": the first number is a day of the month
            continue
        start_token_end = max(match.end(group) for group in (1, 2, 3) if match.group(group))
        separator = text[start_token_end : match.start(4)]
        if _RANGE_A_LAS.search(separator) and not (prefixed or match.group(3)):
            continue
        end_meridiem = match.group(6) or _period_after(text, match.end())
        start_meridiem = match.group(3) or end_meridiem
        start = _to_clock(match.group(1), match.group(2), start_meridiem)
        end = _to_clock(match.group(4), match.group(5), end_meridiem)
        if start is None or end is None:
            continue
        if end <= start and not match.group(3):
            # "de 11 a 1 pm": the start sits before noon
            start = _to_clock(match.group(1), match.group(2), "am")
            if start is None or end <= start:
                continue
        return TimeMatch(start[0], start[1], match.span(), end[0], end[1])

    for pattern in (_CLOCK, _AT_HOUR, _HOUR_MERIDIEM):
        for match in pattern.finditer(text):
            groups = match.groups()
            if pattern is _HOUR_MERIDIEM:
                hour_text, minute_text, meridiem = groups[0], None, groups[1]
            else:
                hour_text, minute_text, meridiem = groups[0], groups[1], groups[2]
            meridiem = meridiem or _period_after(text, match.end())
            clock = _to_clock(
                hour_text,
                minute_text,
                meridiem,
                implicit_pm=pattern is _AT_HOUR,
            )
            if clock is not None:
                return TimeMatch(clock[0], clock[1], match.span())

    match = _NOON.search(text)
    if match:
        return TimeMatch(12, 0, match.span())
    match = _MIDNIGHT.search(text)
    if match:
        return TimeMatch(0, 0, match.span())
    return None


def resolve_duration(text: str) -> int | None:
    """Return an explicit duration in minutes, if the text states one."""
    match = _DURATION_HOURS.search(text)
    if match:
        hours = float(match.group(1).replace(",", "."))
        if 0 < hours <= 24:
            return int(round(hours * 60))
    match = _DURATION_MINUTES.search(text)
    if match:
        minutes = int(match.group(1))
        if 0 < minutes <= 24 * 60:
            return minutes
    if _HALF_HOUR.search(text):
        return 30
    if _ONE_HOUR.search(text):
        return 60
    return None


def meal_duration(text: str) -> int | None:
    """Return the customary duration of a meal mentioned in the text."""
    lowered = text.lower()
    for word, minutes in MEAL_MINUTES.items():
        if re.search(rf"\b{word}\b", lowered):
            return minutes
    return None


def combine(day: date, hour: int, minute: int, tz: tzinfo) -> datetime | None:
    """Build an aware datetime, returning None for impossible values."""
    try:
        return datetime.combine(day, time(hour, minute), tzinfo=tz)
    except ValueError:
        return None


def _with_year(
    day: int, month: int, year_text: str | None, today: date, prefer_future: bool
) -> date | None:
    if year_text:
        year = int(year_text)
        if year < 100:
            year += 2000
        return _safe_date(year, month, day)
    value = _safe_date(today.year, month, day)
    if value is not None and prefer_future and value < today:
        value = _safe_date(today.year + 1, month, day)
    return value


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _normalize_meridiem(value: str | None) -> str | None:
    if not value:
        return None
    letters = re.sub(r"[^apm]", "", value.lower())
    if letters.startswith("p"):
        return "pm"
    if letters.startswith("a"):
        return "am"
    return None


def _period_after(text: str, position: int) -> str | None:
    tail = text[position : position + 30]
    if _PM_WORDS.match(tail):
        return "pm"
    if _AM_WORDS.match(tail):
        return "am"
    return None


def _has_time_prefix(text: str, position: int) -> bool:
    head = text[max(0, position - 12) : position + 12].lower()
    return bool(re.search(r"\b(?:de\s+las?|entre\s+las?|from)\b", head))


def _to_clock(
    hour_text: str,
    minute_text: str | None,
    meridiem: str | None,
    *,
    implicit_pm: bool = False,
) -> tuple[int, int] | None:
    hour = int(hour_text)
    minute = int(minute_text) if minute_text else 0
    period = _normalize_meridiem(meridiem)
    if minute > 59:
        return None
    if period is not None:
        if not 1 <= hour <= 12:
            return None
        if period == "pm" and hour != 12:
            hour += 12
        elif period == "am" and hour == 12:
            hour = 0
        return hour, minute
    if hour > 23:
        return None
    if implicit_pm and 1 <= hour < _IMPLICIT_PM_BEFORE:
        hour += 12
    return hour, minute
