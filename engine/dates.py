"""
Natural-language date/time resolution (Spanish and English).

Two layers:
1. Spoken-phrase grammar (this module): relative days ("mañana",
   "pasado mañana", "el lunes", "tomorrow", "in 3 days") and clock times
   ("a las 10", "3 de la tarde", "3pm", "10:30", "noon").
2. dateparser: absolute and less common expressions ("20 de marzo",
   "March 20th", "10/20"). Hour certainty comes from RETURN_TIME_AS_PERIOD.

All results are forward-biased: an ambiguous date resolves to the future
relative to the reference instant. Everything here is pure.
"""
import logging
import os
import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Tuple

from dateparser.date import DateDataParser
from dateparser.search import search_dates

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"

# chrono-style implied hour for a date given without a time
IMPLIED_HOUR = 12


@dataclass(frozen=True)
class ParsedDateTime:
    iso: str
    human_readable: str
    has_time: bool


def get_business_timezone() -> tzinfo:
    """Timezone appointments are expressed in (RECEPTIONIST_TIMEZONE)."""
    name = os.getenv("RECEPTIONIST_TIMEZONE", DEFAULT_TIMEZONE)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown RECEPTIONIST_TIMEZONE '{name}', using {DEFAULT_TIMEZONE}")
        return ZoneInfo(DEFAULT_TIMEZONE)


def _lang(language) -> str:
    value = getattr(language, "value", language)
    return "en" if value == "en" else "es"


def normalize_text(text: str) -> str:
    """Lower-case, strip accents and collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return re.sub(r"\s+", " ", stripped).strip()


# =============================================================================
# SPOKEN-PHRASE GRAMMAR
# =============================================================================

_NUMBER_WORDS = {
    "una": 1, "un": 1, "uno": 1, "dos": 2, "tres": 3, "cuatro": 4, "cinco": 5,
    "seis": 6, "siete": 7, "ocho": 8, "nueve": 9, "diez": 10, "once": 11, "doce": 12,
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}
_NUM = r"(\d{1,2}|" + "|".join(sorted(_NUMBER_WORDS, key=len, reverse=True)) + r")"

_WEEKDAYS = {
    "lunes": 0, "martes": 1, "miercoles": 2, "jueves": 3, "viernes": 4, "sabado": 5, "domingo": 6,
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3, "friday": 4, "saturday": 5, "sunday": 6,
}

_MONTHS = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio", "julio", "agosto",
    "septiembre", "setiembre", "octubre", "noviembre", "diciembre",
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
)

_MERIDIAN_DOTS = re.compile(r"(\d)\s*([ap])\.?\s?m\.?(?![a-z])")
_MORNING = re.compile(r"\b(?:de|por|en) la manana\b|\bin the morning\b")
_AFTERNOON = re.compile(
    r"\b(?:de|por|en) la (?:tarde|noche)\b|\besta (?:tarde|noche)\b"
    r"|\bin the (?:afternoon|evening)\b|\bat night\b|\btonight\b"
)

_CLOCK = re.compile(r"\b(\d{1,2}):(\d{2})\b")
_HOUR_MERIDIAN = re.compile(r"\b(\d{1,2})\s*(am|pm)\b")
_HOUR_AFTER_PREPOSITION = re.compile(
    r"\b(?:a las|a la|sobre las|como a las|las|at|around|about)\s+" + _NUM
    + r"(?:\s+(?:y|and)\s+(media|cuarto|half))?\b"
)
_HOUR_WITH_QUALIFIER = re.compile(
    r"\b" + _NUM + r"\s+(?:de la (?:manana|tarde|noche)|in the (?:morning|afternoon|evening)"
    r"|o'?clock|en punto)\b"
)
_NOON = re.compile(r"\b(?:mediodia|noon|midday)\b")
_MIDNIGHT = re.compile(r"\b(?:medianoche|midnight)\b")

_DAY_AFTER_TOMORROW = re.compile(r"\bpasado manana\b|\bday after tomorrow\b")
_TOMORROW = re.compile(r"\bmanana\b|\btomorrow\b")
_TODAY = re.compile(r"\bhoy\b|\btoday\b|\btonight\b|\besta (?:tarde|noche)\b")
_IN_N_DAYS = re.compile(r"\b(?:en|in)\s+" + _NUM + r"\s+(?:dias?|days?)\b")
_WEEKDAY = re.compile(r"\b(" + "|".join(_WEEKDAYS) + r")\b")
_MONTH = re.compile(r"\b(" + "|".join(_MONTHS) + r")\b")


def _to_int(token: str) -> Optional[int]:
    if token.isdigit():
        return int(token)
    return _NUMBER_WORDS.get(token)


def _meridian(text: str) -> Optional[str]:
    match = _HOUR_MERIDIAN.search(text)
    if match:
        return match.group(2)
    if _AFTERNOON.search(text):
        return "pm"
    if _MORNING.search(text):
        return "am"
    return None


def _apply_meridian(hour: int, meridian: Optional[str]) -> int:
    if meridian == "pm" and hour < 12:
        return hour + 12
    if meridian == "am" and hour == 12:
        return 0
    # Bare 1-6 o'clock during business hours means the afternoon
    if meridian is None and 1 <= hour <= 6:
        return hour + 12
    return hour


def _extract_time(text: str) -> Optional[Tuple[Tuple[int, int], Tuple[int, int]]]:
    """
    Find a clock time in normalized text.

    Returns:
        ((hour, minute), (match_start, match_end)) or None
    """
    if _NOON.search(text):
        m = _NOON.search(text)
        return (12, 0), m.span()
    if _MIDNIGHT.search(text):
        m = _MIDNIGHT.search(text)
        return (0, 0), m.span()

    hour: Optional[int] = None
    minute = 0
    span: Tuple[int, int] = (0, 0)

    clock = _CLOCK.search(text)
    if clock:
        hour, minute = int(clock.group(1)), int(clock.group(2))
        span = clock.span()
    else:
        for pattern in (_HOUR_MERIDIAN, _HOUR_AFTER_PREPOSITION, _HOUR_WITH_QUALIFIER):
            m = pattern.search(text)
            if not m:
                continue
            hour = _to_int(m.group(1))
            span = m.span()
            if pattern is _HOUR_AFTER_PREPOSITION and m.group(2):
                minute = 15 if m.group(2) == "cuarto" else 30
            break

    if hour is None or not 0 <= hour <= 23 or not 0 <= minute <= 59:
        return None

    meridian = _meridian(text)
    # An explicit 24h clock ("15:00", "09:30") keeps its hour
    if clock and meridian is None and (hour >= 13 or clock.group(1).startswith("0")):
        return (hour, minute), span
    return (_apply_meridian(hour, meridian), minute), span


def _extract_day_offset(text: str, reference: date) -> Optional[int]:
    """Days from the reference date named by a relative phrase."""
    day_text = _MORNING.sub(" ", text)

    if _DAY_AFTER_TOMORROW.search(day_text):
        return 2
    if _TOMORROW.search(day_text):
        return 1
    if _TODAY.search(day_text):
        return 0

    in_days = _IN_N_DAYS.search(day_text)
    if in_days:
        value = _to_int(in_days.group(1))
        if value is not None:
            return value

    weekday = _WEEKDAY.search(day_text)
    if weekday:
        delta = (_WEEKDAYS[weekday.group(1)] - reference.weekday()) % 7
        return delta or 7

    return None


# =============================================================================
# DATEPARSER LAYER
# =============================================================================

_PERIOD_WORDS = re.compile(r"\b(?:semanas?|mes(?:es)?|weeks?|months?)\b")


def _has_date_anchor(text: str) -> bool:
    """
    True when the text carries something dateparser should read as a date:
    a digit, a weekday, a month name or a week/month period. English "may"
    alone is a modal verb, not a month.
    """
    normalized = normalize_text(text)
    if re.search(r"\d", normalized) or _WEEKDAY.search(normalized) or _PERIOD_WORDS.search(normalized):
        return True
    return any(m.group(1) != "may" for m in _MONTH.finditer(normalized))


def _grammar_parse(
    text: str, language: str, reference: datetime
) -> Optional[Tuple[datetime, bool]]:
    """Delegate to dateparser. Returns (naive datetime, hour_is_certain)."""
    if not _has_date_anchor(text):
        return None
    languages = [language, "en" if language == "es" else "es"]
    settings = {
        "PREFER_DATES_FROM": "future",
        "RELATIVE_BASE": reference.replace(tzinfo=None),
        "RETURN_TIME_AS_PERIOD": True,
    }
    try:
        parser = DateDataParser(languages=languages, settings=settings)
        data = parser.get_date_data(text)
        if data.date_obj is None:
            found = search_dates(text, languages=languages, settings=settings)
            anchored = [hit for hit, _ in found or [] if _has_date_anchor(hit)]
            if not anchored:
                return None
            data = parser.get_date_data(anchored[0])
            if data.date_obj is None:
                return None
    except (ValueError, TypeError, OverflowError) as e:
        logger.warning(f"dateparser could not handle '{text}': {e}")
        return None

    parsed = data.date_obj
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None)
    return parsed, data.period == "time"


# =============================================================================
# PUBLIC API
# =============================================================================

_WEEKDAY_NAMES = {
    "es": ["lunes", "martes", "miércoles", "jueves", "viernes", "sábado", "domingo"],
    "en": ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"],
}
_MONTH_NAMES = {
    "es": ["enero", "febrero", "marzo", "abril", "mayo", "junio", "julio", "agosto",
           "septiembre", "octubre", "noviembre", "diciembre"],
    "en": ["January", "February", "March", "April", "May", "June", "July", "August",
           "September", "October", "November", "December"],
}


def format_human_date(value: datetime, language, include_time: bool) -> str:
    """
    Long spoken form of a date, optionally with the time.

    Examples:
        es: "domingo, 18 de octubre de 2026 a las 10:00"
        en: "Sunday, October 18, 2026 at 10:00 AM"
    """
    lang = _lang(language)
    weekday = _WEEKDAY_NAMES[lang][value.weekday()]
    month = _MONTH_NAMES[lang][value.month - 1]

    if lang == "es":
        date_part = f"{weekday}, {value.day} de {month} de {value.year}"
        if not include_time:
            return date_part
        return f"{date_part} a las {value.hour:02d}:{value.minute:02d}"

    date_part = f"{weekday}, {month} {value.day}, {value.year}"
    if not include_time:
        return date_part
    hour12 = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{date_part} at {hour12:02d}:{value.minute:02d} {suffix}"


def _localize(reference: Optional[datetime]) -> datetime:
    tz = get_business_timezone()
    if reference is None:
        return datetime.now(tz)
    if reference.tzinfo is None:
        return reference.replace(tzinfo=tz)
    return reference.astimezone(tz)


def _result(value: datetime, language, has_time: bool) -> ParsedDateTime:
    return ParsedDateTime(
        iso=value.isoformat(),
        human_readable=format_human_date(value, language, has_time),
        has_time=has_time,
    )


def parse_date_time(
    text: str,
    language,
    reference: Optional[datetime] = None,
) -> Optional[ParsedDateTime]:
    """
    Resolve free text to an absolute, timezone-aware timestamp.

    Args:
        text: What the caller said ("mañana a las 3", "next Monday at 2 PM")
        language: "es" or "en" (Language enum accepted)
        reference: Instant relative phrases are anchored to (default: now)

    Returns:
        ParsedDateTime, or None when no date or time could be found
    """
    if not text or not text.strip():
        return None

    ref = _localize(reference)
    tz = ref.tzinfo
    lang = _lang(language)
    normalized = _MERIDIAN_DOTS.sub(r"\1 \2m", normalize_text(text))

    found_time = _extract_time(normalized)
    offset = _extract_day_offset(normalized, ref.date())

    if offset is not None:
        day = ref.date() + timedelta(days=offset)
        if found_time:
            (hour, minute), _ = found_time
            value = datetime.combine(day, time(hour, minute), tzinfo=tz)
            return _result(value, lang, True)
        value = datetime.combine(day, time(IMPLIED_HOUR, 0), tzinfo=tz)
        return _result(value, lang, False)

    if found_time:
        (hour, minute), (start, end) = found_time
        remainder = (normalized[:start] + " " + normalized[end:]).strip()
        day = ref.date()
        if remainder and (_MONTH.search(remainder) or re.search(r"\d", remainder)):
            grammar = _grammar_parse(remainder, lang, ref)
            if grammar:
                day = grammar[0].date()
        value = datetime.combine(day, time(hour, minute), tzinfo=tz)
        if value <= ref and day == ref.date():
            value += timedelta(days=1)
        return _result(value, lang, True)

    grammar = _grammar_parse(text, lang, ref)
    if grammar is None:
        return None
    parsed, has_time = grammar
    if not has_time:
        parsed = parsed.replace(hour=IMPLIED_HOUR, minute=0)
    value = parsed.replace(second=0, microsecond=0, tzinfo=tz)
    return _result(value, lang, has_time)


_DIRECT_TIME = re.compile(r"^(\d{1,2}):?(\d{2})?\s*(am|pm)?$")


def _parse_direct_time(text: str) -> Optional[Tuple[int, int]]:
    """Bare "10", "10:30", "3 pm", "15:00" once filler words are removed."""
    cleaned = _MERIDIAN_DOTS.sub(r"\1 \2m", normalize_text(text))
    cleaned = re.sub(r"\b(?:a las|a la|at)\b", " ", cleaned)
    cleaned = re.sub(r"\bde la manana\b", "am", cleaned)
    cleaned = re.sub(r"\bde la (?:tarde|noche)\b", "pm", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()

    match = _DIRECT_TIME.match(cleaned)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2)) if match.group(2) else 0
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        return None
    if hour >= 13:
        return hour, minute
    return _apply_meridian(hour, match.group(3)), minute


def merge_time(
    existing_iso: str,
    time_text: str,
    language,
) -> Optional[ParsedDateTime]:
    """
    Overlay a separately spoken time onto a previously parsed date.

    Only the time-of-day changes; the calendar date of existing_iso is kept.
    """
    existing = _localize(datetime.fromisoformat(existing_iso.replace("Z", "+00:00")))
    lang = _lang(language)

    hour_minute: Optional[Tuple[int, int]] = None
    parsed = parse_date_time(
        time_text, lang, reference=existing.replace(hour=0, minute=0, second=0, microsecond=0)
    )
    if parsed is not None and parsed.has_time:
        parsed_value = datetime.fromisoformat(parsed.iso)
        hour_minute = (parsed_value.hour, parsed_value.minute)
    else:
        hour_minute = _parse_direct_time(time_text)

    if hour_minute is None:
        return None

    merged = existing.replace(
        hour=hour_minute[0], minute=hour_minute[1], second=0, microsecond=0
    )
    return _result(merged, lang, True)
