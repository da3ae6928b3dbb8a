"""
Field extraction logic.

This module interprets caller utterances for the current step.
It uses a tiered approach:
1. Tier A (LLM adapter): the model returns a spoken reply plus structured
   fields, decoded once here into a tagged Extracted result
2. Tier B (Deterministic): accent-insensitive keyword rules that cover every
   decision the model can make, used when the model is unreachable or
   returns no usable field

The LLM is advisory only. The dispatcher never depends on it to advance.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from agents.specs import StepContext, build_step_context
from app.llm_service import LLMService, LLMUnavailableError
from app.models import (
    ALLOWED_DURATIONS,
    AppointmentType,
    ConversationState,
    ConversationStep,
    Language,
)
from app.prompts import build_step_system_prompt

from .dates import normalize_text

logger = logging.getLogger(__name__)

# Raw model text shorter than this is spoken as-is when it is not JSON
MAX_RAW_REPLY_CHARS = 500


# =============================================================================
# EXTRACTION RESULT TYPES
# =============================================================================

@dataclass(frozen=True)
class Field:
    """The model produced at least one usable structured field."""
    values: Dict[str, Any]
    reply: str = ""
    kind: str = "field"


@dataclass(frozen=True)
class OffTopic:
    """The model answered, but without the field the step needs."""
    reply: str
    kind: str = "offtopic"


@dataclass(frozen=True)
class Unavailable:
    """No model reachable, or nothing usable came back."""
    kind: str = "unavailable"


Extracted = Union[Field, OffTopic, Unavailable]

UNAVAILABLE = Unavailable()


@dataclass
class LlmExtraction:
    """Undecoded model output: the reply to speak and the loose data map."""
    reply: str
    data: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# TIER B: DETERMINISTIC RULES
# =============================================================================

def _earliest(text: str, table: List[Tuple[str, Any]]) -> Optional[Any]:
    """Value of the phrase that occurs first in text (whole-word match)."""
    best: Optional[Tuple[int, int, Any]] = None
    for phrase, value in table:
        match = re.search(r"(?<![a-z0-9])" + re.escape(phrase) + r"(?![a-z0-9])", text)
        if match is None:
            continue
        # Earliest wins; on a tie, the longer phrase
        candidate = (match.start(), -len(phrase), value)
        if best is None or candidate[:2] < best[:2]:
            best = candidate
    return best[2] if best else None


_LANGUAGE_WORDS: List[Tuple[str, Language]] = [
    ("1", Language.ES), ("uno", Language.ES), ("one", Language.ES),
    ("espanol", Language.ES), ("spanish", Language.ES), ("castellano", Language.ES),
    ("2", Language.EN), ("dos", Language.EN), ("two", Language.EN),
    ("english", Language.EN), ("ingles", Language.EN),
]


def detect_language(text: str) -> Optional[Language]:
    """Menu choice: "1"/"español" → es, "2"/"english" → en."""
    return _earliest(normalize_text(text), _LANGUAGE_WORDS)


_TYPE_STEMS: List[Tuple[str, AppointmentType]] = [
    ("cotiz", AppointmentType.QUOTE),
    ("presupuest", AppointmentType.QUOTE),
    ("precio", AppointmentType.QUOTE),
    ("estimad", AppointmentType.QUOTE),
    ("quote", AppointmentType.QUOTE),
    ("estimate", AppointmentType.QUOTE),
    ("pricing", AppointmentType.QUOTE),
    ("instal", AppointmentType.INSTALLATION),
    ("install", AppointmentType.INSTALLATION),
    ("colocar", AppointmentType.INSTALLATION),
    ("repar", AppointmentType.REPAIR),
    ("arregl", AppointmentType.REPAIR),
    ("repair", AppointmentType.REPAIR),
    ("fix", AppointmentType.REPAIR),
    ("broken", AppointmentType.REPAIR),
    ("danad", AppointmentType.REPAIR),
]


def detect_appointment_type(text: str) -> Optional[AppointmentType]:
    """Substring match on type stems; the stem mentioned first wins."""
    normalized = normalize_text(text)
    best: Optional[Tuple[int, AppointmentType]] = None
    for stem, value in _TYPE_STEMS:
        pos = normalized.find(stem)
        if pos >= 0 and (best is None or pos < best[0]):
            best = (pos, value)
    return best[1] if best else None


_YES_NO: List[Tuple[str, bool]] = [
    ("si", True), ("claro", True), ("correcto", True), ("exacto", True),
    ("asi es", True), ("eso es", True), ("por supuesto", True), ("de acuerdo", True),
    ("esta bien", True), ("vale", True), ("perfecto", True), ("confirmo", True),
    ("adelante", True), ("afirmativo", True), ("soy yo", True),
    ("ok", True), ("okay", True), ("yes", True), ("yeah", True), ("yep", True),
    ("yup", True), ("sure", True), ("correct", True), ("right", True),
    ("absolutely", True), ("of course", True), ("sounds good", True),
    ("fine", True), ("alright", True), ("all right", True), ("that's me", True),
    ("no", False), ("nope", False), ("nah", False), ("negativo", False),
    ("incorrecto", False), ("para nada", False), ("wrong", False),
    ("cancel", False), ("cancelar", False), ("not me", False), ("no soy", False),
]


def detect_yes_no(text: str) -> Optional[bool]:
    """
    Yes/no keyword detection in Spanish and English.

    Returns:
        True, False, or None if not determinable
    """
    return _earliest(normalize_text(text), _YES_NO)


_DURATION_PHRASES: List[Tuple[str, List[str]]] = [
    ("01:30:00", [
        "hora y media", "1.5", "1:30", "noventa", "90",
        "hour and a half", "hour and half", "one and a half", "an hour thirty",
    ]),
    ("00:30:00", [
        "media hora", "30 min", "treinta", "half an hour", "half hour", "30",
        "thirty",
    ]),
    ("02:00:00", [
        "dos horas", "2 horas", "two hours", "2 hours", "2 hrs", "120",
    ]),
    ("01:00:00", [
        "una hora", "1 hora", "one hour", "an hour", "1 hour", "sesenta", "60",
    ]),
]


def detect_duration(text: str) -> Optional[str]:
    """
    Duration in HH:MM:SS from a spoken phrase.

    Checked longest-first so "hora y media" is not read as "media hora".
    Plain agreement ("ok", "está bien") accepts the standard hour.
    """
    normalized = normalize_text(text)
    for duration, phrases in _DURATION_PHRASES:
        for phrase in phrases:
            if re.search(r"(?<![a-z0-9.:])" + re.escape(phrase) + r"(?![a-z0-9])", normalized):
                return duration
    if detect_yes_no(normalized) is True:
        return "01:00:00"
    return None


_ORDINALS: List[Tuple[str, int]] = [
    ("primero", 1), ("primera", 1), ("uno", 1), ("first", 1), ("one", 1),
    ("segundo", 2), ("segunda", 2), ("dos", 2), ("second", 2), ("two", 2),
    ("tercero", 3), ("tercera", 3), ("tres", 3), ("third", 3), ("three", 3),
    ("cuarto", 4), ("cuarta", 4), ("cuatro", 4), ("fourth", 4), ("four", 4),
    ("quinto", 5), ("quinta", 5), ("cinco", 5), ("fifth", 5), ("five", 5),
]


def detect_choice_number(text: str) -> Optional[int]:
    """1-based option number from digits or spoken ordinals."""
    normalized = normalize_text(text)
    digits = re.search(r"(?<![\d])(\d{1,2})(?![\d])", normalized)
    if digits:
        return int(digits.group(1))
    return _earliest(normalized, _ORDINALS)


_NAME_PREFIXES = re.compile(
    r"^(?:(?:hola|buenas|buenos dias|buenas tardes|hello|hi)[,.]?\s+)?"
    r"(?:me llamo|mi nombre es|soy|habla|my name is|this is|i am|i'm|it's|its)\s+",
    re.IGNORECASE,
)


def clean_search_term(text: str) -> str:
    """Drop self-introduction filler ("me llamo", "my name is") and punctuation."""
    term = _NAME_PREFIXES.sub("", text.strip())
    return term.strip(" .,!?¿¡")


def split_full_name(text: str) -> Optional[Tuple[str, str]]:
    """
    Split a spoken full name into (first_name, last_name).

    Returns:
        None if fewer than two words were given
    """
    words = [w for w in re.split(r"\s+", clean_search_term(text)) if w]
    if len(words) < 2:
        return None
    return words[0].title(), " ".join(words[1:]).title()


# =============================================================================
# TIER A: LLM ADAPTER
# =============================================================================

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_structured_response(content: str) -> Optional[LlmExtraction]:
    """
    Decode a model answer into reply + data.

    Tolerates fenced code blocks and prose around the JSON: the first JSON
    object carrying a string "reply" wins. Short non-JSON text becomes the
    reply with empty data.

    Returns:
        LlmExtraction, or None when nothing usable was found
    """
    trimmed = (content or "").strip()
    if not trimmed:
        return None

    cleaned = _FENCE.sub("", trimmed).strip()
    decoder = json.JSONDecoder()
    for start in [i for i, ch in enumerate(cleaned) if ch == "{"]:
        try:
            parsed, _ = decoder.raw_decode(cleaned[start:])
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict) and isinstance(parsed.get("reply"), str):
            data = parsed.get("data")
            return LlmExtraction(
                reply=parsed["reply"],
                data=data if isinstance(data, dict) else {},
            )

    if len(trimmed) < MAX_RAW_REPLY_CHARS:
        return LlmExtraction(reply=trimmed, data={})

    logger.warning(f"[EXTRACT] Unparseable model output ({len(trimmed)} chars)")
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "si", "sí"):
            return True
        if lowered in ("false", "no"):
            return False
    return None


def _as_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip() and value.strip().lower() != "null":
        return value.strip()
    return None


def decode_fields(step: ConversationStep, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and coerce the loose model data for a step.

    Returns:
        Only the usable fields, under engine names (empty if none)
    """
    values: Dict[str, Any] = {}

    if step in (ConversationStep.ASK_TYPE, ConversationStep.GREETING):
        type_value = _as_int(data.get("appointmentType"))
        if type_value in (0, 1, 2):
            values["type"] = AppointmentType(type_value)
        if step == ConversationStep.GREETING and _as_bool(data.get("wantsAppointment")) is True:
            values["wants_appointment"] = True

    elif step == ConversationStep.ASK_DATE:
        text = _as_text(data.get("dateText"))
        if text:
            values["date_text"] = text

    elif step == ConversationStep.ASK_TIME:
        text = _as_text(data.get("timeText"))
        if text:
            values["time_text"] = text

    elif step == ConversationStep.ASK_DURATION:
        duration = _as_text(data.get("duration"))
        if duration in ALLOWED_DURATIONS:
            values["duration"] = duration

    elif step in (ConversationStep.CONFIRM_SUMMARY, ConversationStep.CONFIRM_CUSTOMER_IDENTITY):
        confirmed = _as_bool(data.get("confirmed"))
        if confirmed is not None:
            values["confirmed"] = confirmed

    elif step == ConversationStep.DISAMBIGUATE_CUSTOMER:
        choice = _as_int(data.get("choiceNumber"))
        if choice is not None and choice >= 1:
            values["choice_number"] = choice
        name = _as_text(data.get("nameSpoken"))
        if name:
            values["name_spoken"] = name

    elif step == ConversationStep.ASK_CUSTOMER_NAME:
        query = _as_text(data.get("searchQuery"))
        if query:
            values["search_query"] = query

    return values


class FieldExtractor:
    """LLM-backed interpretation of one caller utterance for one step."""

    def __init__(self, llm: LLMService, business_name: Optional[str] = None):
        self.llm = llm
        self.business_name = business_name or os.getenv("BUSINESS_NAME", "BlindsBook")

    async def process_step(
        self,
        state: ConversationState,
        utterance: str,
        ctx: StepContext,
    ) -> Optional[LlmExtraction]:
        """
        Ask the model for a reply plus structured fields.

        Returns:
            LlmExtraction, or None if no model is reachable
        """
        if not await self.llm.is_available():
            return None

        messages = [
            {
                "role": "system",
                "content": build_step_system_prompt(state.language, ctx, self.business_name),
            },
            {"role": "user", "content": utterance},
        ]
        try:
            result = await self.llm.chat(messages)
        except LLMUnavailableError as e:
            logger.warning(f"[EXTRACT] call={state.call_id} step={ctx.step.value} LLM unavailable: {e}")
            return None

        logger.debug(f"[EXTRACT] call={state.call_id} raw={result.content[:200]!r}")
        return parse_structured_response(result.content)

    async def extract(
        self,
        state: ConversationState,
        utterance: str,
        ctx: StepContext,
    ) -> Extracted:
        """Interpret the utterance and decode it into a tagged result."""
        raw = await self.process_step(state, utterance, ctx)
        if raw is None:
            return UNAVAILABLE

        values = decode_fields(ctx.step, raw.data)
        if values:
            logger.info(
                f"[EXTRACT] call={state.call_id} step={ctx.step.value} "
                f"kind=field fields={sorted(values)}"
            )
            return Field(values=values, reply=raw.reply.strip())

        if raw.reply.strip():
            logger.info(f"[EXTRACT] call={state.call_id} step={ctx.step.value} kind=offtopic")
            return OffTopic(reply=raw.reply.strip())

        return UNAVAILABLE

    async def interpret(
        self,
        state: ConversationState,
        utterance: str,
        rule: Callable[[str], Optional[Dict[str, Any]]],
        extra: Optional[str] = None,
    ) -> Extracted:
        """
        Model first, deterministic rule second.

        Args:
            state: State whose step is being answered
            utterance: What the caller said
            rule: Deterministic interpretation returning engine fields or None
            extra: Turn-specific prompt context

        Returns:
            Field from the model or the rule; otherwise the model's OffTopic
            reply; Unavailable when neither produced anything
        """
        ctx = build_step_context(state, extra)
        extracted: Extracted = UNAVAILABLE
        if ctx is not None:
            extracted = await self.extract(state, utterance, ctx)
            if isinstance(extracted, Field):
                return extracted

        values = rule(utterance)
        if values:
            logger.info(
                f"[EXTRACT] call={state.call_id} step={state.step.value} "
                f"kind=rule fields={sorted(values)}"
            )
            return Field(values=values)
        return extracted
