"""
What the receptionist says when a step is entered, re-entered, or needs a
clarification.

Everything here is a pure function of the conversation state, so asking
for the same step twice yields the same words.
"""
from datetime import datetime
from typing import List, Optional

from agents.replies import duration_label, reply, type_label, variant_seed
from app.models import ConversationState, ConversationStep, CustomerMatch, Language

from .dates import format_human_date

# Numbered options read out during disambiguation
DISPLAYED_CANDIDATES = 3


def spoken_date(state: ConversationState) -> str:
    if not state.start_date_iso:
        return ""
    value = datetime.fromisoformat(state.start_date_iso)
    return format_human_date(value, state.language, state.date_has_time)


def candidate_options(matches: List[CustomerMatch], language: Language) -> str:
    """Numbered list of the first candidates, read out to the caller."""
    parts = []
    for i, match in enumerate(matches[:DISPLAYED_CANDIDATES], start=1):
        label = f"{i}. {match.display_name}"
        if match.phone:
            suffix = "phone ending in" if language == Language.EN else "teléfono terminado en"
            label += f", {suffix} {match.phone[-4:]}"
        parts.append(label)
    return "; ".join(parts)


def _phone_hint(match: CustomerMatch, language: Language) -> str:
    if not match.phone:
        return ""
    if language == Language.EN:
        return f", with a phone ending in {match.phone[-4:]}"
    return f", con teléfono terminado en {match.phone[-4:]}"


def _last_agent_reply(state: ConversationState) -> Optional[str]:
    for message in reversed(state.llm_conversation_history):
        if message.role == "assistant" and message.content.strip():
            return message.content.strip()
    return None


def opening_prompt(state: ConversationState, business_name: str) -> str:
    """The line that opens (or re-opens) the state's current step."""
    lang = state.language
    seed = variant_seed(state)
    step = state.step

    if step == ConversationStep.ASK_LANGUAGE:
        return reply("ask_language", lang, business=business_name)

    if step == ConversationStep.IDENTIFY_BY_CALLER_ID:
        return reply("ask_customer_name", lang)

    if step == ConversationStep.ASK_CUSTOMER_NAME:
        key = "ask_customer_name_retry" if state.identification_attempts else "ask_customer_name"
        return reply(key, lang, seed)

    if step == ConversationStep.CONFIRM_CUSTOMER_IDENTITY:
        match = state.customer_matches[0]
        return reply(
            "confirm_identity", lang, name=match.display_name, phone_hint=_phone_hint(match, lang)
        )

    if step == ConversationStep.DISAMBIGUATE_CUSTOMER:
        return reply("disambiguate", lang, options=candidate_options(state.customer_matches, lang))

    if step == ConversationStep.LLM_FALLBACK:
        if state.manual_registration:
            return reply("manual_registration", lang)
        return _last_agent_reply(state) or reply("agent_reask", lang)

    if step == ConversationStep.GREETING:
        return reply(
            "greeting", lang, seed,
            name=state.customer_confirmed_name or "", business=business_name,
        )

    if step == ConversationStep.ASK_TYPE:
        return reply("ask_type", lang)

    ack = reply("ack", lang, seed)

    if step == ConversationStep.ASK_DATE:
        return reply("ask_date", lang, ack=ack, type=type_label(state.type, lang))

    if step == ConversationStep.ASK_TIME:
        return reply("ask_time", lang, ack=ack, date=spoken_date(state))

    if step == ConversationStep.ASK_DURATION:
        return reply("ask_duration", lang, ack=ack, date=spoken_date(state))

    if step == ConversationStep.CONFIRM_SUMMARY:
        return summary_prompt(state)

    if step == ConversationStep.CREATING_APPOINTMENT:
        return reply("creating_appointment", lang)

    goodbye = reply("goodbye", lang, seed)
    if step == ConversationStep.COMPLETED:
        return reply("completed_closing", lang, goodbye=goodbye)

    return reply("transfer", lang)


def summary_prompt(state: ConversationState) -> str:
    lang = state.language
    return reply(
        "confirm_summary",
        lang,
        type=type_label(state.type, lang),
        name=state.customer_confirmed_name or "",
        date=spoken_date(state),
        duration=duration_label(state.duration, lang),
    )


_RETRY_KEYS = {
    ConversationStep.ASK_LANGUAGE: "ask_language_retry",
    ConversationStep.CONFIRM_CUSTOMER_IDENTITY: "confirm_identity_retry",
    ConversationStep.ASK_TYPE: "ask_type_retry",
    ConversationStep.GREETING: "ask_type_retry",
    ConversationStep.ASK_DATE: "ask_date_retry",
    ConversationStep.ASK_TIME: "ask_time_retry",
    ConversationStep.ASK_DURATION: "ask_duration_retry",
    ConversationStep.CONFIRM_SUMMARY: "confirm_summary_retry",
}


def retry_prompt(state: ConversationState, business_name: str) -> str:
    """Re-ask after an answer that could not be interpreted."""
    key = _RETRY_KEYS.get(state.step)
    if key is None:
        return opening_prompt(state, business_name)
    if key == "confirm_identity_retry":
        return reply(key, state.language, name=state.customer_matches[0].display_name)
    return reply(key, state.language)


def clarify_prompt(state: ConversationState, business_name: str) -> str:
    """Nothing was heard: apologise and repeat the step's question."""
    return f"{reply('didnt_hear', state.language)} {opening_prompt(state, business_name)}"
