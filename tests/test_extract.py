"""
Tests for field extraction.

These tests verify that:
1. Deterministic rules cover language, type, yes/no, duration and choices
2. Model output is decoded tolerantly (fences, prose, plain text)
3. Loose model data is validated per step
4. FieldExtractor tries the model first and the rule second
"""

import json
from unittest.mock import AsyncMock

import pytest

from app.llm_service import LLMUnavailableError
from app.models import AppointmentType, ConversationState, ConversationStep, Language
from engine.extract import (
    Field,
    FieldExtractor,
    OffTopic,
    Unavailable,
    clean_search_term,
    decode_fields,
    detect_appointment_type,
    detect_choice_number,
    detect_duration,
    detect_language,
    detect_yes_no,
    parse_structured_response,
    split_full_name,
)


def _type_rule(text):
    found = detect_appointment_type(text)
    return None if found is None else {"type": found}


class TestDeterministicRules:
    """Keyword rules used when no model is reachable."""

    @pytest.mark.parametrize("text,expected", [
        ("1", Language.ES),
        ("uno", Language.ES),
        ("Español, por favor", Language.ES),
        ("2", Language.EN),
        ("two", Language.EN),
        ("English please", Language.EN),
        ("mmm", None),
    ])
    def test_detect_language(self, text, expected):
        assert detect_language(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("quiero una cotización", AppointmentType.QUOTE),
        ("necesito que me instalen unas cortinas", AppointmentType.INSTALLATION),
        ("se me rompió la persiana, necesito reparación", AppointmentType.REPAIR),
        ("I need a repair, not a quote", AppointmentType.REPAIR),
        ("hola", None),
    ])
    def test_detect_appointment_type(self, text, expected):
        assert detect_appointment_type(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("sí, claro", True),
        ("Así es", True),
        ("está bien", True),
        ("yes please", True),
        ("soy yo", True),
        ("no", False),
        ("no, no soy yo", False),
        ("nope", False),
        ("hmm", None),
    ])
    def test_detect_yes_no(self, text, expected):
        assert detect_yes_no(text) is expected

    @pytest.mark.parametrize("text,expected", [
        ("hora y media", "01:30:00"),
        ("media hora", "00:30:00"),
        ("dos horas", "02:00:00"),
        ("an hour and a half", "01:30:00"),
        ("está bien", "01:00:00"),
        ("una hora", "01:00:00"),
        ("no sé", None),
    ])
    def test_detect_duration(self, text, expected):
        assert detect_duration(text) == expected

    @pytest.mark.parametrize("text,expected", [
        ("el 2", 2),
        ("la segunda", 2),
        ("number three", 3),
        ("nadie", None),
    ])
    def test_detect_choice_number(self, text, expected):
        assert detect_choice_number(text) == expected

    def test_clean_search_term(self):
        assert clean_search_term("Me llamo Juan Pérez.") == "Juan Pérez"
        assert clean_search_term("Hola, soy Ana") == "Ana"
        assert clean_search_term("my name is John Smith") == "John Smith"

    def test_split_full_name(self):
        assert split_full_name("me llamo juan perez garcia") == ("Juan", "Perez Garcia")
        assert split_full_name("Juan") is None


class TestParseStructuredResponse:

    def test_plain_json(self):
        parsed = parse_structured_response('{"reply": "Hola", "data": {"appointmentType": 1}}')
        assert parsed.reply == "Hola"
        assert parsed.data == {"appointmentType": 1}

    def test_fenced_json(self):
        content = '```json\n{"reply": "Ok", "data": {"confirmed": true}}\n```'
        assert parse_structured_response(content).data == {"confirmed": True}

    def test_prose_around_json(self):
        content = 'Sure! {"reply": "Perfecto", "data": {"dateText": "mañana"}} hope that helps'
        parsed = parse_structured_response(content)
        assert parsed.reply == "Perfecto"
        assert parsed.data["dateText"] == "mañana"

    def test_missing_data_defaults_to_empty(self):
        assert parse_structured_response('{"reply": "Hola"}').data == {}

    def test_short_plain_text_becomes_reply(self):
        parsed = parse_structured_response("¿Me repite, por favor?")
        assert parsed.reply == "¿Me repite, por favor?"
        assert parsed.data == {}

    def test_empty_and_long_garbage(self):
        assert parse_structured_response("") is None
        assert parse_structured_response("x" * 600) is None


class TestDecodeFields:
    """Model data is validated before it reaches the dispatcher."""

    def test_appointment_type(self):
        values = decode_fields(ConversationStep.ASK_TYPE, {"appointmentType": 1})
        assert values == {"type": AppointmentType.INSTALLATION}

    def test_out_of_range_type_is_dropped(self):
        assert decode_fields(ConversationStep.ASK_TYPE, {"appointmentType": 7}) == {}

    def test_duration_must_be_allowed(self):
        assert decode_fields(ConversationStep.ASK_DURATION, {"duration": "00:45:00"}) == {}
        assert decode_fields(ConversationStep.ASK_DURATION, {"duration": "02:00:00"}) == {
            "duration": "02:00:00"
        }

    def test_confirmed_string(self):
        values = decode_fields(ConversationStep.CONFIRM_SUMMARY, {"confirmed": "yes"})
        assert values == {"confirmed": True}

    def test_choice_and_null_name(self):
        values = decode_fields(
            ConversationStep.DISAMBIGUATE_CUSTOMER, {"choiceNumber": "2", "nameSpoken": "null"}
        )
        assert values == {"choice_number": 2}

    def test_search_query(self):
        values = decode_fields(ConversationStep.ASK_CUSTOMER_NAME, {"searchQuery": " Ana López "})
        assert values == {"search_query": "Ana López"}


class TestFieldExtractor:
    """Model first, deterministic rule second."""

    @pytest.fixture
    def state(self):
        return ConversationState(call_id="extract-1", step=ConversationStep.ASK_TYPE)

    @pytest.mark.asyncio
    async def test_rule_used_when_llm_unavailable(self, llm, state):
        extractor = FieldExtractor(llm, "BlindsBook")
        result = await extractor.interpret(state, "una reparación", _type_rule)

        assert isinstance(result, Field)
        assert result.values == {"type": AppointmentType.REPAIR}
        llm.chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_model_field_wins(self, llm_replying, state):
        llm = llm_replying(json.dumps({"reply": "¡Claro!", "data": {"appointmentType": 0}}))
        extractor = FieldExtractor(llm, "BlindsBook")
        result = await extractor.interpret(state, "quiero saber precios", _type_rule)

        assert isinstance(result, Field)
        assert result.values == {"type": AppointmentType.QUOTE}
        assert result.reply == "¡Claro!"

    @pytest.mark.asyncio
    async def test_model_offtopic_surfaces_when_rule_fails(self, llm_replying, state):
        llm = llm_replying(json.dumps({
            "reply": "Abrimos de 9 a 5. ¿La cita es para cotización, instalación o reparación?",
            "data": {"appointmentType": None},
        }))
        extractor = FieldExtractor(llm, "BlindsBook")
        result = await extractor.interpret(state, "¿a qué hora abren?", _type_rule)

        assert isinstance(result, OffTopic)
        assert result.reply.startswith("Abrimos de 9 a 5")

    @pytest.mark.asyncio
    async def test_rule_beats_model_offtopic(self, llm_replying, state):
        llm = llm_replying(json.dumps({"reply": "¿Perdón?", "data": {}}))
        extractor = FieldExtractor(llm, "BlindsBook")
        result = await extractor.interpret(state, "instalación", _type_rule)

        assert isinstance(result, Field)
        assert result.values == {"type": AppointmentType.INSTALLATION}

    @pytest.mark.asyncio
    async def test_chat_failure_is_unavailable(self, llm, state):
        llm.is_available = AsyncMock(return_value=True)
        llm.chat = AsyncMock(side_effect=LLMUnavailableError("timeout"))
        extractor = FieldExtractor(llm, "BlindsBook")

        result = await extractor.interpret(state, "no sé", _type_rule)

        assert isinstance(result, Unavailable)

    @pytest.mark.asyncio
    async def test_step_without_spec_skips_model(self, llm_replying):
        llm = llm_replying('{"reply": "x", "data": {}}')
        extractor = FieldExtractor(llm, "BlindsBook")
        state = ConversationState(call_id="extract-2", step=ConversationStep.ASK_LANGUAGE)

        result = await extractor.interpret(state, "1", lambda _: {"language": Language.ES})

        assert isinstance(result, Field)
        llm.chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_prompt_carries_step_and_context(self, llm_replying, state):
        llm = llm_replying('{"reply": "ok", "data": {"appointmentType": 2}}')
        extractor = FieldExtractor(llm, "BlindsBook")
        named = state.evolve(customer_confirmed_name="Ana López")

        await extractor.interpret(named, "reparar", _type_rule)

        messages = llm.chat.call_args.args[0]
        assert messages[0]["role"] == "system"
        assert "askType" in messages[0]["content"]
        assert "Ana López" in messages[0]["content"]
        assert messages[1] == {"role": "user", "content": "reparar"}
