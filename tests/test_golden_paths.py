"""
Golden path tests: whole calls through ConversationService with no LLM.

Each test drives a call turn by turn, exactly as the telephony layer would,
and checks the step reached after every turn.
"""

from typing import List, Optional, Tuple

import pytest

from agents.replies import REPLIES
from app.conversation import ConversationService
from app.models import AppointmentType, ConversationStep, Language
from app.scheduling_client import SchedulingAPIError
from app.store import InMemoryConversationStore


@pytest.fixture
def store():
    return InMemoryConversationStore()


@pytest.fixture
def service(store, dispatcher):
    return ConversationService(store, dispatcher)


async def _play(
    service: ConversationService,
    call_id: str,
    turns: List[Tuple[Optional[str], ConversationStep]],
    caller_phone: Optional[str] = None,
):
    """Run the turns; each entry is (utterance, expected step afterwards)."""
    result = None
    for utterance, expected in turns:
        result = await service.handle_turn(call_id, utterance, caller_phone)
        assert result.state.step == expected, (
            f"after {utterance!r}: expected {expected.value}, got {result.state.step.value} "
            f"(reply: {result.reply_text})"
        )
    return result


class TestSpanishBookingByName:
    """Caller ID misses; the caller gives their name and books a quote."""

    @pytest.mark.asyncio
    async def test_full_call(self, service, store, scheduling, make_customer):
        scheduling.search_customers.return_value = [make_customer(7, "Juan", "Pérez", "3055550199")]

        result = await _play(service, "golden-es", [
            (None, ConversationStep.ASK_LANGUAGE),
            ("1", ConversationStep.ASK_CUSTOMER_NAME),
            ("Juan Pérez", ConversationStep.CONFIRM_CUSTOMER_IDENTITY),
            ("sí", ConversationStep.GREETING),
            ("quiero una cotización", ConversationStep.ASK_DATE),
            ("mañana a las 10", ConversationStep.ASK_DURATION),
            ("está bien", ConversationStep.CONFIRM_SUMMARY),
            ("sí, correcto", ConversationStep.COMPLETED),
        ])

        assert result.is_finished is True
        assert result.state.appointment_id == 501
        assert "golden-es" not in store

        payload = scheduling.create_appointment.await_args.args[0]
        assert payload.customerId == 7
        assert payload.type == AppointmentType.QUOTE
        assert payload.startDate.startswith("2026-10-18T10:00:00")
        assert payload.duration == "01:00:00"


class TestEnglishBookingByCallerId:
    """Caller ID finds the caller; separate date and time answers."""

    @pytest.mark.asyncio
    async def test_full_call(self, service, scheduling, make_customer):
        scheduling.search_customers_by_phone.return_value = [make_customer(12, "Ann", "Lee")]

        result = await _play(service, "golden-en", [
            (None, ConversationStep.ASK_LANGUAGE),
            ("two", ConversationStep.GREETING),
            ("I'd like to book an installation", ConversationStep.ASK_DATE),
            ("next Monday", ConversationStep.ASK_TIME),
            ("at 2 pm", ConversationStep.ASK_DURATION),
            ("two hours", ConversationStep.CONFIRM_SUMMARY),
            ("yes", ConversationStep.COMPLETED),
        ], caller_phone="+13055550123")

        assert result.state.language == Language.EN
        payload = scheduling.create_appointment.await_args.args[0]
        assert payload.customerId == 12
        assert payload.type == AppointmentType.INSTALLATION
        assert payload.startDate.startswith("2026-10-19T14:00:00")
        assert payload.duration == "02:00:00"
        assert "October 19, 2026 at 02:00 PM" in result.reply_text


class TestDisambiguationPath:

    @pytest.mark.asyncio
    async def test_choose_second_candidate(self, service, scheduling, make_customer):
        scheduling.search_customers_by_phone.return_value = [
            make_customer(1, "Ana", "López", "3055550101"),
            make_customer(2, "Luis", "López", "3055550102"),
        ]

        result = await _play(service, "golden-dis", [
            (None, ConversationStep.ASK_LANGUAGE),
            ("1", ConversationStep.DISAMBIGUATE_CUSTOMER),
            ("el segundo", ConversationStep.GREETING),
        ], caller_phone="3055550100")

        assert result.state.customer_id == 2
        assert "Luis López" in result.reply_text


class TestEscalationPath:
    """Unknown caller, no model: three retries, then manual registration."""

    @pytest.mark.asyncio
    async def test_manual_registration_then_booking(self, service, scheduling):
        result = await _play(service, "golden-reg", [
            (None, ConversationStep.ASK_LANGUAGE),
            ("1", ConversationStep.ASK_CUSTOMER_NAME),
            ("Carlos Ruiz", ConversationStep.ASK_CUSTOMER_NAME),
            ("Carlos Ruiz Soto", ConversationStep.ASK_CUSTOMER_NAME),
            ("carlos.ruiz@example.com", ConversationStep.ASK_CUSTOMER_NAME),
            ("Carlos", ConversationStep.LLM_FALLBACK),
        ], caller_phone="+13055550777")

        assert result.state.identification_attempts == 4
        assert result.reply_text == REPLIES["manual_registration"][Language.ES][0]

        result = await _play(service, "golden-reg", [
            ("Carlos Ruiz", ConversationStep.GREETING),
            ("reparación", ConversationStep.ASK_DATE),
        ], caller_phone="+13055550777")

        scheduling.create_customer.assert_awaited_once_with("Carlos", "Ruiz", "+13055550777")
        assert result.state.customer_id == 900


class TestBackendOutage:

    @pytest.mark.asyncio
    async def test_search_outage_is_explained(self, service, scheduling):
        scheduling.search_customers.side_effect = SchedulingAPIError("503")

        result = await _play(service, "golden-down", [
            (None, ConversationStep.ASK_LANGUAGE),
            ("1", ConversationStep.ASK_CUSTOMER_NAME),
            ("Juan Pérez", ConversationStep.ASK_CUSTOMER_NAME),
        ])

        assert result.reply_text == REPLIES["ask_customer_name_degraded"][Language.ES][0]
        assert result.state.identification_attempts == 1

    @pytest.mark.asyncio
    async def test_booking_failure_transfers(self, service, store, scheduling, make_customer):
        scheduling.search_customers_by_phone.return_value = [make_customer(7, "Ana", "López")]
        scheduling.create_appointment.side_effect = SchedulingAPIError("500")

        result = await _play(service, "golden-fail", [
            (None, ConversationStep.ASK_LANGUAGE),
            ("1", ConversationStep.GREETING),
            ("reparación", ConversationStep.ASK_DATE),
            ("el lunes a las 11", ConversationStep.ASK_DURATION),
            ("media hora", ConversationStep.CONFIRM_SUMMARY),
            ("sí", ConversationStep.TRANSFER_TO_HUMAN),
        ], caller_phone="3055550199")

        assert result.is_finished is True
        assert "golden-fail" not in store
