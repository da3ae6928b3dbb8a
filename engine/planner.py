"""
Step dispatcher (conversation state machine).

This module is the SINGLE SOURCE OF TRUTH for conversation flow decisions.
Given the current state and one caller utterance it decides:
- Which step comes next
- What the receptionist says
- Whether the call is finished

Every step tries the field extraction adapter first and falls back to the
deterministic rules in engine.extract, so the flow completes with no LLM at
all. Identification steps are delegated to engine.identification.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""
import logging
import os
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from agents.identification_agent import IdentificationAgent
from agents.replies import reply, variant_seed
from app.llm_service import LLMService
from app.models import (
    DEFAULT_DURATION,
    TERMINAL_STEPS,
    AppointmentType,
    ConversationState,
    ConversationStep,
    TurnResult,
)
from app.scheduling_client import SchedulingAPIError, SchedulingClient

from .dates import merge_time, parse_date_time
from .extract import Field, FieldExtractor, OffTopic, detect_appointment_type, detect_duration, detect_language
from .identification import IdentificationFunnel, confirm_rule
from .speech import clarify_prompt, opening_prompt, retry_prompt, spoken_date, summary_prompt

logger = logging.getLogger(__name__)

Handler = Callable[[ConversationState, str], Awaitable[TurnResult]]


def _type_rule(utterance: str) -> Optional[Dict[str, Any]]:
    found = detect_appointment_type(utterance)
    return None if found is None else {"type": found}


def _duration_rule(utterance: str) -> Optional[Dict[str, Any]]:
    found = detect_duration(utterance)
    return None if found is None else {"duration": found}


class StepDispatcher:
    """
    Turn handler: (state, utterance) -> (state', reply, finished).

    The dispatcher never mutates the state it is given and never touches
    the conversation store; ConversationService owns persistence.
    """

    def __init__(
        self,
        scheduling: SchedulingClient,
        llm: LLMService,
        extractor: Optional[FieldExtractor] = None,
        funnel: Optional[IdentificationFunnel] = None,
        now: Optional[Callable[[], datetime]] = None,
        business_name: Optional[str] = None,
    ):
        self.scheduling = scheduling
        self.business_name = business_name or os.getenv("BUSINESS_NAME", "BlindsBook")
        self.extractor = extractor or FieldExtractor(llm, self.business_name)
        self.funnel = funnel or IdentificationFunnel(
            scheduling,
            self.extractor,
            IdentificationAgent(llm, scheduling, self.business_name),
            self.business_name,
        )
        self.now = now

        self._handlers: Dict[ConversationStep, Handler] = {
            ConversationStep.ASK_LANGUAGE: self._ask_language,
            ConversationStep.IDENTIFY_BY_CALLER_ID: lambda s, _: self.funnel.identify_by_caller_id(s),
            ConversationStep.ASK_CUSTOMER_NAME: self.funnel.search_by_name,
            ConversationStep.DISAMBIGUATE_CUSTOMER: self.funnel.disambiguate,
            ConversationStep.CONFIRM_CUSTOMER_IDENTITY: self.funnel.confirm_identity,
            ConversationStep.LLM_FALLBACK: self.funnel.handle_fallback,
            ConversationStep.GREETING: self._greeting,
            ConversationStep.ASK_TYPE: self._ask_type,
            ConversationStep.ASK_DATE: self._ask_date,
            ConversationStep.ASK_TIME: self._ask_time,
            ConversationStep.ASK_DURATION: self._ask_duration,
            ConversationStep.CONFIRM_SUMMARY: self._confirm_summary,
            ConversationStep.CREATING_APPOINTMENT: lambda s, _: self._create_appointment(s),
        }

    def _reference(self) -> Optional[datetime]:
        return self.now() if self.now else None

    def _say(self, state: ConversationState, reply_text: Optional[str] = None, finished: bool = False) -> TurnResult:
        return TurnResult(
            state=state,
            reply_text=reply_text or opening_prompt(state, self.business_name),
            is_finished=finished,
        )

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def handle_turn(self, state: ConversationState, utterance: Optional[str]) -> TurnResult:
        """
        Process one caller turn.

        Args:
            state: Current conversation state
            utterance: Caller text; None means "advance without new input"
                (re-emit the current step's prompt, or run an automatic step)

        Returns:
            TurnResult with the next state, the reply to speak and the
            finished flag
        """
        step = state.step

        if step in TERMINAL_STEPS:
            return self._say(state, finished=True)

        if utterance is None:
            if step == ConversationStep.IDENTIFY_BY_CALLER_ID:
                result = await self.funnel.identify_by_caller_id(state)
            elif step == ConversationStep.CREATING_APPOINTMENT:
                result = await self._create_appointment(state)
            else:
                return self._say(state)
        elif not utterance.strip():
            logger.info(f"[DISPATCH] call={state.call_id} step={step.value} empty input")
            return self._say(state, clarify_prompt(state, self.business_name))
        else:
            result = await self._handlers[step](state, utterance.strip())

        if result.state.step != step:
            logger.info(
                f"[DISPATCH] call={state.call_id} step={step.value} -> {result.state.step.value}"
            )
        return result

    # =========================================================================
    # LANGUAGE
    # =========================================================================

    async def _ask_language(self, state: ConversationState, utterance: str) -> TurnResult:
        language = detect_language(utterance)
        if language is None:
            return self._say(state, retry_prompt(state, self.business_name))

        chosen = state.evolve(language=language, step=ConversationStep.IDENTIFY_BY_CALLER_ID)
        logger.info(f"[DISPATCH] call={state.call_id} language={language.value}")
        return await self.funnel.identify_by_caller_id(chosen)

    # =========================================================================
    # APPOINTMENT FLOW
    # =========================================================================

    def _enter_date(self, state: ConversationState, appointment_type: AppointmentType) -> TurnResult:
        return self._say(state.evolve(type=appointment_type, step=ConversationStep.ASK_DATE))

    async def _greeting(self, state: ConversationState, utterance: str) -> TurnResult:
        extracted = await self.extractor.interpret(state, utterance, _type_rule)

        if isinstance(extracted, Field) and "type" in extracted.values:
            return self._enter_date(state, extracted.values["type"])
        if isinstance(extracted, OffTopic):
            return self._say(state, extracted.reply)
        return self._say(state.evolve(step=ConversationStep.ASK_TYPE))

    async def _ask_type(self, state: ConversationState, utterance: str) -> TurnResult:
        extracted = await self.extractor.interpret(state, utterance, _type_rule)

        if isinstance(extracted, Field):
            return self._enter_date(state, extracted.values["type"])
        if isinstance(extracted, OffTopic):
            return self._say(state, extracted.reply)
        return self._say(state, retry_prompt(state, self.business_name))

    async def _ask_date(self, state: ConversationState, utterance: str) -> TurnResult:
        reference = self._reference()

        def rule(text: str) -> Optional[Dict[str, Any]]:
            if parse_date_time(text, state.language, reference) is None:
                return None
            return {"date_text": text}

        extracted = await self.extractor.interpret(state, utterance, rule)
        if isinstance(extracted, OffTopic):
            return self._say(state, extracted.reply)

        parsed = None
        if isinstance(extracted, Field):
            parsed = parse_date_time(extracted.values["date_text"], state.language, reference)
        if parsed is None:
            parsed = parse_date_time(utterance, state.language, reference)
        if parsed is None:
            return self._say(state, retry_prompt(state, self.business_name))

        next_step = ConversationStep.ASK_DURATION if parsed.has_time else ConversationStep.ASK_TIME
        dated = state.evolve(
            start_date_iso=parsed.iso,
            date_has_time=parsed.has_time,
            step=next_step,
        )
        logger.info(f"[DISPATCH] call={state.call_id} date={parsed.iso} has_time={parsed.has_time}")
        return self._say(dated)

    async def _ask_time(self, state: ConversationState, utterance: str) -> TurnResult:
        if not state.start_date_iso:
            return self._say(state.evolve(step=ConversationStep.ASK_DATE))

        def rule(text: str) -> Optional[Dict[str, Any]]:
            if merge_time(state.start_date_iso, text, state.language) is None:
                return None
            return {"time_text": text}

        extracted = await self.extractor.interpret(
            state, utterance, rule, extra=spoken_date(state)
        )
        if isinstance(extracted, OffTopic):
            return self._say(state, extracted.reply)

        merged = None
        if isinstance(extracted, Field):
            merged = merge_time(state.start_date_iso, extracted.values["time_text"], state.language)
        if merged is None:
            merged = merge_time(state.start_date_iso, utterance, state.language)
        if merged is None:
            return self._say(state, retry_prompt(state, self.business_name))

        timed = state.evolve(
            start_date_iso=merged.iso,
            date_has_time=True,
            step=ConversationStep.ASK_DURATION,
        )
        return self._say(timed)

    async def _ask_duration(self, state: ConversationState, utterance: str) -> TurnResult:
        extracted = await self.extractor.interpret(state, utterance, _duration_rule)

        if isinstance(extracted, Field):
            summarised = state.evolve(
                duration=extracted.values["duration"],
                step=ConversationStep.CONFIRM_SUMMARY,
            )
            return self._say(summarised, summary_prompt(summarised))
        if isinstance(extracted, OffTopic):
            return self._say(state, extracted.reply)
        return self._say(state, retry_prompt(state, self.business_name))

    async def _confirm_summary(self, state: ConversationState, utterance: str) -> TurnResult:
        extracted = await self.extractor.interpret(
            state, utterance, confirm_rule, extra=summary_prompt(state)
        )

        if isinstance(extracted, Field):
            if extracted.values["confirmed"]:
                return await self._create_appointment(
                    state.evolve(step=ConversationStep.CREATING_APPOINTMENT)
                )
            restarted = state.evolve(
                step=ConversationStep.ASK_TYPE,
                type=None,
                start_date_iso=None,
                date_has_time=False,
                duration=DEFAULT_DURATION,
            )
            logger.info(f"[DISPATCH] call={state.call_id} summary rejected, restarting appointment")
            return self._say(restarted, reply("restart", state.language))
        if isinstance(extracted, OffTopic):
            return self._say(state, extracted.reply)
        return self._say(state, retry_prompt(state, self.business_name))

    async def _create_appointment(self, state: ConversationState) -> TurnResult:
        """Book through the scheduling API; any failure hands the call to staff."""
        failed = state.evolve(step=ConversationStep.TRANSFER_TO_HUMAN)
        try:
            payload = state.to_appointment_payload()
            appointment = await self.scheduling.create_appointment(payload)
        except ValueError as e:
            logger.error(f"[DISPATCH] call={state.call_id} appointment data incomplete: {e}")
            return self._say(failed, reply("booking_failed", state.language), finished=True)
        except SchedulingAPIError as e:
            logger.error(f"METRIC appointment_failed call={state.call_id} error={e}")
            return self._say(failed, reply("booking_failed", state.language), finished=True)

        completed = state.evolve(step=ConversationStep.COMPLETED, appointment_id=appointment.id)
        logger.info(
            f"METRIC appointment_created call={state.call_id} appointment={appointment.id} "
            f"customer={state.customer_id}"
        )
        goodbye = reply("goodbye", state.language, variant_seed(completed))
        return self._say(
            completed,
            reply("completed", state.language, date=spoken_date(state), goodbye=goodbye),
            finished=True,
        )
