"""
Customer identification funnel.

Three escalating tiers converge on a confirmed customer id or a transfer:
1. Caller ID: phone lookup with no caller input
2. Guided search: name/phone/email search, with disambiguation among
   several matches and a yes/no confirmation of a single match
3. Fallback agent: open-ended LLM tool-calling loop, or manual registration
   when no model is reachable

Backend search failures never propagate. They produce an empty, degraded
outcome that counts as a failed attempt, is logged as a warning, and makes
the re-prompt mention the lookup trouble.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""
import asyncio
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from agents.identification_agent import IdentificationAgent
from agents.replies import reply, variant_seed
from app.llm_service import LLMUnavailableError
from app.models import ConversationState, ConversationStep, CustomerMatch, TurnResult
from app.scheduling_client import SchedulingAPIError, SchedulingClient

from .dates import normalize_text
from .extract import (
    Field,
    FieldExtractor,
    OffTopic,
    clean_search_term,
    detect_choice_number,
    detect_yes_no,
    split_full_name,
)
from .speech import candidate_options, opening_prompt, retry_prompt

logger = logging.getLogger(__name__)

MAX_IDENTIFICATION_ATTEMPTS = 3
# More caller-ID matches than this is too ambiguous to list
MAX_CALLER_ID_MATCHES = 5
SEARCH_PAGE_SIZE = 5
# Unresolved tier-3 turns before handing over to staff
MAX_AGENT_TURNS = 4
# Input with at least this many digits is searched as a phone number
MIN_PHONE_DIGITS = 7


@dataclass
class SearchOutcome:
    matches: List[CustomerMatch] = field(default_factory=list)
    degraded: bool = False


def match_by_name(matches: List[CustomerMatch], spoken: str) -> Optional[CustomerMatch]:
    """
    The single candidate whose display name contains, or is contained in,
    the spoken text (case- and accent-insensitive).
    """
    said = normalize_text(clean_search_term(spoken))
    if len(said) < 2 or not re.search(r"[a-z]", said):
        return None
    hits = []
    for match in matches:
        name = normalize_text(match.display_name)
        if name and (said in name or name in said):
            hits.append(match)
    return hits[0] if len(hits) == 1 else None


def confirm_rule(utterance: str) -> Optional[Dict[str, Any]]:
    answer = detect_yes_no(utterance)
    return None if answer is None else {"confirmed": answer}


def _choice_rule(utterance: str) -> Optional[Dict[str, Any]]:
    choice = detect_choice_number(utterance)
    return None if choice is None else {"choice_number": choice}


_CHOICE_FILLER = {
    "el", "la", "numero", "opcion", "es", "por", "favor",
    "the", "number", "option", "is", "it", "its", "s", "please",
}


def _bare_choice(utterance: str) -> Optional[int]:
    """Option number when the caller said only a number or ordinal ("la 2", "the second one")."""
    tokens = [t for t in re.findall(r"\w+", normalize_text(utterance)) if t not in _CHOICE_FILLER]
    if len(tokens) == 2 and tokens[1] == "one":
        tokens = tokens[:1]
    if len(tokens) != 1:
        return None
    return detect_choice_number(tokens[0])


class IdentificationFunnel:
    """Drives the identification steps of a call."""

    def __init__(
        self,
        scheduling: SchedulingClient,
        extractor: FieldExtractor,
        agent: IdentificationAgent,
        business_name: Optional[str] = None,
    ):
        self.scheduling = scheduling
        self.extractor = extractor
        self.agent = agent
        self.business_name = business_name or os.getenv("BUSINESS_NAME", "BlindsBook")

    # =========================================================================
    # SHARED
    # =========================================================================

    def _say(self, state: ConversationState, reply_text: Optional[str] = None, finished: bool = False) -> TurnResult:
        return TurnResult(
            state=state,
            reply_text=reply_text or opening_prompt(state, self.business_name),
            is_finished=finished,
        )

    async def _safe_search(self, term: str) -> SearchOutcome:
        """Search by phone or by text; a backend failure becomes a degraded empty outcome."""
        term = term.strip()
        try:
            if len(re.sub(r"\D", "", term)) >= MIN_PHONE_DIGITS:
                matches = await self.scheduling.search_customers_by_phone(term)
            else:
                matches = await self.scheduling.search_customers(term, SEARCH_PAGE_SIZE)
        except SchedulingAPIError as e:
            logger.warning(f"[IDENT] Customer search degraded term='{term}': {e}")
            return SearchOutcome(degraded=True)
        return SearchOutcome(matches=matches)

    def resolve(self, state: ConversationState, match_id: int, name: str, lead_in: str = "") -> TurnResult:
        """Confirmed identity: record it and move on to the appointment flow."""
        resolved = state.evolve(
            customer_id=match_id,
            customer_confirmed_name=name,
            customer_matches=[],
            llm_conversation_history=[],
            manual_registration=False,
            step=ConversationStep.GREETING,
        )
        logger.info(f"[IDENT] call={state.call_id} resolved customer={match_id} from={state.step.value}")
        if lead_in:
            return self._say(resolved, f"{lead_in} {reply('ask_type', resolved.language)}")
        return self._say(resolved)

    def transfer(self, state: ConversationState, reply_text: Optional[str] = None) -> TurnResult:
        transferred = state.evolve(
            step=ConversationStep.TRANSFER_TO_HUMAN,
            customer_matches=[],
            llm_conversation_history=[],
        )
        logger.info(f"METRIC call_transferred call={state.call_id} from={state.step.value}")
        return self._say(transferred, reply_text, finished=True)

    # =========================================================================
    # TIER 1: CALLER ID
    # =========================================================================

    async def identify_by_caller_id(self, state: ConversationState) -> TurnResult:
        """
        Look the caller up by caller ID.

        1 match → greeting; 2-5 → disambiguation; 0 or more than 5 → ask
        for a name. A miss here is not an identification attempt.
        """
        outcome = SearchOutcome()
        if state.caller_phone:
            outcome = await self._safe_search_phone(state.caller_phone)

        count = len(outcome.matches)
        logger.info(f"[IDENT] call={state.call_id} tier=1 matches={count} degraded={outcome.degraded}")

        if count == 1:
            match = outcome.matches[0]
            return self.resolve(state, match.id, match.display_name)

        if 2 <= count <= MAX_CALLER_ID_MATCHES:
            listing = state.evolve(
                step=ConversationStep.DISAMBIGUATE_CUSTOMER,
                customer_matches=outcome.matches,
            )
            return self._say(listing)

        return self._say(state.evolve(step=ConversationStep.ASK_CUSTOMER_NAME, customer_matches=[]))

    async def _safe_search_phone(self, phone: str) -> SearchOutcome:
        try:
            return SearchOutcome(matches=await self.scheduling.search_customers_by_phone(phone))
        except SchedulingAPIError as e:
            logger.warning(f"[IDENT] Caller-ID lookup degraded: {e}")
            return SearchOutcome(degraded=True)

    # =========================================================================
    # TIER 2: GUIDED SEARCH
    # =========================================================================

    async def search_by_name(self, state: ConversationState, utterance: str) -> TurnResult:
        """
        Search with what the caller said.

        The raw search and the model's refined search term are requested
        concurrently; the backend is queried again only when the refined
        term differs from the raw text.
        """
        asking = state.evolve(step=ConversationStep.ASK_CUSTOMER_NAME, customer_matches=[])
        raw_term = utterance.strip()

        raw_outcome, extracted = await asyncio.gather(
            self._safe_search(raw_term),
            self.extractor.interpret(asking, utterance, lambda _: None),
        )

        refined = None
        if isinstance(extracted, Field):
            refined = extracted.values.get("search_query")
        refined = (refined or clean_search_term(raw_term)).strip()

        outcome = raw_outcome
        if refined and normalize_text(refined) != normalize_text(raw_term):
            refined_outcome = await self._safe_search(refined)
            if refined_outcome.matches or not raw_outcome.matches:
                outcome = SearchOutcome(
                    matches=refined_outcome.matches,
                    degraded=refined_outcome.degraded or raw_outcome.degraded,
                )

        logger.info(
            f"[IDENT] call={state.call_id} tier=2 term='{refined or raw_term}' "
            f"matches={len(outcome.matches)} degraded={outcome.degraded}"
        )

        if not outcome.matches and not outcome.degraded and isinstance(extracted, OffTopic):
            # Caller asked something else; answer and keep asking
            return self._say(asking, extracted.reply)

        if not outcome.matches:
            return await self.register_failure(asking, utterance, degraded=outcome.degraded)

        if len(outcome.matches) == 1:
            confirming = asking.evolve(
                step=ConversationStep.CONFIRM_CUSTOMER_IDENTITY,
                customer_matches=outcome.matches,
            )
            return self._say(confirming)

        listing = asking.evolve(
            step=ConversationStep.DISAMBIGUATE_CUSTOMER,
            customer_matches=outcome.matches[:SEARCH_PAGE_SIZE],
        )
        return self._say(listing)

    async def register_failure(
        self,
        state: ConversationState,
        utterance: str,
        degraded: bool = False,
    ) -> TurnResult:
        """
        Count a failed identification attempt.

        Below the cap the caller is asked again; once the counter has
        reached the cap the next failure escalates to the fallback agent.
        """
        attempts = state.identification_attempts
        if attempts >= MAX_IDENTIFICATION_ATTEMPTS:
            escalated = state.evolve(
                step=ConversationStep.LLM_FALLBACK,
                identification_attempts=attempts + 1,
                customer_matches=[],
            )
            logger.info(f"METRIC identification_escalated call={state.call_id} attempts={attempts + 1}")
            return await self.handle_fallback(escalated, utterance)

        retry = state.evolve(
            step=ConversationStep.ASK_CUSTOMER_NAME,
            identification_attempts=attempts + 1,
            customer_matches=[],
        )
        if degraded:
            return self._say(retry, reply("ask_customer_name_degraded", retry.language))
        return self._say(retry, reply("ask_customer_name_retry", retry.language, variant_seed(retry) + attempts))

    # =========================================================================
    # DISAMBIGUATION AND CONFIRMATION
    # =========================================================================

    async def disambiguate(self, state: ConversationState, utterance: str) -> TurnResult:
        """Pick a candidate by number or name; otherwise search again with the utterance."""
        matches = state.customer_matches
        extracted = await self.extractor.interpret(
            state, utterance, _choice_rule, extra=candidate_options(matches, state.language)
        )

        selected: Optional[CustomerMatch] = None
        bare = _bare_choice(utterance)
        if bare is not None and 1 <= bare <= len(matches):
            selected = matches[bare - 1]
        # A spoken name beats number words inside it ("Dos Santos")
        if selected is None:
            selected = match_by_name(matches, utterance)
        if selected is None and isinstance(extracted, Field):
            if extracted.values.get("name_spoken"):
                selected = match_by_name(matches, extracted.values["name_spoken"])
            choice = extracted.values.get("choice_number")
            if selected is None and isinstance(choice, int) and 1 <= choice <= len(matches):
                selected = matches[choice - 1]

        if selected is not None:
            return self.resolve(state, selected.id, selected.display_name)

        if isinstance(extracted, OffTopic):
            return self._say(state, extracted.reply)

        logger.info(f"[IDENT] call={state.call_id} no candidate selected, searching again")
        return await self.search_by_name(state, utterance)

    async def confirm_identity(self, state: ConversationState, utterance: str) -> TurnResult:
        """Yes resolves the single candidate; no counts as a failed attempt."""
        extracted = await self.extractor.interpret(state, utterance, confirm_rule)

        if isinstance(extracted, Field):
            match = state.customer_matches[0]
            if extracted.values["confirmed"]:
                return self.resolve(state, match.id, match.display_name)
            return await self.register_failure(state, utterance)

        if isinstance(extracted, OffTopic):
            return self._say(state, extracted.reply)
        return self._say(state, retry_prompt(state, self.business_name))

    # =========================================================================
    # TIER 3: FALLBACK AGENT
    # =========================================================================

    async def handle_fallback(self, state: ConversationState, utterance: Optional[str]) -> TurnResult:
        """One caller turn inside the fallback tier."""
        if state.manual_registration:
            return await self._manual_registration(state, utterance or "")

        if not await self.agent.is_available():
            return self._start_manual_registration(state)

        try:
            outcome = await self.agent.run(state, utterance)
        except LLMUnavailableError as e:
            logger.warning(f"[IDENT] call={state.call_id} agent unavailable: {e}")
            return self._start_manual_registration(state)

        if outcome.resolved:
            lead_in = outcome.reply
            return self.resolve(state, outcome.customer_id, outcome.customer_name or "", lead_in)

        if outcome.transfer:
            return self.transfer(state, outcome.reply or None)

        turns = state.agent_turns + 1
        if turns >= MAX_AGENT_TURNS:
            logger.info(f"[IDENT] call={state.call_id} agent turn cap reached")
            return self.transfer(state)

        continuing = state.evolve(agent_turns=turns, llm_conversation_history=outcome.history)
        return self._say(continuing, outcome.reply or reply("agent_reask", state.language))

    def _start_manual_registration(self, state: ConversationState) -> TurnResult:
        registering = state.evolve(manual_registration=True, llm_conversation_history=[])
        return self._say(registering)

    async def _manual_registration(self, state: ConversationState, utterance: str) -> TurnResult:
        """Register the caller as a new customer from a spoken full name."""
        names = split_full_name(utterance)
        if names is None:
            turns = state.agent_turns + 1
            if turns >= MAX_AGENT_TURNS:
                return self.transfer(state)
            return self._say(
                state.evolve(agent_turns=turns),
                reply("manual_registration_retry", state.language),
            )

        first, last = names
        try:
            customer_id = await self.scheduling.create_customer(first, last, state.caller_phone or "")
        except SchedulingAPIError as e:
            logger.error(f"[IDENT] call={state.call_id} manual registration failed: {e}")
            return self.transfer(state)

        logger.info(f"METRIC customer_registered call={state.call_id} customer={customer_id}")
        return self.resolve(state, customer_id, f"{first} {last}")
