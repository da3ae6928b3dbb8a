"""
Per-call turn service.

This module wraps the step dispatcher for the telephony layer:
1. Loads (or starts) the call's state from the ConversationStore
2. Records the caller ID once, on the first turn that carries it
3. Runs one dispatcher turn
4. Stores the new state, or deletes it when the call is finished
5. Logs a one-line turn summary and keeps in-memory metrics

A failure inside a turn never reaches the caller as an error: the state is
left untouched and the receptionist apologises and asks again.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""
import logging
from typing import Dict, Optional

from agents.replies import reply
from engine.planner import StepDispatcher

from .models import ConversationState, ConversationStep, TurnResult
from .store import ConversationStore

logger = logging.getLogger(__name__)


def _log_turn_summary(
    call_id: str,
    step_before: ConversationStep,
    step_after: ConversationStep,
    finished: bool,
    attempts: int,
    customer_id: Optional[int],
) -> None:
    """
    Structured summary log for each call turn.

    One line per turn for monitoring and debugging:
    - call_id: Telephony call identifier
    - step: Transition taken this turn
    - finished: Whether the call ended
    - attempts: Identification attempts so far
    - customer: Resolved customer id, if any
    """
    logger.info(
        "[TURN] "
        f"call={call_id} "
        f"step={step_before.value}->{step_after.value} "
        f"finished={finished} "
        f"attempts={attempts} "
        f"customer={customer_id if customer_id is not None else 'none'}"
    )


# =============================================================================
# Internal Metrics Counters (logged, not exposed via API)
# =============================================================================
class _TurnMetrics:
    """
    Simple in-memory counters for the turn service.

    Counters reset on process restart.
    """

    def __init__(self):
        self.total_turns = 0
        self.errors = 0
        self.calls_completed = 0
        self.calls_transferred = 0
        self.step_counts: Dict[str, int] = {}
        self.consecutive_errors = 0
        self.max_consecutive_errors = 0

    def record_turn(self, result: TurnResult, error: bool = False):
        """Record metrics for a processed turn."""
        self.total_turns += 1
        step = result.state.step
        self.step_counts[step.value] = self.step_counts.get(step.value, 0) + 1

        if error:
            self.errors += 1
            self.consecutive_errors += 1
            self.max_consecutive_errors = max(self.max_consecutive_errors, self.consecutive_errors)
            if self.consecutive_errors >= 3:
                logger.warning(
                    f"[TURN-ANOMALY] consecutive_errors={self.consecutive_errors} "
                    f"(threshold=3, max_seen={self.max_consecutive_errors})"
                )
        else:
            self.consecutive_errors = 0

        if result.is_finished:
            if step == ConversationStep.COMPLETED:
                self.calls_completed += 1
            elif step == ConversationStep.TRANSFER_TO_HUMAN:
                self.calls_transferred += 1

    def log_summary(self):
        """Log a summary of current metrics."""
        if self.total_turns == 0:
            return

        error_rate = (self.errors / self.total_turns) * 100
        logger.info(
            f"[TURN-METRICS] "
            f"total={self.total_turns} "
            f"error_rate={error_rate:.1f}% "
            f"completed={self.calls_completed} "
            f"transferred={self.calls_transferred} "
            f"steps={self.step_counts}"
        )


class ConversationService:
    """Owns call state across turns; the dispatcher only sees one turn."""

    METRICS_LOG_EVERY = 100

    def __init__(self, store: ConversationStore, dispatcher: StepDispatcher):
        self.store = store
        self.dispatcher = dispatcher
        self.metrics = _TurnMetrics()

    def get_state(self, call_id: str) -> Optional[ConversationState]:
        return self.store.get(call_id)

    def end_call(self, call_id: str) -> None:
        """Forget a call (hang-up before the conversation finished)."""
        self.store.delete(call_id)
        logger.info(f"[TURN] call={call_id} ended by telephony layer")

    async def handle_turn(
        self,
        call_id: str,
        utterance: Optional[str],
        caller_phone: Optional[str] = None,
    ) -> TurnResult:
        """
        Process one turn of a call.

        Args:
            call_id: Telephony call identifier
            utterance: Caller text, or None to advance without new input
            caller_phone: Caller-ID number (recorded once)

        Returns:
            TurnResult with the new state, the reply and the finished flag
        """
        state = self.store.get(call_id)
        if state is None:
            state = ConversationState(call_id=call_id)
            logger.info(f"[TURN] call={call_id} new conversation")
        if caller_phone and not state.caller_phone:
            state = state.evolve(caller_phone=caller_phone)

        preview = utterance if utterance is None or len(utterance) <= 50 else utterance[:50] + "..."
        logger.info(f"[TURN] call={call_id} step={state.step.value} utterance={preview!r}")

        try:
            result = await self.dispatcher.handle_turn(state, utterance)
        except Exception as e:
            logger.error(f"[TURN] call={call_id} unexpected error: {e}", exc_info=True)
            result = TurnResult(state=state, reply_text=reply("error_apology", state.language))
            self.store.set(call_id, state)
            self.metrics.record_turn(result, error=True)
            return result

        if result.is_finished:
            self.store.delete(call_id)
        else:
            self.store.set(call_id, result.state)

        _log_turn_summary(
            call_id=call_id,
            step_before=state.step,
            step_after=result.state.step,
            finished=result.is_finished,
            attempts=result.state.identification_attempts,
            customer_id=result.state.customer_id,
        )

        self.metrics.record_turn(result)
        if self.metrics.total_turns % self.METRICS_LOG_EVERY == 0:
            self.metrics.log_summary()

        return result
