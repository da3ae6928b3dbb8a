"""
Per-call conversation state storage.

The dispatcher never touches the store directly; ConversationService loads
the state at the start of a turn and writes the new one back (or deletes it
when the call is over). Any backend that offers get/set/delete by call id
can replace the in-memory map, e.g. an external cache shared by several
workers.
"""
import logging
from typing import Dict, Optional, Protocol

from .models import ConversationState

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    def get(self, call_id: str) -> Optional[ConversationState]:
        ...

    def set(self, call_id: str, state: ConversationState) -> None:
        ...

    def delete(self, call_id: str) -> None:
        ...


class InMemoryConversationStore:
    """Process-local store. State lives only as long as the call."""

    def __init__(self):
        self._states: Dict[str, ConversationState] = {}

    def get(self, call_id: str) -> Optional[ConversationState]:
        return self._states.get(call_id)

    def set(self, call_id: str, state: ConversationState) -> None:
        self._states[call_id] = state

    def delete(self, call_id: str) -> None:
        if self._states.pop(call_id, None) is not None:
            logger.debug(f"Conversation state cleared for call={call_id}")

    def __len__(self) -> int:
        return len(self._states)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._states
