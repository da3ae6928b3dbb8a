"""
Shared fixtures: an offline LLM, a mocked scheduling backend and a fixed clock.

The reference instant is Saturday 17 October 2026, 09:00 in New York.
"""

import os
from datetime import datetime
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

os.environ["RECEPTIONIST_TIMEZONE"] = "America/New_York"
os.environ["BUSINESS_NAME"] = "BlindsBook"

from app.llm_service import ChatResult, LLMService, LLMUnavailableError
from app.models import Appointment, CustomerMatch
from app.scheduling_client import SchedulingClient
from engine.planner import StepDispatcher

REFERENCE = datetime(2026, 10, 17, 9, 0)


@pytest.fixture
def now():
    return lambda: REFERENCE


@pytest.fixture
def llm():
    """LLM with no reachable backend (deterministic rules only)."""
    mock = MagicMock(spec=LLMService)
    mock.is_available = AsyncMock(return_value=False)
    mock.chat = AsyncMock(side_effect=LLMUnavailableError("offline"))
    return mock


@pytest.fixture
def llm_replying(llm):
    """Factory: make the LLM answer with the given contents, in order."""

    def _reply(*results):
        llm.is_available = AsyncMock(return_value=True)
        llm.chat = AsyncMock(
            side_effect=[r if isinstance(r, ChatResult) else ChatResult(content=r) for r in results]
        )
        return llm

    return _reply


@pytest.fixture
def scheduling():
    mock = MagicMock(spec=SchedulingClient)
    mock.search_customers = AsyncMock(return_value=[])
    mock.search_customers_by_phone = AsyncMock(return_value=[])
    mock.search_customers_by_account_manager = AsyncMock(return_value=[])
    mock.search_team_members = AsyncMock(return_value=[])
    mock.create_customer = AsyncMock(return_value=900)
    mock.create_appointment = AsyncMock(return_value=Appointment(id=501))
    return mock


@pytest.fixture
def make_customer():
    def _make(
        customer_id: int,
        first: str,
        last: str,
        phone: Optional[str] = None,
        account_manager_id: Optional[int] = None,
    ) -> CustomerMatch:
        return CustomerMatch(
            id=customer_id,
            first_name=first,
            last_name=last,
            phone=phone,
            account_manager_id=account_manager_id,
        )

    return _make


@pytest.fixture
def dispatcher(scheduling, llm, now):
    return StepDispatcher(scheduling, llm, now=now, business_name="BlindsBook")
