"""
Tier-3 identification agent.

Open-ended tool-calling loop used when neither caller ID nor a name search
found the caller. The model may search customers, search the sales team,
search a salesperson's customers, register a new customer, and end the
tier through two control tools:

- resolve_identity(customer_id, name): the caller is this customer
- transfer_to_human(): give up and hand over to staff

The legacy text markers [IDENTIFIED:id:name], [CREATED:id:name] and
[TRANSFER] are still honoured when a model writes them in its reply, and
are always stripped before the reply is spoken.

A resolved id is only accepted if it appeared in a tool result earlier in
the transcript; the model cannot invent a customer.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.llm_service import LLMService, ToolCall
from app.models import ConversationState, CustomerMatch, LlmMessage
from app.prompts import build_identification_agent_prompt
from app.scheduling_client import SchedulingAPIError, SchedulingClient

logger = logging.getLogger(__name__)

# Model round trips per caller turn
MAX_TOOL_LOOPS = 3
# Tool calls executed from a single model response
MAX_TOOL_CALLS_PER_LOOP = 3
AGENT_MAX_TOKENS = 200


def _function(name: str, description: str, properties: Dict[str, Any], required: List[str]) -> Dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": required},
        },
    }


TOOLS: List[Dict[str, Any]] = [
    _function(
        "search_customers",
        "Search customers by name, phone or email. Returns a list of matches.",
        {"query": {"type": "string", "description": "Customer name, phone or email"}},
        ["query"],
    ),
    _function(
        "search_team_members",
        "Search salespeople/advisors by name. Useful when the caller remembers who helped them.",
        {"query": {"type": "string", "description": "Salesperson or advisor name"}},
        ["query"],
    ),
    _function(
        "search_customers_by_account_manager",
        "Search customers assigned to a salesperson found with search_team_members.",
        {
            "customer_query": {"type": "string", "description": "Customer name or detail to filter by"},
            "account_manager_id": {"type": "integer", "description": "Salesperson id"},
        },
        ["customer_query", "account_manager_id"],
    ),
    _function(
        "create_customer",
        "Register a new customer. Only when the caller explicitly agrees to register.",
        {
            "first_name": {"type": "string"},
            "last_name": {"type": "string"},
            "phone": {"type": "string"},
        },
        ["first_name", "last_name", "phone"],
    ),
    _function(
        "resolve_identity",
        "Declare which customer is calling. The id must come from a previous tool result.",
        {
            "customer_id": {"type": "integer"},
            "name": {"type": "string", "description": "Customer full name"},
        },
        ["customer_id", "name"],
    ),
    _function(
        "transfer_to_human",
        "Hand the call over to a human when the caller cannot be identified.",
        {},
        [],
    ),
]


_IDENTIFIED = re.compile(r"\[IDENTIFIED:(\d+):([^\]]+)\]")
_CREATED = re.compile(r"\[CREATED:(\d+):([^\]]+)\]")
_TRANSFER = re.compile(r"\[TRANSFER\]")


def strip_markers(text: str) -> str:
    for pattern in (_IDENTIFIED, _CREATED, _TRANSFER):
        text = pattern.sub("", text)
    return re.sub(r"\s{2,}", " ", text).strip()


@dataclass
class AgentOutcome:
    """What one tier-3 turn decided."""
    reply: str
    history: List[LlmMessage]
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    created: bool = False
    transfer: bool = False

    @property
    def resolved(self) -> bool:
        return self.customer_id is not None


@dataclass
class _Decision:
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    created: bool = False
    transfer: bool = False
    known: Dict[int, str] = field(default_factory=dict)


def _customer_summary(match: CustomerMatch) -> Dict[str, Any]:
    return {
        "id": match.id,
        "name": match.display_name,
        "company": match.company_name,
        "phone": match.masked_phone,
    }


def known_customers(history: List[LlmMessage]) -> Dict[int, str]:
    """Customer ids (and names) that tool results have put in front of the model."""
    known: Dict[int, str] = {}
    for message in history:
        if message.role != "tool":
            continue
        try:
            payload = json.loads(message.content)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        for customer in payload.get("customers") or []:
            if isinstance(customer, dict) and isinstance(customer.get("id"), int):
                known[customer["id"]] = customer.get("name") or ""
        if isinstance(payload.get("customerId"), int):
            known[payload["customerId"]] = payload.get("name") or ""
    return known


class IdentificationAgent:
    """LLM tool-calling loop that tries to work out who is calling."""

    def __init__(
        self,
        llm: LLMService,
        scheduling: SchedulingClient,
        business_name: Optional[str] = None,
    ):
        self.llm = llm
        self.scheduling = scheduling
        self.business_name = business_name or os.getenv("BUSINESS_NAME", "BlindsBook")

    async def is_available(self) -> bool:
        return await self.llm.is_available()

    async def run(self, state: ConversationState, utterance: Optional[str]) -> AgentOutcome:
        """
        Run one caller turn of the agent.

        Args:
            state: Current state (its transcript is continued, not mutated)
            utterance: What the caller just said

        Returns:
            AgentOutcome with the spoken reply and the extended transcript

        Raises:
            LLMUnavailableError: the model could not be reached
        """
        history = list(state.llm_conversation_history)
        if not history:
            history.append(
                LlmMessage(
                    role="system",
                    content=build_identification_agent_prompt(
                        state.language, state.caller_phone, self.business_name
                    ),
                )
            )
        if utterance:
            history.append(LlmMessage(role="user", content=utterance))

        decision = _Decision(known=known_customers(history))
        final_content = ""

        for loop in range(1, MAX_TOOL_LOOPS + 1):
            result = await self.llm.chat(
                [m.to_openai() for m in history], tools=TOOLS, max_tokens=AGENT_MAX_TOKENS
            )

            if not result.tool_calls:
                final_content = result.content
                history.append(LlmMessage(role="assistant", content=final_content))
                break

            calls = result.tool_calls[:MAX_TOOL_CALLS_PER_LOOP]
            history.append(
                LlmMessage(
                    role="assistant",
                    content=result.content,
                    tool_calls=[tc.to_openai() for tc in calls],
                )
            )
            for tc in calls:
                output = await self._execute(tc, state, decision)
                history.append(LlmMessage(role="tool", content=output, tool_call_id=tc.id))

            if decision.customer_id is not None or decision.transfer:
                final_content = result.content
                break
            logger.debug(f"[AGENT] call={state.call_id} loop={loop} tools={[tc.name for tc in calls]}")

        if decision.customer_id is None and not decision.transfer:
            self._apply_markers(final_content, decision, state.call_id)

        outcome = AgentOutcome(
            reply=strip_markers(final_content),
            history=history,
            customer_id=decision.customer_id,
            customer_name=decision.customer_name,
            created=decision.created,
            transfer=decision.transfer,
        )
        logger.info(
            f"[AGENT] call={state.call_id} resolved={outcome.resolved} "
            f"created={outcome.created} transfer={outcome.transfer}"
        )
        return outcome

    def _apply_markers(self, content: str, decision: _Decision, call_id: str) -> None:
        for pattern, created in ((_IDENTIFIED, False), (_CREATED, True)):
            match = pattern.search(content)
            if not match:
                continue
            customer_id = int(match.group(1))
            if customer_id not in decision.known:
                logger.warning(f"[AGENT] call={call_id} ignoring marker for unseen customer id={customer_id}")
                return
            decision.customer_id = customer_id
            decision.customer_name = match.group(2).strip()
            decision.created = created
            return
        if _TRANSFER.search(content):
            decision.transfer = True

    async def _execute(self, tc: ToolCall, state: ConversationState, decision: _Decision) -> str:
        """Execute one tool call and return its JSON result for the transcript."""
        args = tc.parsed_arguments()
        try:
            if tc.name == "search_customers":
                matches = await self.scheduling.search_customers(str(args.get("query", "")))
                return self._customers_result(matches, decision)

            if tc.name == "search_team_members":
                members = await self.scheduling.search_team_members(str(args.get("query", "")))
                return json.dumps({
                    "found": len(members),
                    "members": [{"id": m.id, "name": m.display_name} for m in members],
                })

            if tc.name == "search_customers_by_account_manager":
                manager_id = int(args.get("account_manager_id"))
                matches = await self.scheduling.search_customers_by_account_manager(
                    str(args.get("customer_query", "")), manager_id
                )
                return self._customers_result(matches, decision)

            if tc.name == "create_customer":
                first = str(args.get("first_name", "")).strip()
                last = str(args.get("last_name", "")).strip()
                phone = str(args.get("phone") or state.caller_phone or "").strip()
                if not first:
                    return json.dumps({"error": "first_name is required"})
                customer_id = await self.scheduling.create_customer(first, last, phone)
                name = f"{first} {last}".strip()
                decision.known[customer_id] = name
                decision.created = True
                return json.dumps({"success": True, "customerId": customer_id, "name": name})

            if tc.name == "resolve_identity":
                customer_id = int(args.get("customer_id"))
                if customer_id not in decision.known:
                    logger.warning(
                        f"[AGENT] call={state.call_id} resolve_identity with unseen id={customer_id}"
                    )
                    return json.dumps({"error": "Unknown customer id. Search first."})
                decision.customer_id = customer_id
                decision.customer_name = str(args.get("name") or decision.known[customer_id]).strip()
                return json.dumps({"success": True})

            if tc.name == "transfer_to_human":
                decision.transfer = True
                return json.dumps({"success": True})

        except SchedulingAPIError as e:
            logger.warning(f"[AGENT] call={state.call_id} tool={tc.name} failed: {e}")
            return json.dumps({"error": "The customer system is not responding."})
        except (TypeError, ValueError):
            return json.dumps({"error": f"Invalid arguments for {tc.name}"})

        return json.dumps({"error": f"Unknown tool: {tc.name}"})

    @staticmethod
    def _customers_result(matches: List[CustomerMatch], decision: _Decision) -> str:
        for match in matches:
            decision.known[match.id] = match.display_name
        return json.dumps({
            "found": len(matches),
            "customers": [_customer_summary(m) for m in matches],
        })
