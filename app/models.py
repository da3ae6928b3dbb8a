"""
Pydantic models for the receptionist conversation engine.

ConversationState is the per-call record carried between turns. It is
replaced copy-on-write every turn (see ConversationState.evolve); nothing
in the engine mutates a state instance in place.

Python 3.9 compatible - uses typing.List, typing.Dict, typing.Optional
"""

from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Language(str, Enum):
    ES = "es"
    EN = "en"


class ConversationStep(str, Enum):
    # Customer identification
    ASK_LANGUAGE = "askLanguage"
    IDENTIFY_BY_CALLER_ID = "identifyByCallerId"
    DISAMBIGUATE_CUSTOMER = "disambiguateCustomer"
    ASK_CUSTOMER_NAME = "askCustomerName"
    CONFIRM_CUSTOMER_IDENTITY = "confirmCustomerIdentity"
    LLM_FALLBACK = "llmFallback"
    # Appointment flow
    GREETING = "greeting"
    ASK_TYPE = "askType"
    ASK_DATE = "askDate"
    ASK_TIME = "askTime"
    ASK_DURATION = "askDuration"
    CONFIRM_SUMMARY = "confirmSummary"
    CREATING_APPOINTMENT = "creatingAppointment"
    # Terminal
    COMPLETED = "completed"
    TRANSFER_TO_HUMAN = "transferToHuman"


TERMINAL_STEPS = frozenset({ConversationStep.COMPLETED, ConversationStep.TRANSFER_TO_HUMAN})

# Steps that act on their own when entered (no caller input required)
AUTOMATIC_STEPS = frozenset({
    ConversationStep.IDENTIFY_BY_CALLER_ID,
    ConversationStep.CREATING_APPOINTMENT,
})


class AppointmentType(IntEnum):
    QUOTE = 0
    INSTALLATION = 1
    REPAIR = 2


class AppointmentStatus(IntEnum):
    PENDING = 0
    ATTENDED = 1
    CANCELED = 2


DEFAULT_DURATION = "01:00:00"
ALLOWED_DURATIONS = ("00:30:00", "01:00:00", "01:30:00", "02:00:00")


# ============================================================
# Scheduling backend projections (read-only)
# ============================================================

class CustomerMatch(BaseModel):
    """Read-only projection of a customer record from the scheduling API."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: int = Field(validation_alias=AliasChoices("id", "Id"))
    first_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("first_name", "firstName", "FirstName")
    )
    last_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("last_name", "lastName", "LastName")
    )
    company_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("company_name", "companyName", "CompanyName")
    )
    phone: Optional[str] = Field(default=None, validation_alias=AliasChoices("phone", "Phone"))
    account_manager_id: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices("account_manager_id", "accountManagerId", "AccountManagerId"),
    )

    @property
    def display_name(self) -> str:
        full = " ".join(p.strip() for p in (self.first_name, self.last_name) if p and p.strip())
        return full or (self.company_name or "").strip() or f"#{self.id}"

    @property
    def masked_phone(self) -> Optional[str]:
        if not self.phone:
            return None
        return f"***{self.phone[-4:]}"


class TeamMember(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    display_name: str


class ListEnvelope(BaseModel):
    """
    Canonical response envelope of the scheduling API list endpoints.

    The backend answers {"success": true, "data": {"customers": [...]}} on
    some routes and {"success": true, "data": {"data": [...]}} on others.
    An empty result may also come back as {"success": true, "data": []}.
    records() hides those differences right at the client boundary.
    """
    model_config = ConfigDict(extra="ignore")

    success: bool = True
    data: Any = None

    def records(self, key: str) -> List[Dict[str, Any]]:
        if not isinstance(self.data, dict):
            return []
        raw = self.data.get(key)
        if raw is None:
            raw = self.data.get("data")
        if not isinstance(raw, list):
            return []
        return [r for r in raw if isinstance(r, dict)]


class CreateAppointmentPayload(BaseModel):
    customerId: int
    type: AppointmentType
    startDate: str  # ISO 8601
    duration: str = DEFAULT_DURATION  # HH:MM:SS
    status: AppointmentStatus = AppointmentStatus.PENDING
    userId: Optional[int] = None
    saleOrderId: Optional[int] = None
    installationContactId: Optional[int] = None
    remarks: Optional[str] = None


class Appointment(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int = Field(validation_alias=AliasChoices("id", "Id"))


# ============================================================
# Conversation state
# ============================================================

class LlmMessage(BaseModel):
    """One entry of the tier-3 agent transcript (OpenAI chat format)."""
    role: str  # "system", "user", "assistant" or "tool"
    content: str = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None
    tool_call_id: Optional[str] = None

    def to_openai(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = self.tool_calls
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        return message


class ConversationState(BaseModel):
    call_id: str
    language: Language = Language.ES
    step: ConversationStep = ConversationStep.ASK_LANGUAGE

    # Customer identification
    caller_phone: Optional[str] = None
    customer_matches: List[CustomerMatch] = Field(default_factory=list)
    customer_id: Optional[int] = None
    customer_confirmed_name: Optional[str] = None
    identification_attempts: int = 0
    llm_conversation_history: List[LlmMessage] = Field(default_factory=list)
    agent_turns: int = 0
    manual_registration: bool = False

    # Appointment
    type: Optional[AppointmentType] = None
    start_date_iso: Optional[str] = None
    date_has_time: bool = False
    duration: str = DEFAULT_DURATION
    status: AppointmentStatus = AppointmentStatus.PENDING
    user_id: Optional[int] = None
    sale_order_id: Optional[int] = None
    installation_contact_id: Optional[int] = None
    remarks: Optional[str] = None
    appointment_id: Optional[int] = None

    def evolve(self, **changes: Any) -> "ConversationState":
        """Return a copy with the given fields replaced."""
        return self.model_copy(update=changes)

    @property
    def is_identified(self) -> bool:
        return self.customer_id is not None

    def to_appointment_payload(self) -> CreateAppointmentPayload:
        if self.customer_id is None or self.type is None or self.start_date_iso is None:
            raise ValueError(f"Appointment data incomplete for call {self.call_id}")
        return CreateAppointmentPayload(
            customerId=self.customer_id,
            type=self.type,
            startDate=self.start_date_iso,
            duration=self.duration,
            status=self.status,
            userId=self.user_id,
            saleOrderId=self.sale_order_id,
            installationContactId=self.installation_contact_id,
            remarks=self.remarks,
        )


# ============================================================
# HTTP shell models
# ============================================================

class TurnRequest(BaseModel):
    # None means "advance without new input"
    utterance: Optional[str] = None
    callerPhone: Optional[str] = None


class TurnResponse(BaseModel):
    callId: str
    replyText: str
    isFinished: bool
    step: ConversationStep
    language: Language
    customerId: Optional[int] = None
    appointmentId: Optional[int] = None


class TurnResult(BaseModel):
    """Outcome of one dispatcher turn."""
    state: ConversationState
    reply_text: str
    is_finished: bool = False
