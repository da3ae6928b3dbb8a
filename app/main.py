"""
BlindsBook Receptionist - FastAPI Application

Thin HTTP shell over the conversation engine. The telephony layer posts one
caller utterance per turn and speaks the reply it gets back; all flow
decisions live in engine.planner.

Python 3.9 compatible.
"""

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from engine.planner import StepDispatcher

from .conversation import ConversationService
from .llm_service import LLMService, get_llm_service
from .models import TurnRequest, TurnResponse
from .scheduling_client import SchedulingClient, get_scheduling_client
from .store import InMemoryConversationStore

# Load environment variables from the project .env
# Try multiple paths to ensure we find .env
env_paths = [
    Path(__file__).parent.parent / ".env",  # project root
    Path.cwd() / ".env",  # current working directory
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()  # fallback to default behavior

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Service instances (Python 3.9 compatible type hints)
llm_service: Optional[LLMService] = None
scheduling_client: Optional[SchedulingClient] = None
conversation_service: Optional[ConversationService] = None


def _mask_key(key: Optional[str]) -> str:
    """Mask API key showing only last 4 chars."""
    if not key:
        return "(not set)"
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"


def build_conversation_service(
    llm: LLMService, scheduling: SchedulingClient
) -> ConversationService:
    """Wire the dispatcher and the in-memory store around the given clients."""
    dispatcher = StepDispatcher(scheduling, llm)
    return ConversationService(InMemoryConversationStore(), dispatcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - initialize services."""
    global llm_service, scheduling_client, conversation_service

    logger.info("=" * 60)
    logger.info("Initializing BlindsBook Receptionist")
    logger.info("=" * 60)

    openai_key = os.getenv("OPENAI_API_KEY")
    azure_key = os.getenv("AZURE_OPENAI_API_KEY")
    api_token = os.getenv("BLINDSBOOK_API_TOKEN")

    logger.info(f"OPENAI_API_KEY present: {bool(openai_key)} ({_mask_key(openai_key)})")
    logger.info(f"AZURE_OPENAI_API_KEY present: {bool(azure_key)} ({_mask_key(azure_key)})")
    logger.info(f"BLINDSBOOK_API_TOKEN present: {bool(api_token)} ({_mask_key(api_token)})")
    logger.info(f"BUSINESS_NAME: {os.getenv('BUSINESS_NAME', 'BlindsBook')}")

    llm_service = get_llm_service()
    if llm_service.is_configured:
        logger.info(f"LLM service initialized: provider={llm_service.provider}")
    else:
        logger.warning("No LLM provider configured - running on deterministic rules only")

    scheduling_client = get_scheduling_client()
    conversation_service = build_conversation_service(llm_service, scheduling_client)
    logger.info("Conversation service initialized successfully")

    logger.info("=" * 60)

    yield

    # Shutdown
    if scheduling_client:
        await scheduling_client.close()
    logger.info("Shutting down BlindsBook Receptionist")


app = FastAPI(
    title="BlindsBook Receptionist",
    description="Telephone receptionist that identifies callers and books appointments",
    version=VERSION,
    lifespan=lifespan,
)

# CORS middleware for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _service() -> ConversationService:
    if conversation_service is None:
        logger.error("Conversation service not initialized")
        raise HTTPException(status_code=503, detail="service_unavailable")
    return conversation_service


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": VERSION}


@app.post("/calls/{call_id}/turn", response_model=TurnResponse)
async def call_turn(call_id: str, request: TurnRequest) -> TurnResponse:
    """
    Process one caller turn.

    A null utterance advances the call without new input (first turn of a
    call, or a silent telephony event). The reply is always speakable: the
    conversation service turns internal failures into an apology.

    Returns:
        TurnResponse with the reply, the finished flag and the new step
    """
    service = _service()
    result = await service.handle_turn(call_id, request.utterance, request.callerPhone)
    state = result.state

    return TurnResponse(
        callId=call_id,
        replyText=result.reply_text,
        isFinished=result.is_finished,
        step=state.step,
        language=state.language,
        customerId=state.customer_id,
        appointmentId=state.appointment_id,
    )


@app.delete("/calls/{call_id}")
async def end_call(call_id: str):
    """Forget a call the telephony layer hung up on."""
    _service().end_call(call_id)
    return {"callId": call_id, "ended": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
