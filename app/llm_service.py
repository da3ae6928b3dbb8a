"""
LLM chat client used by the field extraction adapter and the tier-3
identification agent.

Provider selection (first match wins):
1. Azure OpenAI  - AZURE_OPENAI_ENDPOINT + AZURE_OPENAI_API_KEY + AZURE_OPENAI_DEPLOYMENT
2. OpenAI        - OPENAI_API_KEY (OPENAI_BASE_URL may point at any
                   OpenAI-compatible server, e.g. a local Ollama)
3. none          - is_available() is False and the engine runs on its
                   deterministic rules only

RESILIENCE DESIGN:
- Availability is cached for a short TTL so turns do not pay for a probe
- A failed chat call marks the backend unavailable until the TTL expires
- Tool-call arguments are always surfaced as JSON strings

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncAzureOpenAI, AsyncOpenAI

logger = logging.getLogger(__name__)

# Voice replies are at most two sentences
DEFAULT_MAX_TOKENS = 150
DEFAULT_TEMPERATURE = 0.3


class LLMUnavailableError(RuntimeError):
    """Raised when no LLM backend is configured or the backend call failed."""


@dataclass
class ToolCall:
    """A single function call requested by the model."""
    id: str
    name: str
    arguments: str  # JSON-encoded, regardless of provider

    def parsed_arguments(self) -> Dict[str, Any]:
        try:
            parsed = json.loads(self.arguments or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Tool call {self.name} has non-JSON arguments: {self.arguments[:200]}")
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatResult:
    content: str
    tool_calls: List[ToolCall] = field(default_factory=list)


def _tool_calls_from_message(message: Any) -> List[ToolCall]:
    calls: List[ToolCall] = []
    for tc in getattr(message, "tool_calls", None) or []:
        arguments = tc.function.arguments
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        calls.append(ToolCall(id=tc.id, name=tc.function.name, arguments=arguments))
    return calls


class LLMService:
    """Thin async wrapper over the OpenAI SDK chat completions API."""

    AVAILABILITY_TTL_SECONDS = 30.0

    def __init__(
        self,
        client: Any = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        self._available_cache: Optional[bool] = None
        self._available_checked_at = 0.0
        self._clock = time.monotonic

        if client is not None:
            self.client = client
            self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
            self.provider = provider or "custom"
            return

        timeout = float(os.getenv("LLM_TIMEOUT_SECONDS", "15"))
        azure_endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
        azure_key = os.getenv("AZURE_OPENAI_API_KEY")
        azure_deployment = os.getenv("AZURE_OPENAI_DEPLOYMENT")
        openai_key = os.getenv("OPENAI_API_KEY")

        if azure_endpoint and azure_key and azure_deployment:
            self.client = AsyncAzureOpenAI(
                azure_endpoint=azure_endpoint,
                api_key=azure_key,
                api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-10-21"),
                timeout=timeout,
            )
            # Azure routes by deployment name
            self.model = azure_deployment
            self.provider = "azure-openai"
        elif openai_key:
            self.client = AsyncOpenAI(
                api_key=openai_key,
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                timeout=timeout,
            )
            self.model = model or os.getenv("OPENAI_MODEL", "gpt-4o-mini")
            self.provider = "openai"
        else:
            self.client = None
            self.model = "none"
            self.provider = "none"

        logger.info(f"LLM service configured: provider={self.provider} model={self.model}")

    @property
    def is_configured(self) -> bool:
        return self.client is not None

    async def is_available(self) -> bool:
        """
        Cached availability check.

        There is no cheap ping endpoint on the hosted providers, so a
        configured backend counts as available until a call fails.
        """
        now = self._clock()
        if (
            self._available_cache is not None
            and now - self._available_checked_at < self.AVAILABILITY_TTL_SECONDS
        ):
            return self._available_cache

        self._available_cache = self.is_configured
        self._available_checked_at = now
        return self._available_cache

    def _mark_unavailable(self) -> None:
        self._available_cache = False
        self._available_checked_at = self._clock()

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
    ) -> ChatResult:
        """
        Send a chat completion request.

        Raises:
            LLMUnavailableError: no backend configured, or the call failed
        """
        if self.client is None:
            raise LLMUnavailableError("No LLM provider configured")

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except Exception as e:
            self._mark_unavailable()
            logger.error(
                f"METRIC llm_api_error provider={self.provider} error={type(e).__name__}"
            )
            raise LLMUnavailableError(str(e)) from e

        if not response.choices:
            raise LLMUnavailableError("LLM returned no choices")

        message = response.choices[0].message
        usage = getattr(response, "usage", None)
        if usage is not None:
            logger.debug(
                f"LLM tokens: {usage.prompt_tokens} prompt + "
                f"{usage.completion_tokens} completion = {usage.total_tokens} total"
            )

        return ChatResult(
            content=message.content or "",
            tool_calls=_tool_calls_from_message(message),
        )


# Singleton instance
_llm_service: Optional[LLMService] = None


def get_llm_service() -> LLMService:
    """Get or create the LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
