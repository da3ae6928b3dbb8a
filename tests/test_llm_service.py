"""
Tests for the LLM chat client.

These tests verify that:
1. With no provider configured the service is unavailable and chat raises
2. Tool calls are surfaced with JSON-string arguments
3. A failed call marks the backend unavailable
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.llm_service import LLMService, LLMUnavailableError, ToolCall


def _completion(content=None, tool_calls=None):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=None)


def _client(response=None, error=None):
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response, side_effect=error)
    return client


class TestNoProvider:

    @pytest.mark.asyncio
    async def test_unconfigured_service(self, monkeypatch):
        for name in ("OPENAI_API_KEY", "AZURE_OPENAI_ENDPOINT", "AZURE_OPENAI_API_KEY", "AZURE_OPENAI_DEPLOYMENT"):
            monkeypatch.delenv(name, raising=False)

        service = LLMService()

        assert service.provider == "none"
        assert await service.is_available() is False
        with pytest.raises(LLMUnavailableError):
            await service.chat([{"role": "user", "content": "hola"}])


class TestChat:

    @pytest.mark.asyncio
    async def test_plain_content(self):
        client = _client(_completion(content='{"reply": "Hola"}'))
        service = LLMService(client=client, model="test-model")

        result = await service.chat([{"role": "user", "content": "hola"}], max_tokens=50)

        assert result.content == '{"reply": "Hola"}'
        assert result.tool_calls == []
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["max_tokens"] == 50
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_calls(self):
        tool_call = SimpleNamespace(
            id="call_1",
            function=SimpleNamespace(name="search_customers", arguments={"query": "Ana"}),
        )
        client = _client(_completion(content=None, tool_calls=[tool_call]))
        service = LLMService(client=client)

        result = await service.chat([], tools=[{"type": "function"}])

        assert result.content == ""
        assert result.tool_calls == [
            ToolCall(id="call_1", name="search_customers", arguments='{"query": "Ana"}')
        ]
        assert result.tool_calls[0].parsed_arguments() == {"query": "Ana"}
        assert client.chat.completions.create.call_args.kwargs["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_failure_marks_unavailable(self):
        client = _client(error=RuntimeError("connection reset"))
        service = LLMService(client=client)
        assert await service.is_available() is True

        with pytest.raises(LLMUnavailableError):
            await service.chat([{"role": "user", "content": "hola"}])

        assert await service.is_available() is False

    @pytest.mark.asyncio
    async def test_availability_recovers_after_ttl(self):
        client = _client(error=RuntimeError("timeout"))
        service = LLMService(client=client)
        clock = [100.0]
        service._clock = lambda: clock[0]

        with pytest.raises(LLMUnavailableError):
            await service.chat([])
        assert await service.is_available() is False

        clock[0] += LLMService.AVAILABILITY_TTL_SECONDS + 1
        assert await service.is_available() is True


def test_non_json_tool_arguments():
    assert ToolCall(id="x", name="t", arguments="not json").parsed_arguments() == {}
