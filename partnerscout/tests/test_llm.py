"""Tests for LLMClient reply parsing and error translation (SDK calls mocked)."""
from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from partnerscout.errors import LLMCallError, RateLimitError, TransientError
from partnerscout.llm import LLMClient


def _anthropic_client(reply=None, error=None) -> LLMClient:
    client = LLMClient(provider="anthropic", model="test-model", api_key="test-key")
    sdk = MagicMock()
    if error is not None:
        sdk.messages.create = AsyncMock(side_effect=error)
    else:
        sdk.messages.create = AsyncMock(return_value=SimpleNamespace(content=[SimpleNamespace(text=reply)]))
    client._client = sdk
    return client


def _openai_client(reply: str) -> LLMClient:
    client = LLMClient(provider="openai", model="test-model", api_key="test-key")
    sdk = MagicMock()
    message = SimpleNamespace(content=reply)
    sdk.chat.completions.create = AsyncMock(
        return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)])
    )
    client._client = sdk
    return client


class _StatusError(Exception):
    def __init__(self, status: int, retry_after: str | None = None):
        super().__init__(f"status {status}")
        self.status_code = status
        self.response = SimpleNamespace(headers={"retry-after": retry_after} if retry_after else {})


class TestLLMClient:
    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            LLMClient(provider="carrier-pigeon")

    @pytest.mark.asyncio
    async def test_parses_fenced_json(self):
        client = _anthropic_client('```json\n{"coverage_percentage": 85}\n```')
        assert await client.call("sys", "user") == {"coverage_percentage": 85}

    @pytest.mark.asyncio
    async def test_openai_reply(self):
        client = _openai_client('{"scores": []}')
        assert await client.call("sys", "user") == {"scores": []}
        kwargs = client._client.chat.completions.create.await_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "sys"}

    @pytest.mark.asyncio
    async def test_invalid_json_is_retryable(self):
        client = _anthropic_client("Sure! Here are some ideas for your project.")
        with pytest.raises(LLMCallError) as exc_info:
            await client.call("sys", "user")
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_rate_limit_translated(self):
        client = _anthropic_client(error=_StatusError(429, retry_after="3"))
        with pytest.raises(RateLimitError) as exc_info:
            await client.call("sys", "user")
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.asyncio
    async def test_server_error_translated(self):
        client = _anthropic_client(error=_StatusError(503))
        with pytest.raises(TransientError):
            await client.complete("sys", "user")

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_llm_error(self):
        client = _anthropic_client(error=AttributeError("content"))
        with pytest.raises(LLMCallError):
            await client.complete("sys", "user")
