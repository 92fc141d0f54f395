"""Tests for the Claude and Redis client wrappers."""

import httpx
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from anthropic import APIError
from redis.exceptions import ConnectionError as RedisConnectionError

from quickbook.infra.claude import ClaudeClient, ClaudeClientError
from quickbook.infra.redis import RedisClient, check_redis_health, namespaced


def _api_error(message: str = "overloaded") -> APIError:
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return APIError(message, request=request, body=None)


def _message(*texts: str):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=t) for t in texts],
        usage=SimpleNamespace(input_tokens=40, output_tokens=12),
        stop_reason="end_turn",
    )


class TestClaudeClient:
    """Test model fallback and response handling."""

    @pytest.fixture
    def client(self):
        client = ClaudeClient(api_key="test-key")
        client._client = MagicMock()
        client._client.messages.create = AsyncMock()
        return client

    def test_requires_api_key(self):
        with patch("quickbook.infra.claude.settings") as mock_settings:
            mock_settings.anthropic_api_key = ""
            with pytest.raises(ValueError):
                ClaudeClient()

    @pytest.mark.asyncio
    async def test_generate(self, client):
        client._client.messages.create.return_value = _message('{"serviceName": ', '"Haircut"}')

        response = await client.generate("Haircut", system_prompt="Extract")

        assert response.content == '{"serviceName": "Haircut"}'
        assert client.total_input_tokens == 40
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "Extract"
        assert kwargs["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_falls_back_to_second_model(self, client):
        client._client.messages.create.side_effect = [_api_error(), _message("{}")]

        response = await client.generate("Haircut")

        first, second = client._client.messages.create.call_args_list
        assert first.kwargs["model"] != second.kwargs["model"]
        assert response.model == second.kwargs["model"]

    @pytest.mark.asyncio
    async def test_all_models_fail(self, client):
        client._client.messages.create.side_effect = _api_error()

        with pytest.raises(ClaudeClientError):
            await client.generate("Haircut")

    @pytest.mark.asyncio
    async def test_no_fallback_when_disabled(self, client):
        client._client.messages.create.side_effect = _api_error()

        with pytest.raises(ClaudeClientError):
            await client.generate("Haircut", use_fallback_on_error=False)

        assert client._client.messages.create.call_count == 1

    @pytest.mark.asyncio
    async def test_empty_answer_is_an_error(self, client):
        client._client.messages.create.return_value = _message()

        with pytest.raises(ClaudeClientError):
            await client.generate("Haircut", use_fallback_on_error=False)


class TestRedisClient:
    """Test connection handling while Redis is down."""

    @pytest.fixture(autouse=True)
    def reset_client(self):
        RedisClient._client = None
        RedisClient._retry_after = 0.0
        yield
        RedisClient._client = None
        RedisClient._retry_after = 0.0

    def test_namespaced(self):
        assert namespaced("conversation", "state", "") == "quickbook:v1:conversation:state:"

    @pytest.mark.asyncio
    async def test_failed_connect_backs_off(self):
        """Test a down Redis is not re-dialed on every call."""
        unreachable = MagicMock()
        unreachable.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        unreachable.aclose = AsyncMock()

        with patch("quickbook.infra.redis.redis.from_url", return_value=unreachable) as from_url:
            assert await RedisClient.get_client() is None
            assert await RedisClient.get_client() is None

        assert from_url.call_count == 1

    @pytest.mark.asyncio
    async def test_connect_and_reuse(self):
        healthy = MagicMock()
        healthy.ping = AsyncMock(return_value=True)

        with patch("quickbook.infra.redis.redis.from_url", return_value=healthy) as from_url:
            assert await RedisClient.get_client() is healthy
            assert await RedisClient.get_client() is healthy
            assert await check_redis_health()

        assert from_url.call_count == 1
