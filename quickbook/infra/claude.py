"""
Claude API Client

Thin async wrapper over the Anthropic SDK used by intent extraction.
The SDK's own retries are disabled: the extractor bounds every call with
its own timeout and decides whether to try again. A failing primary model
falls through to the fallback model within the same call.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from anthropic import AsyncAnthropic, APIError

from quickbook.config import settings

logger = logging.getLogger(__name__)


class ClaudeClientError(Exception):
    """Raised when no model produced a usable answer."""
    pass


@dataclass
class ClaudeResponse:
    """Text answer plus usage figures."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    stop_reason: Optional[str]
    latency_ms: float


class ClaudeClient:
    """
    Async Claude API client.

    Keeps running token totals so extraction cost shows up in the logs.
    """

    _instance: Optional["ClaudeClient"] = None

    def __init__(self, api_key: Optional[str] = None):
        """Initialize Claude client.

        Args:
            api_key: Anthropic API key (defaults to settings)
        """
        api_key = api_key or settings.anthropic_api_key
        if not api_key:
            raise ValueError("ANTHROPIC_API_KEY is required for intent extraction")

        self._client = AsyncAnthropic(api_key=api_key, max_retries=0)
        self._primary_model = settings.claude_intent_model
        self._fallback_model = settings.claude_fallback_model
        self.total_input_tokens = 0
        self.total_output_tokens = 0

        logger.info(
            f"ClaudeClient ready (primary={self._primary_model}, "
            f"fallback={self._fallback_model})"
        )

    @classmethod
    def get_instance(cls) -> "ClaudeClient":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        cls._instance = None

    def _models_for(self, model: Optional[str], use_fallback: bool) -> list[str]:
        first = model or self._primary_model
        if use_fallback and self._fallback_model and self._fallback_model != first:
            return [first, self._fallback_model]
        return [first]

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 256,
        temperature: float = 0.0,
        use_fallback_on_error: bool = True,
    ) -> ClaudeResponse:
        """
        Ask the model for a single text answer.

        Args:
            prompt: User message
            system_prompt: System prompt (optional)
            model: Model to try first (defaults to the intent model)
            max_tokens: Maximum tokens in response
            temperature: Sampling temperature
            use_fallback_on_error: Try the fallback model if the first fails

        Returns:
            ClaudeResponse with the concatenated text blocks

        Raises:
            ClaudeClientError: Every model failed or none returned text
        """
        request: dict[str, Any] = {
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            request["system"] = system_prompt

        last_error: Optional[Exception] = None
        for candidate in self._models_for(model, use_fallback_on_error):
            start_time = time.time()
            try:
                response = await self._client.messages.create(model=candidate, **request)
            except APIError as e:
                logger.warning(f"Model {candidate} failed: {e}")
                last_error = e
                continue

            text = "".join(
                block.text for block in response.content if getattr(block, "type", "") == "text"
            )
            if not text:
                last_error = ClaudeClientError(f"Model {candidate} returned no text")
                continue

            self.total_input_tokens += response.usage.input_tokens
            self.total_output_tokens += response.usage.output_tokens
            latency_ms = (time.time() - start_time) * 1000
            logger.debug(
                f"{candidate}: {response.usage.input_tokens} in / "
                f"{response.usage.output_tokens} out tokens, {latency_ms:.0f}ms"
            )

            return ClaudeResponse(
                content=text,
                model=candidate,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                stop_reason=response.stop_reason,
                latency_ms=latency_ms,
            )

        raise ClaudeClientError(f"Claude API call failed: {last_error}") from last_error

    async def close(self) -> None:
        await self._client.close()
        logger.info(
            f"ClaudeClient closed (tokens used: {self.total_input_tokens} in, "
            f"{self.total_output_tokens} out)"
        )


async def get_claude_client() -> ClaudeClient:
    """Get Claude client singleton instance."""
    return ClaudeClient.get_instance()
