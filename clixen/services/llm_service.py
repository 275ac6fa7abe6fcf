"""
LLM Service - OpenAI API wrapper for chat completions

Provides:
- Chat completion with token tracking
- JSON-mode completion for structured decisions
- Error handling and retries
- Token truncation for prompt bounding
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Dict, Optional
from openai import AsyncOpenAI, APIError, RateLimitError, APIConnectionError
import tiktoken

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from LLM completion"""
    content: str
    model: str
    tokens_prompt: int
    tokens_completion: int
    tokens_total: int
    finish_reason: str


class LLMService:
    """
    OpenAI LLM Service for chat completions.

    Handles:
    - Chat completions
    - Prompt truncation
    - Retry logic for transient errors
    """

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o-mini",
        temperature: float = 0.1,
        max_tokens: int = 250,
        timeout: float = 12.0,
        max_retries: int = 2,
        client: Optional[AsyncOpenAI] = None,
    ):
        self._client = client
        self._api_key = api_key
        self._timeout = timeout
        self.default_model = model
        self.default_temperature = temperature
        self.default_max_tokens = max_tokens
        self.max_retries = max(1, max_retries)

        try:
            self._encoding = tiktoken.encoding_for_model(self.default_model)
        except KeyError:
            # Fall back to cl100k_base for newer models
            self._encoding = tiktoken.get_encoding("cl100k_base")

    @property
    def client(self) -> AsyncOpenAI:
        """Created on first use so the app can start without an API key."""
        if self._client is None:
            # SDK-level retries are disabled; transient errors are retried in complete()
            self._client = AsyncOpenAI(api_key=self._api_key, timeout=self._timeout, max_retries=0)
        return self._client

    def truncate_to_tokens(self, text: str, max_tokens: int) -> str:
        """Cut text down to at most `max_tokens` tokens."""
        tokens = self._encoding.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return self._encoding.decode(tokens[:max_tokens])

    async def complete(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Generate a chat completion.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to the configured classifier model)
            temperature: Temperature for sampling (0-2)
            max_tokens: Maximum tokens to generate
            **kwargs: Additional parameters passed to OpenAI

        Returns:
            LLMResponse with content and token usage
        """
        model = model or self.default_model
        temperature = temperature if temperature is not None else self.default_temperature
        max_tokens = max_tokens or self.default_max_tokens

        retry_delay = 0.5

        for attempt in range(self.max_retries):
            try:
                response = await self.client.chat.completions.create(
                    model=model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                    **kwargs
                )

                choice = response.choices[0]
                usage = response.usage

                return LLMResponse(
                    content=choice.message.content or "",
                    model=response.model,
                    tokens_prompt=usage.prompt_tokens if usage else 0,
                    tokens_completion=usage.completion_tokens if usage else 0,
                    tokens_total=usage.total_tokens if usage else 0,
                    finish_reason=choice.finish_reason,
                )

            except (RateLimitError, APIConnectionError) as e:
                if attempt < self.max_retries - 1:
                    wait_time = retry_delay * (2 ** attempt)
                    logger.warning(f"Transient OpenAI error, retrying in {wait_time}s: {e}")
                    await asyncio.sleep(wait_time)
                else:
                    raise

            except APIError as e:
                logger.error(f"OpenAI API error: {e}")
                raise

    async def complete_with_json(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Generate a completion with JSON response format.

        Used for the intent decision.
        """
        return await self.complete(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            **kwargs
        )
