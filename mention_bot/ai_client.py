"""
AI Client - OpenAI-compatible chat completions client for reply generation.

Works with any provider exposing POST {base_url}/chat/completions
(OpenRouter, OpenAI, DeepSeek, ...).

Configuration:
    AI_BASE_URL=https://openrouter.ai/api/v1
    AI_API_KEY=sk-or-v1-xxx
    AI_MODEL=deepseek/deepseek-chat

Budgeting:
    Before each call the client estimates the token cost
    (ceil(len(system)/4) + ceil(len(user)/4) + a fixed response allowance)
    and acquires that many "llm-tokens" plus one "llm-request" from the
    BudgetTracker, all-or-none, waiting if necessary.

Errors are never retried here. generate() reports them in the result so the
retry engine can classify them:
    429 -> RateLimited (retry-after honoured)
    401 -> AuthenticationFailed (client marked unauthenticated)
    403 with quota payload -> QuotaExceeded
    other 4xx/5xx -> ApiError
    no response -> NetworkError

Usage:
    client = AIClient(
        base_url=settings.ai_base_url,
        api_key=settings.ai_api_key,
        model=settings.ai_model,
        budgets=budgets,
    )
    result = await client.generate(SYSTEM_PROMPT, mention.text, context=mention, max_length=280)
    if result.success:
        print(result.text)
"""

import logging
import math
from typing import Optional

import httpx

from config.prompts import REPLY_TEMPLATE
from mention_bot.errors import (
    ApiError,
    AuthenticationFailed,
    MentionBotError,
    error_from_response,
    error_from_transport,
)
from mention_bot.models import GenerationResult, Mention
from mention_bot.rate_limiter import LLM_REQUEST, LLM_TOKENS, BudgetTracker

logger = logging.getLogger(__name__)

# Character limit constants
MAX_TWEET_LENGTH = 280
ELLIPSIS = "..."
RESPONSE_TOKEN_ALLOWANCE = 200


def estimate_tokens(system_prompt: str, user_message: str, allowance: int = RESPONSE_TOKEN_ALLOWANCE) -> int:
    """Rough token estimate: four characters per token plus the response allowance."""
    return math.ceil(len(system_prompt) / 4) + math.ceil(len(user_message) / 4) + allowance


def truncate_reply(text: str, max_length: int) -> str:
    """
    Cut text to max_length, replacing the last 3 characters with "..." when cut.

    Example:
        >>> truncate_reply("This is a long reply", 10)
        'This is...'
    """
    if len(text) <= max_length:
        return text
    if max_length <= len(ELLIPSIS):
        return text[:max_length]
    return text[: max_length - len(ELLIPSIS)] + ELLIPSIS


class AIClient:
    """
    Chat completions client that charges every call to the LLM budgets.

    Uses asynchronous HTTP requests; one short-lived httpx.AsyncClient per call.
    """

    SERVICE = "ai"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        budgets: BudgetTracker,
        max_tokens: int = 300,
        temperature: float = 0.8,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Initialize the AI client.

        Args:
            base_url: API endpoint URL (e.g., https://openrouter.ai/api/v1).
            api_key: Provider API key.
            model: Model identifier (e.g., deepseek/deepseek-chat).
            budgets: Tracker holding the llm-request and llm-tokens buckets.
            max_tokens: Maximum tokens in the completion.
            temperature: Creativity setting (0.0-1.0).
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.budgets = budgets
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout = timeout
        self._transport = transport
        self._authenticated = True

        logger.info(f"AI Client initialized: {self.base_url} / {model}")

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    def reset_authentication(self) -> None:
        self._authenticated = True

    @staticmethod
    def format_user_message(user_message: str, context: Optional[Mention] = None) -> str:
        """Wrap the mention text with its metadata so the model sees who asked what."""
        if context is None:
            return user_message
        return REPLY_TEMPLATE.format(
            mention_id=context.id,
            author=context.author_handle or context.author_id or "unknown",
            content=user_message,
            hashtags=", ".join(f"#{tag}" for tag in context.hashtags) or "none",
        )

    async def generate(
        self,
        system_prompt: str,
        user_message: str,
        context: Optional[Mention] = None,
        max_length: int = MAX_TWEET_LENGTH,
    ) -> GenerationResult:
        """
        Generate a reply.

        Args:
            system_prompt: Personality and rules for the model.
            user_message: The mention text to answer.
            context: The mention being answered, used to enrich the prompt.
            max_length: Hard character limit for the reply.

        Returns:
            GenerationResult. On failure, error holds the taxonomy exception.
        """
        if not self._authenticated:
            return GenerationResult(
                success=False,
                error=AuthenticationFailed("AI API credentials were rejected earlier", service=self.SERVICE),
            )

        prompt = self.format_user_message(user_message, context)
        estimated = estimate_tokens(system_prompt, prompt)
        await self.budgets.acquire_many_blocking([(LLM_REQUEST, 1), (LLM_TOKENS, estimated)])

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": prompt},
        ]
        logger.debug(f"Generating reply (~{estimated} tokens) with {self.model}")

        try:
            content = await self._complete(messages)
        except MentionBotError as e:
            logger.warning(f"AI generation failed: {e}")
            return GenerationResult(success=False, error=e)

        reply = self._clean_reply(content)
        if not reply:
            return GenerationResult(
                success=False,
                error=ApiError("Model returned an empty reply", status_code=200, service=self.SERVICE),
            )

        if len(reply) > max_length:
            logger.info(f"Reply is {len(reply)} chars, truncating to {max_length}")
            reply = truncate_reply(reply, max_length)

        logger.debug(f"Generated reply ({len(reply)} chars): {reply[:50]}")
        return GenerationResult(success=True, text=reply)

    async def _complete(self, messages: list[dict]) -> str:
        """
        Call the chat completions endpoint once.

        Raises:
            MentionBotError: Translated HTTP or transport failure.
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.post(
                    url=f"{self.base_url}/chat/completions",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "model": self.model,
                        "messages": messages,
                        "max_tokens": self.max_tokens,
                        "temperature": self.temperature,
                    },
                )
            except httpx.TransportError as e:
                raise error_from_transport(e, self.SERVICE) from e

        if response.is_error:
            error = error_from_response(response, self.SERVICE, LLM_REQUEST)
            if isinstance(error, AuthenticationFailed):
                self._authenticated = False
                logger.error("AI API rejected credentials; marking unauthenticated")
            raise error

        try:
            data = response.json()
            return (data["choices"][0]["message"]["content"] or "").strip()
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Unexpected AI response structure: {e}")
            raise ApiError(f"Unexpected response structure: {e}", status_code=response.status_code, service=self.SERVICE) from e

    def _clean_reply(self, reply: str) -> str:
        """
        Clean up the generated reply.

        Removes surrounding quotes that models sometimes add.
        """
        if len(reply) >= 2 and reply.startswith('"') and reply.endswith('"'):
            reply = reply[1:-1]
        if len(reply) >= 2 and reply.startswith("'") and reply.endswith("'"):
            reply = reply[1:-1]

        return reply.strip()

    async def health_check(self) -> bool:
        """
        Check if the AI service is available.

        Returns:
            True if service is responding, False otherwise.
        """
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(
                    url=f"{self.base_url}/models",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.error(f"AI health check failed: {e}")
            return False
