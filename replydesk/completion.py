"""
AI completion client for the reply fallback.

Works with OpenAI cloud or any server implementing the OpenAI chat
completions API (set OPENAI_BASE_URL). Every failure surfaces as
CompletionError.
"""

import asyncio
import logging
from typing import Optional, Protocol

import openai

from replydesk.config import Settings
from replydesk.errors import CompletionError

logger = logging.getLogger(__name__)


class CompletionClient(Protocol):
    async def complete(self, system: str, prompt: str) -> str:
        ...


class OpenAICompletion:
    def __init__(
        self,
        api_key: str,
        model: str,
        max_tokens: int = 80,
        timeout: float = 15.0,
        base_url: Optional[str] = None,
    ):
        kwargs: dict = {"api_key": api_key, "timeout": timeout, "max_retries": 0}
        if base_url:
            kwargs["base_url"] = base_url
        self.client = openai.AsyncOpenAI(**kwargs)
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout

    async def complete(self, system: str, prompt: str) -> str:
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    messages=[
                        {"role": "system", "content": system},
                        {"role": "user", "content": prompt},
                    ],
                    max_tokens=self.max_tokens,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CompletionError(f"completion timed out after {self.timeout}s") from e
        except openai.OpenAIError as e:
            raise CompletionError(f"completion request failed: {e}") from e

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise CompletionError("malformed completion response") from e
        if not content or not content.strip():
            raise CompletionError("empty completion")
        return content.strip()


def build_completion(settings: Settings) -> Optional[OpenAICompletion]:
    """Return a completion client when an API key is configured, else None."""
    if not settings.ai_configured:
        logger.info("AI completion disabled (no OPENAI_API_KEY)")
        return None
    logger.info(f"AI completion enabled with model {settings.OPENAI_MODEL}")
    return OpenAICompletion(
        api_key=settings.OPENAI_API_KEY,
        model=settings.OPENAI_MODEL,
        max_tokens=settings.AI_MAX_TOKENS,
        timeout=settings.AI_TIMEOUT_SECONDS,
        base_url=settings.OPENAI_BASE_URL,
    )
