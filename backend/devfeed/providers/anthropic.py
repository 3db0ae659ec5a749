"""
Claude provider.
"""
from typing import Optional

import anthropic
import structlog
from anthropic import AsyncAnthropic
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from devfeed.errors import EnrichError, EnrichErrorKind
from devfeed.providers.base import LLMProvider

logger = structlog.get_logger(__name__)

DEFAULT_MODEL = "claude-3-5-haiku-latest"


class AnthropicProvider(LLMProvider):
    """Summaries via the Anthropic Messages API. Ready when an API key is set."""

    name = "anthropic"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        max_tokens: int = 800,
        temperature: float = 0.2,
    ):
        super().__init__(model, max_tokens=max_tokens, temperature=temperature)
        self.api_key = api_key
        self._client: Optional[AsyncAnthropic] = None

    def is_ready(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self.api_key)
        return self._client

    async def _complete(self, prompt: str) -> str:
        try:
            return await self._create_message(prompt)
        except anthropic.RateLimitError as e:
            raise EnrichError(EnrichErrorKind.QUOTA_EXCEEDED, str(e)) from e
        except anthropic.APITimeoutError as e:
            raise EnrichError(EnrichErrorKind.TIMEOUT, str(e)) from e
        except anthropic.APIError as e:
            raise EnrichError(EnrichErrorKind.PROVIDER_ERROR, str(e)) from e

    @retry(
        retry=retry_if_exception_type(anthropic.RateLimitError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _create_message(self, prompt: str) -> str:
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        logger.debug(
            "Anthropic completion",
            model=self.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return text.strip()
