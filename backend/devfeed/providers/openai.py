"""
OpenAI provider.
"""
from typing import Optional

import openai
from openai import AsyncOpenAI
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from devfeed.errors import EnrichError, EnrichErrorKind
from devfeed.providers.base import LLMProvider

DEFAULT_MODEL = "gpt-4o-mini"


class OpenAIProvider(LLMProvider):
    """Summaries via Chat Completions with JSON output. Ready when an API key is set."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = DEFAULT_MODEL,
        max_tokens: int = 800,
        temperature: float = 0.2,
    ):
        super().__init__(model, max_tokens=max_tokens, temperature=temperature)
        self.api_key = api_key
        self._client: Optional[AsyncOpenAI] = None

    def is_ready(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def _complete(self, prompt: str) -> str:
        try:
            return await self._create_completion(prompt)
        except openai.RateLimitError as e:
            raise EnrichError(EnrichErrorKind.QUOTA_EXCEEDED, str(e)) from e
        except openai.APITimeoutError as e:
            raise EnrichError(EnrichErrorKind.TIMEOUT, str(e)) from e
        except openai.APIError as e:
            raise EnrichError(EnrichErrorKind.PROVIDER_ERROR, str(e)) from e

    @retry(
        retry=retry_if_exception_type(openai.RateLimitError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def _create_completion(self, prompt: str) -> str:
        response = await self.client.chat.completions.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": "You summarize technical articles and answer in JSON."},
                {"role": "user", "content": prompt},
            ],
        )
        return (response.choices[0].message.content or "").strip()
