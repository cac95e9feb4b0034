"""
OpenAI-compatible adapters.

Covers OpenAI itself and xAI, which serves the same chat completions API
under its own base URL.
"""

from typing import Optional

import openai
from openai import AsyncOpenAI

from prompt_racer.core.registry import BackendDescriptor

from .base import ProviderAdapter

XAI_BASE_URL = "https://api.x.ai/v1"


class OpenAIAdapter(ProviderAdapter):
    """Chat completions adapter using the official async client."""

    family = "openai"
    base_url: Optional[str] = None

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncOpenAI] = None):
        self.api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # Built on first use so a missing key only fails that backend's race
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url, max_retries=0)
        return self._client

    async def _complete(self, backend: BackendDescriptor, prompt: str) -> Optional[str]:
        completion = await self.client.chat.completions.create(
            model=backend.provider_model,
            messages=[{"role": "user", "content": prompt}]
        )
        if not completion.choices:
            return None
        return completion.choices[0].message.content

    def _is_timeout(self, error: Exception) -> bool:
        return isinstance(error, openai.APITimeoutError)


class XAIAdapter(OpenAIAdapter):
    """Grok models through xAI's OpenAI-compatible endpoint."""

    family = "xai"
    base_url = XAI_BASE_URL
