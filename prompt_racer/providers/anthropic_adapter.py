"""
Anthropic messages adapter.
"""

from typing import Optional

import anthropic
from anthropic import AsyncAnthropic

from prompt_racer.core.registry import BackendDescriptor

from .base import ProviderAdapter

MAX_TOKENS = 1024


class AnthropicAdapter(ProviderAdapter):
    """Claude models through the messages API."""

    family = "anthropic"

    def __init__(self, api_key: Optional[str] = None, client: Optional[AsyncAnthropic] = None):
        self.api_key = api_key
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self.api_key, max_retries=0)
        return self._client

    async def _complete(self, backend: BackendDescriptor, prompt: str) -> Optional[str]:
        message = await self.client.messages.create(
            model=backend.provider_model,
            max_tokens=MAX_TOKENS,
            messages=[{"role": "user", "content": prompt}]
        )
        # Only the first block counts; a non-text first block is an empty answer
        if not message.content:
            return None
        block = message.content[0]
        if block.type != "text":
            return None
        return block.text

    def _is_timeout(self, error: Exception) -> bool:
        return isinstance(error, anthropic.APITimeoutError)
