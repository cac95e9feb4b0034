"""
Gemini adapter using Google's genai library.
"""

from typing import Optional

from google import genai

from prompt_racer.core.registry import BackendDescriptor

from .base import ProviderAdapter


class GoogleAdapter(ProviderAdapter):
    """Gemini models through the async genai client."""

    family = "google"

    def __init__(self, api_key: Optional[str] = None, client: Optional[genai.Client] = None):
        self.api_key = api_key
        self._client = client

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def _complete(self, backend: BackendDescriptor, prompt: str) -> Optional[str]:
        response = await self.client.aio.models.generate_content(
            model=backend.provider_model,
            contents=prompt
        )
        return response.text
