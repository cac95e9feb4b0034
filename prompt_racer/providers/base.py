"""
Provider adapter contract.

An adapter sends one prompt to one backend and reduces whatever happens to
a ModelResult. Adapters never raise to the orchestrator.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from prompt_racer.core.registry import BackendDescriptor
from prompt_racer.core.results import ErrorKind, ModelResult

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


def _elapsed_ms(start: float) -> int:
    return max(0, int(round((time.perf_counter() - start) * 1000)))


class ProviderAdapter(ABC):
    """Base class for one provider family's completion call."""

    family: str = "provider"

    @abstractmethod
    async def _complete(self, backend: BackendDescriptor, prompt: str) -> Optional[str]:
        """Send the prompt and return the completion text."""

    def _is_timeout(self, error: Exception) -> bool:
        """Whether an SDK exception represents a timeout."""
        return False

    async def invoke(
        self,
        backend: BackendDescriptor,
        prompt: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ) -> ModelResult:
        """Race one backend.

        The clock starts right before the outbound call and stops as soon as
        it resolves, so elapsed_ms covers network and inference time only.

        Args:
            backend: Backend to call
            prompt: User prompt
            timeout: Seconds before the call is abandoned

        Returns:
            ModelResult, with error_kind set on any failure
        """
        start = time.perf_counter()
        try:
            content = await asyncio.wait_for(self._complete(backend, prompt), timeout)
        except asyncio.TimeoutError:
            return self._failure(backend, start, ErrorKind.TIMEOUT, f"no response within {timeout:g}s")
        except Exception as e:
            kind = ErrorKind.TIMEOUT if self._is_timeout(e) else ErrorKind.REQUEST_FAILED
            return self._failure(backend, start, kind, f"{type(e).__name__}: {e}")
        elapsed = _elapsed_ms(start)

        if not content or not content.strip():
            return self._failure(backend, start, ErrorKind.EMPTY_RESPONSE, "empty completion", elapsed)

        return ModelResult(
            backend_id=backend.id,
            display_name=backend.display_name,
            content=content,
            elapsed_ms=elapsed
        )

    def _failure(
        self,
        backend: BackendDescriptor,
        start: float,
        kind: ErrorKind,
        message: str,
        elapsed: Optional[int] = None
    ) -> ModelResult:
        elapsed = _elapsed_ms(start) if elapsed is None else elapsed
        logger.warning("Backend %s failed after %dms (%s): %s", backend.id, elapsed, kind.value, message)
        return ModelResult(
            backend_id=backend.id,
            display_name=backend.display_name,
            content="",
            elapsed_ms=elapsed,
            error_kind=kind,
            error_message=message
        )
