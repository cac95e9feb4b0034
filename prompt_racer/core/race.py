"""
Race orchestration.

Gates a race on credits, fans the prompt out to every selected backend at
once, waits for all of them and ranks the results by latency.

Race Order:
1. Validate - Reject empty prompts and selections that resolve to nothing
2. Gate - Consume one credit before any provider is called
3. Dispatch - Invoke every backend concurrently
4. Await - Wait for all results, never just the first
5. Settle - Pick the winner, charge the durable ledger, log the race
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from .credits import CreditRouter, GateDecision, Identity
from .registry import BackendDescriptor, ModelRegistry, ProviderFamily
from .results import ErrorKind, ModelResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_BACKENDS = 4
DEFAULT_ADAPTER_TIMEOUT_SECONDS = 60.0


class RaceState(Enum):
    """Phases of a single race attempt. Each attempt passes through once."""
    IDLE = auto()
    GATING = auto()
    DISPATCHING = auto()
    AWAITING = auto()
    SETTLING = auto()
    DONE = auto()


class RaceStatus(Enum):
    """How a race request ended."""
    COMPLETED = "completed"
    PAYMENT_REQUIRED = "payment_required"
    INVALID_REQUEST = "invalid_request"


@dataclass(frozen=True)
class RaceRequest:
    """A prompt, who is asking, and which backends to race.

    Explicit backend_ids win over preset_id. With neither, the default
    preset is raced.
    """
    prompt: str
    identity: Identity
    preset_id: Optional[str] = None
    backend_ids: Optional[Tuple[str, ...]] = None


@dataclass
class RaceAttempt:
    """Transient state of one race."""
    prompt: str
    backends: List[BackendDescriptor]
    attempt_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=datetime.now)
    state: RaceState = RaceState.IDLE
    results: List[ModelResult] = field(default_factory=list)
    winner_id: Optional[str] = None
    winner_index: Optional[int] = None
    total_time_ms: int = 0


@dataclass(frozen=True)
class RaceResponse:
    """What the caller gets back. Results are empty unless the race ran."""
    status: RaceStatus
    results: List[ModelResult] = field(default_factory=list)
    winner_id: Optional[str] = None
    winner_index: Optional[int] = None
    total_time_ms: int = 0
    remaining_credits: Optional[int] = None
    attempt_id: Optional[str] = None
    message: str = ""


class Adapter(Protocol):
    async def invoke(self, backend: BackendDescriptor, prompt: str, timeout: float) -> ModelResult:
        ...


class RaceRecorder(Protocol):
    """Analytics sink for completed races."""
    def record_race(self, identity: Identity, attempt: RaceAttempt) -> None:
        ...


class SettlementLedger(Protocol):
    """Durable ledger charged after a race gated elsewhere."""
    name: str

    def settle_attempt(self, identity: Identity, attempt_id: str) -> GateDecision:
        ...


def winner_index(results: Sequence[ModelResult], order: Sequence[str]) -> Optional[int]:
    """Pick the fastest successful result by its position in results.

    Failed or empty results never win, however fast. Ties on elapsed time go
    to the backend listed first in order, then to the earlier result, so a
    backend selected twice still yields exactly one winner.

    Args:
        results: Results in any order
        order: Backend ids in the order they were selected

    Returns:
        Index of the winning result, or None if nothing succeeded
    """
    position = {}
    for index, backend_id in enumerate(order):
        position.setdefault(backend_id, index)

    candidates = [i for i, r in enumerate(results) if r.succeeded]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda i: (results[i].elapsed_ms, position.get(results[i].backend_id, len(position)), i)
    )


def select_winner(results: Sequence[ModelResult], order: Sequence[str]) -> Optional[str]:
    """Backend id of the fastest successful result, or None."""
    index = winner_index(results, order)
    if index is None:
        return None
    return results[index].backend_id


def resolve_winner_index(
    results: Sequence[ModelResult],
    winner_id: Optional[str],
    index: Optional[int] = None
) -> Optional[int]:
    """Position of the one result to mark as the winner.

    Uses index when it is known. Otherwise picks the fastest successful
    result carrying winner_id, never a failed duplicate.
    """
    if index is not None:
        return index
    if winner_id is None:
        return None
    matches = [i for i, r in enumerate(results) if r.succeeded and r.backend_id == winner_id]
    return min(matches, key=lambda i: (results[i].elapsed_ms, i), default=None)


def total_time_ms(results: Sequence[ModelResult]) -> int:
    """Wall-clock length of a race: the slowest result, failures included."""
    return max((r.elapsed_ms for r in results), default=0)


class RaceOrchestrator:
    """Runs race attempts against a registry, credit router and adapters.

    Providers are reached only through the adapter mapping, so a new
    provider family needs a new adapter and nothing here.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        credits: CreditRouter,
        adapters: Mapping[ProviderFamily, Adapter],
        max_backends: int = DEFAULT_MAX_BACKENDS,
        adapter_timeout: float = DEFAULT_ADAPTER_TIMEOUT_SECONDS,
        recorder: Optional[RaceRecorder] = None,
        settlement_ledger: Optional[SettlementLedger] = None
    ):
        self.registry = registry
        self.credits = credits
        self.adapters: Dict[ProviderFamily, Adapter] = dict(adapters)
        self.max_backends = max_backends
        self.adapter_timeout = adapter_timeout
        self.recorder = recorder
        self.settlement_ledger = settlement_ledger

    def resolve_backends(self, request: RaceRequest) -> List[BackendDescriptor]:
        """Turn the request's selector into an ordered backend list."""
        if request.backend_ids is not None:
            return self.registry.resolve_custom(request.backend_ids, self.max_backends)
        return self.registry.resolve_preset(request.preset_id)[:self.max_backends]

    async def run(self, request: RaceRequest) -> RaceResponse:
        """Run one race attempt end to end.

        Returns:
            RaceResponse with status COMPLETED, PAYMENT_REQUIRED or
            INVALID_REQUEST. Invalid and denied requests consume no credit
            and call no provider.
        """
        prompt = request.prompt.strip() if request.prompt else ""
        if not prompt:
            return RaceResponse(status=RaceStatus.INVALID_REQUEST, message="prompt is required")

        backends = self.resolve_backends(request)
        if not backends:
            return RaceResponse(status=RaceStatus.INVALID_REQUEST, message="no known backends selected")

        attempt = RaceAttempt(prompt=request.prompt, backends=backends)

        attempt.state = RaceState.GATING
        decision = await asyncio.to_thread(self.credits.check_and_decrement, request.identity)
        if not decision.allowed:
            attempt.state = RaceState.DONE
            logger.info("Race denied for %s: no credits on %s ledger", request.identity, decision.ledger)
            return RaceResponse(
                status=RaceStatus.PAYMENT_REQUIRED,
                remaining_credits=decision.remaining,
                message="payment required"
            )

        attempt.state = RaceState.DISPATCHING
        tasks = [self._invoke(backend, request.prompt) for backend in backends]

        attempt.state = RaceState.AWAITING
        attempt.results = list(await asyncio.gather(*tasks))

        attempt.state = RaceState.SETTLING
        attempt.winner_index = winner_index(attempt.results, [b.id for b in backends])
        if attempt.winner_index is not None:
            attempt.winner_id = attempt.results[attempt.winner_index].backend_id
        attempt.total_time_ms = total_time_ms(attempt.results)
        await self._settle(request.identity, attempt, decision)

        attempt.state = RaceState.DONE
        return RaceResponse(
            status=RaceStatus.COMPLETED,
            results=attempt.results,
            winner_id=attempt.winner_id,
            winner_index=attempt.winner_index,
            total_time_ms=attempt.total_time_ms,
            remaining_credits=decision.remaining,
            attempt_id=attempt.attempt_id
        )

    async def _invoke(self, backend: BackendDescriptor, prompt: str) -> ModelResult:
        adapter = self.adapters.get(backend.provider_family)
        if adapter is None:
            return ModelResult(
                backend_id=backend.id,
                display_name=backend.display_name,
                content="",
                elapsed_ms=0,
                error_kind=ErrorKind.REQUEST_FAILED,
                error_message=f"no adapter for provider {backend.provider_family.value}"
            )
        return await adapter.invoke(backend, prompt, self.adapter_timeout)

    async def _settle(self, identity: Identity, attempt: RaceAttempt, decision: GateDecision) -> None:
        # The race already ran; bookkeeping failures are logged, not returned
        ledger = self.settlement_ledger
        if ledger is not None and identity.is_account and decision.ledger != ledger.name:
            try:
                await asyncio.to_thread(ledger.settle_attempt, identity, attempt.attempt_id)
            except Exception:
                logger.exception("Failed to settle race %s on %s ledger", attempt.attempt_id, ledger.name)

        if self.recorder is not None:
            try:
                await asyncio.to_thread(self.recorder.record_race, identity, attempt)
            except Exception:
                logger.exception("Failed to record race %s", attempt.attempt_id)
