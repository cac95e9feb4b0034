"""
Credit gate shared by every ledger store.

Defines the ledger contract and the router that picks the account store
when an account identity is present, with a logged fallback to the
anonymous store.

Gate Rules:
1. A decision and its decrement are one atomic step in the backing store
2. A balance of zero denies without mutating state
3. If no store can answer, the gate denies (fail closed)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

FREE_CREDITS = 3


class LedgerUnavailable(Exception):
    """Raised when a ledger's backing store cannot be reached."""
    def __init__(self, ledger: str, message: str):
        super().__init__(f"{ledger} ledger unavailable: {message}")
        self.ledger = ledger


@dataclass(frozen=True)
class Identity:
    """Already-authenticated caller identity.

    An account id, when present, is preferred over the anonymous token.
    """
    anonymous_token: Optional[str] = None
    account_id: Optional[str] = None

    def __post_init__(self):
        """Validate at least one identifier is present."""
        if not self.anonymous_token and not self.account_id:
            raise ValueError("identity requires an anonymous_token or an account_id")

    @property
    def is_account(self) -> bool:
        """True when the identity is bound to an account."""
        return bool(self.account_id)


@dataclass(frozen=True)
class GateDecision:
    """Outcome of a check-and-decrement call."""
    allowed: bool
    remaining: int
    ledger: str


class CreditLedger(ABC):
    """Contract shared by the account and anonymous credit stores."""

    name: str = "ledger"

    @abstractmethod
    def peek(self, identity: Identity) -> int:
        """Return remaining credits without side effects.

        Unseen identities report the free allotment, which is not persisted.
        """

    @abstractmethod
    def check_and_decrement(self, identity: Identity) -> GateDecision:
        """Atomically consume one credit if any remain."""

    @abstractmethod
    def grant(self, identity: Identity, amount: int, metadata: Optional[Dict[str, Any]] = None) -> int:
        """Add credits and return the new balance.

        Repeated grants for the same payment reference are not deduplicated.
        """


def validate_grant_amount(amount: int) -> None:
    """Reject non-positive grants."""
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValueError("grant amount must be a positive integer")


class CreditRouter:
    """Routes ledger calls to the store matching the caller's identity.

    The account ledger serves account identities and the anonymous ledger
    serves everyone else. When the account ledger is unavailable, the call
    falls back to the anonymous ledger for that invocation only. Balances
    are never reconciled between the two.
    """

    def __init__(self, account_ledger: CreditLedger, anonymous_ledger: CreditLedger):
        self.account_ledger = account_ledger
        self.anonymous_ledger = anonymous_ledger

    def ledger_for(self, identity: Identity) -> CreditLedger:
        """Return the primary ledger for an identity."""
        if identity.is_account:
            return self.account_ledger
        return self.anonymous_ledger

    def _fallback(self, identity: Identity, error: LedgerUnavailable, operation: str) -> Optional[CreditLedger]:
        if not identity.is_account or not identity.anonymous_token:
            return None
        logger.warning(
            "%s failed on %s ledger for account %s, falling back to %s ledger: %s",
            operation, error.ledger, identity.account_id, self.anonymous_ledger.name, error,
        )
        return self.anonymous_ledger

    def peek(self, identity: Identity) -> int:
        """Read the balance from the primary store, or the fallback store."""
        try:
            return self.ledger_for(identity).peek(identity)
        except LedgerUnavailable as e:
            fallback = self._fallback(identity, e, "peek")
            if fallback is None:
                raise
            return fallback.peek(identity)

    def check_and_decrement(self, identity: Identity) -> GateDecision:
        """Run the credit gate.

        Never raises for store outages: when neither store can decide, the
        request is denied rather than allowed unmetered.
        """
        primary = self.ledger_for(identity)
        try:
            return primary.check_and_decrement(identity)
        except LedgerUnavailable as e:
            fallback = self._fallback(identity, e, "check_and_decrement")
            if fallback is None:
                logger.error("Credit gate failing closed for %s: %s", identity, e)
                return GateDecision(allowed=False, remaining=0, ledger=primary.name)
        try:
            return fallback.check_and_decrement(identity)
        except LedgerUnavailable as e:
            logger.error("Credit gate failing closed for %s: %s", identity, e)
            return GateDecision(allowed=False, remaining=0, ledger=fallback.name)

    def grant(self, identity: Identity, amount: int, metadata: Optional[Dict[str, Any]] = None) -> int:
        """Grant credits on the primary store, or the fallback store."""
        validate_grant_amount(amount)
        try:
            return self.ledger_for(identity).grant(identity, amount, metadata)
        except LedgerUnavailable as e:
            fallback = self._fallback(identity, e, "grant")
            if fallback is None:
                raise
            return fallback.grant(identity, amount, metadata)
