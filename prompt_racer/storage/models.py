"""
Data models for storage layer.

Defines persisted credit and race records.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class CreditBalance:
    """Credit state for one account.
    
    Rows are created lazily with the free allotment and never deleted,
    so they double as an audit trail.
    """
    account_id: str
    remaining: int
    total_consumed: int
    total_granted: int
    total_spent: float
    created_at: datetime
    
    def __post_init__(self):
        """Validate counters are non-negative."""
        if self.remaining < 0:
            raise ValueError("remaining must be >= 0")
        if self.total_consumed < 0:
            raise ValueError("total_consumed must be >= 0")


@dataclass(frozen=True)
class Purchase:
    """Append-only record of a credit grant."""
    account_id: str
    credits: int
    amount_paid: Optional[float]
    payment_reference: Optional[str]
    timestamp: datetime


@dataclass(frozen=True)
class RaceEntry:
    """One backend's line in a logged race."""
    backend_id: str
    elapsed_ms: int
    winner: bool
    error_kind: Optional[str] = None


@dataclass(frozen=True)
class RaceRecord:
    """Analytics record of a completed race attempt."""
    attempt_id: str
    identity_key: str
    prompt: str
    winner_id: Optional[str]
    total_time_ms: int
    timestamp: datetime
    entries: List[RaceEntry] = field(default_factory=list)
