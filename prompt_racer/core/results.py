"""
Normalized outcome of a single backend invocation.

Every provider adapter reduces its response or failure to this shape.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Ways a backend invocation can fail."""
    TIMEOUT = "timeout"
    REQUEST_FAILED = "request_failed"
    EMPTY_RESPONSE = "empty_response"


@dataclass(frozen=True)
class ModelResult:
    """Outcome of one backend call.
    
    A result only counts as a success when it carries no error and has
    non-empty content. Failed results keep the time spent up to the failure.
    """
    backend_id: str
    display_name: str
    content: str
    elapsed_ms: int
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    
    def __post_init__(self):
        """Validate elapsed time is non-negative."""
        if self.elapsed_ms < 0:
            raise ValueError("elapsed_ms must be >= 0")
    
    @property
    def succeeded(self) -> bool:
        """True when the backend returned usable content."""
        return self.error_kind is None and bool(self.content and self.content.strip())
