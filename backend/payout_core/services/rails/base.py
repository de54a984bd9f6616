"""
Rail adapter contract.

A rail executes the actual transfer. Adapters expose exactly two calls:
``submit`` (keyed by a caller-generated idempotency key, so a repeated
submission with the same key never executes twice at the rail) and
``get_status``. Outcomes arrive asynchronously through webhooks or are
polled by reconciliation.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional


class RailStatus(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    reversed = "reversed"
    pending = "pending"
    not_found = "not_found"


DEFINITIVE_RAIL_STATUSES = frozenset({
    RailStatus.succeeded,
    RailStatus.failed,
    RailStatus.reversed,
    RailStatus.not_found,
})


class RailError(Exception):
    """Base class for rail adapter errors."""


class RailRejectedError(RailError):
    """The rail refused the submission. Terminal for the payout."""

    def __init__(self, reason: str, code: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.code = code


class RailUnavailableError(RailError):
    """No definitive answer from the rail (network error, 5xx, lost response)."""


@dataclass(frozen=True)
class RailSubmission:
    payout_id: str
    idempotency_key: str
    amount: Decimal
    currency: str
    method_type: str
    reference: Optional[str] = None
    destination: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RailSubmitResult:
    operation_id: str
    status: str = "accepted"


@dataclass(frozen=True)
class RailStatusResult:
    status: RailStatus
    operation_id: Optional[str] = None
    reason: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None

    @property
    def is_definitive(self) -> bool:
        return self.status in DEFINITIVE_RAIL_STATUSES


class RailAdapter(ABC):
    name: str = "rail"

    @abstractmethod
    async def submit(self, submission: RailSubmission) -> RailSubmitResult:
        """
        Submit a payout. Returns the rail's operation id.

        Raises:
            RailRejectedError: the rail refused the payout
            RailUnavailableError: the outcome of the call is unknown
        """

    @abstractmethod
    async def get_status(
        self,
        operation_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> RailStatusResult:
        """
        Current status of an operation, looked up by operation id or, when the
        submit response was lost, by idempotency key.

        Raises:
            RailUnavailableError: the rail could not be queried
        """

    async def aclose(self) -> None:
        return None
