"""Error taxonomy shared by the HTTP layer and the background components.

``ValidationError``, ``NotFound``, ``InvalidTransition`` and ``Rejected`` are
surfaced as 4xx by :mod:`contractflow.api.main`.  ``RateLimited`` and
``GatewayError`` are recoverable and only ever seen by the delivery workers.
A superseded notification is a worker outcome, not an exception.
"""
from __future__ import annotations

from enum import Enum


class ContractFlowError(Exception):
    """Base class for every business error raised by contractflow."""


class ValidationError(ContractFlowError, ValueError):
    """Raised for malformed or out-of-range input."""


class NotFound(ContractFlowError, LookupError):
    """Raised when a contract, seller or notification does not exist."""


class InvalidTransition(ContractFlowError):
    """Raised when a status change is not an edge of the contract graph."""

    def __init__(self, contract_id, from_status: str, to_status: str) -> None:
        self.contract_id = contract_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid transition {from_status!r} → {to_status!r} for contract {contract_id}"
        )


class RejectionReason(str, Enum):
    TERMINAL = "terminal"
    LIMIT_REACHED = "limit_reached"
    PAUSED = "paused"


class Rejected(ContractFlowError):
    """Permanent business rejection of a notification request."""

    def __init__(self, reason: RejectionReason, message: str) -> None:
        self.reason = reason
        super().__init__(message)


class LimitReached(Rejected):
    def __init__(self, contract_id, limit: int) -> None:
        super().__init__(
            RejectionReason.LIMIT_REACHED,
            f"Contract {contract_id} already has {limit} notifications",
        )


class RateLimited(ContractFlowError):
    """Recipient exhausted its send budget; retry after ``retry_after`` seconds."""

    def __init__(self, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(f"Rate limited; retry after {retry_after:.0f}s")


class GatewayError(ContractFlowError):
    """The messaging gateway could not deliver a message."""
