"""Domain events published by the contract state machine."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from contractflow.core.clock import utc_now
from contractflow.core.constants import ContractStatus


@dataclass(frozen=True)
class ContractEvent:
    contract_id: UUID
    seller_id: UUID
    reason: str
    occurred_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SentToSignature(ContractEvent):
    pass


@dataclass(frozen=True)
class Signed(ContractEvent):
    pass


@dataclass(frozen=True)
class Expired(ContractEvent):
    pass


@dataclass(frozen=True)
class Cancelled(ContractEvent):
    pass


EVENT_FOR_STATUS: dict[str, type[ContractEvent]] = {
    ContractStatus.PENDING_SIGNATURE.value: SentToSignature,
    ContractStatus.SIGNED.value: Signed,
    ContractStatus.EXPIRED.value: Expired,
    ContractStatus.CANCELLED.value: Cancelled,
}
