"""Contract lifecycle state machine.

Manages per-contract ``status`` transitions:

    DRAFT → PENDING_SIGNATURE → SIGNED
          ↘ CANCELLED        ↘ EXPIRED
                             ↘ CANCELLED

SIGNED, EXPIRED and CANCELLED are terminal.  Every applied transition
writes the new status and exactly one ``StatusHistory`` row in the same
flush, then publishes the matching domain event on the :class:`EventBus`.
The caller owns the transaction boundary.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from contractflow.contracts.events import EVENT_FOR_STATUS
from contractflow.contracts.history import get_contract_history, record_transition
from contractflow.core.clock import Clock, utc_now
from contractflow.core.constants import ContractStatus, StatusReason
from contractflow.core.errors import ContractFlowError, InvalidTransition, NotFound, ValidationError
from contractflow.core.event_bus import EventBus
from contractflow.db.models import Contract, StatusHistory
from contractflow.db.repositories import ContractRepository, SellerRepository

logger = logging.getLogger(__name__)

# Allowed transitions: current_status → {valid target statuses}
_TRANSITIONS: dict[str, set[str]] = {
    ContractStatus.DRAFT.value: {
        ContractStatus.PENDING_SIGNATURE.value,
        ContractStatus.CANCELLED.value,
    },
    ContractStatus.PENDING_SIGNATURE.value: {
        ContractStatus.SIGNED.value,
        ContractStatus.EXPIRED.value,
        ContractStatus.CANCELLED.value,
    },
}

# Reason recorded when the caller does not supply one
_DEFAULT_REASON: dict[str, str] = {
    ContractStatus.PENDING_SIGNATURE.value: StatusReason.SENT_TO_SIGNATURE.value,
    ContractStatus.SIGNED.value: StatusReason.SIGNED.value,
    ContractStatus.EXPIRED.value: StatusReason.EXPIRED.value,
    ContractStatus.CANCELLED.value: StatusReason.CANCELLED.value,
}


def _coerce_status(value: ContractStatus | str) -> str:
    try:
        return ContractStatus(value).value
    except ValueError as exc:
        raise ValidationError(f"Unknown contract status {value!r}") from exc


def _coerce_reason(value: StatusReason | str) -> str:
    try:
        return StatusReason(value).value
    except ValueError as exc:
        raise ValidationError(f"Unknown status reason {value!r}") from exc


class ContractStateMachine:
    """Apply contract transitions with history and event publication."""

    def __init__(
        self,
        db_session: Session,
        bus: EventBus | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db_session
        self.bus = bus
        self.clock = clock
        self.contracts = ContractRepository(db_session)

    @staticmethod
    def can_transition(current_status: str, to_status: str) -> bool:
        """Return whether *current_status* → *to_status* is an edge."""
        return to_status in _TRANSITIONS.get(current_status, set())

    def get(self, contract_id: UUID) -> Contract:
        contract = self.contracts.get(contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found")
        return contract

    def create_contract(
        self,
        seller_id: UUID,
        template_id: str | None = None,
        content: str | None = None,
        expires_at: datetime | None = None,
    ) -> Contract:
        """Create a DRAFT contract.  No history row: history counts transitions only."""
        if SellerRepository(self.db).get(seller_id) is None:
            raise NotFound(f"Seller {seller_id} not found")

        contract = self.contracts.create(
            seller_id=seller_id,
            template_id=template_id,
            content=content,
            expires_at=expires_at,
            status=ContractStatus.DRAFT.value,
        )
        logger.info("Contract created: contract=%s seller=%s", contract.id, seller_id)
        return contract

    def change_status(
        self,
        contract_id: UUID,
        new_status: ContractStatus | str,
        reason: StatusReason | str | None = None,
        metadata: dict | None = None,
    ) -> Contract:
        """Move the contract to *new_status* if the edge exists.

        Raises ``NotFound`` for unknown ids and ``InvalidTransition`` for
        any non-edge, including a same-state request.
        """
        target = _coerce_status(new_status)
        reason_value = _coerce_reason(reason) if reason is not None else _DEFAULT_REASON[target]

        contract = self.contracts.get_for_update(contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found")
        return self._apply(contract, target, reason_value, metadata)

    def send_to_signature(self, contract_id: UUID, external_id: str, signing_url: str | None = None) -> Contract:
        """Attach the provider document ids and move DRAFT → PENDING_SIGNATURE."""
        if not external_id or not external_id.strip():
            raise ValidationError("external_id must be a non-empty string")

        contract = self.contracts.get_for_update(contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found")

        current = contract.status
        if not self.can_transition(current, ContractStatus.PENDING_SIGNATURE.value):
            raise InvalidTransition(contract.id, current, ContractStatus.PENDING_SIGNATURE.value)
        if contract.external_id is not None and contract.external_id != external_id:
            raise ValidationError(f"Contract {contract.id} already has a provider document id")
        if contract.signing_url is not None and signing_url and contract.signing_url != signing_url:
            raise ValidationError(f"Contract {contract.id} already has a signing url")

        contract.external_id = external_id
        if signing_url:
            contract.signing_url = signing_url
        return self._apply(
            contract,
            ContractStatus.PENDING_SIGNATURE.value,
            StatusReason.SENT_TO_SIGNATURE.value,
            {"external_id": external_id},
        )

    def cancel(self, contract_id: UUID, reason_text: str | None = None) -> Contract:
        metadata = {"reason": reason_text} if reason_text else None
        return self.change_status(
            contract_id,
            ContractStatus.CANCELLED,
            StatusReason.MANUAL_CANCELLATION,
            metadata,
        )

    def get_history(self, contract_id: UUID) -> list[StatusHistory]:
        self.get(contract_id)
        return get_contract_history(self.db, contract_id)

    def _apply(self, contract: Contract, target: str, reason: str, metadata: dict | None) -> Contract:
        current = contract.status
        if not self.can_transition(current, target):
            raise InvalidTransition(contract.id, current, target)

        if target == ContractStatus.PENDING_SIGNATURE.value and contract.external_id is None:
            raise ValidationError(f"Contract {contract.id} has no provider document id; use send_to_signature")

        contract.status = target
        if target == ContractStatus.SIGNED.value:
            contract.signed_at = self.clock()
        record_transition(
            self.db,
            contract_id=contract.id,
            from_status=current,
            to_status=target,
            reason=reason,
            metadata=metadata,
        )
        self.db.flush()

        if self.bus is not None:
            event_cls = EVENT_FOR_STATUS[target]
            self.bus.publish(
                event_cls(contract_id=contract.id, seller_id=contract.seller_id, reason=reason),
                self.db,
            )
        return contract


# ---------------------------------------------------------------------------
# Batch expiry
# ---------------------------------------------------------------------------


@dataclass
class ExpiryReport:
    evaluated: int = 0
    expired: int = 0
    failed: int = 0


def expire_overdue(
    session_factory: sessionmaker[Session],
    bus: EventBus | None = None,
    now: datetime | None = None,
) -> ExpiryReport:
    """Move PENDING_SIGNATURE contracts past ``expires_at`` to EXPIRED.

    Each contract is handled in its own session; one failure is logged and
    counted without aborting the rest of the batch.
    """
    now = now or utc_now()
    report = ExpiryReport()

    with session_factory() as db:
        candidate_ids = [contract.id for contract in ContractRepository(db).list_overdue(now)]

    for contract_id in candidate_ids:
        report.evaluated += 1
        with session_factory() as db:
            try:
                ContractStateMachine(db, bus).change_status(contract_id, ContractStatus.EXPIRED, StatusReason.EXPIRED)
                db.commit()
                report.expired += 1
            except (ContractFlowError, SQLAlchemyError):
                db.rollback()
                report.failed += 1
                logger.exception("Failed to expire contract=%s", contract_id)

    logger.info(
        "Expiry run complete: evaluated=%d expired=%d failed=%d",
        report.evaluated,
        report.expired,
        report.failed,
    )
    return report
