"""Notification dispatcher: the only path that inserts ``Notification`` rows.

``create()`` applies the delivery invariants in a fixed order:

1. the contract exists and is not terminal (SIGNED, CANCELLED, EXPIRED);
2. an existing PENDING notification for the contract is returned as-is;
3. notifications are paused by an operator;
4. the contract has fewer than ``max_per_contract`` notifications;
5. the attempt number is within 1..3 and above every attempt already
   recorded for the contract.

The contract row is locked for the duration of the check so concurrent
triggers serialize; the partial unique index on ``notifications`` backs
the single-PENDING rule at the database level.  The delivery job is
handed to the queue only after the surrounding transaction commits.
"""
from __future__ import annotations

import logging
from typing import NamedTuple
from uuid import UUID

from sqlalchemy.orm import Session

from contractflow.contracts.events import Cancelled, ContractEvent, Expired, SentToSignature, Signed
from contractflow.core.constants import (
    MAX_ATTEMPT_NUMBER,
    MIN_ATTEMPT_NUMBER,
    TERMINAL_CONTRACT_STATUSES,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
)
from contractflow.core.errors import LimitReached, NotFound, Rejected, RejectionReason, ValidationError
from contractflow.core.event_bus import EventBus
from contractflow.core.system_settings import PauseSettings
from contractflow.db.models import Notification
from contractflow.db.repositories import ContractRepository, NotificationRepository
from contractflow.notification import templates
from contractflow.notification.queue import DeliveryJob, DeliveryQueue, enqueue_after_commit

logger = logging.getLogger(__name__)

DEFAULT_MAX_PER_CONTRACT = 3


class DispatchResult(NamedTuple):
    notification: Notification
    created: bool


class NotificationDispatcher:
    def __init__(
        self,
        db_session: Session,
        queue: DeliveryQueue,
        pause: PauseSettings | None = None,
        max_per_contract: int = DEFAULT_MAX_PER_CONTRACT,
    ) -> None:
        self.db = db_session
        self.queue = queue
        self.pause = pause if pause is not None else PauseSettings(db_session)
        self.max_per_contract = max_per_contract
        self.contracts = ContractRepository(db_session)
        self.notifications = NotificationRepository(db_session)

    def create(
        self,
        contract_id: UUID,
        seller_id: UUID | None = None,
        type_: NotificationType | str = NotificationType.SIGNATURE_REMINDER,
        channel: NotificationChannel | str = NotificationChannel.WHATSAPP,
        attempt_number: int = 1,
    ) -> DispatchResult:
        try:
            type_value = NotificationType(type_).value
            channel_value = NotificationChannel(channel).value
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        contract = self.contracts.get_for_update(contract_id)
        if contract is None:
            raise NotFound(f"Contract {contract_id} not found")
        if contract.status in TERMINAL_CONTRACT_STATUSES:
            raise Rejected(
                RejectionReason.TERMINAL,
                f"Contract {contract_id} is {contract.status}; no further notifications",
            )
        if seller_id is not None and seller_id != contract.seller_id:
            raise ValidationError(f"Seller {seller_id} does not own contract {contract_id}")

        existing = self.notifications.get_pending_for_contract(contract.id)
        if existing is not None:
            logger.info(
                "Pending notification already exists: contract=%s notification=%s",
                contract.id,
                existing.id,
            )
            return DispatchResult(existing, False)

        if self.pause.is_paused():
            raise Rejected(RejectionReason.PAUSED, "Notifications are paused")

        if self.notifications.count_for_contract(contract.id) >= self.max_per_contract:
            raise LimitReached(contract.id, self.max_per_contract)

        if not MIN_ATTEMPT_NUMBER <= attempt_number <= MAX_ATTEMPT_NUMBER:
            raise ValidationError(
                f"attempt_number must be between {MIN_ATTEMPT_NUMBER} and {MAX_ATTEMPT_NUMBER}, "
                f"got {attempt_number}"
            )
        highest = self.notifications.max_attempt_for_contract(contract.id)
        if attempt_number <= highest:
            raise ValidationError(
                f"attempt_number {attempt_number} must be greater than {highest} for contract {contract.id}"
            )

        seller = contract.seller
        content = templates.render(
            channel_value,
            type_value,
            attempt_number,
            {
                "seller_name": seller.name,
                "signing_url": contract.signing_url or "",
                "contract_id": str(contract.id),
            },
        )
        notification = self.notifications.create(
            contract_id=contract.id,
            seller_id=contract.seller_id,
            type=type_value,
            channel=channel_value,
            content=content,
            status=NotificationStatus.PENDING.value,
            attempt_number=attempt_number,
        )
        enqueue_after_commit(self.db, self.queue, DeliveryJob(notification_id=notification.id))

        logger.info(
            "Notification created: contract=%s notification=%s type=%s attempt=%d",
            contract.id,
            notification.id,
            type_value,
            attempt_number,
        )
        return DispatchResult(notification, True)


# ---------------------------------------------------------------------------
# Domain event subscriptions
# ---------------------------------------------------------------------------


def register_handlers(
    bus: EventBus,
    queue: DeliveryQueue,
    max_per_contract: int = DEFAULT_MAX_PER_CONTRACT,
) -> None:
    def on_sent_to_signature(event: SentToSignature, db: Session) -> None:
        NotificationDispatcher(db, queue, max_per_contract=max_per_contract).create(
            event.contract_id,
            event.seller_id,
            NotificationType.SIGNATURE_REMINDER,
            NotificationChannel.WHATSAPP,
            attempt_number=1,
        )

    def on_terminal(event: ContractEvent, db: Session) -> None:
        logger.info(
            "Contract reached terminal state: contract=%s event=%s",
            event.contract_id,
            type(event).__name__,
        )

    bus.subscribe(SentToSignature, on_sent_to_signature)
    for event_type in (Signed, Cancelled, Expired):
        bus.subscribe(event_type, on_terminal)
