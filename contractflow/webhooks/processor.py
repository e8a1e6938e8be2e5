"""Signature provider webhook processing.

Maps provider events onto contract transitions:

    signature.accepted  → SIGNED
    document.finished   → SIGNED
    signature.rejected  → CANCELLED (provider reason kept verbatim)

Every business outcome is acknowledged; duplicate and out-of-order events
surface as ``InvalidTransition`` from the state machine and are swallowed
here.  Only storage errors propagate.
"""
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import event as sa_event
from sqlalchemy.orm import Session

from contractflow.contracts.state_machine import ContractStateMachine
from contractflow.core.constants import ContractStatus, StatusReason
from contractflow.core.errors import InvalidTransition
from contractflow.core.event_bus import EventBus
from contractflow.db.repositories import ContractRepository

logger = logging.getLogger(__name__)

EVENT_SIGNATURE_ACCEPTED = "signature.accepted"
EVENT_SIGNATURE_REJECTED = "signature.rejected"
EVENT_DOCUMENT_FINISHED = "document.finished"

# Provider event type → (target status, history reason)
_EVENT_TRANSITIONS: dict[str, tuple[ContractStatus, StatusReason]] = {
    EVENT_SIGNATURE_ACCEPTED: (ContractStatus.SIGNED, StatusReason.SIGNED),
    EVENT_DOCUMENT_FINISHED: (ContractStatus.SIGNED, StatusReason.SIGNED),
    EVENT_SIGNATURE_REJECTED: (ContractStatus.CANCELLED, StatusReason.CANCELLED),
}

DEFAULT_SEEN_CAPACITY = 10_000


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    UNKNOWN_DOCUMENT = "unknown_document"
    UNHANDLED_TYPE = "unhandled_type"
    CONFLICT = "conflict"


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class WebhookObject(_Lenient):
    id: Any = None
    document: Any = None
    reason: Any = None


class WebhookEventData(_Lenient):
    document: Any = None
    reason: Any = None
    object_: WebhookObject | None = Field(default=None, alias="object")
    events: list[WebhookObject] | None = None


class WebhookEventBody(_Lenient):
    type: str
    data: WebhookEventData = Field(default_factory=WebhookEventData)


class SignatureWebhook(_Lenient):
    id: Any = None
    event: WebhookEventBody
    document: Any = None

    def document_id(self) -> str | None:
        data = self.event.data
        candidates: list[Any] = [data.document]
        if data.object_ is not None:
            candidates.extend([data.object_.document, data.object_.id])
        candidates.extend(item.document for item in data.events or [])
        candidates.append(self.document)
        return next((value for value in candidates if isinstance(value, str) and value), None)

    def rejection_reason(self) -> str | None:
        data = self.event.data
        candidates: list[Any] = [data.reason]
        if data.object_ is not None:
            candidates.append(data.object_.reason)
        candidates.extend(item.reason for item in data.events or [])
        return next((value for value in candidates if isinstance(value, str) and value), None)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


class WebhookProcessor:
    """Apply provider events; one instance lives for the whole process."""

    def __init__(self, bus: EventBus | None = None, seen_capacity: int = DEFAULT_SEEN_CAPACITY) -> None:
        self.bus = bus
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._seen_capacity = seen_capacity
        self._lock = threading.Lock()

    def process(self, db: Session, payload: dict[str, Any] | SignatureWebhook) -> WebhookOutcome:
        if isinstance(payload, SignatureWebhook):
            event = payload
        else:
            try:
                event = SignatureWebhook.model_validate(payload)
            except PydanticValidationError as exc:
                logger.warning("Ignoring malformed webhook payload: %d error(s)", exc.error_count())
                return WebhookOutcome.IGNORED

        event_id = str(event.id) if event.id is not None else None
        if event_id is not None and self._already_seen(event_id):
            logger.info("Duplicate webhook delivery ignored: id=%s", event_id)
            return WebhookOutcome.IGNORED

        outcome = self._apply(db, event)
        if event_id is not None and outcome != WebhookOutcome.IGNORED:
            # Only a committed delivery counts as seen; a failed commit must stay retryable.
            sa_event.listen(db, "after_commit", lambda _session: self._remember(event_id), once=True)
        return outcome

    def _apply(self, db: Session, event: SignatureWebhook) -> WebhookOutcome:
        event_type = event.event.type
        transition = _EVENT_TRANSITIONS.get(event_type)
        if transition is None:
            logger.info("Unhandled webhook event type: %s", event_type)
            return WebhookOutcome.UNHANDLED_TYPE

        document_id = event.document_id()
        if document_id is None:
            logger.error("Webhook %s carries no document id", event_type)
            return WebhookOutcome.IGNORED

        contract = ContractRepository(db).get_by_external_id(document_id)
        if contract is None:
            logger.warning("No contract for provider document=%s", document_id)
            return WebhookOutcome.UNKNOWN_DOCUMENT

        target, reason = transition
        metadata: dict[str, Any] = {"event_type": event_type}
        if event.id is not None:
            metadata["webhook_id"] = str(event.id)
        if event_type == EVENT_SIGNATURE_REJECTED:
            metadata["reason"] = event.rejection_reason()

        try:
            ContractStateMachine(db, self.bus).change_status(contract.id, target, reason, metadata)
        except InvalidTransition as exc:
            logger.info(
                "Webhook %s ignored for contract=%s: %s -> %s not allowed",
                event_type,
                contract.id,
                exc.from_status,
                exc.to_status,
            )
            return WebhookOutcome.CONFLICT

        logger.info("Webhook %s applied to contract=%s", event_type, contract.id)
        return WebhookOutcome.APPLIED

    def _already_seen(self, event_id: str) -> bool:
        with self._lock:
            if event_id in self._seen:
                self._seen.move_to_end(event_id)
                return True
            return False

    def _remember(self, event_id: str) -> None:
        with self._lock:
            self._seen[event_id] = None
            self._seen.move_to_end(event_id)
            while len(self._seen) > self._seen_capacity:
                self._seen.popitem(last=False)
