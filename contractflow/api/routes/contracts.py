"""Contract lifecycle routes.

Status changes go through the state machine only; business errors are
mapped to HTTP codes by the application-wide handler in
:mod:`contractflow.api.main`.  Signing URLs are returned to the operator
but never logged.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from contractflow.api.deps import get_db, get_dispatcher, get_state_machine
from contractflow.contracts.state_machine import ContractStateMachine
from contractflow.core.constants import (
    ContractStatus,
    NotificationChannel,
    NotificationType,
    StatusReason,
)
from contractflow.db.repositories import NotificationRepository
from contractflow.notification.dispatcher import NotificationDispatcher

router = APIRouter(prefix="/contracts", tags=["contracts"])


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class CreateContractBody(BaseModel):
    seller_id: UUID
    template_id: str | None = None
    content: str | None = None
    expires_at: datetime | None = None


class SendToSignatureBody(BaseModel):
    external_id: str = Field(min_length=1)
    signing_url: str | None = None


class ChangeStatusBody(BaseModel):
    status: ContractStatus
    reason: StatusReason | None = None
    metadata: dict[str, Any] | None = None


class CancelBody(BaseModel):
    reason: str | None = None


class SendNotificationBody(BaseModel):
    type: NotificationType = NotificationType.SIGNATURE_REMINDER
    channel: NotificationChannel = NotificationChannel.WHATSAPP
    attempt_number: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_contract(contract):
    return {
        "id": str(contract.id),
        "seller_id": str(contract.seller_id),
        "template_id": contract.template_id,
        "status": contract.status,
        "external_id": contract.external_id,
        "signing_url": contract.signing_url,
        "expires_at": _iso(contract.expires_at),
        "signed_at": _iso(contract.signed_at),
        "created_at": _iso(contract.created_at),
        "updated_at": _iso(contract.updated_at),
    }


def _serialize_history(entry):
    return {
        "id": entry.id,
        "from_status": entry.from_status,
        "to_status": entry.to_status,
        "reason": entry.reason,
        "metadata": entry.metadata_json,
        "created_at": _iso(entry.created_at),
    }


def serialize_notification(notification):
    return {
        "id": str(notification.id),
        "contract_id": str(notification.contract_id),
        "type": notification.type,
        "channel": notification.channel,
        "status": notification.status,
        "attempt_number": notification.attempt_number,
        "external_id": notification.external_id,
        "error": notification.error,
        "sent_at": _iso(notification.sent_at),
        "delivered_at": _iso(notification.delivered_at),
        "created_at": _iso(notification.created_at),
    }


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.post("", status_code=status.HTTP_201_CREATED, summary="Create a DRAFT contract")
def create_contract(body: CreateContractBody, sm: ContractStateMachine = Depends(get_state_machine)):
    contract = sm.create_contract(body.seller_id, body.template_id, body.content, body.expires_at)
    return _serialize_contract(contract)


@router.get("/{contract_id}", summary="Get a contract")
def get_contract(contract_id: UUID, sm: ContractStateMachine = Depends(get_state_machine)):
    return _serialize_contract(sm.get(contract_id))


@router.post("/{contract_id}/send-to-signature", summary="Attach provider ids and await signature")
def send_to_signature(
    contract_id: UUID,
    body: SendToSignatureBody,
    sm: ContractStateMachine = Depends(get_state_machine),
):
    contract = sm.send_to_signature(contract_id, body.external_id, body.signing_url)
    return _serialize_contract(contract)


@router.patch("/{contract_id}/status", summary="Apply a status transition")
def change_status(
    contract_id: UUID,
    body: ChangeStatusBody,
    sm: ContractStateMachine = Depends(get_state_machine),
):
    contract = sm.change_status(contract_id, body.status, body.reason, body.metadata)
    return _serialize_contract(contract)


@router.post("/{contract_id}/cancel", summary="Cancel a contract")
def cancel_contract(
    contract_id: UUID,
    body: CancelBody | None = None,
    sm: ContractStateMachine = Depends(get_state_machine),
):
    contract = sm.cancel(contract_id, body.reason if body else None)
    return _serialize_contract(contract)


@router.get("/{contract_id}/history", summary="Status history, oldest first")
def get_history(contract_id: UUID, sm: ContractStateMachine = Depends(get_state_machine)):
    return [_serialize_history(entry) for entry in sm.get_history(contract_id)]


@router.get("/{contract_id}/notifications", summary="Notifications for a contract")
def list_notifications(
    contract_id: UUID,
    db: Session = Depends(get_db),
    sm: ContractStateMachine = Depends(get_state_machine),
):
    sm.get(contract_id)
    return [serialize_notification(n) for n in NotificationRepository(db).list_for_contract(contract_id)]


@router.post(
    "/{contract_id}/notifications",
    status_code=status.HTTP_201_CREATED,
    summary="Manually send a notification with an explicit attempt number",
)
def send_notification(
    contract_id: UUID,
    body: SendNotificationBody,
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    result = dispatcher.create(
        contract_id,
        type_=body.type,
        channel=body.channel,
        attempt_number=body.attempt_number,
    )
    return {"created": result.created, "notification": serialize_notification(result.notification)}
