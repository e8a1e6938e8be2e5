"""Signature provider webhook endpoint.

Business outcomes (unknown document, stale or duplicate event, unhandled
type) are always acknowledged with 200 so the provider stops retrying.
Storage failures surface as 5xx and the provider redelivers.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from contractflow.api.deps import get_db, get_webhook_processor
from contractflow.webhooks.processor import WebhookProcessor

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/signature", summary="Receive an e-signature provider event")
def receive_signature_event(
    payload: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    outcome = processor.process(db, payload)
    return {"received": True, "outcome": outcome.value}
