"""Notification operator routes: delivery receipts and rate-limit resets."""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from contractflow.api.deps import get_db, get_rate_limiter
from contractflow.api.routes.contracts import serialize_notification
from contractflow.notification.rate_limiter import TokenBucketRateLimiter
from contractflow.notification.worker import mark_delivered

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.post("/{notification_id}/delivered", summary="Record a provider delivery receipt")
def notification_delivered(notification_id: UUID, db: Session = Depends(get_db)):
    return serialize_notification(mark_delivered(db, notification_id))


@router.get("/rate-limit/{recipient}", summary="Remaining send budget for a recipient")
def rate_limit_status(recipient: str, limiter: TokenBucketRateLimiter = Depends(get_rate_limiter)):
    result = limiter.status(recipient)
    return {
        "allowed": result.allowed,
        "remaining": result.remaining,
        "limit": result.limit,
        "reset_at": result.reset_at,
    }


@router.post("/rate-limit/{recipient}/reset", summary="Clear a recipient's rate-limit state")
def reset_rate_limit(recipient: str, limiter: TokenBucketRateLimiter = Depends(get_rate_limiter)):
    return {"reset": limiter.reset(recipient)}
