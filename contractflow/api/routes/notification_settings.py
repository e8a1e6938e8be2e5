"""Operator pause/resume of all outbound notifications."""
from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator

from contractflow.api.deps import get_pause_settings
from contractflow.core.system_settings import MAX_PAUSE_DAYS, MIN_PAUSE_DAYS, PauseSettings

router = APIRouter(prefix="/notifications/settings", tags=["notification-settings"])


class PauseBody(BaseModel):
    days: int | None = Field(default=None, ge=MIN_PAUSE_DAYS, le=MAX_PAUSE_DAYS)
    until: datetime | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "PauseBody":
        if (self.days is None) == (self.until is None):
            raise ValueError("Provide exactly one of 'days' or 'until'")
        return self


def _pause_status(pause: PauseSettings) -> dict:
    until = pause.get_pause_date()
    paused = pause.is_paused()
    return {
        "is_paused": paused,
        "pause_until": until.isoformat() if paused and until else None,
        "days_remaining": pause.days_remaining(),
    }


@router.get("/pause-status", summary="Current pause state")
def get_pause_status(pause: PauseSettings = Depends(get_pause_settings)):
    return _pause_status(pause)


@router.post("/pause", summary="Pause notifications for N days or until a timestamp")
def pause_notifications(body: PauseBody, pause: PauseSettings = Depends(get_pause_settings)):
    if body.days is not None:
        pause.pause_for_days(body.days)
    else:
        pause.pause_until(body.until)
    return _pause_status(pause)


@router.post("/resume", summary="Resume notifications immediately")
def resume_notifications(pause: PauseSettings = Depends(get_pause_settings)):
    pause.resume()
    return _pause_status(pause)
