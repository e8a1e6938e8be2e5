"""Operator-controlled notification pause flag.

Stored as an ISO-8601 timestamp under ``notification_pause_until`` in the
``system_settings`` table.  Resuming writes the Unix epoch so the row always
exists once touched and ``is_paused`` stays a single comparison.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from contractflow.core.clock import Clock, as_utc, utc_now
from contractflow.core.constants import PAUSE_SETTING_KEY
from contractflow.core.errors import ValidationError
from contractflow.db.repositories import SystemSettingRepository

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MIN_PAUSE_DAYS = 1
MAX_PAUSE_DAYS = 30


class PauseSettings:
    def __init__(self, db: Session, clock: Clock = utc_now) -> None:
        self._repo = SystemSettingRepository(db)
        self._clock = clock

    def get_pause_date(self) -> datetime | None:
        raw = self._repo.get_value(PAUSE_SETTING_KEY)
        if not raw:
            return None
        try:
            return as_utc(datetime.fromisoformat(raw))
        except ValueError:
            logger.warning("Ignoring malformed %s value", PAUSE_SETTING_KEY)
            return None

    def is_paused(self) -> bool:
        until = self.get_pause_date()
        return until is not None and until > self._clock()

    def pause_until(self, until: datetime) -> datetime:
        until = as_utc(until)
        if until <= self._clock():
            raise ValidationError("Pause end must be in the future")
        self._repo.upsert(
            PAUSE_SETTING_KEY,
            until.isoformat(),
            description="Notifications are paused until this timestamp",
        )
        logger.info("Notifications paused until %s", until.isoformat())
        return until

    def pause_for_days(self, days: int) -> datetime:
        if not MIN_PAUSE_DAYS <= days <= MAX_PAUSE_DAYS:
            raise ValidationError(
                f"days must be between {MIN_PAUSE_DAYS} and {MAX_PAUSE_DAYS}, got {days}"
            )
        return self.pause_until(self._clock() + timedelta(days=days))

    def resume(self) -> None:
        self._repo.upsert(PAUSE_SETTING_KEY, _EPOCH.isoformat())
        logger.info("Notifications resumed")

    def days_remaining(self) -> int:
        until = self.get_pause_date()
        now = self._clock()
        if until is None or until <= now:
            return 0
        remaining = until - now
        return remaining.days + (1 if remaining.seconds or remaining.microseconds else 0)
