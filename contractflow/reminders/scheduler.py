"""Signature reminder scheduling.

Runs on weekdays at ``REMINDER_CRON_HOUR`` (UTC) via APScheduler and on
demand through the API.  For every PENDING_SIGNATURE contract:

    1 reminder sent and age >= 3 days  → attempt 2
    2 reminders sent and age >= 7 days → attempt 3
    otherwise                          → nothing

The first reminder is produced by the dispatcher when the contract is sent
to signature, not here.  Each contract is evaluated in its own session so
one failure never rolls back another contract's reminder.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from uuid import UUID

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from contractflow.core.clock import Clock, utc_now, whole_days_between
from contractflow.core.constants import ContractStatus, NotificationChannel, NotificationType
from contractflow.core.errors import ContractFlowError, NotFound, Rejected
from contractflow.core.system_settings import PauseSettings
from contractflow.db.models import Contract
from contractflow.db.repositories import ContractRepository, NotificationRepository
from contractflow.notification.dispatcher import DEFAULT_MAX_PER_CONTRACT, NotificationDispatcher
from contractflow.notification.queue import DeliveryQueue

logger = logging.getLogger(__name__)

REMINDER_JOB_ID = "contract_reminders"
EXPIRY_JOB_ID = "expire_contracts"


@dataclass
class ReminderRunReport:
    evaluated: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    paused: bool = False
    weekend: bool = False


def next_reminder_attempt(
    sent: int,
    age_days: int,
    second_after_days: int = 3,
    third_after_days: int = 7,
) -> int | None:
    """Return the reminder attempt due for a contract, or ``None``."""
    if sent == 1 and age_days >= second_after_days:
        return 2
    if sent == 2 and age_days >= third_after_days:
        return 3
    return None


class ReminderScheduler:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        queue: DeliveryQueue,
        *,
        max_per_contract: int = DEFAULT_MAX_PER_CONTRACT,
        second_after_days: int = 3,
        third_after_days: int = 7,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self.max_per_contract = max_per_contract
        self.second_after_days = second_after_days
        self.third_after_days = third_after_days
        self._clock = clock

    def run(self, scheduled: bool = False) -> ReminderRunReport:
        """Evaluate every pending contract once.

        ``scheduled`` runs also skip Saturdays and Sundays.  A paused
        notification flag ends the run before anything is read or written.
        """
        report = ReminderRunReport()
        now = self._clock()

        if scheduled and now.weekday() >= 5:
            logger.info("Reminder run skipped: weekend")
            report.weekend = True
            return report

        with self._session_factory() as db:
            if PauseSettings(db, self._clock).is_paused():
                logger.info("Reminder run skipped: notifications paused")
                report.paused = True
                return report
            contract_ids = [c.id for c in ContractRepository(db).list_by_status(ContractStatus.PENDING_SIGNATURE)]

        logger.info("Reminder run started: %d pending contract(s)", len(contract_ids))
        for contract_id in contract_ids:
            report.evaluated += 1
            with self._session_factory() as db:
                try:
                    created = self._evaluate(db, contract_id)
                    db.commit()
                except Rejected as exc:
                    db.rollback()
                    report.skipped += 1
                    logger.info("Reminder rejected for contract=%s: %s", contract_id, exc.reason.value)
                    continue
                except (ContractFlowError, SQLAlchemyError):
                    db.rollback()
                    report.failed += 1
                    logger.exception("Reminder failed for contract=%s", contract_id)
                    continue
            if created:
                report.created += 1
            else:
                report.skipped += 1

        logger.info(
            "Reminder run complete: evaluated=%d created=%d skipped=%d failed=%d",
            report.evaluated,
            report.created,
            report.skipped,
            report.failed,
        )
        return report

    def process_contract(self, contract_id: UUID) -> bool:
        """Send the next reminder for one contract, ignoring the day thresholds.

        Returns ``True`` when a new notification was created.
        """
        with self._session_factory() as db:
            contract = ContractRepository(db).get(contract_id)
            if contract is None:
                raise NotFound(f"Contract {contract_id} not found")
            if contract.status != ContractStatus.PENDING_SIGNATURE.value:
                logger.info("Manual reminder skipped: contract=%s is %s", contract_id, contract.status)
                return False

            sent = self._sent_count(db, contract.id)
            if sent >= self.max_per_contract:
                logger.info("Manual reminder skipped: contract=%s reached %d reminders", contract_id, sent)
                return False

            created = self._dispatch(db, contract, sent + 1)
            db.commit()
        return created

    def _evaluate(self, db: Session, contract_id: UUID) -> bool:
        contract = ContractRepository(db).get(contract_id)
        if contract is None or contract.status != ContractStatus.PENDING_SIGNATURE.value:
            return False

        sent = self._sent_count(db, contract.id)
        age_days = whole_days_between(contract.created_at, self._clock())
        attempt = next_reminder_attempt(sent, age_days, self.second_after_days, self.third_after_days)
        if attempt is None:
            return False
        return self._dispatch(db, contract, attempt)

    def _dispatch(self, db: Session, contract: Contract, attempt: int) -> bool:
        dispatcher = NotificationDispatcher(
            db,
            self._queue,
            pause=PauseSettings(db, self._clock),
            max_per_contract=self.max_per_contract,
        )
        result = dispatcher.create(
            contract.id,
            contract.seller_id,
            NotificationType.SIGNATURE_REMINDER,
            NotificationChannel.WHATSAPP,
            attempt_number=attempt,
        )
        return result.created

    @staticmethod
    def _sent_count(db: Session, contract_id: UUID) -> int:
        return NotificationRepository(db).count_for_contract(contract_id, NotificationType.SIGNATURE_REMINDER)


# ---------------------------------------------------------------------------
# APScheduler wiring
# ---------------------------------------------------------------------------


def build_scheduler(
    reminders: ReminderScheduler,
    hour: int = 12,
    expire_job: Callable[[], object] | None = None,
) -> BackgroundScheduler:
    """Create (but do not start) the background scheduler.

    Jobs:
    - Signature reminders: weekdays at *hour*:00 UTC
    - Contract expiry: hourly, when *expire_job* is given
    """
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        reminders.run,
        trigger=CronTrigger(day_of_week="mon-fri", hour=hour, minute=0),
        kwargs={"scheduled": True},
        id=REMINDER_JOB_ID,
        name="Contract signature reminders",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    if expire_job is not None:
        scheduler.add_job(
            expire_job,
            trigger=IntervalTrigger(hours=1),
            id=EXPIRY_JOB_ID,
            name="Expire overdue contracts",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    logger.info("Scheduler configured: reminders (mon-fri %02d:00 UTC)", hour)
    return scheduler
