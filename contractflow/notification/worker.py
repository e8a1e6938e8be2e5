"""Delivery workers.

:meth:`DeliveryWorker.process` handles one :class:`DeliveryJob` and returns
a :class:`DeliveryOutcome`; it never re-raises to signal "try again".  The
queue runner (:meth:`DeliveryWorker.settle`) maps the outcome onto the
queue: ``RETRY`` is redelivered with exponential backoff, ``DEFERRED`` is
redelivered after the outcome's delay without counting, everything else is
acknowledged.

Per-job decision order:

1. notification missing → DISCARDED
2. contract terminal → notification FAILED("superseded"), SUPERSEDED
3. an earlier PENDING notification exists for the contract → DEFERRED
4. notification no longer PENDING → SKIPPED
5. recipient over its rate limit → DEFERRED until the block lifts (not counted)
6. gateway call; success → SENT, failure → RETRY (or FAILED at the cap)

The gateway is called outside any database transaction.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from contractflow.core.clock import Clock, utc_now
from contractflow.core.constants import (
    SUPERSEDED_ERROR,
    TERMINAL_CONTRACT_STATUSES,
    NotificationChannel,
    NotificationStatus,
)
from contractflow.core.errors import NotFound, RateLimited, ValidationError
from contractflow.db.models import Notification
from contractflow.db.repositories import NotificationRepository
from contractflow.notification.gateway import MessagingGateway, SendResult
from contractflow.notification.queue import DeliveryJob, DeliveryQueue
from contractflow.notification.rate_limiter import TokenBucketRateLimiter

logger = logging.getLogger(__name__)

# Seller attribute that addresses each channel
RECIPIENT_FIELD: dict[str, str] = {
    NotificationChannel.WHATSAPP.value: "phone",
    NotificationChannel.SMS.value: "phone",
    NotificationChannel.EMAIL.value: "email",
}


class OutcomeKind(str, Enum):
    SENT = "SENT"
    SUPERSEDED = "SUPERSEDED"
    DEFERRED = "DEFERRED"
    SKIPPED = "SKIPPED"
    DISCARDED = "DISCARDED"
    RETRY = "RETRY"
    FAILED = "FAILED"


@dataclass(frozen=True)
class DeliveryOutcome:
    kind: OutcomeKind
    delay: float = 0.0
    detail: str | None = None


def compute_backoff_seconds(redelivery_count: int, base: float, maximum: float) -> float:
    """Exponential backoff ``base * 2**n`` clamped to *maximum*."""
    return float(min(maximum, base * (2 ** max(redelivery_count, 0))))


class DeliveryWorker:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        gateways: dict[str, MessagingGateway],
        rate_limiter: TokenBucketRateLimiter,
        *,
        max_attempts: int = 5,
        requeue_delay_seconds: float = 30.0,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 300.0,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._gateways = gateways
        self._rate_limiter = rate_limiter
        self.max_attempts = max_attempts
        self.requeue_delay_seconds = requeue_delay_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._clock = clock

    # -- job handling -------------------------------------------------------

    def handle(self, job: DeliveryJob) -> DeliveryOutcome:
        """Like :meth:`process` but converts unexpected errors into an outcome."""
        try:
            return self.process(job)
        except Exception:
            logger.exception("Unexpected error delivering notification=%s", job.notification_id)
            return self._retry_or_fail(job, "unexpected worker error")

    def process(self, job: DeliveryJob) -> DeliveryOutcome:
        with self._session_factory() as db:
            repo = NotificationRepository(db)
            notification = repo.get(job.notification_id)
            if notification is None:
                logger.warning("Discarding job for missing notification=%s", job.notification_id)
                return DeliveryOutcome(OutcomeKind.DISCARDED)

            contract = notification.contract
            if contract.status in TERMINAL_CONTRACT_STATUSES:
                if notification.status == NotificationStatus.PENDING.value:
                    notification.status = NotificationStatus.FAILED.value
                    notification.error = SUPERSEDED_ERROR
                    db.commit()
                logger.info(
                    "Notification superseded: notification=%s contract_status=%s",
                    notification.id,
                    contract.status,
                )
                return DeliveryOutcome(OutcomeKind.SUPERSEDED, detail=contract.status)

            if repo.has_earlier_pending(notification):
                logger.info("Deferring notification=%s behind an earlier pending one", notification.id)
                return DeliveryOutcome(OutcomeKind.DEFERRED, delay=self.requeue_delay_seconds)

            if notification.status != NotificationStatus.PENDING.value:
                logger.debug("Skipping notification=%s in status %s", notification.id, notification.status)
                return DeliveryOutcome(OutcomeKind.SKIPPED, detail=notification.status)

            gateway = self._gateways.get(notification.channel)
            field = RECIPIENT_FIELD.get(notification.channel)
            recipient = getattr(notification.seller, field, None) if field else None
            if gateway is None or not recipient:
                error = "no gateway for channel" if gateway is None else "seller has no recipient address"
                notification.status = NotificationStatus.FAILED.value
                notification.error = error
                db.commit()
                logger.warning("Notification undeliverable: notification=%s (%s)", notification.id, error)
                return DeliveryOutcome(OutcomeKind.FAILED, detail=error)

            content = notification.content
            notification_id = notification.id
            # End the read transaction before the network call.
            db.rollback()

        try:
            self._rate_limiter.require(recipient)
        except RateLimited as exc:
            logger.info(
                "Recipient rate limited for notification=%s; deferring %.0fs", notification_id, exc.retry_after
            )
            return DeliveryOutcome(OutcomeKind.DEFERRED, delay=exc.retry_after, detail="rate limited")

        result = gateway.send(recipient, content)
        if result.success:
            return self._persist_sent(notification_id, result)
        return self._retry_or_fail(job, result.error or "gateway failure")

    def _persist_sent(self, notification_id: UUID, result: SendResult) -> DeliveryOutcome:
        with self._session_factory() as db:
            notification = db.get(Notification, notification_id)
            if notification is None:
                logger.warning("Notification=%s vanished after send", notification_id)
                return DeliveryOutcome(OutcomeKind.DISCARDED)
            notification.status = NotificationStatus.SENT.value
            notification.external_id = result.message_id
            notification.sent_at = self._clock()
            notification.error = None
            db.commit()
        logger.info("Notification sent: notification=%s message_id=%s", notification_id, result.message_id)
        return DeliveryOutcome(OutcomeKind.SENT, detail=result.message_id)

    def _retry_or_fail(self, job: DeliveryJob, error: str) -> DeliveryOutcome:
        if job.redelivery_count + 1 < self.max_attempts:
            delay = compute_backoff_seconds(job.redelivery_count, self.backoff_base_seconds, self.backoff_max_seconds)
            logger.info(
                "Delivery attempt %d failed for notification=%s (%s); retrying in %.1fs",
                job.redelivery_count + 1,
                job.notification_id,
                error,
                delay,
            )
            return DeliveryOutcome(OutcomeKind.RETRY, delay=delay, detail=error)

        logger.warning(
            "Delivery failed permanently after %d attempts: notification=%s (%s)",
            job.redelivery_count + 1,
            job.notification_id,
            error,
        )
        self._persist_failed(job.notification_id, error)
        return DeliveryOutcome(OutcomeKind.FAILED, detail=error)

    def _persist_failed(self, notification_id: UUID, error: str) -> None:
        """Best effort: a failure to record FAILED is logged, never raised."""
        try:
            with self._session_factory() as db:
                notification = db.get(Notification, notification_id)
                if notification is None or notification.status != NotificationStatus.PENDING.value:
                    return
                notification.status = NotificationStatus.FAILED.value
                notification.error = error
                db.commit()
        except SQLAlchemyError:
            logger.exception("Could not mark notification=%s as FAILED", notification_id)

    # -- queue runner -------------------------------------------------------

    @staticmethod
    def settle(queue: DeliveryQueue, job: DeliveryJob, outcome: DeliveryOutcome) -> None:
        if outcome.kind == OutcomeKind.RETRY:
            queue.retry(job, outcome.delay)
        elif outcome.kind == OutcomeKind.DEFERRED:
            queue.defer(job, outcome.delay)
        else:
            queue.ack(job)

    def run_once(self, queue: DeliveryQueue, timeout: float = 0.0) -> DeliveryOutcome | None:
        job = queue.get(timeout)
        if job is None:
            return None
        outcome = self.handle(job)
        self.settle(queue, job, outcome)
        return outcome

    def run_pending(self, queue: DeliveryQueue, max_jobs: int = 1000) -> list[DeliveryOutcome]:
        """Process ready jobs until the queue has none available right now."""
        outcomes: list[DeliveryOutcome] = []
        for _ in range(max_jobs):
            outcome = self.run_once(queue, timeout=0.0)
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes


# ---------------------------------------------------------------------------
# Thread pool
# ---------------------------------------------------------------------------


class DeliveryWorkerPool:
    """Runs ``size`` threads draining one shared queue."""

    def __init__(
        self,
        worker: DeliveryWorker,
        queue: DeliveryQueue,
        size: int = 4,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.worker = worker
        self.queue = queue
        self.size = size
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"delivery-worker-{i}", daemon=True)
            for i in range(self.size)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Delivery worker pool started: size=%d", self.size)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Delivery worker pool stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.worker.run_once(self.queue, timeout=self.poll_interval_seconds)
            except Exception:
                logger.exception("Delivery worker loop error")
                self._stop.wait(self.poll_interval_seconds)


# ---------------------------------------------------------------------------
# Provider receipts
# ---------------------------------------------------------------------------


def mark_delivered(db: Session, notification_id: UUID) -> Notification:
    """Record a provider delivery receipt: SENT → DELIVERED."""
    notification = NotificationRepository(db).get(notification_id)
    if notification is None:
        raise NotFound(f"Notification {notification_id} not found")
    if notification.status != NotificationStatus.SENT.value:
        raise ValidationError(
            f"Notification {notification_id} is {notification.status}; only SENT can be marked delivered"
        )
    notification.status = NotificationStatus.DELIVERED.value
    notification.delivered_at = utc_now()
    db.flush()
    logger.info("Notification delivered: notification=%s", notification_id)
    return notification
