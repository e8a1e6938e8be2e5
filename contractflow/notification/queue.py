"""Delivery job queues.

A :class:`DeliveryJob` carries only the notification id; the worker always
reloads the row, so a job is rebuildable from the ``notifications`` table
alone (see :func:`recover_pending`).

Two backends implement the same protocol:

- :class:`InMemoryDeliveryQueue`: a delay-aware heap guarded by a
  ``threading.Condition``; lost on restart, rebuilt by ``recover_pending``.
- :class:`SqlDeliveryQueue`: rows in ``delivery_jobs`` claimed with a lease;
  an expired lease makes the job claimable again.

Both hold at most one active job per notification id.
"""
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

from sqlalchemy import and_, delete, or_, select
from sqlalchemy import event as sa_event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from contractflow.core.clock import Clock, utc_now
from contractflow.core.constants import NotificationStatus
from contractflow.db.models import DeliveryJobRow
from contractflow.db.repositories import NotificationRepository

logger = logging.getLogger(__name__)

JOB_QUEUED = "queued"
JOB_LEASED = "leased"


@dataclass(frozen=True)
class DeliveryJob:
    notification_id: UUID
    enqueued_at: datetime = field(default_factory=utc_now)
    redelivery_count: int = 0


class DeliveryQueue(Protocol):
    def enqueue(self, job: DeliveryJob, delay: float | None = None) -> bool:
        ...

    def get(self, timeout: float) -> DeliveryJob | None:
        ...

    def ack(self, job: DeliveryJob) -> None:
        ...

    def retry(self, job: DeliveryJob, delay: float) -> None:
        """Redeliver after *delay* seconds, counting it as a redelivery."""
        ...

    def defer(self, job: DeliveryJob, delay: float) -> None:
        """Redeliver after *delay* seconds without touching the count."""
        ...


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryDeliveryQueue:
    def __init__(self) -> None:
        self._heap: list[tuple[float, int, DeliveryJob]] = []
        self._seq = itertools.count()
        self._active: set[UUID] = set()
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._heap)

    def enqueue(self, job: DeliveryJob, delay: float | None = None) -> bool:
        with self._cond:
            if job.notification_id in self._active:
                logger.debug("Job already active for notification=%s", job.notification_id)
                return False
            self._active.add(job.notification_id)
            self._push(job, delay)
            return True

    def get(self, timeout: float) -> DeliveryJob | None:
        deadline = time.monotonic() + max(timeout, 0.0)
        with self._cond:
            while True:
                now = time.monotonic()
                if self._heap and self._heap[0][0] <= now:
                    return heapq.heappop(self._heap)[2]
                remaining = deadline - now
                if remaining <= 0:
                    return None
                if self._heap:
                    remaining = min(remaining, self._heap[0][0] - now)
                self._cond.wait(remaining)

    def ack(self, job: DeliveryJob) -> None:
        with self._cond:
            self._active.discard(job.notification_id)

    def retry(self, job: DeliveryJob, delay: float) -> None:
        with self._cond:
            self._push(replace(job, redelivery_count=job.redelivery_count + 1), delay)

    def defer(self, job: DeliveryJob, delay: float) -> None:
        with self._cond:
            self._push(job, delay)

    def _push(self, job: DeliveryJob, delay: float | None) -> None:
        available_at = time.monotonic() + max(delay or 0.0, 0.0)
        heapq.heappush(self._heap, (available_at, next(self._seq), job))
        self._cond.notify()


# ---------------------------------------------------------------------------
# SQL backend
# ---------------------------------------------------------------------------


class SqlDeliveryQueue:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        lease_seconds: int = 60,
        poll_interval_seconds: float = 1.0,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._lease = timedelta(seconds=max(lease_seconds, 5))
        self._poll_interval = poll_interval_seconds
        self._clock = clock

    def enqueue(self, job: DeliveryJob, delay: float | None = None) -> bool:
        now = self._clock()
        with self._session_factory() as db:
            exists = db.execute(
                select(DeliveryJobRow.id).where(DeliveryJobRow.notification_id == job.notification_id)
            ).first()
            if exists is not None:
                return False
            db.add(
                DeliveryJobRow(
                    notification_id=job.notification_id,
                    status=JOB_QUEUED,
                    redelivery_count=job.redelivery_count,
                    available_at=now + timedelta(seconds=max(delay or 0.0, 0.0)),
                    enqueued_at=job.enqueued_at,
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    def get(self, timeout: float) -> DeliveryJob | None:
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            job = self._claim()
            if job is not None:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self._poll_interval, remaining))

    def _claim(self) -> DeliveryJob | None:
        now = self._clock()
        with self._session_factory() as db:
            stmt = (
                select(DeliveryJobRow)
                .where(
                    or_(
                        and_(DeliveryJobRow.status == JOB_QUEUED, DeliveryJobRow.available_at <= now),
                        and_(DeliveryJobRow.status == JOB_LEASED, DeliveryJobRow.lease_until < now),
                    )
                )
                .order_by(DeliveryJobRow.available_at.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            row = db.execute(stmt).scalars().first()
            if row is None:
                return None
            if row.status == JOB_LEASED:
                logger.warning("Reclaiming expired lease for notification=%s", row.notification_id)
            row.status = JOB_LEASED
            row.lease_until = now + self._lease
            job = DeliveryJob(
                notification_id=row.notification_id,
                enqueued_at=row.enqueued_at,
                redelivery_count=row.redelivery_count,
            )
            db.commit()
        return job

    def ack(self, job: DeliveryJob) -> None:
        with self._session_factory() as db:
            db.execute(delete(DeliveryJobRow).where(DeliveryJobRow.notification_id == job.notification_id))
            db.commit()

    def retry(self, job: DeliveryJob, delay: float) -> None:
        self._requeue(job, delay, job.redelivery_count + 1)

    def defer(self, job: DeliveryJob, delay: float) -> None:
        self._requeue(job, delay, job.redelivery_count)

    def _requeue(self, job: DeliveryJob, delay: float, redelivery_count: int) -> None:
        now = self._clock()
        with self._session_factory() as db:
            row = db.execute(
                select(DeliveryJobRow).where(DeliveryJobRow.notification_id == job.notification_id)
            ).scalars().first()
            if row is None:
                db.add(
                    DeliveryJobRow(
                        notification_id=job.notification_id,
                        status=JOB_QUEUED,
                        redelivery_count=redelivery_count,
                        available_at=now + timedelta(seconds=max(delay, 0.0)),
                        enqueued_at=job.enqueued_at,
                    )
                )
            else:
                row.status = JOB_QUEUED
                row.lease_until = None
                row.redelivery_count = redelivery_count
                row.available_at = now + timedelta(seconds=max(delay, 0.0))
            db.commit()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_PENDING_JOBS_KEY = "contractflow.pending_delivery_jobs"


def enqueue_after_commit(db: Session, queue: DeliveryQueue, job: DeliveryJob) -> None:
    """Hand *job* to *queue* once the session's current transaction commits.

    Jobs collected in a transaction that rolls back are dropped.
    """
    pending = db.info.get(_PENDING_JOBS_KEY)
    if pending is None:
        pending = []
        db.info[_PENDING_JOBS_KEY] = pending
        sa_event.listen(db, "after_commit", _flush_pending_jobs)
        sa_event.listen(db, "after_rollback", _drop_pending_jobs)
    pending.append((queue, job))


def _flush_pending_jobs(db: Session) -> None:
    pending = db.info.get(_PENDING_JOBS_KEY) or []
    jobs = list(pending)
    pending.clear()
    for queue, job in jobs:
        queue.enqueue(job)
        logger.debug("Delivery job enqueued: notification=%s", job.notification_id)


def _drop_pending_jobs(db: Session) -> None:
    pending = db.info.get(_PENDING_JOBS_KEY)
    if pending:
        logger.debug("Dropping %d delivery job(s) after rollback", len(pending))
        pending.clear()


def recover_pending(session_factory: sessionmaker[Session], queue: DeliveryQueue) -> int:
    """Enqueue a job for every PENDING notification; returns how many were new."""
    with session_factory() as db:
        ids = [n.id for n in NotificationRepository(db).list_by_status(NotificationStatus.PENDING)]

    recovered = sum(1 for notification_id in ids if queue.enqueue(DeliveryJob(notification_id=notification_id)))
    if recovered:
        logger.info("Recovered %d pending notification job(s)", recovered)
    return recovered
