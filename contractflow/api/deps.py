"""FastAPI dependency injection: database sessions and service factories.

Process-wide collaborators (event bus, delivery queue, rate limiter, webhook
processor) are cached for the lifetime of the process; everything bound to
a request session is built per request.
"""
from __future__ import annotations

from collections.abc import Generator
from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from contractflow.contracts.state_machine import ContractStateMachine
from contractflow.core.event_bus import EventBus
from contractflow.core.settings import get_settings
from contractflow.core.system_settings import PauseSettings
from contractflow.db import session as db_session
from contractflow.notification.dispatcher import NotificationDispatcher, register_handlers
from contractflow.notification.queue import DeliveryQueue, InMemoryDeliveryQueue, SqlDeliveryQueue
from contractflow.notification.rate_limiter import TokenBucketRateLimiter
from contractflow.reminders.scheduler import ReminderScheduler
from contractflow.webhooks.processor import WebhookProcessor


def get_session_factory() -> sessionmaker[Session]:
    return db_session.get_session_factory()


def get_db(factory: sessionmaker[Session] = Depends(get_session_factory)) -> Generator[Session, None, None]:
    """Yield a SQLAlchemy session; commit on success, rollback on error."""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Process-wide singletons
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_delivery_queue() -> DeliveryQueue:
    settings = get_settings()
    if settings.delivery_queue_backend == "sql":
        return SqlDeliveryQueue(
            db_session.get_session_factory(),
            lease_seconds=settings.delivery_lease_seconds,
            poll_interval_seconds=settings.delivery_poll_interval_seconds,
        )
    return InMemoryDeliveryQueue()


@lru_cache(maxsize=1)
def get_event_bus() -> EventBus:
    bus = EventBus()
    register_handlers(bus, get_delivery_queue(), get_settings().max_notifications_per_contract)
    return bus


@lru_cache(maxsize=1)
def get_rate_limiter() -> TokenBucketRateLimiter:
    settings = get_settings()
    return TokenBucketRateLimiter(
        points=settings.rate_limit_points,
        duration_seconds=settings.rate_limit_duration_seconds,
    )


@lru_cache(maxsize=1)
def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor(get_event_bus())


def reset_singletons() -> None:
    for factory in (get_delivery_queue, get_event_bus, get_rate_limiter, get_webhook_processor):
        factory.cache_clear()


# ---------------------------------------------------------------------------
# Per-request services
# ---------------------------------------------------------------------------


def get_state_machine(
    db: Session = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
) -> ContractStateMachine:
    """Return a ContractStateMachine bound to the current DB session."""
    return ContractStateMachine(db, bus)


def get_pause_settings(db: Session = Depends(get_db)) -> PauseSettings:
    return PauseSettings(db)


def get_dispatcher(
    db: Session = Depends(get_db),
    queue: DeliveryQueue = Depends(get_delivery_queue),
) -> NotificationDispatcher:
    return NotificationDispatcher(db, queue, max_per_contract=get_settings().max_notifications_per_contract)


def get_reminder_scheduler(
    factory: sessionmaker[Session] = Depends(get_session_factory),
    queue: DeliveryQueue = Depends(get_delivery_queue),
) -> ReminderScheduler:
    settings = get_settings()
    return ReminderScheduler(
        factory,
        queue,
        max_per_contract=settings.max_notifications_per_contract,
        second_after_days=settings.reminder_second_after_days,
        third_after_days=settings.reminder_third_after_days,
    )
