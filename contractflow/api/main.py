"""FastAPI application factory.

Assembles CORS, the business-error handler and all API routers.  The
lifespan configures logging and, when enabled, starts the delivery worker
pool and the reminder scheduler.  This module is the authoritative app
object; contractflow/main.py re-exports it.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from contractflow.api.deps import get_delivery_queue, get_event_bus, get_rate_limiter
from contractflow.api.routes.contracts import router as contracts_router
from contractflow.api.routes.health import router as health_router
from contractflow.api.routes.notification_settings import router as notification_settings_router
from contractflow.api.routes.notifications import router as notifications_router
from contractflow.api.routes.reminders import router as reminders_router
from contractflow.api.routes.sellers import router as sellers_router
from contractflow.api.routes.webhooks import router as webhooks_router
from contractflow.contracts.state_machine import expire_overdue
from contractflow.core.constants import NotificationChannel
from contractflow.core.errors import (
    ContractFlowError,
    InvalidTransition,
    NotFound,
    Rejected,
    ValidationError,
)
from contractflow.core.logging import setup_logging
from contractflow.core.settings import Settings, get_settings
from contractflow.db.session import get_session_factory
from contractflow.notification.gateway import WhatsAppGateway
from contractflow.notification.queue import recover_pending
from contractflow.notification.worker import DeliveryWorker, DeliveryWorkerPool
from contractflow.reminders.scheduler import ReminderScheduler, build_scheduler

logger = logging.getLogger(__name__)

# Business error → HTTP status, most specific first
_ERROR_STATUS: list[tuple[type[ContractFlowError], int]] = [
    (ValidationError, 400),
    (NotFound, 404),
    (InvalidTransition, 409),
    (Rejected, 409),
]


def _build_worker_pool(settings: Settings) -> DeliveryWorkerPool:
    factory = get_session_factory()
    queue = get_delivery_queue()
    worker = DeliveryWorker(
        factory,
        {NotificationChannel.WHATSAPP.value: WhatsAppGateway()},
        get_rate_limiter(),
        max_attempts=settings.delivery_max_attempts,
        requeue_delay_seconds=settings.delivery_requeue_delay_seconds,
        backoff_base_seconds=settings.delivery_backoff_base_seconds,
        backoff_max_seconds=settings.delivery_backoff_max_seconds,
    )
    recover_pending(factory, queue)
    return DeliveryWorkerPool(
        worker,
        queue,
        size=settings.delivery_workers,
        poll_interval_seconds=settings.delivery_poll_interval_seconds,
    )


def _build_scheduler(settings: Settings):
    factory = get_session_factory()
    reminders = ReminderScheduler(
        factory,
        get_delivery_queue(),
        max_per_contract=settings.max_notifications_per_contract,
        second_after_days=settings.reminder_second_after_days,
        third_after_days=settings.reminder_third_after_days,
    )
    return build_scheduler(
        reminders,
        hour=settings.reminder_cron_hour,
        expire_job=lambda: expire_overdue(factory, get_event_bus()),
    )


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    settings = get_settings()

    pool = _build_worker_pool(settings) if settings.workers_enabled else None
    scheduler = _build_scheduler(settings) if settings.scheduler_enabled else None
    if pool is not None:
        pool.start()
    if scheduler is not None:
        scheduler.start()
        logger.info("Background scheduler started")
    try:
        yield
    finally:
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=True)
            logger.info("Background scheduler shut down")
        if pool is not None:
            pool.stop()


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS: restrict origins in production via a reverse proxy
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ContractFlowError)
async def contractflow_error_handler(_: Request, exc: ContractFlowError) -> JSONResponse:
    status_code = next((code for error_type, code in _ERROR_STATUS if isinstance(exc, error_type)), 500)
    body: dict = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, Rejected):
        body["reason"] = exc.reason.value
    if status_code == 500:
        logger.error("Unmapped business error: %s", type(exc).__name__)
    return JSONResponse(status_code=status_code, content=body)


app.include_router(health_router)
app.include_router(webhooks_router)
app.include_router(sellers_router)
app.include_router(contracts_router)
app.include_router(reminders_router)
app.include_router(notification_settings_router)
app.include_router(notifications_router)
