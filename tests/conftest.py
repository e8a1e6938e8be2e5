from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from contractflow.core.constants import ContractStatus, NotificationStatus
from contractflow.db.base import Base
from contractflow.db.models import Contract, Notification, Seller
from contractflow.db.session import build_session_factory
from contractflow.notification.gateway import SendResult

# A Wednesday, so scheduled reminder runs are not skipped as weekend runs.
FIXED_NOW = datetime(2026, 3, 11, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    """In-memory SQLite engine shared by every session in a test."""
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_seller(db, name: str = "Ana Souza", phone: str | None = "+5511999990001", email: str | None = None) -> Seller:
    seller = Seller(id=uuid4(), name=name, phone=phone, email=email)
    db.add(seller)
    db.flush()
    return seller


def make_contract(
    db,
    seller: Seller | None = None,
    status: ContractStatus = ContractStatus.PENDING_SIGNATURE,
    created_at: datetime | None = None,
    external_id: str | None = None,
    expires_at: datetime | None = None,
) -> Contract:
    seller = seller or make_seller(db)
    contract = Contract(
        id=uuid4(),
        seller_id=seller.id,
        template_id="partnership-v1",
        status=status.value,
        content="Partnership agreement",
        external_id=external_id,
        signing_url="https://sign.example.com/doc" if external_id else None,
        expires_at=expires_at,
        created_at=created_at or FIXED_NOW,
    )
    db.add(contract)
    db.flush()
    return contract


def make_notification(
    db,
    contract: Contract,
    attempt: int = 1,
    status: NotificationStatus = NotificationStatus.SENT,
    created_at: datetime | None = None,
) -> Notification:
    notification = Notification(
        id=uuid4(),
        contract_id=contract.id,
        seller_id=contract.seller_id,
        type="SIGNATURE_REMINDER",
        channel="WHATSAPP",
        content=f"reminder {attempt}",
        status=status.value,
        attempt_number=attempt,
        created_at=created_at or FIXED_NOW - timedelta(days=10) + timedelta(minutes=attempt),
    )
    db.add(notification)
    db.flush()
    return notification


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class FakeGateway:
    """Records every send; fails while ``fail`` is truthy."""

    def __init__(self, fail: bool = False, message_id: str = "msg-1") -> None:
        self.fail = fail
        self.message_id = message_id
        self.calls: list[tuple[str, str]] = []

    def send(self, recipient: str, content: str) -> SendResult:
        self.calls.append((recipient, content))
        if self.fail:
            return SendResult(success=False, error="gateway down")
        return SendResult(success=True, message_id=self.message_id)


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
def client(session_factory, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("WORKERS_ENABLED", "false")

    from contractflow.api.deps import get_session_factory, reset_singletons
    from contractflow.core.settings import get_settings

    get_settings.cache_clear()
    reset_singletons()

    from contractflow.main import app

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    reset_singletons()
    get_settings.cache_clear()
    os.environ.pop("DATABASE_URL", None)
