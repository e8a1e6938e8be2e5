from uuid import uuid4

import pytest
from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from contractflow.db.base import Base
from contractflow.db import models  # noqa: F401


def _assert_default_contains(default_value: object, expected: str) -> None:
    assert default_value is not None
    normalized = str(default_value).lower().replace("(", "").replace(")", "").replace("'", "").strip()
    assert expected in normalized


def _engine():
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine


def test_schema_creation_in_sqlite_includes_all_tables():
    table_names = set(inspect(_engine()).get_table_names())

    assert {
        "sellers",
        "contracts",
        "status_history",
        "notifications",
        "system_settings",
        "delivery_jobs",
    }.issubset(table_names)


def test_contract_columns_exist():
    cols = {c["name"]: c for c in inspect(_engine()).get_columns("contracts")}

    assert cols["seller_id"]["nullable"] is False
    assert cols["status"]["nullable"] is False
    # Provider ids are only known once the contract is sent to signature
    assert cols["external_id"]["nullable"] is True
    assert cols["signing_url"]["nullable"] is True
    assert cols["expires_at"]["nullable"] is True
    assert cols["signed_at"]["nullable"] is True
    assert cols["created_at"]["nullable"] is False
    assert cols["updated_at"]["nullable"] is False


def test_notification_columns_exist():
    cols = {c["name"]: c for c in inspect(_engine()).get_columns("notifications")}

    for required in ("contract_id", "seller_id", "type", "channel", "content", "status", "attempt_number"):
        assert cols[required]["nullable"] is False
    for optional in ("external_id", "error", "sent_at", "delivered_at"):
        assert cols[optional]["nullable"] is True


def test_server_defaults_exist_for_state_fields():
    inspector = inspect(_engine())

    contract_columns = {c["name"]: c for c in inspector.get_columns("contracts")}
    _assert_default_contains(contract_columns["status"]["default"], "draft")

    notification_columns = {c["name"]: c for c in inspector.get_columns("notifications")}
    _assert_default_contains(notification_columns["status"]["default"], "pending")

    job_columns = {c["name"]: c for c in inspector.get_columns("delivery_jobs")}
    _assert_default_contains(job_columns["status"]["default"], "queued")
    _assert_default_contains(job_columns["redelivery_count"]["default"], "0")


def test_only_one_pending_notification_per_contract():
    engine = _engine()
    with Session(engine) as db:
        seller = models.Seller(id=uuid4(), name="Ana")
        contract = models.Contract(id=uuid4(), seller_id=seller.id, status="PENDING_SIGNATURE")
        db.add_all([seller, contract])
        db.flush()

        def notification(attempt: int, status: str) -> models.Notification:
            return models.Notification(
                contract_id=contract.id,
                seller_id=seller.id,
                type="SIGNATURE_REMINDER",
                channel="WHATSAPP",
                content="hi",
                status=status,
                attempt_number=attempt,
            )

        db.add_all([notification(1, "SENT"), notification(2, "PENDING")])
        db.flush()

        db.add(notification(3, "PENDING"))
        with pytest.raises(IntegrityError):
            db.flush()


def test_attempt_number_is_bounded():
    engine = _engine()
    with Session(engine) as db:
        seller = models.Seller(id=uuid4(), name="Ana")
        contract = models.Contract(id=uuid4(), seller_id=seller.id)
        db.add_all([seller, contract])
        db.flush()

        db.add(
            models.Notification(
                contract_id=contract.id,
                seller_id=seller.id,
                type="SIGNATURE_REMINDER",
                channel="WHATSAPP",
                content="hi",
                attempt_number=4,
            )
        )
        with pytest.raises(IntegrityError):
            db.flush()
