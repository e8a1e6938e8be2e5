"""Tests for contractflow/notification/dispatcher.py and templates.py."""
from __future__ import annotations

from datetime import timedelta
from uuid import uuid4

import pytest
from conftest import FIXED_NOW, make_contract, make_notification, make_seller

from contractflow.contracts.state_machine import ContractStateMachine
from contractflow.core.constants import ContractStatus, NotificationStatus
from contractflow.core.errors import LimitReached, NotFound, Rejected, RejectionReason, ValidationError
from contractflow.core.event_bus import EventBus
from contractflow.core.system_settings import PauseSettings
from contractflow.db.repositories import NotificationRepository
from contractflow.notification import templates
from contractflow.notification.dispatcher import NotificationDispatcher, register_handlers
from contractflow.notification.queue import InMemoryDeliveryQueue


@pytest.fixture()
def queue() -> InMemoryDeliveryQueue:
    return InMemoryDeliveryQueue()


def _dispatcher(db, queue) -> NotificationDispatcher:
    return NotificationDispatcher(db, queue)


# ===========================================================================
# Guards
# ===========================================================================

class TestGuards:
    def test_unknown_contract(self, db_session, queue):
        with pytest.raises(NotFound):
            _dispatcher(db_session, queue).create(uuid4())

    @pytest.mark.parametrize("status", [ContractStatus.SIGNED, ContractStatus.CANCELLED, ContractStatus.EXPIRED])
    def test_terminal_contract_rejected(self, db_session, queue, status):
        contract = make_contract(db_session, status=status)

        with pytest.raises(Rejected) as exc_info:
            _dispatcher(db_session, queue).create(contract.id)

        assert exc_info.value.reason == RejectionReason.TERMINAL
        assert NotificationRepository(db_session).count_for_contract(contract.id) == 0

    def test_existing_pending_is_returned_unchanged(self, db_session, queue):
        contract = make_contract(db_session)
        pending = make_notification(db_session, contract, attempt=1, status=NotificationStatus.PENDING)

        result = _dispatcher(db_session, queue).create(contract.id, attempt_number=2)

        assert result.created is False
        assert result.notification.id == pending.id
        assert result.notification.attempt_number == 1
        assert NotificationRepository(db_session).count_for_contract(contract.id) == 1

    def test_limit_reached_after_three(self, db_session, queue):
        contract = make_contract(db_session)
        for attempt in (1, 2, 3):
            make_notification(db_session, contract, attempt=attempt)

        with pytest.raises(LimitReached) as exc_info:
            _dispatcher(db_session, queue).create(contract.id, attempt_number=3)

        assert exc_info.value.reason == RejectionReason.LIMIT_REACHED

    @pytest.mark.parametrize("attempt", [0, 4])
    def test_attempt_out_of_range(self, db_session, queue, attempt):
        contract = make_contract(db_session)
        with pytest.raises(ValidationError):
            _dispatcher(db_session, queue).create(contract.id, attempt_number=attempt)

    def test_attempt_must_increase(self, db_session, queue):
        contract = make_contract(db_session)
        make_notification(db_session, contract, attempt=2)

        with pytest.raises(ValidationError):
            _dispatcher(db_session, queue).create(contract.id, attempt_number=2)
        with pytest.raises(ValidationError):
            _dispatcher(db_session, queue).create(contract.id, attempt_number=1)

    def test_paused_rejects(self, db_session, queue):
        contract = make_contract(db_session)
        PauseSettings(db_session).pause_for_days(2)

        with pytest.raises(Rejected) as exc_info:
            _dispatcher(db_session, queue).create(contract.id)

        assert exc_info.value.reason == RejectionReason.PAUSED

    def test_foreign_seller_rejected(self, db_session, queue):
        contract = make_contract(db_session)
        other = make_seller(db_session, name="Other")
        with pytest.raises(ValidationError):
            _dispatcher(db_session, queue).create(contract.id, other.id)


# ===========================================================================
# Creation and enqueueing
# ===========================================================================

class TestCreate:
    def test_creates_pending_with_rendered_content(self, db_session, queue):
        seller = make_seller(db_session, name="Bruno Lima")
        contract = make_contract(db_session, seller, external_id="doc-1")

        result = _dispatcher(db_session, queue).create(contract.id, attempt_number=1)

        notification = result.notification
        assert result.created is True
        assert notification.status == "PENDING"
        assert notification.type == "SIGNATURE_REMINDER"
        assert notification.channel == "WHATSAPP"
        assert "Bruno Lima" in notification.content
        assert "https://sign.example.com/doc" in notification.content

    def test_job_enqueued_only_after_commit(self, db_session, queue):
        contract = make_contract(db_session)

        result = _dispatcher(db_session, queue).create(contract.id)
        assert len(queue) == 0

        db_session.commit()
        job = queue.get(timeout=0)
        assert job is not None
        assert job.notification_id == result.notification.id

    def test_rollback_drops_job(self, db_session, queue):
        contract = make_contract(db_session)
        db_session.commit()

        _dispatcher(db_session, queue).create(contract.id)
        db_session.rollback()

        assert queue.get(timeout=0) is None

    def test_at_most_one_pending_under_repeated_triggers(self, db_session, queue):
        contract = make_contract(db_session)
        dispatcher = _dispatcher(db_session, queue)

        results = [dispatcher.create(contract.id, attempt_number=1) for _ in range(3)]

        assert [r.created for r in results] == [True, False, False]
        pending = [
            n for n in NotificationRepository(db_session).list_for_contract(contract.id)
            if n.status == "PENDING"
        ]
        assert len(pending) == 1

    def test_attempt_numbers_strictly_increase(self, db_session, queue):
        contract = make_contract(db_session)
        dispatcher = _dispatcher(db_session, queue)

        for attempt in (1, 2, 3):
            result = dispatcher.create(contract.id, attempt_number=attempt)
            result.notification.status = NotificationStatus.SENT.value
            db_session.flush()

        attempts = [n.attempt_number for n in NotificationRepository(db_session).list_for_contract(contract.id)]
        assert attempts == [1, 2, 3]


# ===========================================================================
# Event subscriptions
# ===========================================================================

class TestEventHandlers:
    def test_sent_to_signature_creates_first_reminder(self, db_session, queue):
        bus = EventBus()
        register_handlers(bus, queue)
        contract = make_contract(db_session, status=ContractStatus.DRAFT)

        ContractStateMachine(db_session, bus).send_to_signature(contract.id, "doc-1", "https://sign.example.com/1")

        notifications = NotificationRepository(db_session).list_for_contract(contract.id)
        assert len(notifications) == 1
        assert notifications[0].attempt_number == 1
        assert notifications[0].type == "SIGNATURE_REMINDER"

    def test_signed_creates_nothing(self, db_session, queue):
        bus = EventBus()
        register_handlers(bus, queue)
        contract = make_contract(db_session)

        ContractStateMachine(db_session, bus).change_status(contract.id, ContractStatus.SIGNED)

        assert NotificationRepository(db_session).count_for_contract(contract.id) == 0

    def test_paused_send_to_signature_still_transitions(self, db_session, queue):
        bus = EventBus()
        register_handlers(bus, queue)
        contract = make_contract(db_session, status=ContractStatus.DRAFT)
        PauseSettings(db_session).pause_until(FIXED_NOW + timedelta(days=3650))

        ContractStateMachine(db_session, bus).send_to_signature(contract.id, "doc-2")

        assert contract.status == "PENDING_SIGNATURE"
        assert NotificationRepository(db_session).count_for_contract(contract.id) == 0


# ===========================================================================
# Templates
# ===========================================================================

class TestTemplates:
    def test_each_reminder_attempt_has_distinct_whatsapp_text(self):
        texts = {templates.lookup("WHATSAPP", "SIGNATURE_REMINDER", attempt) for attempt in (1, 2, 3)}
        assert len(texts) == 3

    def test_fallback_template_for_any_attempt(self):
        assert templates.lookup("EMAIL", "SIGNATURE_REMINDER", 2) == templates.lookup("EMAIL", "SIGNATURE_REMINDER", 1)

    def test_missing_template(self):
        with pytest.raises(ValidationError):
            templates.lookup("SMS", "CONTRACT_SIGNED", 1)

    def test_render_substitutes_placeholders(self):
        text = templates.render(
            "WHATSAPP", "SIGNATURE_REMINDER", 3,
            {"seller_name": "Carla", "signing_url": "https://s/1", "contract_id": "c-1"},
        )
        assert "Carla" in text
        assert "https://s/1" in text
        assert "$" not in text
