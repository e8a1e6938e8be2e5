"""Tests for the FastAPI routes.

Covers:
- POST /sellers, GET /sellers/{id}
- POST /contracts and the lifecycle routes (send-to-signature, status, cancel)
- GET /contracts/{id}/history and /notifications
- POST /contracts/{id}/notifications: manual send
- POST /webhooks/signature: provider events, always acknowledged
- /notifications/settings: pause, resume, status
- POST /reminders/run, POST /reminders/{contract_id}
- /notifications/{id}/delivered and rate-limit routes
- Business error → HTTP status mapping
"""
from __future__ import annotations

from uuid import uuid4

from conftest import make_contract, make_notification

from contractflow.core.constants import NotificationStatus


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _create_seller(client, **overrides) -> dict:
    body = {"name": "Ana Souza", "phone": "+5511999990001", **overrides}
    response = client.post("/sellers", json=body)
    assert response.status_code == 201
    return response.json()


def _create_contract(client) -> dict:
    seller = _create_seller(client)
    response = client.post("/contracts", json={"seller_id": seller["id"], "template_id": "partnership-v1"})
    assert response.status_code == 201
    return response.json()


def _send_to_signature(client, contract_id: str, external_id: str = "doc-1") -> dict:
    response = client.post(
        f"/contracts/{contract_id}/send-to-signature",
        json={"external_id": external_id, "signing_url": f"https://sign.example.com/{external_id}"},
    )
    assert response.status_code == 200
    return response.json()


# ===========================================================================
# Sellers
# ===========================================================================

class TestSellers:
    def test_create_and_get(self, client):
        seller = _create_seller(client)

        response = client.get(f"/sellers/{seller['id']}")

        assert response.status_code == 200
        assert response.json()["name"] == "Ana Souza"

    def test_unknown_seller_404(self, client):
        response = client.get(f"/sellers/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_blank_name_rejected(self, client):
        assert client.post("/sellers", json={"name": ""}).status_code == 422


# ===========================================================================
# Contract lifecycle
# ===========================================================================

class TestContracts:
    def test_create_is_draft(self, client):
        contract = _create_contract(client)
        assert contract["status"] == "DRAFT"
        assert client.get(f"/contracts/{contract['id']}/history").json() == []

    def test_create_for_unknown_seller_404(self, client):
        response = client.post("/contracts", json={"seller_id": str(uuid4())})
        assert response.status_code == 404

    def test_send_to_signature_creates_first_reminder(self, client):
        contract = _create_contract(client)

        updated = _send_to_signature(client, contract["id"])

        assert updated["status"] == "PENDING_SIGNATURE"
        assert updated["external_id"] == "doc-1"
        notifications = client.get(f"/contracts/{contract['id']}/notifications").json()
        assert len(notifications) == 1
        assert notifications[0]["status"] == "PENDING"
        assert notifications[0]["attempt_number"] == 1

    def test_invalid_transition_409(self, client):
        contract = _create_contract(client)

        response = client.patch(f"/contracts/{contract['id']}/status", json={"status": "SIGNED"})

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"
        assert client.get(f"/contracts/{contract['id']}").json()["status"] == "DRAFT"

    def test_patch_to_pending_signature_requires_send_to_signature(self, client):
        contract = _create_contract(client)

        response = client.patch(f"/contracts/{contract['id']}/status", json={"status": "PENDING_SIGNATURE"})

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"
        assert client.get(f"/contracts/{contract['id']}").json()["status"] == "DRAFT"
        assert client.get(f"/contracts/{contract['id']}/notifications").json() == []

    def test_unknown_status_422(self, client):
        contract = _create_contract(client)
        response = client.patch(f"/contracts/{contract['id']}/status", json={"status": "ARCHIVED"})
        assert response.status_code == 422

    def test_patch_status_records_history(self, client):
        contract = _create_contract(client)
        _send_to_signature(client, contract["id"])

        response = client.patch(f"/contracts/{contract['id']}/status", json={"status": "EXPIRED"})

        assert response.status_code == 200
        history = client.get(f"/contracts/{contract['id']}/history").json()
        assert [h["to_status"] for h in history] == ["PENDING_SIGNATURE", "EXPIRED"]
        assert history[-1]["reason"] == "EXPIRED"

    def test_cancel_with_reason(self, client):
        contract = _create_contract(client)

        response = client.post(f"/contracts/{contract['id']}/cancel", json={"reason": "duplicate"})

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        entry = client.get(f"/contracts/{contract['id']}/history").json()[0]
        assert entry["reason"] == "MANUAL_CANCELLATION"
        assert entry["metadata"] == {"reason": "duplicate"}

    def test_unknown_contract_404(self, client):
        assert client.get(f"/contracts/{uuid4()}").status_code == 404
        assert client.get(f"/contracts/{uuid4()}/history").status_code == 404


# ===========================================================================
# Manual notifications
# ===========================================================================

class TestManualNotifications:
    def test_pending_reminder_is_returned_not_duplicated(self, client):
        contract = _create_contract(client)
        _send_to_signature(client, contract["id"])

        response = client.post(f"/contracts/{contract['id']}/notifications", json={"attempt_number": 2})

        assert response.status_code == 201
        assert response.json()["created"] is False
        assert response.json()["notification"]["attempt_number"] == 1

    def test_terminal_contract_rejected(self, client):
        contract = _create_contract(client)
        client.post(f"/contracts/{contract['id']}/cancel")

        response = client.post(f"/contracts/{contract['id']}/notifications", json={"attempt_number": 1})

        assert response.status_code == 409
        assert response.json()["reason"] == "terminal"

    def test_paused_rejected(self, client):
        contract = _create_contract(client)
        client.post("/notifications/settings/pause", json={"days": 1})
        _send_to_signature(client, contract["id"])

        response = client.post(f"/contracts/{contract['id']}/notifications", json={"attempt_number": 1})

        assert response.status_code == 409
        assert response.json()["reason"] == "paused"
        assert client.get(f"/contracts/{contract['id']}/notifications").json() == []

    def test_explicit_attempt_creates_notification(self, client, session_factory):
        with session_factory() as db:
            contract = make_contract(db, external_id="doc-7")
            make_notification(db, contract, attempt=1)
            db.commit()
            contract_id = str(contract.id)

        response = client.post(f"/contracts/{contract_id}/notifications", json={"attempt_number": 3})

        assert response.status_code == 201
        assert response.json()["created"] is True
        assert response.json()["notification"]["attempt_number"] == 3
        assert response.json()["notification"]["status"] == "PENDING"

    def test_attempt_out_of_range_400(self, client, session_factory):
        with session_factory() as db:
            contract = make_contract(db)
            db.commit()
            contract_id = str(contract.id)

        response = client.post(f"/contracts/{contract_id}/notifications", json={"attempt_number": 9})

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"


# ===========================================================================
# Webhooks
# ===========================================================================

class TestWebhooks:
    def _event(self, event_type: str, document: str = "doc-1", event_id: str = "evt-1") -> dict:
        return {"id": event_id, "event": {"type": event_type, "data": {"document": document}}}

    def test_signature_accepted_signs_contract(self, client):
        contract = _create_contract(client)
        _send_to_signature(client, contract["id"])

        response = client.post("/webhooks/signature", json=self._event("signature.accepted"))

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "applied"}
        assert client.get(f"/contracts/{contract['id']}").json()["status"] == "SIGNED"

    def test_signed_contract_gets_no_further_reminders(self, client):
        contract = _create_contract(client)
        _send_to_signature(client, contract["id"])

        client.post("/webhooks/signature", json=self._event("signature.accepted"))

        history = client.get(f"/contracts/{contract['id']}/history").json()
        assert [(h["from_status"], h["to_status"]) for h in history] == [
            ("DRAFT", "PENDING_SIGNATURE"),
            ("PENDING_SIGNATURE", "SIGNED"),
        ]

        assert client.post(f"/reminders/{contract['id']}").json()["created"] is False
        client.post("/reminders/run")
        manual = client.post(f"/contracts/{contract['id']}/notifications", json={"attempt_number": 2})
        assert manual.status_code == 409
        assert len(client.get(f"/contracts/{contract['id']}/notifications").json()) == 1

    def test_unknown_document_acknowledged(self, client):
        response = client.post("/webhooks/signature", json=self._event("signature.accepted", "nope"))
        assert response.status_code == 200
        assert response.json()["outcome"] == "unknown_document"

    def test_out_of_order_event_acknowledged(self, client):
        contract = _create_contract(client)
        _send_to_signature(client, contract["id"])
        client.post("/webhooks/signature", json=self._event("signature.accepted"))

        response = client.post("/webhooks/signature", json=self._event("signature.rejected", event_id="evt-2"))

        assert response.status_code == 200
        assert response.json()["outcome"] == "conflict"
        assert client.get(f"/contracts/{contract['id']}").json()["status"] == "SIGNED"

    def test_redelivery_ignored(self, client):
        contract = _create_contract(client)
        _send_to_signature(client, contract["id"])
        client.post("/webhooks/signature", json=self._event("signature.accepted"))

        response = client.post("/webhooks/signature", json=self._event("signature.accepted"))

        assert response.json()["outcome"] == "ignored"


# ===========================================================================
# Pause settings
# ===========================================================================

class TestPauseRoutes:
    def test_initially_not_paused(self, client):
        body = client.get("/notifications/settings/pause-status").json()
        assert body == {"is_paused": False, "pause_until": None, "days_remaining": 0}

    def test_pause_and_resume(self, client):
        paused = client.post("/notifications/settings/pause", json={"days": 2}).json()
        assert paused["is_paused"] is True
        assert paused["days_remaining"] == 2

        resumed = client.post("/notifications/settings/resume").json()
        assert resumed["is_paused"] is False

    def test_days_out_of_range_422(self, client):
        assert client.post("/notifications/settings/pause", json={"days": 45}).status_code == 422

    def test_exactly_one_field_required(self, client):
        assert client.post("/notifications/settings/pause", json={}).status_code == 422
        both = {"days": 1, "until": "2099-01-01T00:00:00Z"}
        assert client.post("/notifications/settings/pause", json=both).status_code == 422

    def test_pause_until_past_400(self, client):
        response = client.post("/notifications/settings/pause", json={"until": "2000-01-01T00:00:00Z"})
        assert response.status_code == 400


# ===========================================================================
# Reminders
# ===========================================================================

class TestReminderRoutes:
    def test_run_returns_report(self, client):
        body = client.post("/reminders/run").json()
        assert set(body) == {"evaluated", "created", "skipped", "failed", "paused", "weekend"}

    def test_remind_single_contract(self, client, session_factory):
        with session_factory() as db:
            contract = make_contract(db)
            make_notification(db, contract, attempt=1)
            db.commit()
            contract_id = str(contract.id)

        response = client.post(f"/reminders/{contract_id}")

        assert response.status_code == 200
        assert response.json() == {"contract_id": contract_id, "created": True}
        attempts = [n["attempt_number"] for n in client.get(f"/contracts/{contract_id}/notifications").json()]
        assert attempts == [1, 2]

    def test_remind_unknown_contract_404(self, client):
        assert client.post(f"/reminders/{uuid4()}").status_code == 404


# ===========================================================================
# Delivery receipts and rate limits
# ===========================================================================

class TestNotificationRoutes:
    def test_mark_delivered(self, client, session_factory):
        with session_factory() as db:
            notification = make_notification(db, make_contract(db), status=NotificationStatus.SENT)
            db.commit()
            notification_id = str(notification.id)

        response = client.post(f"/notifications/{notification_id}/delivered")

        assert response.status_code == 200
        assert response.json()["status"] == "DELIVERED"

    def test_mark_delivered_requires_sent(self, client, session_factory):
        with session_factory() as db:
            notification = make_notification(db, make_contract(db), status=NotificationStatus.FAILED)
            db.commit()
            notification_id = str(notification.id)

        assert client.post(f"/notifications/{notification_id}/delivered").status_code == 400

    def test_rate_limit_status_and_reset(self, client):
        status = client.get("/notifications/rate-limit/5511999990001").json()
        assert status["allowed"] is True
        assert status["remaining"] == 5
        assert status["limit"] == 5

        assert client.post("/notifications/rate-limit/5511999990001/reset").json() == {"reset": False}
