"""
CMS endpoints: payments, refunds, subscriptions and class administration.
"""
import json
from datetime import timedelta

from app.errors import ExternalServiceError
from app.utils.helpers import utcnow
from conftest import auth_headers


# ============== Payments ==============

def test_manual_payment_is_recorded_and_audited(client, factory):
    admin = factory.admin()
    member = factory.member()

    response = client.post(
        "/api/cms/payments",
        json={"member_id": member["id"], "amount": 2500, "currency": "USD", "description": "Day pass"},
        headers=auth_headers(admin),
    )

    assert response.status_code == 201
    payment = response.json()["data"]
    assert payment["status"] == "paid"
    assert payment["currency"] == "usd"
    assert payment["created_by"] == admin["id"]
    audit = factory.fetch_one("SELECT action, user_id, resource_id FROM audit_logs")
    assert audit == {"action": "manual_payment", "user_id": admin["id"], "resource_id": payment["id"]}

    listing = client.get("/api/cms/payments", params={"member_id": member["id"]}, headers=auth_headers(admin))
    assert listing.json()["pagination"]["total"] == 1

    mine = client.get("/api/member/payments", headers=auth_headers(member))
    assert [p["id"] for p in mine.json()["data"]] == [payment["id"]]


def test_manual_payment_for_unknown_member(client, factory):
    response = client.post(
        "/api/cms/payments", json={"member_id": 999, "amount": 100}, headers=auth_headers(factory.admin()),
    )

    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "USER_NOT_FOUND"


def test_refund_through_stripe(client, factory, monkeypatch):
    refunds = []

    def fake_refund(payment_intent_id, amount=None, reason=None):
        refunds.append((payment_intent_id, reason))
        return {"id": "re_1", "status": "succeeded", "amount": 4900}

    monkeypatch.setattr("app.services.billing.create_refund", fake_refund)
    admin = factory.admin()
    member = factory.member()
    payment_id = factory.payment(member["id"], payment_intent_id="pi_1")

    response = client.post(
        f"/api/cms/payments/{payment_id}/refund", json={"reason": "Duplicate charge"}, headers=auth_headers(admin),
    )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "refunded"
    assert refunds == [("pi_1", "Duplicate charge")]
    audit = factory.fetch_one("SELECT details FROM audit_logs WHERE action = 'refund_payment'")
    assert json.loads(audit["details"])["stripe_refund_id"] == "re_1"

    again = client.post(f"/api/cms/payments/{payment_id}/refund", headers=auth_headers(admin))
    assert again.status_code == 400
    assert again.json()["detail"]["error_code"] == "INVALID_STATE"


def test_refund_provider_failure_leaves_payment_untouched(client, factory, monkeypatch):
    def failing_refund(payment_intent_id, amount=None, reason=None):
        raise ExternalServiceError("Refund failed: card_declined")

    monkeypatch.setattr("app.services.billing.create_refund", failing_refund)
    admin = factory.admin()
    payment_id = factory.payment(factory.member()["id"], payment_intent_id="pi_1")

    response = client.post(f"/api/cms/payments/{payment_id}/refund", headers=auth_headers(admin))

    assert response.status_code == 502
    assert response.json()["detail"]["error_code"] == "EXTERNAL_SERVICE_ERROR"
    assert factory.fetch_one("SELECT status FROM payments WHERE id = %s", (payment_id,))["status"] == "paid"
    assert factory.fetch_one("SELECT COUNT(*) AS n FROM audit_logs")["n"] == 0


def test_reconcile_endpoint(client, factory, monkeypatch):
    monkeypatch.setattr(
        "app.services.billing.retrieve_payment_intent",
        lambda payment_intent_id: {"id": payment_intent_id, "amount": 4900, "currency": "usd", "status": "succeeded"},
    )
    factory.payment(factory.member()["id"], payment_intent_id="pi_1")

    response = client.post("/api/cms/payments/reconcile", headers=auth_headers(factory.admin()))

    assert response.status_code == 200
    assert response.json()["data"] == {"checked": 1, "reconciled": 1, "discrepancies": 0, "errors": 0}


# ============== Subscriptions ==============

def test_grant_subscription_allows_booking(client, factory):
    admin = factory.admin()
    member = factory.member(subscribed=False)
    session = factory.session(factory.trainer()["id"])

    blocked = client.post(f"/api/member/classes/{session['id']}/book", headers=auth_headers(member))
    assert blocked.status_code == 403

    granted = client.post(
        "/api/cms/subscriptions", json={"member_id": member["id"], "days": 7}, headers=auth_headers(admin),
    )
    assert granted.status_code == 201
    assert granted.json()["data"]["status"] == "active"

    booked = client.post(f"/api/member/classes/{session['id']}/book", headers=auth_headers(member))
    assert booked.status_code == 201

    audit = factory.fetch_one("SELECT action, user_id FROM audit_logs")
    assert audit == {"action": "grant_subscription", "user_id": admin["id"]}


def test_grant_subscription_to_trainer_rejected(client, factory):
    response = client.post(
        "/api/cms/subscriptions", json={"member_id": factory.trainer()["id"]}, headers=auth_headers(factory.admin()),
    )

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_STATE"


def test_override_status_is_audited(client, factory):
    admin = factory.admin()
    member = factory.member(subscribed=False)
    subscription_id = factory.subscription(member["id"])

    response = client.patch(
        f"/api/cms/subscriptions/{subscription_id}/status", json={"status": "cancelled"}, headers=auth_headers(admin),
    )

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"
    assert response.json()["data"]["cancelled_at"] is not None
    audit = factory.fetch_one("SELECT details FROM audit_logs WHERE action = 'override_subscription_status'")
    assert json.loads(audit["details"]) == {"from": "active", "to": "cancelled"}

    subscription = client.get("/api/member/subscription", headers=auth_headers(member))
    assert subscription.json()["data"]["has_active_subscription"] is False

    listing = client.get("/api/cms/subscriptions", params={"status": "cancelled"}, headers=auth_headers(admin))
    assert [s["id"] for s in listing.json()["data"]] == [subscription_id]


def test_override_with_unknown_status_rejected(client, factory):
    subscription_id = factory.subscription(factory.member(subscribed=False)["id"])

    response = client.patch(
        f"/api/cms/subscriptions/{subscription_id}/status", json={"status": "frozen"},
        headers=auth_headers(factory.admin()),
    )

    assert response.status_code == 422


# ============== Classes ==============

def test_capacity_increase_promotes_waitlist(client, factory):
    admin = factory.admin()
    session = factory.session(factory.trainer()["id"], capacity=1)
    holder, first, second = factory.member(), factory.member(), factory.member()
    for member in (holder, first, second):
        client.post(f"/api/member/classes/{session['id']}/book", headers=auth_headers(member))

    response = client.put(f"/api/cms/classes/{session['id']}", json={"capacity": 2}, headers=auth_headers(admin))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["class"]["capacity"] == 2
    assert data["class"]["attendee_count"] == 2
    assert [b["member_id"] for b in data["promoted_bookings"]] == [first["id"]]
    waiting = factory.fetch("SELECT member_id FROM class_waitlist WHERE class_id = %s", (session["id"],))
    assert waiting == [{"member_id": second["id"]}]


def test_capacity_below_attendees_rejected(client, factory):
    admin = factory.admin()
    session = factory.session(factory.trainer()["id"], capacity=3)
    for member in (factory.member(), factory.member()):
        client.post(f"/api/member/classes/{session['id']}/book", headers=auth_headers(member))

    response = client.put(f"/api/cms/classes/{session['id']}", json={"capacity": 1}, headers=auth_headers(admin))

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_STATE"
    assert factory.fetch_one("SELECT capacity FROM class_sessions WHERE id = %s", (session["id"],))["capacity"] == 3


def test_admin_creates_class_for_trainer(client, factory):
    trainer = factory.trainer()
    start = utcnow() + timedelta(days=5)

    response = client.post(
        "/api/cms/classes",
        json={
            "trainer_id": trainer["id"],
            "name": "Boxing Basics",
            "start_time": start.isoformat() + "Z",
            "end_time": (start + timedelta(hours=1)).isoformat() + "Z",
            "capacity": 8,
        },
        headers=auth_headers(factory.admin()),
    )

    assert response.status_code == 201
    assert response.json()["data"]["trainer_id"] == trainer["id"]
    assert response.json()["data"]["trainer_name"] == trainer["name"]


def test_admin_cancels_class(client, factory):
    admin = factory.admin()
    session = factory.session(factory.trainer()["id"], capacity=1)
    booked, waiting = factory.member(), factory.member()
    client.post(f"/api/member/classes/{session['id']}/book", headers=auth_headers(booked))
    client.post(f"/api/member/classes/{session['id']}/book", headers=auth_headers(waiting))

    response = client.post(
        f"/api/cms/classes/{session['id']}/cancel", json={"reason": "Trainer ill"}, headers=auth_headers(admin),
    )

    assert response.status_code == 200
    assert response.json()["data"]["cancelled_bookings"] == 1
    booking = factory.fetch_one("SELECT status, cancellation_reason FROM bookings WHERE member_id = %s", (booked["id"],))
    assert booking == {"status": "cancelled", "cancellation_reason": "Trainer ill"}
    for member in (booked, waiting):
        types = [n["type"] for n in factory.fetch("SELECT type FROM notifications WHERE user_id = %s", (member["id"],))]
        assert "class_cancelled" in types

    rebook = client.post(f"/api/member/classes/{session['id']}/book", headers=auth_headers(waiting))
    assert rebook.status_code == 400
    assert rebook.json()["detail"]["error_code"] == "CLASS_UNAVAILABLE"
