"""
Stripe webhook consumer: signature check, idempotence and per-event effects.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime

from app.services.subscription_sync import ProcessedEventCache, handle_event, processed_events

WEBHOOK_SECRET = "whsec_test_secret"


def _signed(event: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()
    headers = {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}
    return body, headers


def _event(event_id: str, event_type: str, obj: dict) -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def _invoice(invoice_id="in_1", subscription="sub_1", payment_intent="pi_1", amount_paid=4900):
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription,
        "payment_intent": payment_intent,
        "amount_paid": amount_paid,
        "currency": "usd",
    }


def _count(factory, table):
    return factory.fetch_one(f"SELECT COUNT(*) AS n FROM {table}")["n"]


# ============== Signature ==============

def test_invalid_signature_rejected_without_side_effects(client, factory):
    member = factory.member(subscribed=False)
    factory.subscription(member["id"], status="past_due", stripe_subscription_id="sub_1")
    body, headers = _signed(_event("evt_bad", "invoice.payment_succeeded", _invoice()), secret="whsec_wrong")

    response = client.post("/api/webhooks/stripe", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_SIGNATURE"
    assert _count(factory, "webhook_events") == 0
    assert _count(factory, "payments") == 0
    assert factory.fetch_one("SELECT status FROM subscriptions")["status"] == "past_due"


def test_missing_signature_rejected(client):
    response = client.post("/api/webhooks/stripe", content=json.dumps(_event("evt_x", "ping", {})))

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_SIGNATURE"


def test_signed_invoice_event_is_applied_once(client, factory):
    member = factory.member(subscribed=False)
    factory.subscription(member["id"], status="past_due", stripe_subscription_id="sub_1")
    body, headers = _signed(_event("evt_1", "invoice.payment_succeeded", _invoice()))

    first = client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert first.status_code == 200
    assert first.json() == {"received": True}

    replay = client.post("/api/webhooks/stripe", content=body, headers=headers)
    assert replay.json() == {"received": True, "skipped": True}

    payments = factory.fetch("SELECT member_id, amount, status, stripe_invoice_id FROM payments")
    assert payments == [{"member_id": member["id"], "amount": 4900, "status": "paid", "stripe_invoice_id": "in_1"}]
    assert factory.fetch_one("SELECT status FROM subscriptions")["status"] == "active"


# ============== Idempotence ==============

def test_durable_dedup_survives_cache_loss(factory):
    member = factory.member(subscribed=False)
    factory.subscription(member["id"], stripe_subscription_id="sub_1")
    event = _event("evt_1", "invoice.payment_succeeded", _invoice())

    assert handle_event(event) == {"received": True}
    processed_events.clear()

    assert handle_event(event) == {"received": True, "skipped": True}
    assert "evt_1" in processed_events
    assert _count(factory, "payments") == 1
    assert _count(factory, "webhook_events") == 1


def test_same_invoice_under_new_event_id_not_double_recorded(factory):
    member = factory.member(subscribed=False)
    factory.subscription(member["id"], stripe_subscription_id="sub_1")

    handle_event(_event("evt_1", "invoice.payment_succeeded", _invoice()))
    handle_event(_event("evt_2", "invoice.payment_succeeded", _invoice()))

    assert _count(factory, "payments") == 1
    assert _count(factory, "webhook_events") == 2


def test_payment_intent_then_invoice_links_one_payment(factory):
    member = factory.member(subscribed=False, stripe_customer_id="cus_1")
    subscription_id = factory.subscription(member["id"], stripe_subscription_id="sub_1")

    handle_event(_event("evt_pi", "payment_intent.succeeded", {
        "id": "pi_1", "object": "payment_intent", "customer": "cus_1", "amount": 4900, "currency": "usd",
    }))
    handle_event(_event("evt_in", "invoice.payment_succeeded", _invoice(payment_intent="pi_1")))

    payments = factory.fetch("SELECT stripe_payment_intent_id, stripe_invoice_id, subscription_id FROM payments")
    assert payments == [{"stripe_payment_intent_id": "pi_1", "stripe_invoice_id": "in_1", "subscription_id": subscription_id}]


def test_handler_failure_rolls_back_claim(factory):
    result = handle_event({"id": "evt_broken", "type": "invoice.payment_succeeded", "data": {}})

    assert result["received"] is True
    assert "error" in result
    assert _count(factory, "webhook_events") == 0
    assert "evt_broken" not in processed_events


def test_unknown_event_type_is_acknowledged(factory):
    assert handle_event(_event("evt_other", "customer.created", {"id": "cus_9"})) == {"received": True}
    assert _count(factory, "webhook_events") == 1


# ============== Effects ==============

def test_invoice_for_unknown_subscription_records_nothing(factory):
    assert handle_event(_event("evt_1", "invoice.payment_succeeded", _invoice(subscription="sub_missing"))) == {
        "received": True,
    }
    assert _count(factory, "payments") == 0


def test_payment_failed_marks_past_due_and_notifies_once(factory):
    member = factory.member(subscribed=False)
    factory.subscription(member["id"], stripe_subscription_id="sub_1")

    handle_event(_event("evt_f1", "invoice.payment_failed", _invoice(invoice_id="in_f1")))
    handle_event(_event("evt_f2", "invoice.payment_failed", _invoice(invoice_id="in_f2")))

    assert factory.fetch_one("SELECT status FROM subscriptions")["status"] == "past_due"
    notifications = factory.fetch("SELECT type FROM notifications WHERE user_id = %s", (member["id"],))
    assert notifications == [{"type": "payment_failed"}]


def test_subscription_updated_maps_status_and_period(factory):
    member = factory.member(subscribed=False)
    factory.subscription(member["id"], stripe_subscription_id="sub_1")

    handle_event(_event("evt_u1", "customer.subscription.updated", {
        "id": "sub_1",
        "object": "subscription",
        "status": "unpaid",
        "cancel_at_period_end": True,
        "items": {"data": [{"current_period_start": 1767225600, "current_period_end": 1769904000}]},
    }))

    row = factory.fetch_one("SELECT status, cancel_at_period_end, current_period_start, current_period_end FROM subscriptions")
    assert row == {
        "status": "past_due",
        "cancel_at_period_end": 1,
        "current_period_start": datetime(2026, 1, 1),
        "current_period_end": datetime(2026, 2, 1),
    }


def test_subscription_updated_unknown_status_keeps_current(factory):
    member = factory.member(subscribed=False)
    factory.subscription(member["id"], stripe_subscription_id="sub_1", status="trialing")

    handle_event(_event("evt_u2", "customer.subscription.updated", {
        "id": "sub_1", "status": "something_new", "current_period_start": 1767225600, "current_period_end": 1769904000,
    }))

    assert factory.fetch_one("SELECT status FROM subscriptions")["status"] == "trialing"


def test_subscription_deleted(factory):
    member = factory.member(subscribed=False)
    factory.subscription(member["id"], stripe_subscription_id="sub_1")

    handle_event(_event("evt_d1", "customer.subscription.deleted", {"id": "sub_1", "status": "canceled"}))
    handle_event(_event("evt_d2", "customer.subscription.deleted", {"id": "sub_1", "status": "canceled"}))

    row = factory.fetch_one("SELECT status, cancelled_at FROM subscriptions")
    assert row["status"] == "cancelled"
    assert row["cancelled_at"] is not None
    notifications = factory.fetch("SELECT type FROM notifications WHERE user_id = %s", (member["id"],))
    assert notifications == [{"type": "subscription_cancelled"}]


def test_payment_intent_for_unknown_customer(factory):
    handle_event(_event("evt_pi", "payment_intent.succeeded", {"id": "pi_9", "customer": "cus_unknown", "amount": 100}))

    assert _count(factory, "payments") == 0


def test_charge_refunded_once(factory):
    member = factory.member()
    payment_id = factory.payment(member["id"], payment_intent_id="pi_1")
    charge = {"id": "ch_1", "object": "charge", "payment_intent": "pi_1", "amount": 4900, "amount_refunded": 4900}

    handle_event(_event("evt_r1", "charge.refunded", charge))
    handle_event(_event("evt_r2", "charge.refunded", charge))

    row = factory.fetch_one("SELECT status, refunded_at FROM payments WHERE id = %s", (payment_id,))
    assert row["status"] == "refunded"
    assert row["refunded_at"] is not None
    notifications = factory.fetch("SELECT type FROM notifications WHERE user_id = %s", (member["id"],))
    assert notifications == [{"type": "payment_refunded"}]


# ============== Cache ==============

def test_processed_event_cache_trims_to_newest():
    cache = ProcessedEventCache(max_size=4, keep=2)
    for n in range(4):
        cache.add(f"evt_{n}")
    assert len(cache) == 4

    cache.add("evt_4")

    assert len(cache) == 2
    assert "evt_3" in cache and "evt_4" in cache
    assert "evt_0" not in cache


def test_processed_event_cache_default_keep_is_half():
    cache = ProcessedEventCache(max_size=1000)
    for n in range(1001):
        cache.add(f"evt_{n}")

    assert len(cache) == 500
    assert "evt_1000" in cache
    assert "evt_500" not in cache
