"""
Stripe webhook consumer.

Stripe delivers events at least once, so every event is de-duplicated twice:
by event id (a bounded in-process cache in front of the durable
``webhook_events`` table) and, per event type, by the provider key of the
record it writes (subscription id, invoice id, payment intent id).

Webhook delivery always gets an acknowledgement. Internal errors are logged
and rolled back; the daily reconciliation sweep is the backstop.
"""
import logging
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, Optional

from app.config import WEBHOOK_EVENT_CACHE_SIZE
from app.db import get_db_connection
from app.services.notifications import enqueue_notification
from app.utils.helpers import from_timestamp, utcnow

logger = logging.getLogger(__name__)

# Stripe status -> local status
STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "unpaid": "past_due",
    "paused": "past_due",
    "canceled": "cancelled",
    "cancelled": "cancelled",
    "incomplete": "incomplete",
    "incomplete_expired": "incomplete",
}


class ProcessedEventCache:
    """Recently processed event ids. Trimmed to the newest ``keep`` ids once it grows past ``max_size``."""

    def __init__(self, max_size: int = 1000, keep: Optional[int] = None):
        self.max_size = max_size
        self.keep = keep if keep is not None else max_size // 2
        self._ids = OrderedDict()

    def __contains__(self, event_id) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, event_id: str):
        self._ids[event_id] = True
        self._ids.move_to_end(event_id)
        if len(self._ids) > self.max_size:
            while len(self._ids) > self.keep:
                self._ids.popitem(last=False)

    def clear(self):
        self._ids.clear()


processed_events = ProcessedEventCache(WEBHOOK_EVENT_CACHE_SIZE)


# ============== Lookups ==============

def _find_subscription(cursor, stripe_subscription_id: Optional[str]) -> Optional[dict]:
    if not stripe_subscription_id:
        return None
    cursor.execute(
        """
        SELECT s.*, p.name AS plan_name
        FROM subscriptions s
        LEFT JOIN subscription_plans p ON p.id = s.plan_id
        WHERE s.stripe_subscription_id = %s
        """,
        (stripe_subscription_id,),
    )
    return cursor.fetchone()


def _find_payment_by_intent(cursor, payment_intent_id: Optional[str]) -> Optional[dict]:
    if not payment_intent_id:
        return None
    cursor.execute(
        "SELECT * FROM payments WHERE stripe_payment_intent_id = %s ORDER BY id ASC LIMIT 1",
        (payment_intent_id,),
    )
    return cursor.fetchone()


def _period_bounds(stripe_subscription: dict):
    """Current period, read from the subscription or (newer API versions) its first item."""
    start = stripe_subscription.get("current_period_start")
    end = stripe_subscription.get("current_period_end")
    if start is None or end is None:
        items = (stripe_subscription.get("items") or {}).get("data") or []
        if items:
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


# ============== Handlers ==============

def handle_invoice_payment_succeeded(cursor, invoice: dict, now: datetime):
    subscription = _find_subscription(cursor, invoice.get("subscription"))
    if not subscription:
        logger.warning("Subscription not found for invoice %s", invoice.get("id"))
        return

    cursor.execute(
        "UPDATE subscriptions SET status = 'active', updated_at = %s WHERE id = %s",
        (now, subscription["id"]),
    )

    cursor.execute("SELECT id FROM payments WHERE stripe_invoice_id = %s", (invoice["id"],))
    if cursor.fetchone():
        logger.info("Payment for invoice %s already recorded", invoice["id"])
        return

    # payment_intent.succeeded may have arrived first and recorded the charge
    # as a one-off payment; attach it to the invoice instead of inserting twice.
    existing = _find_payment_by_intent(cursor, invoice.get("payment_intent"))
    if existing:
        cursor.execute(
            """
            UPDATE payments
            SET stripe_invoice_id = %s, subscription_id = %s, updated_at = %s
            WHERE id = %s
            """,
            (invoice["id"], subscription["id"], now, existing["id"]),
        )
        logger.info("Linked payment #%s to invoice %s", existing["id"], invoice["id"])
        return

    amount = invoice.get("amount_paid") or 0
    currency = invoice.get("currency") or "usd"
    cursor.execute(
        """
        INSERT INTO payments
            (member_id, amount, currency, status, stripe_payment_intent_id, stripe_invoice_id,
             subscription_id, description, reconciled, created_at, updated_at)
        VALUES (%s, %s, %s, 'paid', %s, %s, %s, %s, 0, %s, %s)
        """,
        (
            subscription["member_id"],
            amount,
            currency,
            invoice.get("payment_intent"),
            invoice["id"],
            subscription["id"],
            f"Subscription payment for {subscription['plan_name'] or 'membership'}",
            now,
            now,
        ),
    )
    enqueue_notification(
        cursor, subscription["member_id"], "payment_succeeded", "Payment Successful",
        f"Your payment of {amount / 100:.2f} {currency.upper()} was successful.",
        now=now,
    )
    logger.info("Invoice payment succeeded for subscription %s", invoice.get("subscription"))


def handle_invoice_payment_failed(cursor, invoice: dict, now: datetime):
    subscription = _find_subscription(cursor, invoice.get("subscription"))
    if not subscription:
        logger.warning("Subscription not found for invoice %s", invoice.get("id"))
        return

    cursor.execute(
        "UPDATE subscriptions SET status = 'past_due', updated_at = %s WHERE id = %s",
        (now, subscription["id"]),
    )
    if subscription["status"] != "past_due":
        enqueue_notification(
            cursor, subscription["member_id"], "payment_failed", "Payment Failed",
            "Your recent payment failed. Please update your payment method.",
            now=now,
        )
    logger.info("Invoice payment failed for subscription %s", invoice.get("subscription"))


def handle_subscription_deleted(cursor, stripe_subscription: dict, now: datetime):
    subscription = _find_subscription(cursor, stripe_subscription.get("id"))
    if not subscription:
        logger.warning("Subscription not found: %s", stripe_subscription.get("id"))
        return
    if subscription["status"] == "cancelled":
        logger.info("Subscription %s already cancelled", stripe_subscription["id"])
        return

    cursor.execute(
        """
        UPDATE subscriptions
        SET status = 'cancelled', cancelled_at = %s, updated_at = %s
        WHERE id = %s
        """,
        (now, now, subscription["id"]),
    )
    enqueue_notification(
        cursor, subscription["member_id"], "subscription_cancelled", "Subscription Cancelled",
        "Your subscription has been cancelled.",
        now=now,
    )
    logger.info("Subscription deleted: %s", stripe_subscription["id"])


def handle_subscription_updated(cursor, stripe_subscription: dict, now: datetime):
    subscription = _find_subscription(cursor, stripe_subscription.get("id"))
    if not subscription:
        logger.warning("Subscription not found: %s", stripe_subscription.get("id"))
        return

    provider_status = stripe_subscription.get("status")
    status = STATUS_MAP.get(provider_status)
    if status is None:
        logger.warning("Unknown Stripe subscription status %r, keeping %s", provider_status, subscription["status"])
        status = subscription["status"]

    period_start, period_end = _period_bounds(stripe_subscription)
    cursor.execute(
        """
        UPDATE subscriptions
        SET status = %s,
            current_period_start = %s,
            current_period_end = %s,
            cancel_at_period_end = %s,
            updated_at = %s
        WHERE id = %s
        """,
        (
            status,
            period_start,
            period_end,
            1 if stripe_subscription.get("cancel_at_period_end") else 0,
            now,
            subscription["id"],
        ),
    )
    logger.info("Subscription updated: %s -> %s", stripe_subscription["id"], status)


def handle_payment_intent_succeeded(cursor, payment_intent: dict, now: datetime):
    if _find_payment_by_intent(cursor, payment_intent.get("id")):
        logger.info("Payment already recorded: %s", payment_intent.get("id"))
        return

    customer_id = payment_intent.get("customer")
    user = None
    if customer_id:
        cursor.execute("SELECT id FROM users WHERE stripe_customer_id = %s", (customer_id,))
        user = cursor.fetchone()
    if not user:
        logger.warning("User not found for customer %s", customer_id)
        return

    amount = payment_intent.get("amount") or 0
    currency = payment_intent.get("currency") or "usd"
    cursor.execute(
        """
        INSERT INTO payments
            (member_id, amount, currency, status, stripe_payment_intent_id,
             description, reconciled, created_at, updated_at)
        VALUES (%s, %s, %s, 'paid', %s, %s, 0, %s, %s)
        """,
        (
            user["id"],
            amount,
            currency,
            payment_intent["id"],
            payment_intent.get("description") or "One-time payment",
            now,
            now,
        ),
    )
    enqueue_notification(
        cursor, user["id"], "payment_succeeded", "Payment Received",
        f"We received your payment of {amount / 100:.2f} {currency.upper()}.",
        now=now,
    )
    logger.info("Payment intent succeeded: %s", payment_intent["id"])


def handle_charge_refunded(cursor, charge: dict, now: datetime):
    payment = _find_payment_by_intent(cursor, charge.get("payment_intent"))
    if not payment:
        logger.warning("Payment not found for charge %s", charge.get("id"))
        return

    cursor.execute(
        """
        UPDATE payments
        SET status = 'refunded', refunded_at = %s, updated_at = %s
        WHERE id = %s AND status != 'refunded'
        """,
        (now, now, payment["id"]),
    )
    if cursor.rowcount == 1:
        refunded = charge.get("amount_refunded") or charge.get("amount") or payment["amount"]
        enqueue_notification(
            cursor, payment["member_id"], "payment_refunded", "Payment Refunded",
            f"Your payment of {refunded / 100:.2f} {payment['currency'].upper()} has been refunded.",
            now=now,
        )
    logger.info("Charge refunded: %s", charge.get("id"))


EVENT_HANDLERS: Dict[str, Callable] = {
    "invoice.payment_succeeded": handle_invoice_payment_succeeded,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "customer.subscription.deleted": handle_subscription_deleted,
    "customer.subscription.updated": handle_subscription_updated,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "charge.refunded": handle_charge_refunded,
}


# ============== Entry point ==============

def _claim_event(cursor, event_id: str, event_type: str, now: datetime) -> bool:
    cursor.execute(
        """
        INSERT INTO webhook_events (event_id, event_type, processed_at)
        SELECT %s, %s, %s
        FROM (SELECT 1 AS one) AS seed
        WHERE NOT EXISTS (SELECT 1 FROM webhook_events WHERE event_id = %s)
        """,
        (event_id, event_type, now, event_id),
    )
    return cursor.rowcount == 1


def handle_event(event: dict, now: Optional[datetime] = None) -> dict:
    """
    Apply one verified Stripe event. Always returns an acknowledgement.
    """
    event_id = event.get("id")
    event_type = event.get("type")

    if event_id in processed_events:
        logger.info("Event %s already processed, skipping", event_id)
        return {"received": True, "skipped": True}

    now = now or utcnow()
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        if not _claim_event(cursor, event_id, event_type, now):
            conn.rollback()
            processed_events.add(event_id)
            logger.info("Event %s already processed, skipping", event_id)
            return {"received": True, "skipped": True}

        logger.info("Processing webhook event: %s (%s)", event_type, event_id)
        handler = EVENT_HANDLERS.get(event_type)
        if handler:
            handler(cursor, event["data"]["object"], now)
        else:
            logger.info("Unhandled event type: %s", event_type)

        conn.commit()
        processed_events.add(event_id)
        return {"received": True}

    except Exception as e:
        conn.rollback()
        logger.error(f"Error processing webhook {event_id}: {e}", exc_info=True)
        return {"received": True, "error": str(e)}
    finally:
        cursor.close()
        conn.close()
