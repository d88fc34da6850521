"""
Payment records: admin listing, manual entry, refunds and the reconciliation sweep.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from app.config import RECONCILIATION_LOOKBACK_DAYS
from app.errors import ExternalServiceError, InvalidState, PaymentNotFound, UserNotFound
from app.services import billing
from app.services.notifications import enqueue_notification
from app.utils.audit import log_audit
from app.utils.helpers import serialize_row, utcnow

logger = logging.getLogger(__name__)


def get_payment(cursor, payment_id: int) -> dict:
    cursor.execute("SELECT * FROM payments WHERE id = %s", (payment_id,))
    payment = cursor.fetchone()
    if not payment:
        raise PaymentNotFound()
    return payment


def list_payments(
    cursor,
    member_id: Optional[int] = None,
    status: Optional[str] = None,
    reconciled: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    where_clauses = []
    params = []
    if member_id:
        where_clauses.append("p.member_id = %s")
        params.append(member_id)
    if status:
        where_clauses.append("p.status = %s")
        params.append(status)
    if reconciled is not None:
        where_clauses.append("p.reconciled = %s")
        params.append(1 if reconciled else 0)

    where_sql = " WHERE " + " AND ".join(where_clauses) if where_clauses else ""

    cursor.execute(f"SELECT COUNT(*) AS total FROM payments p{where_sql}", params)
    total = cursor.fetchone()["total"]

    cursor.execute(
        f"""
        SELECT p.*, u.name AS member_name, u.email AS member_email
        FROM payments p
        JOIN users u ON u.id = p.member_id
        {where_sql}
        ORDER BY p.created_at DESC, p.id DESC
        LIMIT %s OFFSET %s
        """,
        params + [limit, (page - 1) * limit],
    )
    return {
        "data": [serialize_row(row) for row in cursor.fetchall()],
        "pagination": {"page": page, "limit": limit, "total": total},
    }


def record_manual_payment(
    cursor,
    member_id: int,
    amount: int,
    admin_id: int,
    currency: str = "usd",
    description: Optional[str] = None,
    subscription_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Admin entry for payments taken outside Stripe (cash at the front desk)."""
    now = now or utcnow()
    cursor.execute("SELECT id FROM users WHERE id = %s", (member_id,))
    if not cursor.fetchone():
        raise UserNotFound("Member not found")

    cursor.execute(
        """
        INSERT INTO payments
            (member_id, amount, currency, status, subscription_id, description,
             reconciled, created_by, created_at, updated_at)
        VALUES (%s, %s, %s, 'paid', %s, %s, 0, %s, %s, %s)
        """,
        (member_id, amount, currency.lower(), subscription_id, description or "Manual payment", admin_id, now, now),
    )
    payment_id = cursor.lastrowid
    log_audit(
        cursor, action="manual_payment", resource="Payment", resource_id=payment_id,
        user_id=admin_id, details={"member_id": member_id, "amount": amount, "currency": currency},
    )
    return serialize_row(get_payment(cursor, payment_id))


def refund_payment(
    cursor,
    payment_id: int,
    admin_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Refund a paid payment. Stripe-backed payments are refunded at Stripe first;
    a provider failure is raised to the admin and nothing changes locally.
    """
    now = now or utcnow()
    payment = get_payment(cursor, payment_id)
    if payment["status"] != "paid":
        raise InvalidState(f"Payment is {payment['status']} and cannot be refunded")

    refund = None
    if payment["stripe_payment_intent_id"]:
        refund = billing.create_refund(payment["stripe_payment_intent_id"], reason=reason)

    cursor.execute(
        """
        UPDATE payments
        SET status = 'refunded', refunded_at = %s, refund_reason = %s, updated_at = %s
        WHERE id = %s AND status = 'paid'
        """,
        (now, reason, now, payment_id),
    )
    if cursor.rowcount != 1:
        raise InvalidState("Payment was changed by another request")

    log_audit(
        cursor, action="refund_payment", resource="Payment", resource_id=payment_id,
        user_id=admin_id, details={"reason": reason, "stripe_refund_id": refund["id"] if refund else None},
    )
    enqueue_notification(
        cursor, payment["member_id"], "payment_refunded", "Payment Refunded",
        f"Your payment of {payment['amount'] / 100:.2f} {payment['currency'].upper()} has been refunded.",
        now=now,
    )
    return serialize_row(get_payment(cursor, payment_id))


def _discrepancy_reported(cursor, payment_id: int, local_amount: int, stripe_amount: int) -> bool:
    """True when the latest discrepancy audit row for the payment already describes these amounts."""
    cursor.execute(
        """
        SELECT details FROM audit_logs
        WHERE action = 'payment_discrepancy' AND resource = 'Payment' AND resource_id = %s
        ORDER BY id DESC
        LIMIT 1
        """,
        (payment_id,),
    )
    row = cursor.fetchone()
    if not row or not row["details"]:
        return False
    details = json.loads(row["details"])
    return details.get("local_amount") == local_amount and details.get("stripe_amount") == stripe_amount


def reconcile_payments(conn, now: Optional[datetime] = None, lookback_days: Optional[int] = None) -> dict:
    """
    Cross-check unreconciled Stripe payments against Stripe's amount.

    Matching payments are flagged reconciled; mismatches get an audit row
    (once per distinct mismatch) and are left for a human. The payment status
    is never touched.

    Commits after every payment so no row lock is held across a Stripe call.
    """
    now = now or utcnow()
    if lookback_days is None:
        lookback_days = RECONCILIATION_LOOKBACK_DAYS

    cursor = conn.cursor(dictionary=True)
    try:
        cursor.execute(
            """
            SELECT id, member_id, amount, stripe_payment_intent_id
            FROM payments
            WHERE reconciled = 0
              AND stripe_payment_intent_id IS NOT NULL
              AND created_at >= %s
            ORDER BY id ASC
            """,
            (now - timedelta(days=lookback_days),),
        )
        payments = cursor.fetchall()
        conn.commit()

        reconciled = 0
        discrepancies = 0
        errors = 0
        for payment in payments:
            try:
                intent = billing.retrieve_payment_intent(payment["stripe_payment_intent_id"])
            except ExternalServiceError as e:
                errors += 1
                logger.error(f"Error reconciling payment #{payment['id']}: {e.message}")
                continue

            if intent["amount"] == payment["amount"]:
                cursor.execute(
                    """
                    UPDATE payments SET reconciled = 1, reconciled_at = %s
                    WHERE id = %s AND reconciled = 0
                    """,
                    (now, payment["id"]),
                )
                reconciled += cursor.rowcount
            else:
                discrepancies += 1
                if _discrepancy_reported(cursor, payment["id"], payment["amount"], intent["amount"]):
                    logger.info("Discrepancy on payment #%s already reported", payment["id"])
                else:
                    log_audit(
                        cursor, action="payment_discrepancy", resource="Payment", resource_id=payment["id"],
                        user_id=payment["member_id"],
                        details={
                            "local_amount": payment["amount"],
                            "stripe_amount": intent["amount"],
                            "payment_intent_id": payment["stripe_payment_intent_id"],
                        },
                    )
            conn.commit()
    finally:
        cursor.close()

    logger.info(
        "Reconciliation complete: %d reconciled, %d discrepancies, %d errors out of %d payments",
        reconciled, discrepancies, errors, len(payments),
    )
    return {"checked": len(payments), "reconciled": reconciled, "discrepancies": discrepancies, "errors": errors}
