"""
Subscription lookups, booking gate and admin overrides.

Outside of the admin endpoints in this module, subscription status is only
written by the webhook consumer in subscription_sync.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from app.errors import InvalidState, SubscriptionNotFound, SubscriptionRequired, UserNotFound
from app.utils.audit import log_audit
from app.utils.helpers import serialize_row, utcnow

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUSES = ("active", "trialing", "past_due", "cancelled", "incomplete")


def get_active_subscription(cursor, member_id: int, now: Optional[datetime] = None) -> Optional[dict]:
    """The subscription that counts for booking: active/trialing and not past its period end."""
    now = now or utcnow()
    cursor.execute(
        """
        SELECT s.*, p.name AS plan_name
        FROM subscriptions s
        LEFT JOIN subscription_plans p ON p.id = s.plan_id
        WHERE s.member_id = %s
          AND s.status IN ('active', 'trialing')
          AND s.current_period_end >= %s
        ORDER BY s.current_period_end DESC
        LIMIT 1
        """,
        (member_id, now),
    )
    return cursor.fetchone()


def require_active_subscription(cursor, auth: dict, now: Optional[datetime] = None) -> Optional[dict]:
    """Booking gate for members. Admins and trainers bypass it."""
    if auth["role_name"] in ("admin", "trainer"):
        return None

    subscription = get_active_subscription(cursor, auth["user_id"], now)
    if not subscription:
        logger.info("Subscription check failed for user #%s", auth["user_id"])
        raise SubscriptionRequired()
    return subscription


def list_member_subscriptions(cursor, member_id: int) -> list:
    cursor.execute(
        """
        SELECT s.id, s.plan_id, p.name AS plan_name, s.status,
               s.current_period_start, s.current_period_end,
               s.cancel_at_period_end, s.cancelled_at, s.created_at
        FROM subscriptions s
        LEFT JOIN subscription_plans p ON p.id = s.plan_id
        WHERE s.member_id = %s
        ORDER BY s.created_at DESC, s.id DESC
        """,
        (member_id,),
    )
    return [serialize_row(row) for row in cursor.fetchall()]


def list_subscriptions(cursor, status: Optional[str] = None, page: int = 1, limit: int = 20) -> dict:
    where_sql = ""
    params = []
    if status:
        where_sql = "WHERE s.status = %s"
        params.append(status)

    cursor.execute(f"SELECT COUNT(*) AS total FROM subscriptions s {where_sql}", params)
    total = cursor.fetchone()["total"]

    cursor.execute(
        f"""
        SELECT s.*, u.name AS member_name, u.email AS member_email, p.name AS plan_name
        FROM subscriptions s
        JOIN users u ON u.id = s.member_id
        LEFT JOIN subscription_plans p ON p.id = s.plan_id
        {where_sql}
        ORDER BY s.created_at DESC, s.id DESC
        LIMIT %s OFFSET %s
        """,
        params + [limit, (page - 1) * limit],
    )
    return {
        "data": [serialize_row(row) for row in cursor.fetchall()],
        "pagination": {"page": page, "limit": limit, "total": total},
    }


def grant_subscription(
    cursor,
    member_id: int,
    admin_id: int,
    plan_id: Optional[int] = None,
    days: int = 30,
    now: Optional[datetime] = None,
) -> dict:
    """Admin grant: an active subscription without a provider counterpart."""
    now = now or utcnow()

    cursor.execute("SELECT id, role FROM users WHERE id = %s", (member_id,))
    member = cursor.fetchone()
    if not member:
        raise UserNotFound("Member not found")
    if member["role"] != "member":
        raise InvalidState("Subscriptions can only be granted to members")

    cursor.execute(
        """
        INSERT INTO subscriptions
            (member_id, plan_id, status, current_period_start, current_period_end,
             cancel_at_period_end, created_at, updated_at)
        VALUES (%s, %s, 'active', %s, %s, 0, %s, %s)
        """,
        (member_id, plan_id, now, now + timedelta(days=days), now, now),
    )
    subscription_id = cursor.lastrowid

    log_audit(
        cursor, action="grant_subscription", resource="Subscription",
        resource_id=subscription_id, user_id=admin_id,
        details={"member_id": member_id, "plan_id": plan_id, "days": days},
    )
    return get_subscription(cursor, subscription_id)


def override_status(cursor, subscription_id: int, new_status: str, admin_id: int, now: Optional[datetime] = None) -> dict:
    if new_status not in SUBSCRIPTION_STATUSES:
        raise InvalidState(f"Unknown subscription status: {new_status}")
    now = now or utcnow()

    current = get_subscription(cursor, subscription_id)
    cursor.execute(
        """
        UPDATE subscriptions
        SET status = %s,
            cancelled_at = CASE WHEN %s = 'cancelled' THEN %s ELSE cancelled_at END,
            updated_at = %s
        WHERE id = %s
        """,
        (new_status, new_status, now, now, subscription_id),
    )
    log_audit(
        cursor, action="override_subscription_status", resource="Subscription",
        resource_id=subscription_id, user_id=admin_id,
        details={"from": current["status"], "to": new_status},
    )
    return get_subscription(cursor, subscription_id)


def get_subscription(cursor, subscription_id: int) -> dict:
    cursor.execute("SELECT * FROM subscriptions WHERE id = %s", (subscription_id,))
    subscription = cursor.fetchone()
    if not subscription:
        raise SubscriptionNotFound()
    return serialize_row(subscription)
