"""
Notification outbox.

Side effects such as emails are never performed inside a booking or webhook
transaction. Callers insert a row here with the same cursor, so the
notification commits or rolls back together with the state change that
caused it; the delivery job picks pending rows up afterwards.
"""
import logging
from datetime import datetime
from typing import Optional

from app.errors import NotFound
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def enqueue_notification(
    cursor,
    user_id: int,
    notification_type: str,
    title: str,
    message: str,
    link: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    cursor.execute(
        """
        INSERT INTO notifications
            (user_id, type, title, message, link, is_read, email_status, attempts, created_at)
        VALUES (%s, %s, %s, %s, %s, 0, 'pending', 0, %s)
        """,
        (user_id, notification_type, title, message, link, now or utcnow()),
    )
    logger.debug("Queued %s notification for user #%s", notification_type, user_id)
    return cursor.lastrowid


def list_notifications(cursor, user_id: int, unread_only: bool = False, limit: int = 50) -> list:
    where_sql = "WHERE user_id = %s"
    if unread_only:
        where_sql += " AND is_read = 0"

    cursor.execute(
        f"""
        SELECT id, type, title, message, link, is_read, created_at
        FROM notifications
        {where_sql}
        ORDER BY created_at DESC, id DESC
        LIMIT %s
        """,
        (user_id, limit),
    )
    return cursor.fetchall()


def mark_notification_read(cursor, notification_id: int, user_id: int):
    cursor.execute(
        "UPDATE notifications SET is_read = 1 WHERE id = %s AND user_id = %s",
        (notification_id, user_id),
    )
    if cursor.rowcount == 0:
        cursor.execute(
            "SELECT id FROM notifications WHERE id = %s AND user_id = %s",
            (notification_id, user_id),
        )
        if not cursor.fetchone():
            raise NotFound("Notification not found")
