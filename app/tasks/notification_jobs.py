"""
Notification cron jobs:
  1. Deliver pending outbox notifications by email
"""
import logging
from datetime import datetime
from typing import Optional

from app.config import NOTIFICATION_MAX_ATTEMPTS
from app.db import get_db_connection
from app.utils.email import send_notification_email
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def job_deliver_notifications(now: Optional[datetime] = None, batch_size: int = 50) -> dict:
    """
    Email pending notifications, oldest first. Each row is committed on its
    own so a crash halfway through never resends what already went out.
    """
    now = now or utcnow()
    stats = {"sent": 0, "failed": 0, "skipped": 0}
    conn = get_db_connection()
    try:
        cursor = conn.cursor(dictionary=True)
        cursor.execute(
            """
            SELECT n.id, n.title, n.message, n.link, n.attempts,
                   u.name AS user_name, u.email AS user_email
            FROM notifications n
            JOIN users u ON u.id = n.user_id
            WHERE n.email_status = 'pending'
            ORDER BY n.id ASC
            LIMIT %s
            """,
            (batch_size,),
        )
        rows = cursor.fetchall()

        for row in rows:
            if not row["user_email"]:
                cursor.execute(
                    "UPDATE notifications SET email_status = 'skipped' WHERE id = %s AND email_status = 'pending'",
                    (row["id"],),
                )
                conn.commit()
                stats["skipped"] += 1
                continue

            ok = send_notification_email(
                to_email=row["user_email"],
                username=row["user_name"],
                title=row["title"],
                message=row["message"],
                link=row["link"],
            )
            attempts = (row["attempts"] or 0) + 1
            if ok:
                cursor.execute(
                    """
                    UPDATE notifications
                    SET email_status = 'sent', attempts = %s, sent_at = %s
                    WHERE id = %s AND email_status = 'pending'
                    """,
                    (attempts, now, row["id"]),
                )
                stats["sent"] += 1
            else:
                new_status = "failed" if attempts >= NOTIFICATION_MAX_ATTEMPTS else "pending"
                cursor.execute(
                    """
                    UPDATE notifications
                    SET email_status = %s, attempts = %s
                    WHERE id = %s AND email_status = 'pending'
                    """,
                    (new_status, attempts, row["id"]),
                )
                if new_status == "failed":
                    stats["failed"] += 1
                    logger.warning("Giving up on notification #%s after %d attempts", row["id"], attempts)
            conn.commit()

        if rows:
            logger.info(
                "Notification job done, %d sent, %d failed, %d skipped",
                stats["sent"], stats["failed"], stats["skipped"],
            )

    except Exception as e:
        conn.rollback()
        logger.error("Error in job_deliver_notifications: %s", e, exc_info=True)
    finally:
        conn.close()
    return stats
