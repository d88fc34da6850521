"""
Class cron jobs:
  1. Send class reminders (24 hours and 1 hour before start)
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from app.db import get_db_connection
from app.services.notifications import enqueue_notification
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# (reminder type, lead time, tolerance). The job runs hourly, so a tolerance
# of half an hour puts every class start inside one tick's window.
REMINDER_WINDOWS = (
    ("24h", timedelta(hours=24), timedelta(minutes=30)),
    ("1h", timedelta(hours=1), timedelta(minutes=30)),
)


def _claim_reminder(cursor, booking_id: int, reminder_type: str, now: datetime) -> bool:
    cursor.execute(
        """
        INSERT INTO class_reminders (booking_id, reminder_type, sent_at)
        SELECT %s, %s, %s
        FROM (SELECT 1 AS one) AS seed
        WHERE NOT EXISTS (
            SELECT 1 FROM class_reminders WHERE booking_id = %s AND reminder_type = %s
        )
        """,
        (booking_id, reminder_type, now, booking_id, reminder_type),
    )
    return cursor.rowcount == 1


def send_class_reminders(cursor, now: datetime) -> int:
    """Queue one reminder per booking per window. Returns the number queued."""
    queued = 0
    for reminder_type, lead, tolerance in REMINDER_WINDOWS:
        cursor.execute(
            """
            SELECT b.id AS booking_id, b.member_id,
                   cs.id AS class_id, cs.name, cs.start_time, cs.location
            FROM bookings b
            JOIN class_sessions cs ON cs.id = b.class_id
            WHERE b.status = 'booked'
              AND cs.status = 'scheduled'
              AND cs.start_time BETWEEN %s AND %s
            ORDER BY cs.start_time ASC, b.id ASC
            """,
            (now + lead - tolerance, now + lead + tolerance),
        )
        for row in cursor.fetchall():
            if not _claim_reminder(cursor, row["booking_id"], reminder_type, now):
                continue

            when = "tomorrow" if reminder_type == "24h" else "in 1 hour"
            where = f' at {row["location"]}' if row["location"] else ""
            enqueue_notification(
                cursor, row["member_id"], "class_reminder", "Class Reminder",
                f'Your class "{row["name"]}" starts {when} '
                f'({row["start_time"].strftime("%Y-%m-%d %H:%M")} UTC){where}.',
                now=now,
            )
            queued += 1
    return queued


# ─────────────────────────────────────────────
# 1. CLASS REMINDERS
# ─────────────────────────────────────────────
def job_send_class_reminders(now: Optional[datetime] = None) -> int:
    """
    Find booked members of classes starting in about 24 hours or about
    1 hour and queue a reminder notification for each. The class_reminders
    marker keeps a booking from being reminded twice for the same window.
    """
    now = now or utcnow()
    conn = get_db_connection()
    queued = 0
    try:
        cursor = conn.cursor(dictionary=True)
        queued = send_class_reminders(cursor, now)
        conn.commit()
        logger.info("Class reminder job done, %d reminders queued", queued)

    except Exception as e:
        conn.rollback()
        logger.error("Error in job_send_class_reminders: %s", e, exc_info=True)
    finally:
        conn.close()
    return queued
