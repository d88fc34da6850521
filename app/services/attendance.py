"""
Attendance recorder: exactly one attendance row per booking, by QR token or
by the class trainer.
"""
import logging
from datetime import datetime
from typing import Optional

import pymysql

from app.errors import AlreadyCheckedIn, BookingNotFound, InvalidState, NotOwner
from app.services.bookings import get_booking, get_class_session
from app.services.checkin_tokens import redeem_token
from app.services.notifications import enqueue_notification
from app.utils.audit import log_audit
from app.utils.helpers import serialize_row, utcnow

logger = logging.getLogger(__name__)

CHECKIN_METHODS = ("qr", "manual")


def _existing_attendance(cursor, booking_id: int) -> Optional[dict]:
    cursor.execute("SELECT * FROM attendances WHERE booking_id = %s", (booking_id,))
    return cursor.fetchone()


def _ensure_checkin_allowed(cursor, booking: dict):
    if _existing_attendance(cursor, booking["id"]) or booking["status"] == "checked_in":
        raise AlreadyCheckedIn()
    if booking["status"] != "booked":
        raise InvalidState(f"Booking is {booking['status']} and cannot be checked in")


def record_check_in(
    cursor,
    booking_id: int,
    method: str,
    now: Optional[datetime] = None,
    acting_user_id: Optional[int] = None,
    ip_address: Optional[str] = None,
) -> dict:
    """
    Record attendance for a booking and move it to checked_in.

    For ``qr`` the caller must already have redeemed a token bound to this
    booking. For ``manual`` the acting user must be the trainer of the class.
    """
    if method not in CHECKIN_METHODS:
        raise ValueError(f"Unknown check-in method: {method}")
    now = now or utcnow()

    booking = get_booking(cursor, booking_id)
    session = get_class_session(cursor, booking["class_id"])

    if method == "manual" and session["trainer_id"] != acting_user_id:
        raise NotOwner("Only the class trainer can check members in manually")

    _ensure_checkin_allowed(cursor, booking)

    # The status flip is the uniqueness guard: of two concurrent check-ins only
    # one moves the booking out of 'booked'.
    cursor.execute(
        """
        UPDATE bookings SET status = 'checked_in', updated_at = %s
        WHERE id = %s AND status = 'booked'
        """,
        (now, booking_id),
    )
    if cursor.rowcount != 1:
        raise AlreadyCheckedIn()

    try:
        cursor.execute(
            """
            INSERT INTO attendances
                (booking_id, member_id, class_id, method, checked_in_at, checked_in_by)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                booking_id,
                booking["member_id"],
                booking["class_id"],
                method,
                now,
                acting_user_id if method == "manual" else None,
            ),
        )
    except pymysql.err.IntegrityError:
        raise AlreadyCheckedIn()
    attendance_id = cursor.lastrowid

    if method == "manual":
        log_audit(
            cursor,
            action="manual_checkin",
            resource="Attendance",
            resource_id=attendance_id,
            user_id=acting_user_id,
            details={"class_id": booking["class_id"], "member_id": booking["member_id"]},
            ip_address=ip_address,
        )

    enqueue_notification(
        cursor, booking["member_id"], "checked_in", "Checked In",
        f'You have successfully checked in to "{session["name"]}".',
        now=now,
    )
    logger.info("Booking #%s checked in via %s", booking_id, method)

    cursor.execute("SELECT * FROM attendances WHERE id = %s", (attendance_id,))
    return serialize_row(cursor.fetchone())


def check_in_with_qr(cursor, booking_id: int, raw_token: str, member_id: int, now: Optional[datetime] = None) -> dict:
    """Member presents the QR payload: verify ownership, consume the token, record attendance."""
    now = now or utcnow()
    booking = get_booking(cursor, booking_id)

    if booking["member_id"] != member_id:
        raise NotOwner("This booking belongs to another member")
    _ensure_checkin_allowed(cursor, booking)

    redeem_token(cursor, raw_token, booking_id, now)
    return record_check_in(cursor, booking_id, "qr", now=now)


def manual_check_in(
    cursor,
    class_id: int,
    member_id: int,
    trainer_id: int,
    now: Optional[datetime] = None,
    ip_address: Optional[str] = None,
) -> dict:
    session = get_class_session(cursor, class_id)
    if session["trainer_id"] != trainer_id:
        raise NotOwner("Only the class trainer can check members in manually")

    cursor.execute(
        """
        SELECT id FROM bookings
        WHERE class_id = %s AND member_id = %s AND status IN ('booked', 'checked_in')
        ORDER BY id DESC
        LIMIT 1
        """,
        (class_id, member_id),
    )
    booking = cursor.fetchone()
    if not booking:
        raise BookingNotFound("Booking not found for this member")

    return record_check_in(
        cursor, booking["id"], "manual", now=now, acting_user_id=trainer_id, ip_address=ip_address,
    )


def get_class_attendance(cursor, class_id: int, actor: dict) -> dict:
    session = get_class_session(cursor, class_id)
    if actor["role_name"] != "admin" and session["trainer_id"] != actor["user_id"]:
        raise NotOwner()

    cursor.execute(
        """
        SELECT a.id, a.booking_id, a.member_id, a.method, a.checked_in_at, a.checked_in_by,
               m.name AS member_name, m.email AS member_email
        FROM attendances a
        JOIN users m ON m.id = a.member_id
        WHERE a.class_id = %s
        ORDER BY a.checked_in_at ASC
        """,
        (class_id,),
    )
    attendance = [serialize_row(row) for row in cursor.fetchall()]

    cursor.execute(
        """
        SELECT b.id, b.member_id, b.status, b.booked_at, m.name AS member_name
        FROM bookings b
        JOIN users m ON m.id = b.member_id
        WHERE b.class_id = %s
        ORDER BY b.booked_at ASC
        """,
        (class_id,),
    )
    bookings = [serialize_row(row) for row in cursor.fetchall()]

    stats = {
        "total_bookings": len(bookings),
        "checked_in": len(attendance),
        "no_shows": sum(1 for b in bookings if b["status"] == "no_show"),
        "cancelled": sum(1 for b in bookings if b["status"] == "cancelled"),
        "qr_checkins": sum(1 for a in attendance if a["method"] == "qr"),
        "manual_checkins": sum(1 for a in attendance if a["method"] == "manual"),
    }
    return {"attendance": attendance, "bookings": bookings, "stats": stats}


def get_member_attendance(cursor, member_id: int, actor: dict) -> dict:
    if actor["role_name"] != "admin" and actor["user_id"] != member_id:
        raise NotOwner()

    cursor.execute(
        """
        SELECT a.id, a.booking_id, a.class_id, a.method, a.checked_in_at,
               cs.name AS class_name, cs.start_time
        FROM attendances a
        JOIN class_sessions cs ON cs.id = a.class_id
        WHERE a.member_id = %s
        ORDER BY a.checked_in_at DESC
        """,
        (member_id,),
    )
    attendance = [serialize_row(row) for row in cursor.fetchall()]

    stats = {
        "total_classes": len(attendance),
        "qr_checkins": sum(1 for a in attendance if a["method"] == "qr"),
        "manual_checkins": sum(1 for a in attendance if a["method"] == "manual"),
    }
    return {"attendance": attendance, "stats": stats}
