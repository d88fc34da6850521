"""
Booking lifecycle.

    booked -> checked_in -> completed
    booked -> cancelled | no_show | completed

Transitions are conditional UPDATEs on the current status, so a booking can
never move backwards and two requests racing on the same booking resolve to
one winner and one InvalidState.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

import pymysql

from app.config import CANCELLATION_WINDOW_HOURS
from app.errors import (
    BookingNotFound,
    ClassNotFound,
    ClassUnavailable,
    CutoffExceeded,
    DuplicateBooking,
    InvalidState,
    NotOwner,
)
from app.services import capacity
from app.services.notifications import enqueue_notification
from app.utils.helpers import serialize_row, utcnow

logger = logging.getLogger(__name__)


# ============== Lookups ==============

def get_class_session(cursor, class_id: int) -> dict:
    cursor.execute(
        """
        SELECT cs.*, u.name AS trainer_name
        FROM class_sessions cs
        LEFT JOIN users u ON u.id = cs.trainer_id
        WHERE cs.id = %s
        """,
        (class_id,),
    )
    session = cursor.fetchone()
    if not session:
        raise ClassNotFound()
    return session


def get_booking(cursor, booking_id: int) -> dict:
    cursor.execute("SELECT * FROM bookings WHERE id = %s", (booking_id,))
    booking = cursor.fetchone()
    if not booking:
        raise BookingNotFound()
    return booking


def find_active_booking(cursor, member_id: int, class_id: int) -> Optional[dict]:
    cursor.execute(
        """
        SELECT * FROM bookings
        WHERE member_id = %s AND class_id = %s AND status != 'cancelled'
        ORDER BY id DESC
        LIMIT 1
        """,
        (member_id, class_id),
    )
    return cursor.fetchone()


def _insert_booking(cursor, member_id: int, class_id: int, now: datetime) -> dict:
    try:
        cursor.execute(
            """
            INSERT INTO bookings (member_id, class_id, status, booked_at, updated_at)
            VALUES (%s, %s, 'booked', %s, %s)
            """,
            (member_id, class_id, now, now),
        )
    except pymysql.err.IntegrityError:
        # ux_active_booking: one non-cancelled booking per member and class
        raise DuplicateBooking()
    return get_booking(cursor, cursor.lastrowid)


def _lock_session(cursor, class_id: int, now: datetime) -> bool:
    """
    Take the row lock of a scheduled session. Bookings of the same class then
    run one after another, so their duplicate checks see committed state.
    """
    cursor.execute(
        "UPDATE class_sessions SET updated_at = %s WHERE id = %s AND status = 'scheduled'",
        (now, class_id),
    )
    return cursor.rowcount == 1


def _format_start(session: dict) -> str:
    return session["start_time"].strftime("%a %d %b %Y %H:%M")


def _book_promoted_member(cursor, member_id: int, session: dict, now: datetime) -> dict:
    booking = _insert_booking(cursor, member_id, session["id"], now)
    enqueue_notification(
        cursor, member_id, "waitlist_promoted", "You're In!",
        f'A spot opened up in "{session["name"]}" on {_format_start(session)}. '
        f"You have been booked automatically.",
        now=now,
    )
    logger.info("Member #%s promoted into class #%s with booking #%s", member_id, session["id"], booking["id"])
    return booking


def fill_from_waitlist(cursor, session: dict, now: datetime) -> list:
    """Promote waitlisted members while free slots remain (after a capacity increase)."""
    promoted = []
    while True:
        member_id = capacity.promote_from_waitlist(cursor, session["id"], now)
        if member_id is None:
            return promoted
        promoted.append(serialize_row(_book_promoted_member(cursor, member_id, session, now)))


# ============== Operations ==============

def book_class(cursor, member_id: int, class_id: int, now: Optional[datetime] = None) -> dict:
    """
    Book a class for a member.

    Returns:
        {"status": "booked", "booking": {...}} when a slot was claimed, or
        {"status": "waitlisted", "position": n} when the class is full.
        No booking row exists for a waitlisted member until promotion.
    """
    now = now or utcnow()
    session = get_class_session(cursor, class_id)

    if session["status"] != "scheduled":
        raise ClassUnavailable(f"Class is {session['status']} and cannot be booked")
    if session["start_time"] <= now:
        raise ClassUnavailable("Class has already started")
    if not _lock_session(cursor, class_id, now):
        raise ClassUnavailable("Class is not open for booking")

    if find_active_booking(cursor, member_id, class_id):
        raise DuplicateBooking()
    if capacity.waitlist_position(cursor, class_id, member_id) is not None:
        raise DuplicateBooking("You are already on the waitlist for this class")

    result = capacity.claim_slot(cursor, class_id, member_id, now)

    if result.waitlisted:
        enqueue_notification(
            cursor, member_id, "waitlisted", "Added to Waitlist",
            f'"{session["name"]}" is full. You are number {result.position} on the waitlist '
            f"and will be booked automatically when a spot opens.",
            now=now,
        )
        return {"status": "waitlisted", "class_id": class_id, "position": result.position}

    booking = _insert_booking(cursor, member_id, class_id, now)
    enqueue_notification(
        cursor, member_id, "booking_confirmed", "Booking Confirmed",
        f'Your booking for "{session["name"]}" on {_format_start(session)} is confirmed. '
        f"Don't forget to generate your QR code for check-in!",
        now=now,
    )
    logger.info("Booking #%s created for member #%s in class #%s", booking["id"], member_id, class_id)
    return {"status": "booked", "booking": serialize_row(booking)}


def check_cancellation_window(session: dict, now: datetime, window_hours: float):
    """
    Cancellations must happen strictly before the cutoff: a request made
    exactly ``window_hours`` before the start is already too late.
    """
    if session["start_time"] - now <= timedelta(hours=window_hours):
        raise CutoffExceeded(
            f"Bookings must be cancelled at least {window_hours:g} hours before class start"
        )


def cancel_booking(
    cursor,
    booking_id: int,
    requester_id: int,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
    window_hours: Optional[float] = None,
) -> dict:
    """
    Cancel a member's own booking and hand the slot to the waitlist head.

    Returns:
        {"booking": {...}, "promoted_booking": {...} | None}
    """
    now = now or utcnow()
    if window_hours is None:
        window_hours = CANCELLATION_WINDOW_HOURS

    booking = get_booking(cursor, booking_id)
    if booking["member_id"] != requester_id:
        raise NotOwner("You can only cancel your own bookings")
    if booking["status"] != "booked":
        raise InvalidState(f"Booking is {booking['status']} and cannot be cancelled")

    session = get_class_session(cursor, booking["class_id"])
    check_cancellation_window(session, now, window_hours)

    cursor.execute(
        """
        UPDATE bookings
        SET status = 'cancelled', cancelled_at = %s, cancellation_reason = %s, updated_at = %s
        WHERE id = %s AND status = 'booked'
        """,
        (now, reason, now, booking_id),
    )
    if cursor.rowcount != 1:
        raise InvalidState("Booking was changed by another request")

    promoted_booking = None
    promoted_member_id = capacity.release_slot(cursor, booking["class_id"], booking["member_id"], now)
    if promoted_member_id is not None:
        promoted_booking = _book_promoted_member(cursor, promoted_member_id, session, now)

    enqueue_notification(
        cursor, booking["member_id"], "booking_cancelled", "Booking Cancelled",
        f'Your booking for "{session["name"]}" on {_format_start(session)} has been cancelled.',
        now=now,
    )

    return {
        "booking": serialize_row(get_booking(cursor, booking_id)),
        "promoted_booking": serialize_row(promoted_booking),
    }


def complete_session(cursor, class_id: int, trainer_id: int, now: Optional[datetime] = None) -> dict:
    """
    Close a session: checked_in bookings become completed, bookings that never
    checked in become no_show.
    """
    now = now or utcnow()
    session = get_class_session(cursor, class_id)

    if session["trainer_id"] != trainer_id:
        raise NotOwner("Only the class trainer can complete this class")
    if session["status"] != "scheduled":
        raise InvalidState(f"Class is already {session['status']}")

    cursor.execute(
        """
        UPDATE class_sessions
        SET status = 'completed', updated_at = %s
        WHERE id = %s AND status = 'scheduled'
        """,
        (now, class_id),
    )
    if cursor.rowcount != 1:
        raise InvalidState("Class was changed by another request")

    cursor.execute(
        """
        UPDATE bookings SET status = 'completed', updated_at = %s
        WHERE class_id = %s AND status = 'checked_in'
        """,
        (now, class_id),
    )
    completed = cursor.rowcount

    cursor.execute(
        """
        UPDATE bookings SET status = 'no_show', updated_at = %s
        WHERE class_id = %s AND status = 'booked'
        """,
        (now, class_id),
    )
    no_show = cursor.rowcount

    cursor.execute("DELETE FROM class_waitlist WHERE class_id = %s", (class_id,))

    logger.info("Class #%s completed: %d completed, %d no-show", class_id, completed, no_show)
    return {"class_id": class_id, "status": "completed", "completed": completed, "no_show": no_show}


def cancel_session(
    cursor,
    class_id: int,
    actor: dict,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Cancel a scheduled class. The session row is kept; bookings are cancelled."""
    now = now or utcnow()
    session = get_class_session(cursor, class_id)

    if actor["role_name"] != "admin" and session["trainer_id"] != actor["user_id"]:
        raise NotOwner("Not authorized to cancel this class")
    if session["status"] != "scheduled":
        raise InvalidState(f"Class is already {session['status']}")

    cursor.execute(
        """
        UPDATE class_sessions
        SET status = 'cancelled', cancelled_at = %s, updated_at = %s
        WHERE id = %s AND status = 'scheduled'
        """,
        (now, now, class_id),
    )
    if cursor.rowcount != 1:
        raise InvalidState("Class was changed by another request")

    cursor.execute(
        "SELECT id, member_id FROM bookings WHERE class_id = %s AND status = 'booked'",
        (class_id,),
    )
    affected = cursor.fetchall()
    cursor.execute("SELECT member_id FROM class_waitlist WHERE class_id = %s", (class_id,))
    waitlisted = cursor.fetchall()

    cursor.execute(
        """
        UPDATE bookings
        SET status = 'cancelled', cancelled_at = %s, cancellation_reason = %s, updated_at = %s
        WHERE class_id = %s AND status = 'booked'
        """,
        (now, reason or "Class cancelled", now, class_id),
    )
    cursor.execute("DELETE FROM class_waitlist WHERE class_id = %s", (class_id,))

    message = f'"{session["name"]}" on {_format_start(session)} has been cancelled.'
    if reason:
        message += f" Reason: {reason}"
    for row in list(affected) + list(waitlisted):
        enqueue_notification(cursor, row["member_id"], "class_cancelled", "Class Cancelled", message, now=now)

    logger.info("Class #%s cancelled by user #%s, %d bookings cancelled", class_id, actor["user_id"], len(affected))
    return {"class_id": class_id, "status": "cancelled", "cancelled_bookings": len(affected)}


# ============== Listings ==============

def list_member_bookings(cursor, member_id: int, status: Optional[str] = None) -> list:
    where_clauses = ["b.member_id = %s"]
    params = [member_id]
    if status:
        where_clauses.append("b.status = %s")
        params.append(status)

    cursor.execute(
        f"""
        SELECT b.id, b.class_id, b.status, b.booked_at, b.cancelled_at,
               b.cancellation_reason, b.qr_token_expires_at,
               cs.name AS class_name, cs.start_time, cs.end_time, cs.location,
               u.name AS trainer_name
        FROM bookings b
        JOIN class_sessions cs ON cs.id = b.class_id
        LEFT JOIN users u ON u.id = cs.trainer_id
        WHERE {" AND ".join(where_clauses)}
        ORDER BY cs.start_time DESC, b.id DESC
        """,
        params,
    )
    return [serialize_row(row) for row in cursor.fetchall()]


def list_upcoming_classes(
    cursor,
    member_id: int,
    date_from: datetime,
    date_to: datetime,
) -> list:
    """Scheduled classes in the range with availability for the given member."""
    cursor.execute(
        """
        SELECT cs.id, cs.name, cs.description, cs.start_time, cs.end_time,
               cs.capacity, cs.attendee_count, cs.location, cs.trainer_id,
               u.name AS trainer_name
        FROM class_sessions cs
        LEFT JOIN users u ON u.id = cs.trainer_id
        WHERE cs.status = 'scheduled'
          AND cs.start_time >= %s
          AND cs.start_time <= %s
        ORDER BY cs.start_time ASC
        """,
        (date_from, date_to),
    )
    sessions = cursor.fetchall()

    result = []
    for session in sessions:
        booking = find_active_booking(cursor, member_id, session["id"])
        item = serialize_row(session)
        item.update({
            "available_slots": session["capacity"] - session["attendee_count"],
            "is_full": session["attendee_count"] >= session["capacity"],
            "is_booked": booking is not None,
            "booking_id": booking["id"] if booking else None,
            "waitlist_position": capacity.waitlist_position(cursor, session["id"], member_id),
        })
        result.append(item)
    return result
