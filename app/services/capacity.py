"""
Capacity manager for class sessions.

``class_sessions.attendee_count`` mirrors the number of ``class_attendees``
rows and is only ever changed by a conditional UPDATE whose predicate carries
the invariant (``attendee_count < capacity`` on the way up). Whoever's UPDATE
matches first wins the slot; everybody else sees ``rowcount == 0`` and falls
back to the waitlist. The session row stays locked until the caller commits,
which serialises promotions for the same session.

A member is never both an attendee and waitlisted: each insert carries a
NOT EXISTS predicate on the other table, and both tables are unique per
(class, member).
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import pymysql

from app.errors import ClassUnavailable, ConflictError, DuplicateBooking

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    admitted: bool
    waitlisted: bool = False
    position: Optional[int] = None


def _take_slot(cursor, class_id: int, now: datetime) -> bool:
    cursor.execute(
        """
        UPDATE class_sessions
        SET attendee_count = attendee_count + 1, updated_at = %s
        WHERE id = %s
          AND status = 'scheduled'
          AND attendee_count < capacity
        """,
        (now, class_id),
    )
    return cursor.rowcount == 1


def _give_back_slot(cursor, class_id: int, now: datetime):
    cursor.execute(
        """
        UPDATE class_sessions
        SET attendee_count = attendee_count - 1, updated_at = %s
        WHERE id = %s AND attendee_count > 0
        """,
        (now, class_id),
    )


def _add_attendee(cursor, class_id: int, member_id: int, now: datetime) -> bool:
    """Insert the attendee row unless the member is waitlisted or already admitted."""
    try:
        cursor.execute(
            """
            INSERT INTO class_attendees (class_id, member_id, joined_at)
            SELECT %s, %s, %s
            FROM (SELECT 1 AS one) AS seed
            WHERE NOT EXISTS (
                SELECT 1 FROM class_waitlist WHERE class_id = %s AND member_id = %s
            )
            """,
            (class_id, member_id, now, class_id, member_id),
        )
    except pymysql.err.IntegrityError:
        return False
    return cursor.rowcount == 1


def _join_waitlist(cursor, class_id: int, member_id: int, now: datetime) -> bool:
    """
    Append the member to the waitlist of a scheduled session.

    Returns False when the session is not scheduled or the member is already
    an attendee.

    Raises:
        DuplicateBooking: the member is already on the waitlist
    """
    try:
        cursor.execute(
            """
            INSERT INTO class_waitlist (class_id, member_id, joined_at)
            SELECT id, %s, %s
            FROM class_sessions
            WHERE id = %s
              AND status = 'scheduled'
              AND NOT EXISTS (
                  SELECT 1 FROM class_attendees WHERE class_id = %s AND member_id = %s
              )
            """,
            (member_id, now, class_id, class_id, member_id),
        )
    except pymysql.err.IntegrityError:
        raise DuplicateBooking("You are already on the waitlist for this class")
    return cursor.rowcount == 1


def claim_slot(cursor, class_id: int, member_id: int, now: datetime) -> ClaimResult:
    """
    Admit the member if a slot is free, otherwise put them on the waitlist.

    Raises:
        ClassUnavailable: the session is not scheduled anymore
        DuplicateBooking: the member already holds a slot or a waitlist entry
    """
    if _take_slot(cursor, class_id, now):
        if not _add_attendee(cursor, class_id, member_id, now):
            _give_back_slot(cursor, class_id, now)
            raise DuplicateBooking("You are already booked or waitlisted for this class")
        logger.info("Member #%s admitted to class #%s", member_id, class_id)
        return ClaimResult(admitted=True)

    # Full, or lost the race for the last slot: fall back to the waitlist once.
    if not _join_waitlist(cursor, class_id, member_id, now):
        if is_attendee(cursor, class_id, member_id):
            raise DuplicateBooking()
        raise ClassUnavailable("Class is not open for booking")

    position = waitlist_position(cursor, class_id, member_id)
    logger.info("Member #%s waitlisted for class #%s at position %s", member_id, class_id, position)
    return ClaimResult(admitted=False, waitlisted=True, position=position)


def release_slot(cursor, class_id: int, member_id: int, now: datetime) -> Optional[int]:
    """
    Free the member's slot and promote the head of the waitlist into it.

    Returns:
        The promoted member id, or None when nobody was waiting.
    """
    cursor.execute(
        "DELETE FROM class_attendees WHERE class_id = %s AND member_id = %s",
        (class_id, member_id),
    )
    if cursor.rowcount == 1:
        _give_back_slot(cursor, class_id, now)
    else:
        logger.warning("Member #%s was not an attendee of class #%s", member_id, class_id)

    return promote_from_waitlist(cursor, class_id, now)


def promote_from_waitlist(cursor, class_id: int, now: datetime) -> Optional[int]:
    # Claim the slot first: the conditional UPDATE locks the session row, so a
    # concurrent release of the same session waits here and then sees the
    # waitlist already drained.
    if not _take_slot(cursor, class_id, now):
        return None

    while True:
        cursor.execute(
            """
            SELECT id, member_id
            FROM class_waitlist
            WHERE class_id = %s
            ORDER BY id ASC
            LIMIT 1
            """,
            (class_id,),
        )
        head = cursor.fetchone()
        if not head:
            _give_back_slot(cursor, class_id, now)
            return None

        cursor.execute("DELETE FROM class_waitlist WHERE id = %s", (head["id"],))
        if cursor.rowcount != 1:
            _give_back_slot(cursor, class_id, now)
            raise ConflictError("Waitlist entry was promoted by another request")

        if _add_attendee(cursor, class_id, head["member_id"], now):
            logger.info("Member #%s promoted from waitlist of class #%s", head["member_id"], class_id)
            return head["member_id"]

        # Stale entry for a member who already attends; try the next head
        logger.warning(
            "Member #%s was waitlisted while attending class #%s, entry dropped",
            head["member_id"], class_id,
        )


def leave_waitlist(cursor, class_id: int, member_id: int) -> bool:
    cursor.execute(
        "DELETE FROM class_waitlist WHERE class_id = %s AND member_id = %s",
        (class_id, member_id),
    )
    return cursor.rowcount == 1


def waitlist_position(cursor, class_id: int, member_id: int) -> Optional[int]:
    """1-based FIFO position of the member on the waitlist, None if not waiting."""
    cursor.execute(
        "SELECT id FROM class_waitlist WHERE class_id = %s AND member_id = %s",
        (class_id, member_id),
    )
    entry = cursor.fetchone()
    if not entry:
        return None

    cursor.execute(
        "SELECT COUNT(*) AS ahead FROM class_waitlist WHERE class_id = %s AND id <= %s",
        (class_id, entry["id"]),
    )
    return cursor.fetchone()["ahead"]


def is_attendee(cursor, class_id: int, member_id: int) -> bool:
    cursor.execute(
        "SELECT 1 AS found FROM class_attendees WHERE class_id = %s AND member_id = %s",
        (class_id, member_id),
    )
    return cursor.fetchone() is not None
