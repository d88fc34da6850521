"""
Single-use, time-limited check-in tokens.

The raw token leaves the server exactly once (inside the QR payload) and is
never stored; lookups go through its keyed hash.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from app.config import QR_TOKEN_EXPIRY_MINUTES
from app.errors import InvalidState, NotOwner, TokenAlreadyUsed, TokenExpired, TokenNotFound
from app.services.bookings import get_booking, get_class_session
from app.utils.helpers import generate_token, hash_token, utcnow

logger = logging.getLogger(__name__)


def build_qr_payload(booking_id: int, token: str) -> str:
    """Content encoded in the member's QR code."""
    return json.dumps({"booking_id": booking_id, "token": token}, separators=(",", ":"))


def issue_token(
    cursor,
    booking: dict,
    now: Optional[datetime] = None,
    expiry_minutes: Optional[int] = None,
) -> dict:
    """
    Issue a fresh check-in token for a booking.

    Older unused tokens of the same booking are revoked so that only the most
    recently issued QR code can be redeemed.

    Returns:
        {"token", "expires_at", "qr_payload"}; the raw token cannot be retrieved again.
    """
    now = now or utcnow()
    if expiry_minutes is None:
        expiry_minutes = QR_TOKEN_EXPIRY_MINUTES

    token = generate_token()
    expires_at = now + timedelta(minutes=expiry_minutes)

    cursor.execute(
        """
        UPDATE checkin_tokens
        SET revoked_at = %s
        WHERE booking_id = %s AND is_used = 0 AND revoked_at IS NULL
        """,
        (now, booking["id"]),
    )
    if cursor.rowcount:
        logger.info("Revoked %d previous token(s) for booking #%s", cursor.rowcount, booking["id"])

    cursor.execute(
        """
        INSERT INTO checkin_tokens
            (token_hash, booking_id, class_id, member_id, expires_at, is_used, created_at)
        VALUES (%s, %s, %s, %s, %s, 0, %s)
        """,
        (hash_token(token), booking["id"], booking["class_id"], booking["member_id"], expires_at, now),
    )
    cursor.execute(
        "UPDATE bookings SET qr_token_expires_at = %s, updated_at = %s WHERE id = %s",
        (expires_at, now, booking["id"]),
    )

    return {
        "token": token,
        "expires_at": expires_at.isoformat(),
        "qr_payload": build_qr_payload(booking["id"], token),
    }


def redeem_token(cursor, raw_token: str, booking_id: int, now: Optional[datetime] = None) -> dict:
    """
    Validate and consume a token bound to ``booking_id``.

    Raises:
        TokenNotFound: unknown token, or issued for another booking
        TokenAlreadyUsed: consumed, revoked, or lost the race to consume it
        TokenExpired: past its expiry
    """
    now = now or utcnow()

    cursor.execute(
        """
        SELECT * FROM checkin_tokens
        WHERE token_hash = %s AND booking_id = %s
        """,
        (hash_token(raw_token), booking_id),
    )
    token = cursor.fetchone()

    if not token:
        raise TokenNotFound()
    if token["is_used"]:
        raise TokenAlreadyUsed()
    if token["revoked_at"] is not None:
        raise TokenAlreadyUsed("Token was replaced by a newer QR code")
    if now > token["expires_at"]:
        raise TokenExpired()

    cursor.execute(
        """
        UPDATE checkin_tokens
        SET is_used = 1, used_at = %s
        WHERE id = %s AND is_used = 0
        """,
        (now, token["id"]),
    )
    if cursor.rowcount != 1:
        raise TokenAlreadyUsed("Token was already used (race condition)")

    token.update({"is_used": 1, "used_at": now})
    return token


def issue_for_booking(
    cursor,
    booking_id: int,
    member_id: int,
    now: Optional[datetime] = None,
    expiry_minutes: Optional[int] = None,
) -> dict:
    """Generate the QR code of a member's own active booking."""
    now = now or utcnow()
    booking = get_booking(cursor, booking_id)

    if booking["member_id"] != member_id:
        raise NotOwner("This booking belongs to another member")
    if booking["status"] != "booked":
        raise InvalidState(f"Booking is {booking['status']}, QR codes are only issued for active bookings")

    session = get_class_session(cursor, booking["class_id"])
    if session["status"] != "scheduled":
        raise InvalidState(f"Class is {session['status']}")
    if session["end_time"] <= now:
        raise InvalidState("Class has already ended")

    result = issue_token(cursor, booking, now=now, expiry_minutes=expiry_minutes)
    result.update({
        "booking_id": booking["id"],
        "class_id": session["id"],
        "class_name": session["name"],
        "start_time": session["start_time"].isoformat(),
    })
    logger.info("QR token issued for booking #%s", booking["id"])
    return result
