"""
Member Bookings Router - My bookings, cancellation and QR codes
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.errors import GymError
from app.middleware import require_role
from app.services import bookings
from app.services.checkin_tokens import issue_for_booking

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Member - Bookings"])


# ============== Request Models ==============

class CancelBookingRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


# ============== Endpoints ==============

@router.get("")
def get_my_bookings(
    status_filter: Optional[str] = Query(
        None, alias="status", pattern=r"^(booked|checked_in|completed|cancelled|no_show)$"
    ),
    auth: dict = Depends(require_role("member", "admin")),
):
    """Bookings of the current member, newest class first"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        data = bookings.list_member_bookings(cursor, auth["user_id"], status_filter)
        return {"success": True, "data": data}

    except Exception as e:
        logger.error(f"Error getting bookings: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_BOOKINGS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.delete("/{booking_id}")
def cancel_booking(
    booking_id: int,
    request: Optional[CancelBookingRequest] = None,
    auth: dict = Depends(require_role("member", "admin")),
):
    """Cancel a booking; the first member on the waitlist takes the slot"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        result = bookings.cancel_booking(
            cursor, booking_id, auth["user_id"], reason=request.reason if request else None,
        )
        conn.commit()

        return {"success": True, "message": "Booking cancelled", "data": result}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error cancelling booking: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CANCEL_BOOKING_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{booking_id}/qr")
def generate_qr(booking_id: int, auth: dict = Depends(require_role("member", "admin"))):
    """
    Issue a fresh single-use check-in token. The raw token is only returned
    here; earlier QR codes for the booking stop working.
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        data = issue_for_booking(cursor, booking_id, auth["user_id"])
        conn.commit()

        return {"success": True, "data": data}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error generating QR code: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GENERATE_QR_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
