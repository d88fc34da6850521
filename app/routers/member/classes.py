"""
Member Classes Router - Class schedule, booking and waitlist
"""
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query

from app.db import get_db_connection
from app.errors import GymError
from app.middleware import require_role
from app.services import bookings, capacity
from app.services.bookings import get_class_session
from app.services.subscriptions import require_active_subscription
from app.utils.helpers import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/classes", tags=["Member - Classes"])


@router.get("")
def get_upcoming_classes(
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    auth: dict = Depends(require_role("member", "admin")),
):
    """Upcoming scheduled classes (next 14 days by default) with availability"""
    now = utcnow()
    date_from = max(to_naive_utc(date_from) or now, now)
    date_to = to_naive_utc(date_to) or (date_from + timedelta(days=14))

    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        classes = bookings.list_upcoming_classes(cursor, auth["user_id"], date_from, date_to)
        return {"success": True, "data": classes}

    except Exception as e:
        logger.error(f"Error getting classes: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_CLASSES_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{class_id}/book", status_code=status.HTTP_201_CREATED)
def book_class(class_id: int, auth: dict = Depends(require_role("member", "admin"))):
    """Book a class. A full class puts the member on its waitlist instead."""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        require_active_subscription(cursor, auth)
        result = bookings.book_class(cursor, auth["user_id"], class_id)
        conn.commit()

        if result["status"] == "waitlisted":
            message = f"Class is full. You are number {result['position']} on the waitlist."
        else:
            message = "Class booked successfully"

        return {"success": True, "message": message, "data": result}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error booking class: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "BOOK_CLASS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.delete("/{class_id}/waitlist")
def leave_waitlist(class_id: int, auth: dict = Depends(require_role("member", "admin"))):
    """Withdraw from the waitlist of a class"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        get_class_session(cursor, class_id)
        if not capacity.leave_waitlist(cursor, class_id, auth["user_id"]):
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"error_code": "NOT_ON_WAITLIST", "message": "You are not on the waitlist for this class"},
            )
        conn.commit()

        return {"success": True, "message": "Removed from waitlist"}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error leaving waitlist: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LEAVE_WAITLIST_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
