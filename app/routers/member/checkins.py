"""
Member Check-in Router - QR check-in and attendance history
"""
import logging

from fastapi import APIRouter, HTTPException, status, Depends
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.errors import GymError
from app.middleware import require_role
from app.services.attendance import check_in_with_qr, get_member_attendance

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Member - Check-in"])


# ============== Request Models ==============

class QRCheckinRequest(BaseModel):
    booking_id: int
    token: str = Field(..., min_length=1, max_length=128)


# ============== Endpoints ==============

@router.post("/checkins/qr")
def qr_checkin(request: QRCheckinRequest, auth: dict = Depends(require_role("member", "admin"))):
    """Check in with the booking id and token read from the QR code"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        attendance = check_in_with_qr(cursor, request.booking_id, request.token, auth["user_id"])
        conn.commit()

        return {"success": True, "message": "Checked in successfully", "data": attendance}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error during QR check-in: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CHECKIN_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/attendance")
def my_attendance(auth: dict = Depends(require_role("member", "admin"))):
    """Attendance history of the current member"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        data = get_member_attendance(cursor, auth["user_id"], auth)
        return {"success": True, "data": data}

    except GymError:
        raise
    except Exception as e:
        logger.error(f"Error getting attendance: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_ATTENDANCE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
