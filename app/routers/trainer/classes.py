"""
Trainer Classes Router - Own sessions, manual check-in and completion
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query, Request
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.errors import GymError
from app.middleware import require_role
from app.services.attendance import get_class_attendance, manual_check_in
from app.services.bookings import complete_session
from app.services.classes import create_class_session, list_trainer_classes

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/classes", tags=["Trainer - Classes"])


# ============== Request Models ==============

class CreateClassRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    capacity: int = Field(..., ge=1, le=500)
    location: Optional[str] = Field(None, max_length=120)


class ManualCheckinRequest(BaseModel):
    member_id: int


# ============== Endpoints ==============

@router.get("")
def get_my_classes(
    status_filter: Optional[str] = Query(None, alias="status", pattern=r"^(scheduled|completed|cancelled)$"),
    upcoming: bool = Query(False),
    auth: dict = Depends(require_role("trainer", "admin")),
):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        data = list_trainer_classes(cursor, auth["user_id"], status=status_filter, upcoming_only=upcoming)
        return {"success": True, "data": data}

    except Exception as e:
        logger.error(f"Error getting trainer classes: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_CLASSES_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("", status_code=status.HTTP_201_CREATED)
def create_class(request: CreateClassRequest, auth: dict = Depends(require_role("trainer"))):
    """Schedule a new class taught by the current trainer"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        data = create_class_session(
            cursor,
            trainer_id=auth["user_id"],
            name=request.name,
            start_time=request.start_time,
            end_time=request.end_time,
            capacity=request.capacity,
            description=request.description,
            location=request.location,
        )
        conn.commit()

        return {"success": True, "message": "Class created", "data": data}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error creating class: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CREATE_CLASS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{class_id}/checkins")
def checkin_member(
    class_id: int,
    request: ManualCheckinRequest,
    http_request: Request,
    auth: dict = Depends(require_role("trainer")),
):
    """Manual check-in of a booked member by the class trainer"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        attendance = manual_check_in(
            cursor, class_id, request.member_id, auth["user_id"],
            ip_address=http_request.client.host if http_request.client else None,
        )
        conn.commit()

        return {"success": True, "message": "Member checked in", "data": attendance}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error during manual check-in: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "MANUAL_CHECKIN_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{class_id}/complete")
def complete_class(class_id: int, auth: dict = Depends(require_role("trainer"))):
    """Close the class; booked members who never checked in become no-shows"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        result = complete_session(cursor, class_id, auth["user_id"])
        conn.commit()

        return {"success": True, "message": "Class completed", "data": result}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error completing class: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "COMPLETE_CLASS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/{class_id}/attendance")
def class_attendance(class_id: int, auth: dict = Depends(require_role("trainer", "admin"))):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        data = get_class_attendance(cursor, class_id, auth)
        return {"success": True, "data": data}

    except GymError:
        raise
    except Exception as e:
        logger.error(f"Error getting class attendance: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_ATTENDANCE_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
