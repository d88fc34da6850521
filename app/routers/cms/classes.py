"""
CMS Classes Router - Class session administration
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.errors import GymError
from app.middleware import require_role
from app.services.bookings import cancel_session
from app.services.classes import create_class_session, update_class_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/classes", tags=["CMS - Classes"])


# ============== Request Models ==============

class ClassCreate(BaseModel):
    trainer_id: int
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    capacity: int = Field(..., ge=1, le=500)
    location: Optional[str] = Field(None, max_length=120)


class ClassUpdate(BaseModel):
    trainer_id: Optional[int] = None
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    capacity: Optional[int] = Field(None, ge=1, le=500)
    location: Optional[str] = Field(None, max_length=120)


class ClassCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


# ============== Endpoints ==============

@router.post("", status_code=status.HTTP_201_CREATED)
def create_class(request: ClassCreate, auth: dict = Depends(require_role("admin"))):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        data = create_class_session(
            cursor,
            trainer_id=request.trainer_id,
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


@router.put("/{class_id}")
def update_class(class_id: int, request: ClassUpdate, auth: dict = Depends(require_role("admin"))):
    """Update a scheduled class. Raising capacity admits waitlisted members."""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        result = update_class_session(cursor, class_id, request.model_dump(exclude_unset=True), auth)
        conn.commit()

        return {"success": True, "message": "Class updated", "data": result}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error updating class: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "UPDATE_CLASS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/{class_id}/cancel")
def cancel_class(
    class_id: int,
    request: Optional[ClassCancel] = None,
    auth: dict = Depends(require_role("admin")),
):
    """Cancel a class. Booked and waitlisted members are notified."""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        result = cancel_session(cursor, class_id, auth, reason=request.reason if request else None)
        conn.commit()

        return {"success": True, "message": "Class cancelled", "data": result}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error cancelling class: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CANCEL_CLASS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
