"""
Member Account Router - Subscription, payments and notifications
"""
import logging

from fastapi import APIRouter, HTTPException, status, Depends, Query

from app.db import get_db_connection
from app.errors import GymError
from app.middleware import require_role
from app.services.notifications import list_notifications, mark_notification_read
from app.services.payments import list_payments
from app.services.subscriptions import get_active_subscription, list_member_subscriptions
from app.utils.helpers import serialize_row

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Member - Account"])


@router.get("/subscription")
def my_subscription(auth: dict = Depends(require_role("member", "admin"))):
    """Active subscription plus subscription history"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        active = get_active_subscription(cursor, auth["user_id"])
        history = list_member_subscriptions(cursor, auth["user_id"])

        return {
            "success": True,
            "data": {
                "has_active_subscription": active is not None,
                "active": serialize_row(active),
                "history": history,
            },
        }

    except Exception as e:
        logger.error(f"Error getting subscription: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_SUBSCRIPTION_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/payments")
def my_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: dict = Depends(require_role("member", "admin")),
):
    """Payment history of the current member"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        result = list_payments(cursor, member_id=auth["user_id"], page=page, limit=limit)
        return {"success": True, **result}

    except Exception as e:
        logger.error(f"Error getting payments: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_PAYMENTS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/notifications")
def my_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    auth: dict = Depends(require_role("member", "admin")),
):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        rows = list_notifications(cursor, auth["user_id"], unread_only=unread_only, limit=limit)
        return {"success": True, "data": [serialize_row(row) for row in rows]}

    except Exception as e:
        logger.error(f"Error getting notifications: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_NOTIFICATIONS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.patch("/notifications/{notification_id}/read")
def read_notification(notification_id: int, auth: dict = Depends(require_role("member", "admin"))):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        mark_notification_read(cursor, notification_id, auth["user_id"])
        conn.commit()

        return {"success": True, "message": "Notification marked as read"}

    except GymError:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error marking notification as read: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "READ_NOTIFICATION_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
