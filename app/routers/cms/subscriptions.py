"""
CMS Subscriptions Router - Listing, admin grants and status overrides
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.errors import GymError
from app.middleware import require_role
from app.services.subscriptions import grant_subscription, list_subscriptions, override_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["CMS - Subscriptions"])

STATUS_PATTERN = r"^(active|trialing|past_due|cancelled|incomplete)$"


# ============== Request Models ==============

class SubscriptionGrant(BaseModel):
    member_id: int
    plan_id: Optional[int] = None
    days: int = Field(30, ge=1, le=366)


class SubscriptionStatusUpdate(BaseModel):
    status: str = Field(..., pattern=STATUS_PATTERN)


# ============== Endpoints ==============

@router.get("")
def get_subscriptions(
    status_filter: Optional[str] = Query(None, alias="status", pattern=STATUS_PATTERN),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: dict = Depends(require_role("admin")),
):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        result = list_subscriptions(cursor, status=status_filter, page=page, limit=limit)
        return {"success": True, **result}

    except Exception as e:
        logger.error(f"Error getting subscriptions: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_SUBSCRIPTIONS_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("", status_code=status.HTTP_201_CREATED)
def grant(request: SubscriptionGrant, auth: dict = Depends(require_role("admin"))):
    """Grant a member an active subscription without going through Stripe"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        subscription = grant_subscription(
            cursor, request.member_id, auth["user_id"], plan_id=request.plan_id, days=request.days,
        )
        conn.commit()

        return {"success": True, "message": "Subscription granted", "data": subscription}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error granting subscription: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GRANT_SUBSCRIPTION_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.patch("/{subscription_id}/status")
def update_status(
    subscription_id: int,
    request: SubscriptionStatusUpdate,
    auth: dict = Depends(require_role("admin")),
):
    """Override the subscription status (audited)"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        subscription = override_status(cursor, subscription_id, request.status, auth["user_id"])
        conn.commit()

        return {"success": True, "message": "Subscription status updated", "data": subscription}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error updating subscription status: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "UPDATE_SUBSCRIPTION_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
