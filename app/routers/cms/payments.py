"""
CMS Payments Router - Payment history, manual entries, refunds and reconciliation
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends, Query
from pydantic import BaseModel, Field

from app.db import get_db_connection
from app.errors import GymError
from app.middleware import require_role
from app.services.payments import list_payments, reconcile_payments, record_manual_payment, refund_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["CMS - Payments"])


# ============== Request Models ==============

class ManualPaymentCreate(BaseModel):
    member_id: int
    amount: int = Field(..., gt=0, description="Amount in minor units (cents)")
    currency: str = Field("usd", min_length=3, max_length=3)
    description: Optional[str] = Field(None, max_length=255)
    subscription_id: Optional[int] = None


class RefundRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


# ============== Endpoints ==============

@router.get("")
def get_payments(
    member_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status", pattern=r"^(pending|paid|failed|refunded)$"),
    reconciled: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    auth: dict = Depends(require_role("admin")),
):
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        result = list_payments(
            cursor, member_id=member_id, status=status_filter, reconciled=reconciled, page=page, limit=limit,
        )
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


@router.post("", status_code=status.HTTP_201_CREATED)
def create_manual_payment(request: ManualPaymentCreate, auth: dict = Depends(require_role("admin"))):
    """Record a payment taken outside Stripe"""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        payment = record_manual_payment(
            cursor,
            member_id=request.member_id,
            amount=request.amount,
            admin_id=auth["user_id"],
            currency=request.currency,
            description=request.description,
            subscription_id=request.subscription_id,
        )
        conn.commit()

        return {"success": True, "message": "Payment recorded", "data": payment}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error recording payment: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "CREATE_PAYMENT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/reconcile")
def run_reconciliation(auth: dict = Depends(require_role("admin"))):
    """Run the reconciliation sweep now instead of waiting for the nightly job"""
    conn = get_db_connection()

    try:
        result = reconcile_payments(conn)

        return {"success": True, "data": result}

    except GymError:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error reconciling payments: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "RECONCILE_FAILED", "message": str(e)},
        )
    finally:
        conn.close()


@router.post("/{payment_id}/refund")
def refund(payment_id: int, request: Optional[RefundRequest] = None, auth: dict = Depends(require_role("admin"))):
    """Refund a paid payment. Stripe errors are returned as 502."""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        payment = refund_payment(cursor, payment_id, auth["user_id"], reason=request.reason if request else None)
        conn.commit()

        return {"success": True, "message": "Payment refunded", "data": payment}

    except GymError:
        conn.rollback()
        raise
    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error refunding payment: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "REFUND_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
