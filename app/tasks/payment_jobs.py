"""
Payment cron jobs:
  1. Reconcile Stripe payments against the provider's amounts
"""
import logging
from datetime import datetime
from typing import Optional

from app.db import get_db_connection
from app.services.payments import reconcile_payments
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def job_reconcile_payments(now: Optional[datetime] = None) -> Optional[dict]:
    """
    Daily sweep over unreconciled payments from the lookback window.
    Mismatches end up in audit_logs as payment_discrepancy for manual review.
    Each payment is committed on its own, so a failure halfway keeps the
    flags already set.
    """
    now = now or utcnow()
    conn = get_db_connection()
    try:
        return reconcile_payments(conn, now=now)

    except Exception as e:
        conn.rollback()
        logger.error("Error in job_reconcile_payments: %s", e, exc_info=True)
        return None
    finally:
        conn.close()
