"""
Audit Logging Utility
Audit trail for manual check-ins, admin overrides and payment discrepancies
"""
import json
import logging
from typing import Optional, Dict, Any

from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def log_audit(
    cursor,
    action: str,
    resource: str,
    resource_id: Optional[int],
    user_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
    ip_address: Optional[str] = None,
):
    """
    Write one row to audit_logs using the caller's cursor.

    Args:
        cursor: Cursor of the caller's transaction
        action: What happened (manual_checkin, payment_discrepancy, ...)
        resource: Kind of record affected (Attendance, Payment, Subscription)
        resource_id: ID of the affected record
        user_id: Acting user, None for system jobs
        details: Extra context, stored as JSON
        ip_address: Request origin when available
    """
    try:
        details_json = json.dumps(sanitize_for_audit(details), default=str) if details else None

        cursor.execute(
            """
            INSERT INTO audit_logs (
                user_id, action, resource, resource_id,
                details, ip_address, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (user_id, action, resource, resource_id, details_json, ip_address, utcnow()),
        )
        # Don't commit here - let the caller handle transaction

    except Exception as e:
        # Don't raise - audit logging should not break the main operation
        logger.warning(f"Audit logging failed for {action} on {resource} #{resource_id}: {e}")


def sanitize_for_audit(data: Dict[str, Any], exclude_fields: list = None) -> Dict[str, Any]:
    """
    Sanitize data for audit logging (remove sensitive fields)

    Args:
        data: Data dictionary
        exclude_fields: List of field names to exclude (e.g., passwords)

    Returns:
        Sanitized dictionary
    """
    if not data:
        return {}

    default_excludes = ['password', 'password_hash', 'token', 'token_hash', 'secret']
    all_excludes = default_excludes + (exclude_fields or [])

    sanitized = dict(data)
    for field in all_excludes:
        if field in sanitized:
            sanitized[field] = "***REDACTED***"

    return sanitized
