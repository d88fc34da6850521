import logging
from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_HOURS
from app.db import get_db_connection
from app.utils.helpers import utcnow

logger = logging.getLogger(__name__)

ROLES = ("admin", "trainer", "member")

security = HTTPBearer()


def _unauthorized(error_code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error_code": error_code, "message": message},
    )


def _load_user(user_id) -> Optional[dict]:
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)
    try:
        cursor.execute(
            "SELECT id, email, role, token_version, is_active FROM users WHERE id = %s",
            (user_id,),
        )
        return cursor.fetchone()
    finally:
        cursor.close()
        conn.close()


def verify_bearer_token(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Verify JWT Bearer token from Authorization header.

    The role comes from the users table on every request, never from the
    token, so a role change or a newer login takes effect immediately.

    Returns user context dict with: user_id, email, role_name, token_version
    """
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise _unauthorized("TOKEN_EXPIRED", "Your session has expired. Please log in again.")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid token: {e}")
        raise _unauthorized("INVALID_TOKEN", "Invalid token")

    if payload.get("type") != "access":
        raise _unauthorized("INVALID_TOKEN_TYPE", "Invalid token")

    user = _load_user(payload.get("user_id"))
    if not user:
        raise _unauthorized("USER_NOT_FOUND", "User not found")
    if not user["is_active"]:
        raise _unauthorized("USER_INACTIVE", "Your account is inactive. Please contact an administrator.")

    # token_version is bumped on every login and logout
    if user["token_version"] != payload.get("token_version"):
        raise _unauthorized("TOKEN_REVOKED", "Your session has ended. Please log in again.")

    return {
        "user_id": user["id"],
        "email": user["email"],
        "role_name": user["role"],
        "token_version": user["token_version"],
    }


def create_access_token(data: dict, expires_hours: int = ACCESS_TOKEN_EXPIRE_HOURS) -> str:
    """Signed access token carrying user_id, email, role_name and token_version."""
    claims = {key: data.get(key) for key in ("user_id", "email", "role_name", "token_version")}
    claims.update({
        "exp": utcnow() + timedelta(hours=expires_hours),
        "type": "access",
    })
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def require_role(*role_names: str):
    """
    Dependency that admits only the given roles. Returns the auth context.

    Usage:
        @router.post("/classes/{class_id}/complete")
        def complete_class(class_id: int, auth: dict = Depends(require_role("trainer", "admin"))):
    """
    def role_checker(auth: dict = Depends(verify_bearer_token)) -> dict:
        if auth.get("role_name") in role_names:
            return auth

        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error_code": "PERMISSION_DENIED",
                "message": "You do not have access to this operation",
            },
        )

    return role_checker
