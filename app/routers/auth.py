import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, status, Depends
from pydantic import BaseModel, EmailStr, Field

from app.db import get_db_connection
from app.middleware import create_access_token, verify_bearer_token
from app.services.subscriptions import get_active_subscription
from app.utils.helpers import hash_password, serialize_row, utcnow, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


# ============== Request Models ==============

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RegisterRequest(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1, max_length=120)
    password: str = Field(..., min_length=8, max_length=100)
    phone: Optional[str] = Field(None, max_length=32)


# ============== Endpoints ==============

@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(request: RegisterRequest):
    """
    Create a member account and return an access token.
    Trainer and admin accounts are created by administrators.
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT id FROM users WHERE email = %s", (request.email,))
        if cursor.fetchone():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "error_code": "EMAIL_EXISTS",
                    "message": "Email is already registered",
                },
            )

        now = utcnow()
        cursor.execute(
            """
            INSERT INTO users (name, email, password_hash, phone, role, is_active, token_version, created_at)
            VALUES (%s, %s, %s, %s, 'member', 1, 1, %s)
            """,
            (request.name, request.email, hash_password(request.password), request.phone, now),
        )
        user_id = cursor.lastrowid
        conn.commit()

        access_token = create_access_token({
            "user_id": user_id,
            "email": request.email,
            "role_name": "member",
            "token_version": 1,
        })
        logger.info("Member #%s registered", user_id)

        return {
            "success": True,
            "message": "Registration successful",
            "access_token": access_token,
            "token_type": "bearer",
            "user": {
                "id": user_id,
                "email": request.email,
                "name": request.name,
                "phone": request.phone,
                "role": "member",
            },
        }

    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error during registration: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "REGISTER_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/login")
def login(request: LoginRequest):
    """
    Login with email and password.
    Returns JWT access token on success. Logging in invalidates older tokens.
    """
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            """
            SELECT id, name, email, password_hash, phone, role, is_active, token_version
            FROM users
            WHERE email = %s
            """,
            (request.email,),
        )
        user = cursor.fetchone()

        if not user or not verify_password(request.password, user["password_hash"]):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "error_code": "INVALID_CREDENTIALS",
                    "message": "Invalid email or password",
                },
            )

        if not user["is_active"]:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail={
                    "error_code": "ACCOUNT_INACTIVE",
                    "message": "Account is inactive. Please contact an administrator.",
                },
            )

        new_token_version = (user["token_version"] or 0) + 1
        cursor.execute(
            "UPDATE users SET token_version = %s, updated_at = %s WHERE id = %s",
            (new_token_version, utcnow(), user["id"]),
        )
        conn.commit()

        access_token = create_access_token({
            "user_id": user["id"],
            "email": user["email"],
            "role_name": user["role"],
            "token_version": new_token_version,
        })

        return {
            "success": True,
            "message": "Login successful",
            "access_token": access_token,
            "token_type": "bearer",
            "user": {
                "id": user["id"],
                "email": user["email"],
                "name": user["name"],
                "phone": user["phone"],
                "role": user["role"],
            },
        }

    except HTTPException:
        raise
    except Exception as e:
        conn.rollback()
        logger.error(f"Error during login: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LOGIN_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.post("/logout")
def logout(auth: dict = Depends(verify_bearer_token)):
    """Invalidate every token issued to the current user."""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "UPDATE users SET token_version = token_version + 1, updated_at = %s WHERE id = %s",
            (utcnow(), auth["user_id"]),
        )
        conn.commit()

        return {"success": True, "message": "Logged out"}

    except Exception as e:
        conn.rollback()
        logger.error(f"Error during logout: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "LOGOUT_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()


@router.get("/me")
def get_current_user(auth: dict = Depends(verify_bearer_token)):
    """Current user profile, with the active subscription for members."""
    conn = get_db_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            """
            SELECT id, name, email, phone, role, specialization, created_at
            FROM users
            WHERE id = %s
            """,
            (auth["user_id"],),
        )
        user = cursor.fetchone()

        subscription = None
        if user["role"] == "member":
            subscription = serialize_row(get_active_subscription(cursor, user["id"]))

        return {
            "success": True,
            "data": {
                **serialize_row(user),
                "has_active_subscription": subscription is not None,
                "subscription": subscription,
            },
        }

    except Exception as e:
        logger.error(f"Error getting current user: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error_code": "GET_USER_FAILED", "message": str(e)},
        )
    finally:
        cursor.close()
        conn.close()
