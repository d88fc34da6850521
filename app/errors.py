"""
Domain errors for bookings, check-in and billing.

Every error carries an ``error_code`` and a human readable ``message`` and is
rendered by ``gym_error_handler`` with the same
``{"detail": {"error_code", "message"}}`` envelope used by HTTPException.
"""
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class GymError(Exception):
    error_code = "GYM_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Request could not be processed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"error_code": self.error_code, "message": self.message}


# ============== Client errors ==============

class ClientError(GymError):
    error_code = "CLIENT_ERROR"


class DuplicateBooking(ClientError):
    error_code = "DUPLICATE_BOOKING"
    status_code = status.HTTP_409_CONFLICT
    default_message = "You have already booked this class"


class ClassUnavailable(ClientError):
    error_code = "CLASS_UNAVAILABLE"
    default_message = "Class is not available for booking"


class NotOwner(ClientError):
    error_code = "NOT_OWNER"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized"


class InvalidState(ClientError):
    error_code = "INVALID_STATE"
    default_message = "Operation not allowed in the current state"


class CutoffExceeded(ClientError):
    error_code = "CANCELLATION_CUTOFF_EXCEEDED"


class TokenNotFound(ClientError):
    error_code = "TOKEN_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Invalid token or booking ID"


class TokenAlreadyUsed(ClientError):
    error_code = "TOKEN_ALREADY_USED"
    default_message = "Token has already been used"


class TokenExpired(ClientError):
    error_code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class AlreadyCheckedIn(ClientError):
    error_code = "ALREADY_CHECKED_IN"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Already checked in"


class SubscriptionRequired(ClientError):
    error_code = "SUBSCRIPTION_REQUIRED"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Active subscription required to access this feature"


class InvalidSignature(ClientError):
    error_code = "INVALID_SIGNATURE"
    default_message = "Webhook signature verification failed"


# ============== Not found ==============

class NotFound(ClientError):
    error_code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Resource not found"


class ClassNotFound(NotFound):
    error_code = "CLASS_NOT_FOUND"
    default_message = "Class not found"


class BookingNotFound(NotFound):
    error_code = "BOOKING_NOT_FOUND"
    default_message = "Booking not found"


class PaymentNotFound(NotFound):
    error_code = "PAYMENT_NOT_FOUND"
    default_message = "Payment not found"


class SubscriptionNotFound(NotFound):
    error_code = "SUBSCRIPTION_NOT_FOUND"
    default_message = "Subscription not found"


class UserNotFound(NotFound):
    error_code = "USER_NOT_FOUND"
    default_message = "User not found"


# ============== Server side ==============

class ConflictError(GymError):
    """A conditional update matched no rows because another request got there first."""

    error_code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The resource was modified concurrently, please retry"


class ExternalServiceError(GymError):
    error_code = "EXTERNAL_SERVICE_ERROR"
    status_code = status.HTTP_502_BAD_GATEWAY
    default_message = "Billing provider request failed"


# ============== Handlers ==============

VALIDATION_MESSAGES = {
    "Field required": "Required",
    "Input should be a valid integer": "Must be a whole number",
    "Input should be a valid number": "Must be a number",
    "Input should be a valid datetime": "Must be an ISO 8601 datetime",
    "Input should be a valid boolean": "Must be true or false",
}


def _validation_message(error: dict) -> str:
    msg = error["msg"]
    if msg in VALIDATION_MESSAGES:
        return VALIDATION_MESSAGES[msg]
    if "valid email address" in msg:
        return "Invalid email format"
    if msg.startswith("String should match pattern"):
        return "Unsupported value"
    return msg


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = {}
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields[".".join(loc) or "request"] = _validation_message(error)

    return JSONResponse(
        status_code=422,
        content={
            "detail": {
                "error_code": "VALIDATION_ERROR",
                "message": "; ".join(f"{field}: {msg}" for field, msg in fields.items()),
                "fields": fields,
            }
        },
    )


async def gym_error_handler(request: Request, exc: GymError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.error_code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(GymError, gym_error_handler)
