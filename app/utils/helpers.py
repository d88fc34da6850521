import hashlib
import hmac
import secrets
from datetime import datetime, date, timezone
from typing import Optional

import bcrypt

from app.config import SECRET_KEY


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.
    Handles bcrypt's 72-byte limit by truncating if necessary.
    """
    password_bytes = password.encode("utf-8")[:72]
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password_bytes, salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against a bcrypt hash.
    """
    password_bytes = plain_password.encode("utf-8")[:72]
    hashed_bytes = hashed_password.encode("utf-8")
    return bcrypt.checkpw(password_bytes, hashed_bytes)


def generate_token(num_bytes: int = 32) -> str:
    """Generate a cryptographically random hex token."""
    return secrets.token_hex(num_bytes)


def hash_token(token: str) -> str:
    """
    One-way keyed hash of a raw token (HMAC-SHA256 with the app secret).
    Only this value is ever persisted.
    """
    return hmac.new(SECRET_KEY.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def utcnow() -> datetime:
    """Current time as a naive UTC datetime, the storage convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_timestamp(value) -> Optional[datetime]:
    """Convert a provider epoch timestamp (seconds) to a naive UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a client supplied datetime to naive UTC. Naive input is taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def serialize_row(row: Optional[dict]) -> Optional[dict]:
    """Make a DB row JSON friendly (datetimes as ISO strings)."""
    if row is None:
        return None
    result = {}
    for key, value in row.items():
        if isinstance(value, (datetime, date)):
            result[key] = value.isoformat()
        else:
            result[key] = value
    return result
