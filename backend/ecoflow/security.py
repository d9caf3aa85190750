import hmac
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from .errors import Forbidden

# Password hashing context
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # malformed hash in the store
        return False


def create_access_token(
    data: dict[str, Any],
    secret: str,
    expires_delta: timedelta = timedelta(days=1),
    algorithm: str = "HS256",
) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret, algorithm=algorithm)


def verify_token(token: str, secret: str, algorithm: str = "HS256") -> dict[str, Any]:
    """Decode a bearer token; expired or tampered tokens raise :class:`Forbidden`."""
    try:
        return jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError:
        raise Forbidden("Token is invalid or expired.")


def keys_match(provided: str | None, expected: str) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())
