from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from splitscan.core.config import settings

pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")


class InvalidTokenError(Exception):
    pass


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(subject: str, expires_minutes: int | None = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or settings.access_token_expire_minutes)
    payload: dict[str, Any] = {"sub": subject, "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.jwt_alg)


def decode_access_token(token: str) -> str:
    """Return the token subject (username). Shared by REST and the WebSocket hub."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.jwt_alg])
    except JWTError as e:
        raise InvalidTokenError(str(e)) from e

    sub = payload.get("sub")
    if not sub:
        raise InvalidTokenError("token has no subject")
    return sub
