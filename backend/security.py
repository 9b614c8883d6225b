from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select

from backend.database import Database, users
from backend.messages import Messages, unauthorized

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

ACCESS_PURPOSE = "access"
VERIFY_PURPOSE = "verify"
RESET_PURPOSE = "reset"

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72
MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def validate_password(password: str) -> str:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes.")
    return password


def password_fingerprint(hashed_password: str, secret: str) -> str:
    """Keyed tag of the stored hash; reset tokens carry it so they die once the password changes."""
    digest = hmac.new(secret.encode("utf-8"), hashed_password.encode("utf-8"), hashlib.sha256)
    return digest.hexdigest()[:16]


class TokenError(Exception):
    """Raised when a token is malformed, tampered with or issued for another purpose."""


class TokenExpired(TokenError):
    """Raised when a token's ``exp`` claim is in the past."""


@dataclass(frozen=True)
class TokenService:
    secret: str
    algorithm: str = ALGORITHM

    def issue(self, subject: int | str, purpose: str, lifetime: timedelta, **claims: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": str(subject),
            "purpose": purpose,
            "iat": now,
            "exp": now + lifetime,
            **claims,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str, purpose: str) -> dict:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpired("Token has expired.") from exc
        except jwt.InvalidTokenError as exc:
            raise TokenError("Token is invalid.") from exc
        if payload.get("purpose") != purpose:
            raise TokenError(f"Token was not issued for {purpose}.")
        if not payload.get("sub"):
            raise TokenError("Token has no subject.")
        return payload

    def subject_id(self, payload: dict) -> int:
        try:
            return int(payload["sub"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenError("Token subject is not a user id.") from exc


@dataclass(frozen=True)
class AuthContext:
    """Identity of the authenticated caller; every owner-scoped query filters on ``user_id``."""

    user_id: int


bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> AuthContext:
    if credentials is None or not credentials.credentials:
        raise unauthorized(Messages.AUTH_REQUIRED)

    tokens: TokenService = request.app.state.tokens
    database: Database = request.app.state.database
    try:
        payload = tokens.decode(credentials.credentials, ACCESS_PURPOSE)
        user_id = tokens.subject_id(payload)
    except TokenError as exc:
        logger.warning("Rejected bearer token: %s", exc)
        raise unauthorized(Messages.INVALID_TOKEN) from exc

    with database.begin() as conn:
        user_exists = conn.execute(select(users.c.id).where(users.c.id == user_id)).first()
    if not user_exists:
        logger.warning("Bearer token refers to missing user %s", user_id)
        raise unauthorized(Messages.INVALID_TOKEN)
    return AuthContext(user_id=user_id)
