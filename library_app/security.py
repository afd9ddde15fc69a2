"""Credential hashing (bcrypt) and access tokens (JWT)."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

import bcrypt
import jwt

from library_app.config import settings
from library_app.errors import InvalidState, Unauthorized
from library_app.models import Clock, User, utc_now

# bcrypt only looks at the first 72 bytes
MAX_PASSWORD_BYTES = 72


def hash_password(plaintext: str, rounds: Optional[int] = None) -> str:
    encoded = plaintext.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise InvalidState(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    salt = bcrypt.gensalt(rounds=rounds or settings.bcrypt_rounds)
    return bcrypt.hashpw(encoded, salt).decode("utf-8")


def verify_password(plaintext: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # malformed hash or over-long password
        return False


def create_access_token(user: User, clock: Clock = utc_now, expires_minutes: Optional[int] = None) -> str:
    issued = clock()
    lifetime = timedelta(minutes=expires_minutes or settings.jwt_expiration_minutes)
    claims: Dict[str, Any] = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "iat": issued,
        "exp": issued + lifetime,
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise Unauthorized("Token has expired") from e
    except jwt.PyJWTError as e:
        raise Unauthorized("Invalid token") from e
    if "sub" not in claims:
        raise Unauthorized("Invalid token")
    return claims
