from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, NamedTuple, Tuple

import jwt
from passlib.context import CryptContext

from .config import get_settings

settings = get_settings()
ALGORITHM = "RS256"

# bcrypt_sha256 lifts the 72-byte bcrypt password limit
_pwd_context = CryptContext(schemes=["bcrypt_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return _pwd_context.verify(password, hashed)


def hash_refresh_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def make_refresh_token() -> Tuple[str, str]:
    """Opaque refresh token and the digest stored in place of it."""
    raw = secrets.token_urlsafe(48)
    return raw, hash_refresh_token(raw)


def access_claims(
    *, user_id: uuid.UUID, role: str | None, madrassah_id: uuid.UUID | None,
    meta: Dict[str, Any] | None, lifetime: timedelta,
) -> Dict[str, Any]:
    issued = datetime.now(timezone.utc)
    return {
        "iss": settings.token_issuer,
        "sub": str(user_id),
        "role": role,
        "madrassah_id": str(madrassah_id) if madrassah_id else None,
        # auth metadata; carries the signup role hint
        "meta": dict(meta or {}),
        "iat": int(issued.timestamp()),
        "exp": int((issued + lifetime).timestamp()),
        "jti": uuid.uuid4().hex,
    }


def create_access_token(
    *,
    user_id: uuid.UUID,
    role: str | None,
    madrassah_id: uuid.UUID | None,
    meta: Dict[str, Any] | None = None,
    expires_minutes: int | None = None,
) -> str:
    lifetime = timedelta(minutes=expires_minutes or settings.access_token_exp_minutes)
    claims = access_claims(user_id=user_id, role=role, madrassah_id=madrassah_id, meta=meta, lifetime=lifetime)
    return jwt.encode(claims, settings.jwt_private_key, algorithm=ALGORITHM)


class TokenPair(NamedTuple):
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_hash: str


def create_token_pair(
    *, user_id: uuid.UUID, role: str | None, madrassah_id: uuid.UUID | None, meta: Dict[str, Any] | None = None
) -> TokenPair:
    access = create_access_token(user_id=user_id, role=role, madrassah_id=madrassah_id, meta=meta)
    raw, digest = make_refresh_token()
    return TokenPair(access, raw, settings.access_token_exp_minutes * 60, digest)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify signature, expiry and issuer; raises ``jwt.PyJWTError`` otherwise."""
    return jwt.decode(
        token,
        settings.jwt_public_key,
        algorithms=[ALGORITHM],
        issuer=settings.token_issuer,
        options={"require": ["sub", "exp", "iss"]},
    )
