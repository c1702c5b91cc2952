# contract_engine/core/security.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt
from passlib.context import CryptContext

from contract_engine.core.config import get_settings

# One-time signing codes are short-lived; pbkdf2 keeps verification cheap enough per request.
otp_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_otp_code(raw: str) -> str:
    return otp_context.hash(raw)


def verify_otp_code(raw: str, hashed: str) -> bool:
    return otp_context.verify(raw, hashed)


def create_access_token(subject: str, claims: Dict[str, Any], expires_minutes: Optional[int] = None) -> str:
    settings = get_settings()
    exp_minutes = expires_minutes or settings.jwt_access_token_minutes
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=exp_minutes)).timestamp()),
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
