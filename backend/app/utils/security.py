from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Mapping
from uuid import uuid4
import hashlib
import secrets

import pyotp
from jose import JWTError, jwt

from app.core.config import settings


class TokenType(str, Enum):
    ACCESS = "access"


def create_access_token(
    subject: str,
    organization_id: str | None,
    extra_claims: Mapping[str, Any] | None = None,
    expires_delta: timedelta | None = None,
) -> str:
    """Mint a bearer token; used by operators and tests, sessions are issued elsewhere."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    to_encode = {
        "sub": subject,
        "organization_id": organization_id,
        "exp": expire,
        "token_type": TokenType.ACCESS.value,
        "jti": str(uuid4()),
    }
    if extra_claims:
        to_encode.update(extra_claims)
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str) -> dict[str, Any]:
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError as exc:
        raise ValueError("Invalid token") from exc
    if "token_type" not in payload:
        raise ValueError("Invalid token payload")
    return payload


def generate_totp_secret() -> str:
    return pyotp.random_base32()


def build_otpauth_url(secret: str, username: str, issuer: str) -> str:
    totp = pyotp.TOTP(secret)
    return totp.provisioning_uri(name=username, issuer_name=issuer)


def verify_totp(secret: str, otp: str, *, for_time: datetime, valid_window: int = 1) -> bool:
    """Check a 30-second TOTP code against an explicit instant (naive values are UTC)."""
    if for_time.tzinfo is None:
        for_time = for_time.replace(tzinfo=timezone.utc)
    totp = pyotp.TOTP(secret)
    return totp.verify(otp, for_time=for_time, valid_window=valid_window)


def generate_backup_codes(count: int = 10) -> list[str]:
    # 8 upper-case hex characters each
    return [secrets.token_hex(4).upper() for _ in range(count)]


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode("utf-8")).hexdigest()
