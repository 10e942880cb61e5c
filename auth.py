import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
import jwt

from config import Settings
from errors import AuthenticationError

JWT_ALGORITHM = "HS256"


def hash_password(pw: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(pw.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(pw: Optional[str], password_hash: Optional[str]) -> bool:
    if not pw or not password_hash:
        return False
    try:
        return bcrypt.checkpw(pw.encode(), password_hash.encode())
    except ValueError:
        return False


def issue_token(settings: Settings, user_id: str, remember_me: bool = False) -> str:
    days = settings.remember_me_ttl_days if remember_me else settings.token_ttl_days
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "iat": now, "exp": now + timedelta(days=days)}
    return jwt.encode(payload, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def decode_token(settings: Settings, token: str) -> str:
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise AuthenticationError("Not authorized, token failed")
    sub = payload.get("sub")
    if not sub:
        raise AuthenticationError("Not authorized, token failed")
    return sub


def sign_payload(settings: Settings, data: Dict[str, Any], minutes: int = 5) -> str:
    """Short-lived signed blob handed to the frontend after an OAuth login."""
    exp = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return jwt.encode({"user": data, "exp": exp}, settings.jwt_secret, algorithm=JWT_ALGORITHM)


def generate_otp() -> str:
    return str(secrets.randbelow(900000) + 100000)


def otp_expiry(settings: Settings) -> datetime:
    return datetime.now(timezone.utc) + timedelta(minutes=settings.otp_expiry_minutes)


def generate_reset_token() -> str:
    return secrets.token_hex(32)


def hash_reset_token(settings: Settings, token: str) -> str:
    return hmac.new(settings.jwt_secret.encode(), token.encode(), hashlib.sha256).hexdigest()
