"""Token helpers for admin authentication and device session credentials."""
from __future__ import annotations

import hashlib
import secrets
import time
from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from pisogate.core.settings import settings


def create_access_token(subject: str, extra_claims: dict[str, str] | None = None) -> str:
    """Create a JWT access token for an administrator."""
    to_encode: dict[str, object] = {"sub": subject}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode["exp"] = expire
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> str | None:
    """Return the subject of a valid admin token, or None."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) else None


def verify_admin_credentials(username: str, password: str) -> bool:
    """Compare admin credentials against configuration in constant time."""
    user_ok = secrets.compare_digest(username.encode(), settings.admin_username.encode())
    pass_ok = secrets.compare_digest(password.encode(), settings.admin_password.encode())
    return user_ok and pass_ok


def generate_session_token(identity: str, ip: str | None) -> str:
    """Return an opaque session credential bound to a device identity.

    The digest covers the identity, the address, the issue time and 32
    random bytes, so two tokens for the same device never collide.
    """
    material = f"{identity}_{ip or ''}_{time.time_ns()}_{secrets.token_hex(32)}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()
