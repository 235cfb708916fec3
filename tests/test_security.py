# tests/test_security.py
from datetime import UTC, datetime, timedelta

from jose import jwt

from pisogate.core.security import (
    create_access_token,
    decode_access_token,
    generate_session_token,
    verify_admin_credentials,
)
from pisogate.core.settings import settings


def test_access_token_round_trip() -> None:
    token = create_access_token("admin", {"scope": "admin"})

    assert decode_access_token(token) == "admin"
    claims = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    assert claims["scope"] == "admin"


def test_expired_or_foreign_tokens_are_rejected() -> None:
    expired = jwt.encode(
        {"sub": "admin", "exp": datetime.now(UTC) - timedelta(minutes=1)},
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    forged = jwt.encode({"sub": "admin"}, "another-key", algorithm=settings.jwt_algorithm)

    assert decode_access_token(expired) is None
    assert decode_access_token(forged) is None
    assert decode_access_token("garbage") is None


def test_admin_credentials() -> None:
    assert verify_admin_credentials(settings.admin_username, settings.admin_password)
    assert not verify_admin_credentials(settings.admin_username, settings.admin_password + "x")
    assert not verify_admin_credentials("root", settings.admin_password)


def test_session_tokens_are_unique_hex() -> None:
    first = generate_session_token("AA:BB:CC:00:11:22", "10.0.0.5")
    second = generate_session_token("AA:BB:CC:00:11:22", "10.0.0.5")

    assert first != second
    assert len(first) == 64
    int(first, 16)
