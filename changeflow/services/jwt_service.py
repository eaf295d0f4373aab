"""
JWT Service — access token generation and verification.

Tokens are issued by the surrounding identity system; this module only
needs to verify them (and to mint them for tests and local tooling).

Algorithm: HS256
Token payload:
{
    "sub": "<authorization id>",
    "employee_code": "E001",
    "name": "Jane Doe",
    "email": "jane@example.com",
    "roles": ["user"] | ["Admin"] | ["Super Admin"],
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": <unique_id>
}
"""

import uuid
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

DEFAULT_ACCESS_EXPIRES = 3600   # 1 hour
ALGORITHM = "HS256"


def _get_secret():
    """Get the JWT secret key from app config."""
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _get_access_expires():
    return current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES)


def generate_access_token(
    authorization_id: int,
    roles: list[str],
    *,
    employee_code: str | None = None,
    name: str | None = None,
    email: str | None = None,
) -> str:
    """Generate a signed access token for a directory entry."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(authorization_id),
        "roles": roles,
        "type": "access",
        "iat": now,
        "exp": now + timedelta(seconds=_get_access_expires()),
        "jti": str(uuid.uuid4()),
    }
    if employee_code is not None:
        payload["employee_code"] = employee_code
    if name is not None:
        payload["name"] = name
    if email is not None:
        payload["email"] = email
    return jwt.encode(payload, _get_secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """
    Decode and verify an access token.

    Returns the payload dict on success.
    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, ...).
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    if payload.get("type") != "access":
        raise jwt.InvalidTokenError(f"Expected access token, got {payload.get('type')}")
    return payload
