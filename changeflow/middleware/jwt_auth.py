"""
JWT Auth Middleware — parses the bearer token and sets g.jwt_*.

Every ``/api/v1/`` route except health requires a valid token. The
caller identity (``g.jwt_user_id`` et al.) is what the engine records as
the acting approver, admin or requester.

Usage in views:
    from changeflow.middleware.jwt_auth import current_identity
    actor = current_identity()
"""

import logging
from dataclasses import dataclass

import jwt as pyjwt
from flask import g, request

from changeflow.services.jwt_service import decode_access_token
from changeflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
)


@dataclass(frozen=True)
class Identity:
    """The authenticated caller of the current request."""

    authorization_id: int
    employee_code: str | None
    name: str | None
    email: str | None
    roles: tuple

    def has_any_role(self, roles) -> bool:
        return any(r in self.roles for r in roles)


def current_identity() -> Identity:
    return Identity(
        authorization_id=g.jwt_user_id,
        employee_code=g.jwt_employee_code,
        name=g.jwt_name,
        email=g.jwt_email,
        roles=tuple(g.jwt_roles),
    )


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_employee_code = None
        g.jwt_name = None
        g.jwt_email = None
        g.jwt_roles = []

        path = request.path
        if not path.startswith("/api/v1/") or request.method == "OPTIONS":
            return None
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return api_error(E.UNAUTHORIZED, "Authentication required", status=401)

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
            g.jwt_user_id = int(payload["sub"])
        except pyjwt.ExpiredSignatureError:
            return api_error(E.UNAUTHORIZED, "Token expired", status=401)
        except (pyjwt.InvalidTokenError, KeyError, ValueError) as exc:
            logger.warning("Rejected bearer token: %s", exc, extra={"path": path})
            return api_error(E.UNAUTHORIZED, "Invalid token", status=401)

        g.jwt_employee_code = payload.get("employee_code")
        g.jwt_name = payload.get("name")
        g.jwt_email = payload.get("email")
        g.jwt_roles = payload.get("roles", [])
        return None
