"""
Bearer JWT validation OR dev-mode bypass. Controlled by FF_USE_AUTH flag.

Tokens are HS256 session tokens signed with JWT_SECRET (the identity
provider's shared secret). The sign-in flow itself happens elsewhere.
"""

import logging
from dataclasses import dataclass, field

from jose import JWTError, jwt

from .config import Settings
from .flags import FeatureFlags

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedUser:
    user_id: str
    email: str = ""
    name: str = ""
    roles: list[str] = field(default_factory=list)


# Dev-mode user, returned when FF_USE_AUTH=false
DEV_USER = AuthenticatedUser(
    user_id="dev-user",
    email="dev@local",
    name="Dev User",
    roles=["admin"],
)


def verify_token(token: str, settings: Settings) -> AuthenticatedUser:
    if not settings.jwt_secret:
        raise PermissionError("JWT_SECRET is not configured")

    payload = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        audience=settings.jwt_audience or None,
        options={"verify_aud": bool(settings.jwt_audience)},
    )

    user_id = payload.get("sub") or ""
    if not user_id:
        raise PermissionError("Token missing sub claim")

    metadata = payload.get("user_metadata") or {}
    return AuthenticatedUser(
        user_id=user_id,
        email=payload.get("email", ""),
        name=metadata.get("name", "") if isinstance(metadata, dict) else "",
        roles=[payload["role"]] if isinstance(payload.get("role"), str) else [],
    )


def get_current_user(authorization: str, settings: Settings, flags: FeatureFlags) -> AuthenticatedUser:
    """
    Resolve the current user from the Authorization header.
    If FF_USE_AUTH is false, returns the dev user.
    """
    if not flags.use_auth:
        return DEV_USER

    if not authorization:
        raise PermissionError("Unauthorized. Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise PermissionError("Invalid Authorization header. Use: Bearer <token>")

    try:
        return verify_token(token.strip(), settings)
    except JWTError as e:
        logger.info("Rejected token: %s", e)
        raise PermissionError("Unauthorized. Invalid or expired session.") from e


def is_admin_user(user: AuthenticatedUser, settings: Settings, flags: FeatureFlags) -> bool:
    """Admin is pinned by ADMIN_USER_ID, or by ADMIN_EMAIL when no id is set."""
    if not flags.use_auth:
        return user.user_id == DEV_USER.user_id
    if settings.admin_user_id:
        return user.user_id == settings.admin_user_id
    if settings.admin_email and user.email:
        return user.email.strip().lower() == settings.admin_email.strip().lower()
    return False
