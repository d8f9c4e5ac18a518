"""
Session API.

GET /v1/session: Current user with quota role and admin flag
"""

import logging

from fastapi import APIRouter, Depends

from ..core.auth import AuthenticatedUser, is_admin_user
from ..core.config import Settings
from ..core.dependencies import get_app_flags, get_app_settings, get_role_store, get_user
from ..core.flags import FeatureFlags
from ..services.quota import RoleStore, UserRole

logger = logging.getLogger(__name__)

session_router = APIRouter(tags=["session"])


@session_router.get("/session")
async def get_session(
    user: AuthenticatedUser = Depends(get_user),
    roles: RoleStore = Depends(get_role_store),
    settings: Settings = Depends(get_app_settings),
    flags: FeatureFlags = Depends(get_app_flags),
):
    role = await roles.ensure_role(user.user_id)
    admin = is_admin_user(user, settings, flags)
    if admin and role != UserRole.DEV:
        role = await roles.set_role(user.user_id, UserRole.DEV)
        logger.info("Promoted admin %s to dev role", user.user_id)

    return {
        "user": {"id": user.user_id, "email": user.email, "name": user.name},
        "role": role.value,
        "is_admin": admin,
    }
