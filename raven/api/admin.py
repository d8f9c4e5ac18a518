"""
Admin API.

GET /v1/admin/users               : Users with a quota role, newest first
PUT /v1/admin/users/{user_id}/role: Set a user's quota role (base or vip)
"""

import logging
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_role_store, require_admin
from ..services.quota import RoleStore, UserRole

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/admin", tags=["admin"])


class RoleUpdate(BaseModel):
    role: Literal["base", "vip"]


@admin_router.get("/users")
async def list_users(
    admin: AuthenticatedUser = Depends(require_admin),
    roles: RoleStore = Depends(get_role_store),
):
    assignments = await roles.list_roles()
    return {"users": [assignment.to_dict() for assignment in assignments]}


@admin_router.put("/users/{user_id}/role")
async def set_user_role(
    user_id: str,
    request: RoleUpdate,
    admin: AuthenticatedUser = Depends(require_admin),
    roles: RoleStore = Depends(get_role_store),
):
    role = await roles.set_role(user_id.strip(), UserRole.parse(request.role))
    logger.info("Admin %s set role of %s to %s", admin.user_id, user_id, role.value)
    return {"user_id": user_id.strip(), "role": role.value}
