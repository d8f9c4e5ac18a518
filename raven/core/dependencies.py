"""
FastAPI dependencies. Injected into route handlers.

Everything long-lived (stores, orchestrator, config) is built once by the app
factory and read back from app.state here.
"""

from fastapi import Depends, Header, HTTPException, Request, status

from .auth import AuthenticatedUser, get_current_user, is_admin_user
from .config import Settings
from .flags import FeatureFlags


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_app_flags(request: Request) -> FeatureFlags:
    return request.app.state.flags


async def get_user(
    authorization: str = Header(default=""),
    settings: Settings = Depends(get_app_settings),
    flags: FeatureFlags = Depends(get_app_flags),
) -> AuthenticatedUser:
    """
    Resolve authenticated user from Authorization header.
    Returns dev user if FF_USE_AUTH=false.
    """
    try:
        return get_current_user(authorization, settings, flags)
    except PermissionError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin(
    user: AuthenticatedUser = Depends(get_user),
    settings: Settings = Depends(get_app_settings),
    flags: FeatureFlags = Depends(get_app_flags),
) -> AuthenticatedUser:
    if not is_admin_user(user, settings, flags):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required.")
    return user


def get_orchestrator(request: Request):
    return request.app.state.orchestrator


def get_thread_store(request: Request):
    return request.app.state.threads


def get_memory_store(request: Request):
    return request.app.state.memory_store


def get_settings_store(request: Request):
    return request.app.state.settings_store


def get_role_store(request: Request):
    return request.app.state.roles
