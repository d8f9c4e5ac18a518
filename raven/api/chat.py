"""
Chat API.

POST /v1/chat: run one turn and return the reply
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..core.auth import AuthenticatedUser, is_admin_user
from ..core.config import Settings
from ..core.dependencies import get_app_flags, get_app_settings, get_orchestrator, get_user
from ..core.errors import PersistenceError, PrimaryCompletionError, QuotaExceededError
from ..core.flags import FeatureFlags
from ..orchestrator.turn import TurnOrchestrator

logger = logging.getLogger(__name__)

chat_router = APIRouter(tags=["chat"])

QUOTA_DENIED_MESSAGE = "You're cut off! Go outside. Touch some grass."


class ChatRequest(BaseModel):
    message: str
    attachments: Optional[list[str]] = None
    thread_id: Optional[str] = None
    reasoning_enabled: bool = False
    provider: Optional[Literal["koboldcpp", "openrouter"]] = None


class QuotaOut(BaseModel):
    allowed: bool
    role: str
    used: int
    limit: int
    remaining: int


class ChatResponse(BaseModel):
    reply: str
    provider: str
    quota: QuotaOut
    thread_id: str


@chat_router.post("/chat", response_model=ChatResponse)
async def chat(
    request: ChatRequest,
    user: AuthenticatedUser = Depends(get_user),
    orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_app_settings),
    flags: FeatureFlags = Depends(get_app_flags),
):
    """Send a message. Creates a thread when thread_id is missing or unknown."""
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required.")

    # Only admins may pick a provider
    provider = request.provider if is_admin_user(user, settings, flags) else None

    try:
        result = await orchestrator.run_turn(
            user_id=user.user_id,
            message=message,
            attachments=request.attachments,
            thread_id=request.thread_id,
            reasoning_enabled=request.reasoning_enabled,
            provider=provider,
        )
    except QuotaExceededError as e:
        return JSONResponse(
            status_code=429,
            content={"error": QUOTA_DENIED_MESSAGE, "quota": e.quota.to_dict()},
        )
    except PrimaryCompletionError as e:
        raise HTTPException(
            status_code=502,
            detail={"error": str(e), "provider": e.provider},
        )
    except PersistenceError as e:
        logger.error("Chat turn failed to persist for %s: %s", user.user_id, e)
        raise HTTPException(status_code=500, detail="Failed to save the conversation.")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return result.to_dict()
