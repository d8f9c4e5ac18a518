"""
Personalization settings and manual memories.

GET    /v1/settings                   : Settings + recent memories
PATCH  /v1/settings                   : Partial update
POST   /v1/settings/memory            : Add a manual memory
DELETE /v1/settings/memory/{memory_id}: Forget a memory (soft delete)

Missing memory tables are not an error on reads: defaults come back with a
warning. Writes answer 503 until the schema is installed.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_memory_store, get_settings_store, get_user
from ..core.errors import MemorySchemaMissingError, MemoryStoreUnavailableError
from ..memory.store import MemoryStore, SettingsStore
from ..memory.types import MemoryKind, MemorySource, UserSettingsRecord

logger = logging.getLogger(__name__)

settings_router = APIRouter(prefix="/settings", tags=["settings"])

SETTINGS_MEMORY_LIMIT = 60
SCHEMA_MISSING_WARNING = (
    "Memory storage is not installed yet. Personalization and memories are "
    "disabled until the memory tables are created."
)


class SettingsPatch(BaseModel):
    personalization_guidance: Optional[str] = None
    memory_enabled: Optional[bool] = None
    auto_memory_enabled: Optional[bool] = None


class MemoryCreate(BaseModel):
    content: str
    kind: Optional[str] = None


def _schema_missing() -> HTTPException:
    return HTTPException(status_code=503, detail=SCHEMA_MISSING_WARNING)


@settings_router.get("")
async def get_settings(
    user: AuthenticatedUser = Depends(get_user),
    settings_store: SettingsStore = Depends(get_settings_store),
    memory_store: MemoryStore = Depends(get_memory_store),
):
    try:
        record = await settings_store.get_or_create(user.user_id)
        memories = await memory_store.list_memories(user.user_id, limit=SETTINGS_MEMORY_LIMIT)
    except MemorySchemaMissingError:
        return {
            "settings": UserSettingsRecord.default(user.user_id).to_dict(),
            "memories": [],
            "storage_available": False,
            "warning": SCHEMA_MISSING_WARNING,
        }
    except MemoryStoreUnavailableError:
        raise HTTPException(status_code=503, detail="Memory storage is temporarily unavailable.")

    return {
        "settings": record.to_dict(),
        "memories": [memory.to_dict() for memory in memories],
        "storage_available": True,
    }


@settings_router.patch("")
async def update_settings(
    request: SettingsPatch,
    user: AuthenticatedUser = Depends(get_user),
    settings_store: SettingsStore = Depends(get_settings_store),
):
    try:
        record = await settings_store.upsert(
            user.user_id,
            personalization_guidance=request.personalization_guidance,
            memory_enabled=request.memory_enabled,
            auto_memory_enabled=request.auto_memory_enabled,
        )
    except MemorySchemaMissingError:
        raise _schema_missing()
    except MemoryStoreUnavailableError:
        raise HTTPException(status_code=503, detail="Memory storage is temporarily unavailable.")
    return {"settings": record.to_dict()}


@settings_router.post("/memory", status_code=201)
async def create_memory(
    request: MemoryCreate,
    user: AuthenticatedUser = Depends(get_user),
    memory_store: MemoryStore = Depends(get_memory_store),
):
    try:
        memory = await memory_store.create_memory(
            user.user_id,
            request.content,
            kind=MemoryKind.parse(request.kind),
            source=MemorySource.MANUAL,
            confidence=1.0,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MemorySchemaMissingError:
        raise _schema_missing()
    except MemoryStoreUnavailableError:
        raise HTTPException(status_code=503, detail="Memory storage is temporarily unavailable.")
    return {"memory": memory.to_dict()}


@settings_router.delete("/memory/{memory_id}")
async def delete_memory(
    memory_id: int,
    user: AuthenticatedUser = Depends(get_user),
    memory_store: MemoryStore = Depends(get_memory_store),
):
    if memory_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid memory id.")
    try:
        removed = await memory_store.deactivate_memory(user.user_id, memory_id)
    except MemorySchemaMissingError:
        raise _schema_missing()
    except MemoryStoreUnavailableError:
        raise HTTPException(status_code=503, detail="Memory storage is temporarily unavailable.")
    if not removed:
        raise HTTPException(status_code=404, detail="Memory not found.")
    return {"status": "deleted", "memory_id": memory_id}
