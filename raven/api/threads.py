"""
Threads API.

GET    /v1/threads            : List the user's threads, newest first
GET    /v1/threads/{thread_id}: Get a thread with its messages
PATCH  /v1/threads/{thread_id}: Rename a thread
DELETE /v1/threads/{thread_id}: Delete a thread and its messages
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_thread_store, get_user
from ..services.threads import ThreadStore

logger = logging.getLogger(__name__)

threads_router = APIRouter(prefix="/threads", tags=["threads"])


class RenameRequest(BaseModel):
    title: str


@threads_router.get("")
async def list_threads(
    user: AuthenticatedUser = Depends(get_user),
    threads: ThreadStore = Depends(get_thread_store),
    limit: int = 100,
):
    records = await threads.list_threads(user.user_id, limit=min(max(limit, 1), 200))
    return {"threads": [record.to_dict() for record in records]}


@threads_router.get("/{thread_id}")
async def get_thread(
    thread_id: str,
    user: AuthenticatedUser = Depends(get_user),
    threads: ThreadStore = Depends(get_thread_store),
):
    thread = await threads.get_thread(user.user_id, thread_id)
    if not thread:
        raise HTTPException(status_code=404, detail="Thread not found.")
    messages = await threads.list_messages(user.user_id, thread.id)
    return {"thread": thread.to_dict(), "messages": [m.to_dict() for m in messages]}


@threads_router.patch("/{thread_id}")
async def rename_thread(
    thread_id: str,
    request: RenameRequest,
    user: AuthenticatedUser = Depends(get_user),
    threads: ThreadStore = Depends(get_thread_store),
):
    thread = await threads.rename_thread(user.user_id, thread_id, request.title)
    if not thread:
        raise HTTPException(status_code=404, detail="Thread not found.")
    return {"thread": thread.to_dict()}


@threads_router.delete("/{thread_id}")
async def delete_thread(
    thread_id: str,
    user: AuthenticatedUser = Depends(get_user),
    threads: ThreadStore = Depends(get_thread_store),
):
    if not await threads.delete_thread(user.user_id, thread_id):
        raise HTTPException(status_code=404, detail="Thread not found.")
    return {"status": "deleted", "thread_id": thread_id}
