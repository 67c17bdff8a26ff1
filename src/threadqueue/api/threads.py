"""Work item API routes — users, threads and thread chats.

Creating a queued thread chat is an enqueue event, so the route schedules
a drain for the user as a background task after responding. Scheduled
chats wait for the external scheduler instead.
"""

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from threadqueue.auth.dependencies import get_credential
from threadqueue.db.engine import get_db
from threadqueue.dispatch.dispatcher import ThreadDispatcher, get_dispatcher
from threadqueue.dispatch.errors import DispatchError
from threadqueue.dispatch.state import QUEUED, InvalidTransitionError
from threadqueue.schemas.thread import (
    ThreadChatCreate,
    ThreadChatRead,
    ThreadCreate,
    ThreadRead,
    UserCreate,
    UserRead,
)
from threadqueue.services.thread_service import NotFoundError, ThreadService

logger = structlog.get_logger()

router = APIRouter(prefix="/internal")


def _thread_svc(db: AsyncSession = Depends(get_db)) -> ThreadService:
    return ThreadService(db)


async def drain_after_enqueue(
    dispatcher: ThreadDispatcher, credential: Optional[str], user_id: str
) -> None:
    """Background drain after an enqueue. The sweeper retries anything missed."""
    try:
        ack = await dispatcher.drain_queue(credential, user_id)
    except DispatchError as e:
        logger.warning("enqueue.drain_failed", user_id=user_id, error=str(e))
        return
    logger.info("enqueue.drained", user_id=user_id, outcome=ack.outcome)


# ═══════════════════════════════════════════════════════════
# Users + threads
# ═══════════════════════════════════════════════════════════


@router.post("/users", response_model=UserRead, status_code=201)
async def create_user(body: UserCreate, svc: ThreadService = Depends(_thread_svc)):
    try:
        return await svc.create_user(email=body.email, name=body.name)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="A user with that email already exists")


@router.post("/users/{user_id}/threads", response_model=ThreadRead, status_code=201)
async def create_thread(
    user_id: uuid.UUID,
    body: ThreadCreate,
    svc: ThreadService = Depends(_thread_svc),
):
    try:
        return await svc.create_thread(user_id, title=body.title)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ═══════════════════════════════════════════════════════════
# Thread chats
# ═══════════════════════════════════════════════════════════


@router.post(
    "/users/{user_id}/threads/{thread_id}/chats",
    response_model=ThreadChatRead,
    status_code=201,
)
async def create_thread_chat(
    user_id: uuid.UUID,
    thread_id: uuid.UUID,
    body: ThreadChatCreate,
    background_tasks: BackgroundTasks,
    credential: Optional[str] = Depends(get_credential),
    svc: ThreadService = Depends(_thread_svc),
    dispatcher: ThreadDispatcher = Depends(get_dispatcher),
):
    """Enqueue (or schedule) a new turn of work on a thread."""
    try:
        chat = await svc.create_thread_chat(
            user_id, thread_id, message=body.message, schedule_at=body.schedule_at
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if chat.status == QUEUED:
        background_tasks.add_task(drain_after_enqueue, dispatcher, credential, str(user_id))
    return chat


@router.post(
    "/users/{user_id}/threads/{thread_id}/chats/{thread_chat_id}/cancel-schedule",
    response_model=ThreadChatRead,
)
async def cancel_schedule(
    user_id: uuid.UUID,
    thread_id: uuid.UUID,
    thread_chat_id: uuid.UUID,
    svc: ThreadService = Depends(_thread_svc),
):
    try:
        return await svc.cancel_schedule(user_id, thread_id, thread_chat_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/users/{user_id}/thread-chats", response_model=list[ThreadChatRead])
async def list_thread_chats(
    user_id: uuid.UUID,
    status: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    svc: ThreadService = Depends(_thread_svc),
):
    try:
        return await svc.list_thread_chats(user_id, status=status, limit=limit, offset=offset)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get(
    "/users/{user_id}/thread-chats/{thread_chat_id}", response_model=ThreadChatRead
)
async def get_thread_chat(
    user_id: uuid.UUID,
    thread_chat_id: uuid.UUID,
    svc: ThreadService = Depends(_thread_svc),
):
    """Poll a chat's status — how callers learn the outcome of a dispatched run."""
    chat = await svc.get_thread_chat(user_id, thread_chat_id)
    if not chat:
        raise HTTPException(status_code=404, detail="Thread chat not found")
    return chat
