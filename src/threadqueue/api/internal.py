"""Internal dispatch API — the two triggers, run completion, and sweeps.

Learn: Routes translate HTTP into dispatcher calls and dispatch errors
into status codes. The router is mounted behind require_internal_caller,
so an unauthenticated request is refused before body validation. The
credential is still handed to the dispatcher, whose gate checks it again
for callers that do not come through HTTP (the sweeper, the CLI).

Both triggers answer 202: the ack means "admitted", and the run may not
have started by the time the caller reads it.
"""

from contextlib import contextmanager
from dataclasses import asdict
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from threadqueue.auth.dependencies import (
    get_credential,
    require_internal_caller,
    unauthorized,
)
from threadqueue.config import settings
from threadqueue.dispatch.dispatcher import ThreadDispatcher, get_dispatcher
from threadqueue.dispatch.errors import InvalidTarget, StoreUnavailable, Unauthorized
from threadqueue.dispatch.state import InvalidTransitionError
from threadqueue.dispatch.sweeper import QueueSweeper
from threadqueue.schemas.dispatch import (
    DispatchAckRead,
    FinishAckRead,
    RunFinished,
    ScheduledDispatch,
    SweepResultRead,
)

router = APIRouter(prefix="/internal")


@contextmanager
def dispatch_errors():
    """Map dispatch exceptions onto HTTP responses."""
    try:
        yield
    except Unauthorized:
        raise unauthorized()
    except InvalidTarget as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StoreUnavailable:
        raise HTTPException(
            status_code=503,
            detail="Work item store unavailable, retry the trigger",
            headers={"Retry-After": "5"},
        )


def get_sweeper(
    credential: str = Depends(require_internal_caller),
    dispatcher: ThreadDispatcher = Depends(get_dispatcher),
) -> QueueSweeper:
    """One-shot sweeper that drains with the caller's (already authorized) credential."""
    return QueueSweeper(
        dispatcher,
        credential=credential,
        batch_size=settings.sweep_batch_size,
        batch_pause=settings.sweep_batch_pause_seconds,
        stalled_after=timedelta(minutes=settings.stalled_after_minutes),
    )


# ═══════════════════════════════════════════════════════════
# Triggers
# ═══════════════════════════════════════════════════════════


@router.post("/dispatch/scheduled", response_model=DispatchAckRead, status_code=202)
async def dispatch_scheduled(
    body: ScheduledDispatch,
    credential: Optional[str] = Depends(get_credential),
    dispatcher: ThreadDispatcher = Depends(get_dispatcher),
):
    """Start one scheduled thread chat (fired by the external scheduler)."""
    with dispatch_errors():
        ack = await dispatcher.dispatch_scheduled(
            credential, body.user_id, body.thread_id, body.thread_chat_id
        )
    return asdict(ack)


@router.post("/dispatch/queue/{user_id}", response_model=DispatchAckRead, status_code=202)
async def drain_queue(
    user_id: str,
    credential: Optional[str] = Depends(get_credential),
    dispatcher: ThreadDispatcher = Depends(get_dispatcher),
):
    """Advance a user's queue by at most one thread chat.

    An empty queue or a busy user is a successful no-op.
    """
    with dispatch_errors():
        ack = await dispatcher.drain_queue(credential, user_id)
    return asdict(ack)


# ═══════════════════════════════════════════════════════════
# Runner callbacks
# ═══════════════════════════════════════════════════════════


@router.post("/thread-chats/{thread_chat_id}/finish", response_model=FinishAckRead)
async def finish_run(
    thread_chat_id: str,
    body: RunFinished,
    credential: Optional[str] = Depends(get_credential),
    dispatcher: ThreadDispatcher = Depends(get_dispatcher),
):
    """Runner reports a run as completed or failed; the queue then drains once."""
    with dispatch_errors():
        ack = await dispatcher.finish_run(
            credential,
            body.user_id,
            body.thread_id,
            thread_chat_id,
            status=body.status,
            error=body.error,
        )
    return asdict(ack)


# ═══════════════════════════════════════════════════════════
# Operations
# ═══════════════════════════════════════════════════════════


@router.post("/sweep", response_model=SweepResultRead)
async def sweep(sweeper: QueueSweeper = Depends(get_sweeper)):
    """Run one sweeper pass now (for cron-style deployments)."""
    with dispatch_errors():
        result = await sweeper.run_once()
    return asdict(result)


@router.get("/dispatch/stats")
async def dispatch_stats(dispatcher: ThreadDispatcher = Depends(get_dispatcher)):
    """Counters for this instance's dispatcher."""
    return dispatcher.get_stats()
