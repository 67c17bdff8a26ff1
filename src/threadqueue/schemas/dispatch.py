"""Pydantic schemas for the internal dispatch endpoints.

An ack only reports whether the trigger was admitted. The run's outcome
is read later from the thread chat itself.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ScheduledDispatch(BaseModel):
    """Ids are judged by the dispatcher: unknown or empty ones are InvalidTarget."""
    user_id: str
    thread_id: str
    thread_chat_id: str


class RunFinished(BaseModel):
    """Reported by the execution runner when a run ends."""
    user_id: str = Field(..., min_length=1)
    thread_id: str = Field(..., min_length=1)
    status: str = Field(..., pattern=r"^(completed|failed)$")
    error: Optional[str] = None


class DispatchAckRead(BaseModel):
    outcome: str  # started, deferred, already_running, queue_empty, not_due
    user_id: str
    thread_id: Optional[str] = None
    thread_chat_id: Optional[str] = None

    model_config = {"from_attributes": True}


class FinishAckRead(BaseModel):
    finished: bool
    next: DispatchAckRead

    model_config = {"from_attributes": True}


class SweepResultRead(BaseModel):
    reaped: int
    users_drained: int
    started: int
    errors: int

    model_config = {"from_attributes": True}
