"""Pydantic schemas for users, threads and thread chats."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class UserCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=100)


class UserRead(BaseModel):
    id: uuid.UUID
    email: str
    name: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ThreadCreate(BaseModel):
    title: str = Field(default="", max_length=500)


class ThreadRead(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    title: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ThreadChatCreate(BaseModel):
    """A new turn of work. Scheduled when schedule_at is set, queued otherwise."""
    message: str = Field(..., min_length=1)
    schedule_at: Optional[datetime] = None


class ThreadChatRead(BaseModel):
    id: uuid.UUID
    thread_id: uuid.UUID
    user_id: uuid.UUID
    status: str
    messages: list[dict]
    schedule_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    error: Optional[str]
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
