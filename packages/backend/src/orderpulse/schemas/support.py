"""Pydantic schemas for support chats and announcements."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


# ─── Support chat ────────────────────────────────────────

class ChatStart(BaseModel):
    subject: str = Field(..., min_length=1, max_length=255)
    initial_message: str = Field(..., min_length=1, max_length=1000)


class ChatClose(BaseModel):
    resolution: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)


# ─── Announcements ───────────────────────────────────────

class AnnouncementCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    announcement_type: str = Field(default="general", pattern=r"^(general|maintenance|promotion|urgent)$")
    target_audience: str = Field(default="all", pattern=r"^(all|customers|restaurants|drivers)$")
    scheduled_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
