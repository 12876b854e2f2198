"""Pydantic schemas for DAV sessions."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    session_token: str
    principal_id: UUID
    principal_name: str
    address: str
    user_agent: str
    last_seen: datetime
    created_at: datetime
    updated_at: datetime


class SessionListResponse(BaseModel):
    """Paginated list of connected sessions."""

    items: list[SessionResponse]
    total: int
    page: int
    per_page: int


class DavSessionInfo(BaseModel):
    """What the DAV gate admitted the caller as."""

    username: str
    role: str
    address: str
    session_id: UUID
    session_token: str
