"""Pydantic schemas for DAV principals."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from davgate.core.request_utils import _is_valid_ip, normalize_ip
from davgate.models.dav_user import PrincipalRole


class PrincipalCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=255, pattern=r"^[A-Za-z0-9_.@-]+$")
    password: str = Field(..., min_length=8, max_length=256)
    role: PrincipalRole = PrincipalRole.GENERAL
    max_sessions: int = Field(0, ge=0)
    can_read: bool = True
    expires_at: datetime | None = None


class PrincipalUpdate(BaseModel):
    """Policy fields an administrator may change; omitted fields are kept."""

    is_active: bool | None = None
    can_read: bool | None = None
    max_sessions: int | None = Field(None, ge=0)
    expires_at: datetime | None = None


class BindRequest(BaseModel):
    ip: str = Field(..., min_length=1, max_length=64)

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        v = v.strip()
        if not _is_valid_ip(v):
            raise ValueError(f"Invalid IP address: {v}")
        return normalize_ip(v)


class PrincipalResponse(BaseModel):
    """Principal as shown to administrators (never includes the hash)."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    username: str
    role: str
    is_active: bool
    can_read: bool
    max_sessions: int
    bind_address: str | None
    expires_at: datetime | None
