"""Pydantic schemas for the DAV block registry."""

from datetime import datetime, timedelta
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from davgate.core.request_utils import _is_valid_ip, normalize_ip

ExpiryUnit = Literal["minutes", "hours", "permanent"]

_UNIT_DELTAS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
}


class BlockExpiry(BaseModel):
    """Relative expiry as submitted by the admin UI."""

    remark: str = Field("", max_length=512)
    duration: int = Field(0, ge=0, le=525600)
    unit: ExpiryUnit

    @model_validator(mode="after")
    def check_duration(self) -> "BlockExpiry":
        if self.unit != "permanent" and self.duration < 1:
            raise ValueError("duration must be at least 1 unless unit is 'permanent'")
        return self

    def expires_at(self, now: datetime) -> datetime | None:
        """Absolute expiry, or None for a permanent block."""
        if self.unit == "permanent":
            return None
        return now + _UNIT_DELTAS[self.unit] * self.duration


class BlockCreate(BlockExpiry):
    ip: str = Field(..., min_length=1, max_length=64)

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        v = v.strip()
        if not _is_valid_ip(v):
            raise ValueError(f"Invalid IP address: {v}")
        return normalize_ip(v)


class BlockUpdate(BlockExpiry):
    pass


class BlockResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    address: str
    remark: str
    expires_at: datetime | None
    created_at: datetime
    updated_at: datetime


class BlockListResponse(BaseModel):
    """Paginated list of blocks."""

    items: list[BlockResponse]
    total: int
    page: int
    per_page: int
