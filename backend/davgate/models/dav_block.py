"""Blocked source addresses for DAV access."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from davgate.models.base import BaseModel


class DavBlock(BaseModel):
    """A source address refused before credential verification.

    A null ``expires_at`` is a permanent block; otherwise the row is purged
    by the first reader that sees it expired.
    """

    __tablename__ = "dav_blocks"

    address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    remark: Mapped[str] = mapped_column(String(512), nullable=False, default="", server_default="")
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def __repr__(self) -> str:
        return f"<DavBlock {self.address} expires_at={self.expires_at}>"
