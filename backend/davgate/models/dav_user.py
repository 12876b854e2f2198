"""DAV principals (user accounts) and their connection policy."""

from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from davgate.models.base import BaseModel


class PrincipalRole(StrEnum):
    GENERAL = "general"
    ADMIN = "admin"
    GUEST = "guest"


class DavUser(BaseModel):
    """A principal that may authenticate against the DAV endpoint.

    ``max_sessions`` limits the number of distinct source addresses the
    principal may be connected from at once (0 means unlimited).
    ``bind_address`` pins the principal to a single address when set.
    """

    __tablename__ = "dav_users"

    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PrincipalRole.GENERAL.value
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    can_read: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    max_sessions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    bind_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Admin and guest accounts never expire
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<DavUser {self.username} role={self.role}>"
