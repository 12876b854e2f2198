"""Admitted DAV sessions, one per (principal, source address)."""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, DateTime, ForeignKey, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from davgate.models.base import BaseModel


class DavSession(BaseModel):
    """A principal currently counted as connected from one address.

    Rows exist for admission counting, not for holding a transport open:
    they are dropped once ``last_seen`` falls behind the idle threshold.
    The unique constraint on (principal_id, address) is what keeps two
    concurrent first requests from creating two rows.
    """

    __tablename__ = "dav_sessions"

    __table_args__ = (
        UniqueConstraint("principal_id", "address", name="uq_dav_sessions_principal_address"),
    )

    session_token: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    principal_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("dav_users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Denormalized for listing and filtering
    principal_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    address: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_agent: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    force_close: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<DavSession {self.principal_name}@{self.address} force_close={self.force_close}>"
