"""Session manager - admission of (principal, source address) pairs.

A session row means "this principal is currently connected from this
address" and exists so a per-principal limit on distinct addresses can be
enforced. Rows go idle after ``settings.session_idle_seconds`` without a
request and are purged lazily by every read path.

Force-closing is a soft flag: the owner's next request observes it, deletes
the row and is refused; the request after that (a re-login) is admitted as a
brand new session. Force-closed rows are not counted against the limit and
are hidden from listings.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from davgate.core.clock import Clock, utcnow
from davgate.core.config import settings
from davgate.models.dav_session import DavSession
from davgate.services.errors import NotFoundError, StoreError
from davgate.services.pagination import Page, paginate

if TYPE_CHECKING:
    from davgate.services.principal import Principal

logger = logging.getLogger(__name__)

SESSION_TOKEN_BYTES = 12


class AdmissionReason(StrEnum):
    ADMITTED = "admitted"
    REFRESHED = "refreshed"
    FORCE_CLOSED = "force_closed"
    LIMIT_REACHED = "limit_reached"


@dataclass(frozen=True)
class Admission:
    """Outcome of an admission check.

    ``allowed=False`` is an ordinary policy result; store failures raise
    StoreError instead.
    """

    session: DavSession | None
    allowed: bool
    reason: AdmissionReason


def new_session_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_BYTES)


def idle_sessions(now: datetime, idle_seconds: int) -> Any:
    """Predicate matching sessions idle for longer than the threshold."""
    return DavSession.last_seen < now - timedelta(seconds=idle_seconds)


class SessionService:
    """Service for DAV session admission and administration."""

    def __init__(
        self,
        db: AsyncSession,
        now: Clock = utcnow,
        idle_seconds: int | None = None,
    ):
        self.db = db
        self.now = now
        self.idle_seconds = (
            settings.session_idle_seconds if idle_seconds is None else idle_seconds
        )

    async def purge_idle(self, now: datetime | None = None) -> int:
        """Delete every idle session. Returns count removed."""
        result: CursorResult[Any] = await self.db.execute(  # type: ignore[assignment]
            delete(DavSession)
            .where(idle_sessions(now or self.now(), self.idle_seconds))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def _lazy_purge(self, now: datetime) -> None:
        try:
            async with self.db.begin_nested():
                removed = await self.purge_idle(now)
            if removed:
                logger.debug(f"Purged {removed} idle sessions")
        except SQLAlchemyError as e:
            logger.warning(f"Idle session purge failed: {e}")

    async def ensure_session(
        self,
        principal: "Principal",
        address: str,
        user_agent: str = "",
    ) -> Admission:
        """Admit, refresh or refuse ``principal`` connecting from ``address``.

        1. purge idle sessions
        2. look up the (principal, address) session
        3. force-closed: delete it and refuse
        4. live: bump last_seen, clear force_close, record user agent
        5. new address: refuse when the principal already holds
           ``max_sessions`` distinct addresses
        6. otherwise upsert a fresh session

        Raises StoreError on database failure; never admits on error.
        """
        now = self.now()
        await self._lazy_purge(now)
        user_agent = (user_agent or "")[:512]

        try:
            result = await self.db.execute(
                select(DavSession).where(
                    DavSession.principal_id == principal.id,
                    DavSession.address == address,
                )
            )
            existing = result.scalar_one_or_none()

            if existing is not None:
                if existing.force_close:
                    await self.db.execute(delete(DavSession).where(DavSession.id == existing.id))
                    logger.info(
                        f"Refused force-closed session {principal.username}@{address}",
                        extra={"principal": principal.username, "address": address},
                    )
                    return Admission(None, False, AdmissionReason.FORCE_CLOSED)

                refreshed = await self._refresh(existing.id, user_agent, now)
                if refreshed is not None:
                    return Admission(refreshed, True, AdmissionReason.REFRESHED)
                # Reaped between lookup and refresh: treat as a new address

            if principal.max_sessions > 0:
                in_use = await self.count_addresses(principal.id)
                if in_use >= principal.max_sessions:
                    logger.info(
                        f"Session limit reached for {principal.username} "
                        f"({in_use}/{principal.max_sessions}), refusing {address}",
                        extra={"principal": principal.username, "address": address},
                    )
                    return Admission(None, False, AdmissionReason.LIMIT_REACHED)

            return await self._upsert(principal, address, user_agent, now)
        except SQLAlchemyError as e:
            raise StoreError(f"Session admission failed for {principal.username}: {e}") from e

    async def _refresh(self, session_id: UUID, user_agent: str, now: datetime) -> DavSession | None:
        stmt = (
            update(DavSession)
            .where(DavSession.id == session_id)
            .values(last_seen=now, updated_at=now, user_agent=user_agent, force_close=False)
            .returning(DavSession)
        )
        result = await self.db.scalars(stmt, execution_options={"populate_existing": True})
        return result.one_or_none()

    async def _upsert(
        self,
        principal: "Principal",
        address: str,
        user_agent: str,
        now: datetime,
    ) -> Admission:
        # Two first requests for the same pair race here; the unique
        # constraint turns the loser's insert into a refresh of the winner's
        # row. A row force-closed in the meantime is left alone and the
        # request refused.
        token = new_session_token()
        stmt = pg_insert(DavSession).values(
            id=uuid4(),
            session_token=token,
            principal_id=principal.id,
            principal_name=principal.username,
            address=address,
            user_agent=user_agent,
            force_close=False,
            last_seen=now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_dav_sessions_principal_address",
            set_={
                "last_seen": stmt.excluded.last_seen,
                "updated_at": stmt.excluded.updated_at,
                "user_agent": stmt.excluded.user_agent,
                "principal_name": stmt.excluded.principal_name,
            },
            where=DavSession.force_close.is_(False),
        ).returning(DavSession)

        result = await self.db.scalars(stmt, execution_options={"populate_existing": True})
        session = result.one_or_none()
        if session is None:
            return Admission(None, False, AdmissionReason.FORCE_CLOSED)

        if session.session_token == token:
            logger.info(
                f"Admitted {principal.username}@{address}",
                extra={"principal": principal.username, "address": address},
            )
            return Admission(session, True, AdmissionReason.ADMITTED)
        return Admission(session, True, AdmissionReason.REFRESHED)

    async def count_addresses(self, principal_id: UUID) -> int:
        """Distinct addresses holding a live session for the principal."""
        result = await self.db.execute(
            select(func.count(func.distinct(DavSession.address))).where(
                DavSession.principal_id == principal_id,
                DavSession.force_close.is_(False),
            )
        )
        return result.scalar_one()

    async def list_sessions(
        self,
        principal_name: str | None = None,
        page: int | None = 1,
        per_page: int | None = None,
    ) -> Page[DavSession]:
        """List connected sessions, most recently active first."""
        await self._lazy_purge(self.now())

        stmt = select(DavSession).where(DavSession.force_close.is_(False))
        if principal_name:
            stmt = stmt.where(DavSession.principal_name == principal_name)
        stmt = stmt.order_by(DavSession.last_seen.desc(), DavSession.id.desc())

        try:
            return await paginate(self.db, stmt, page, per_page)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list sessions: {e}") from e

    async def force_close_session(self, session_id: UUID) -> None:
        """Kick a session; its address must be admitted again."""
        try:
            result: CursorResult[Any] = await self.db.execute(  # type: ignore[assignment]
                update(DavSession)
                .where(DavSession.id == session_id)
                .values(force_close=True, updated_at=self.now())
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to force-close session {session_id}: {e}") from e

        if result.rowcount == 0:
            raise NotFoundError(f"Session {session_id} not found")
        logger.info(f"Force-closed session {session_id}")

    async def close_principal_sessions(self, principal_id: UUID) -> int:
        """Force-close every session of a principal. Returns count closed."""
        try:
            result: CursorResult[Any] = await self.db.execute(  # type: ignore[assignment]
                update(DavSession)
                .where(DavSession.principal_id == principal_id, DavSession.force_close.is_(False))
                .values(force_close=True, updated_at=self.now())
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to close sessions of {principal_id}: {e}") from e
        if result.rowcount:
            logger.info(f"Force-closed {result.rowcount} sessions of principal {principal_id}")
        return result.rowcount
