"""Block registry - administrator-managed blocked source addresses.

Blocks are a coarse circuit breaker, not a rate limiter: an address is either
blocked until an absolute expiry time, or permanently. Expired rows are purged
lazily by every read path and by the periodic sweep, using the same predicate.
"""

import logging
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from davgate.core.clock import Clock, utcnow
from davgate.core.config import settings
from davgate.models.dav_block import DavBlock
from davgate.services.errors import NotFoundError, StoreError
from davgate.services.pagination import Page, paginate

logger = logging.getLogger(__name__)


def expired_blocks(now: datetime) -> Any:
    """Predicate matching blocks whose expiry has passed."""
    return DavBlock.expires_at.is_not(None) & (DavBlock.expires_at < now)


class BlockService:
    """Service for the DAV block registry."""

    def __init__(
        self,
        db: AsyncSession,
        now: Clock = utcnow,
        fail_open: bool | None = None,
    ):
        self.db = db
        self.now = now
        self.fail_open = settings.block_check_fail_open if fail_open is None else fail_open

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete every expired block. Returns count removed."""
        result: CursorResult[Any] = await self.db.execute(  # type: ignore[assignment]
            delete(DavBlock)
            .where(expired_blocks(now or self.now()))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount

    async def _lazy_purge(self, now: datetime) -> None:
        # Best-effort: every reader re-checks expiry, so a failed purge only
        # delays cleanup. The savepoint keeps a failure from poisoning the
        # caller's transaction.
        try:
            async with self.db.begin_nested():
                removed = await self.purge_expired(now)
            if removed:
                logger.debug(f"Purged {removed} expired blocks")
        except SQLAlchemyError as e:
            logger.warning(f"Expired block purge failed: {e}")

    async def is_blocked(self, address: str) -> bool:
        """Check whether ``address`` is currently blocked.

        Raises StoreError on database failure unless fail-open is configured.
        """
        now = self.now()
        await self._lazy_purge(now)
        # A failure only rolls back to the savepoint, so the caller's
        # transaction stays usable when failing open.
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(select(DavBlock).where(DavBlock.address == address))
                block = result.scalar_one_or_none()
                if block is not None and block.is_expired(now):
                    await self.db.execute(
                        delete(DavBlock)
                        .where(DavBlock.id == block.id, expired_blocks(now))
                        .execution_options(synchronize_session="fetch")
                    )
                    block = None
        except SQLAlchemyError as e:
            if self.fail_open:
                logger.warning(f"Block lookup failed for {address}, failing open: {e}")
                return False
            raise StoreError(f"Block lookup failed for {address}: {e}") from e
        return block is not None

    async def add_block(
        self,
        address: str,
        remark: str = "",
        expires_at: datetime | None = None,
    ) -> DavBlock:
        """Block ``address``, overwriting remark and expiry if already blocked.

        A single INSERT .. ON CONFLICT so concurrent adds for one address
        can never produce two rows.
        """
        now = self.now()
        await self._lazy_purge(now)

        stmt = pg_insert(DavBlock).values(
            id=uuid4(),
            address=address,
            remark=remark,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[DavBlock.address],
            set_={
                "remark": stmt.excluded.remark,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(DavBlock)

        try:
            result = await self.db.scalars(stmt, execution_options={"populate_existing": True})
            block = result.one()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to block {address}: {e}") from e

        logger.info(
            f"Blocked {address} " + (f"until {expires_at}" if expires_at else "permanently"),
            extra={"address": address, "remark": remark},
        )
        return block

    async def update_block(
        self,
        block_id: UUID,
        remark: str,
        expires_at: datetime | None,
    ) -> DavBlock:
        """Update remark and expiry of an existing block; the address is fixed."""
        now = self.now()
        await self._lazy_purge(now)

        stmt = (
            update(DavBlock)
            .where(DavBlock.id == block_id)
            .values(remark=remark, expires_at=expires_at, updated_at=now)
            .returning(DavBlock)
        )
        try:
            result = await self.db.scalars(stmt, execution_options={"populate_existing": True})
            block = result.one_or_none()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update block {block_id}: {e}") from e

        if block is None:
            raise NotFoundError(f"Block {block_id} not found")
        logger.info(f"Updated block {block.address}: expires_at={expires_at}")
        return block

    async def delete_block(self, block_id: UUID) -> None:
        try:
            result: CursorResult[Any] = await self.db.execute(  # type: ignore[assignment]
                delete(DavBlock).where(DavBlock.id == block_id)
            )
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete block {block_id}: {e}") from e

        if result.rowcount == 0:
            raise NotFoundError(f"Block {block_id} not found")
        logger.info(f"Deleted block {block_id}")

    async def list_blocks(self, page: int | None = 1, per_page: int | None = None) -> Page[DavBlock]:
        """List live blocks, most recently created first."""
        await self._lazy_purge(self.now())
        stmt = select(DavBlock).order_by(DavBlock.created_at.desc(), DavBlock.id.desc())
        try:
            return await paginate(self.db, stmt, page, per_page)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list blocks: {e}") from e
