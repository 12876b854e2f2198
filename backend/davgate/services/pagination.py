"""Page clamping and paginated selects for admin listings."""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    per_page: int


def clamp_page(page: int | None, per_page: int | None) -> tuple[int, int]:
    """Clamp page to >= 1 and fall back to the default page size below 1."""
    page = page if page is not None and page >= 1 else 1
    per_page = per_page if per_page is not None and per_page >= 1 else DEFAULT_PAGE_SIZE
    return page, per_page


async def paginate(
    db: AsyncSession,
    stmt: Select[Any],
    page: int | None,
    per_page: int | None,
) -> Page[Any]:
    """Run ``stmt`` as a count plus one limited page.

    ``stmt`` must already carry its ORDER BY; the count ignores it.
    """
    page, per_page = clamp_page(page, per_page)

    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total = (await db.execute(count_stmt)).scalar_one()

    result = await db.execute(stmt.limit(per_page).offset((page - 1) * per_page))
    return Page(items=list(result.scalars().all()), total=total, page=page, per_page=per_page)
