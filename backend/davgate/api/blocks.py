"""Admin REST API for the DAV block registry."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from davgate.core import get_db
from davgate.core.clock import utcnow
from davgate.schemas.block import (
    BlockCreate,
    BlockListResponse,
    BlockResponse,
    BlockUpdate,
)
from davgate.services.block import BlockService
from davgate.services.errors import NotFoundError, StoreError
from davgate.services.pagination import MAX_PAGE_SIZE

router = APIRouter(prefix="/dav/blocks", tags=["blocks"])


def get_block_service(db: AsyncSession = Depends(get_db)) -> BlockService:
    return BlockService(db)


@router.get("", response_model=BlockListResponse)
async def list_blocks(
    page: int = Query(1),
    per_page: int = Query(20, le=MAX_PAGE_SIZE),
    service: BlockService = Depends(get_block_service),
) -> BlockListResponse:
    """List blocked addresses, most recently created first."""
    try:
        result = await service.list_blocks(page=page, per_page=per_page)
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return BlockListResponse(
        items=[BlockResponse.model_validate(b) for b in result.items],
        total=result.total,
        page=result.page,
        per_page=result.per_page,
    )


@router.post("", response_model=BlockResponse, status_code=status.HTTP_201_CREATED)
async def add_block(
    data: BlockCreate,
    service: BlockService = Depends(get_block_service),
) -> BlockResponse:
    """Block an address. Blocking an already blocked address updates it."""
    try:
        block = await service.add_block(data.ip, data.remark, data.expires_at(utcnow()))
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return BlockResponse.model_validate(block)


@router.put("/{block_id}", response_model=BlockResponse)
async def update_block(
    block_id: UUID,
    data: BlockUpdate,
    service: BlockService = Depends(get_block_service),
) -> BlockResponse:
    """Change remark and expiry of a block."""
    try:
        block = await service.update_block(block_id, data.remark, data.expires_at(utcnow()))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return BlockResponse.model_validate(block)


@router.delete("/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_block(
    block_id: UUID,
    service: BlockService = Depends(get_block_service),
) -> None:
    """Lift a block."""
    try:
        await service.delete_block(block_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return None
