"""Admin REST API for connected DAV sessions."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from davgate.core import get_db
from davgate.schemas.session import SessionListResponse, SessionResponse
from davgate.services.errors import NotFoundError, StoreError
from davgate.services.pagination import MAX_PAGE_SIZE
from davgate.services.session import SessionService

router = APIRouter(prefix="/dav/sessions", tags=["sessions"])


def get_session_service(db: AsyncSession = Depends(get_db)) -> SessionService:
    return SessionService(db)


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    username: str | None = Query(None, max_length=255),
    page: int = Query(1),
    per_page: int = Query(20, le=MAX_PAGE_SIZE),
    service: SessionService = Depends(get_session_service),
) -> SessionListResponse:
    """List connected sessions, optionally for one principal."""
    try:
        result = await service.list_sessions(username, page=page, per_page=per_page)
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return SessionListResponse(
        items=[SessionResponse.model_validate(s) for s in result.items],
        total=result.total,
        page=result.page,
        per_page=result.per_page,
    )


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect_session(
    session_id: UUID,
    service: SessionService = Depends(get_session_service),
) -> None:
    """Force-close a session; the address must authenticate and be admitted again."""
    try:
        await service.force_close_session(session_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return None
