"""Admin REST API for DAV principals: creation, policy and address binding."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from davgate.core import get_db
from davgate.schemas.principal import (
    BindRequest,
    PrincipalCreate,
    PrincipalResponse,
    PrincipalUpdate,
)
from davgate.services.errors import ConflictError, NotFoundError, StoreError
from davgate.services.principal import PrincipalService
from davgate.services.session import SessionService

router = APIRouter(prefix="/dav/principals", tags=["principals"])


def get_principal_service(db: AsyncSession = Depends(get_db)) -> PrincipalService:
    return PrincipalService(db)


def get_session_service(db: AsyncSession = Depends(get_db)) -> SessionService:
    return SessionService(db)


@router.post("", response_model=PrincipalResponse, status_code=status.HTTP_201_CREATED)
async def create_principal(
    data: PrincipalCreate,
    service: PrincipalService = Depends(get_principal_service),
) -> PrincipalResponse:
    try:
        principal = await service.create_principal(
            username=data.username,
            secret=data.password,
            role=data.role,
            max_sessions=data.max_sessions,
            can_read=data.can_read,
            expires_at=data.expires_at,
        )
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return PrincipalResponse.model_validate(principal)


@router.patch("/{principal_id}", response_model=PrincipalResponse)
async def update_principal(
    principal_id: UUID,
    data: PrincipalUpdate,
    service: PrincipalService = Depends(get_principal_service),
    sessions: SessionService = Depends(get_session_service),
) -> PrincipalResponse:
    """Change connection policy. Deactivating a principal kicks its sessions."""
    changes = data.model_dump(exclude_unset=True)
    try:
        principal = await service.update_principal(principal_id, **changes)
        if changes.get("is_active") is False or changes.get("can_read") is False:
            await sessions.close_principal_sessions(principal_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return PrincipalResponse.model_validate(principal)


@router.put("/{principal_id}/bind", response_model=PrincipalResponse)
async def bind_principal(
    principal_id: UUID,
    data: BindRequest,
    service: PrincipalService = Depends(get_principal_service),
    sessions: SessionService = Depends(get_session_service),
) -> PrincipalResponse:
    """Pin a principal to one address; existing sessions must be re-admitted."""
    try:
        principal = await service.bind_address(principal_id, data.ip)
        await sessions.close_principal_sessions(principal_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return PrincipalResponse.model_validate(principal)


@router.delete("/{principal_id}/bind", response_model=PrincipalResponse)
async def clear_principal_bind(
    principal_id: UUID,
    service: PrincipalService = Depends(get_principal_service),
) -> PrincipalResponse:
    try:
        principal = await service.clear_bind_address(principal_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return PrincipalResponse.model_validate(principal)
