"""DAV gate - admission control in front of the DAV protocol handler.

Per request: failed-auth lockout -> block registry -> credential check ->
address binding -> session admission. Any store failure refuses the request
(503); nothing is admitted on error.
"""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from davgate.core import get_db, settings
from davgate.core.request_utils import get_client_ip
from davgate.middleware.admin_auth import token_matches
from davgate.models.dav_session import DavSession
from davgate.schemas.session import DavSessionInfo
from davgate.services.block import BlockService
from davgate.services.errors import StoreError
from davgate.services.principal import (
    AuthError,
    InvalidCredentialsError,
    Principal,
    PrincipalExpiredError,
    PrincipalInactiveError,
    PrincipalService,
)
from davgate.services.session import SessionService

logger = logging.getLogger(__name__)

BASIC_CHALLENGE = {"WWW-Authenticate": 'Basic realm="davgate"'}

# Failed authentication attempts per source address (monotonic timestamps)
_failed_auth_attempts: dict[str, list[float]] = defaultdict(list)

basic_auth = HTTPBasic(auto_error=False, realm="davgate")


@dataclass(frozen=True)
class DavContext:
    """The admitted caller, handed to DAV handlers."""

    principal: Principal
    session: DavSession
    address: str


def _check_auth_lockout(address: str) -> None:
    """Refuse an address with too many recent authentication failures."""
    now = time.monotonic()
    attempts = [
        t for t in _failed_auth_attempts.get(address, ()) if now - t < settings.auth_lock_seconds
    ]
    if not attempts:
        _failed_auth_attempts.pop(address, None)
        return
    _failed_auth_attempts[address] = attempts
    if len(attempts) >= settings.max_auth_retries:
        logger.warning(f"Auth lockout active for {address}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many unsuccessful sign-in attempts, try again later.",
            headers={"Retry-After": str(settings.auth_lock_seconds)},
        )


def _record_auth_failure(address: str) -> None:
    _failed_auth_attempts[address].append(time.monotonic())


def _clear_auth_failures(address: str) -> None:
    _failed_auth_attempts.pop(address, None)


def _unauthorized(detail: str = "Unauthorized") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers=BASIC_CHALLENGE,
    )


def _store_unavailable(e: StoreError) -> HTTPException:
    logger.error(f"DAV gate refusing request, store unavailable: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Service temporarily unavailable",
    )


async def _resolve_principal(
    request: Request,
    credentials: HTTPBasicCredentials | None,
    principals: PrincipalService,
    address: str,
) -> Principal:
    if credentials is not None:
        try:
            principal = await principals.authenticate(credentials.username, credentials.password)
        except PrincipalExpiredError as e:
            _record_auth_failure(address)
            # Keep the removal of the expired row past the refusal
            await principals.db.commit()
            raise _unauthorized() from e
        except InvalidCredentialsError as e:
            _record_auth_failure(address)
            raise _unauthorized() from e
        except PrincipalInactiveError as e:
            _record_auth_failure(address)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden") from e
        except AuthError as e:
            _record_auth_failure(address)
            raise _unauthorized() from e
        _clear_auth_failures(address)
        return principal

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        if not token_matches(auth_header[7:], settings.admin_token):
            _record_auth_failure(address)
            raise _unauthorized()
        admin = await principals.get_admin()
        if admin is None:
            raise _unauthorized("No admin principal configured")
        _clear_auth_failures(address)
        return admin

    guest = await principals.get_guest()
    if guest is None or not guest.is_active:
        raise _unauthorized()
    return guest


async def require_dav_principal(
    request: Request,
    credentials: HTTPBasicCredentials | None = Depends(basic_auth),
    db: AsyncSession = Depends(get_db),
) -> DavContext:
    """Dependency admitting the caller of a DAV request or refusing it."""
    address = get_client_ip(request)
    if address is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unknown client address")

    _check_auth_lockout(address)

    try:
        blocked = await BlockService(db).is_blocked(address)
    except StoreError as e:
        raise _store_unavailable(e) from e
    if blocked:
        logger.info(f"Refused blocked address {address}", extra={"address": address})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Address is blocked")

    try:
        principal = await _resolve_principal(request, credentials, PrincipalService(db), address)
    except SQLAlchemyError as e:
        raise _store_unavailable(StoreError(f"Principal lookup failed: {e}")) from e

    if not principal.is_active or not principal.can_read:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

    if principal.bind_address and principal.bind_address != address:
        logger.info(
            f"Refused {principal.username} from {address}, bound to {principal.bind_address}",
            extra={"principal": principal.username, "address": address},
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Principal is bound to a different address",
        )

    try:
        admission = await SessionService(db).ensure_session(
            principal, address, request.headers.get("User-Agent", "")
        )
        # Persist the outcome (including deletion of a force-closed row)
        # before any refusal unwinds the request transaction.
        await db.commit()
    except StoreError as e:
        raise _store_unavailable(e) from e
    except SQLAlchemyError as e:
        raise _store_unavailable(StoreError(f"Admission commit failed: {e}")) from e

    if not admission.allowed or admission.session is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Session not admitted: {admission.reason}",
        )

    return DavContext(principal=principal, session=admission.session, address=address)


router = APIRouter(prefix="/dav", tags=["dav"])


@router.get("/session", response_model=DavSessionInfo)
async def current_session(ctx: DavContext = Depends(require_dav_principal)) -> DavSessionInfo:
    """Describe the caller's admitted session."""
    return DavSessionInfo(
        username=ctx.principal.username,
        role=ctx.principal.role,
        address=ctx.address,
        session_id=ctx.session.id,
        session_token=ctx.session.session_token,
    )
