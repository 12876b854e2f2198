"""Principal service - lookup, authentication and policy for DAV principals."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from davgate.core.clock import Clock, utcnow
from davgate.models.dav_user import DavUser, PrincipalRole
from davgate.services.errors import ConflictError, NotFoundError, StoreError
from davgate.services.principal_cache import PrincipalCache

logger = logging.getLogger(__name__)

ph = PasswordHasher(
    time_cost=3,
    memory_cost=65536,
    parallelism=4,
    hash_len=32,
    salt_len=16,
)

# Hash of a throwaway secret, verified against when the username is unknown
_DUMMY_HASH = ph.hash("davgate-dummy-secret")

_UPDATABLE_FIELDS = frozenset({"is_active", "can_read", "max_sessions", "expires_at"})


class AuthError(Exception):
    """Base authentication error."""

    pass


class InvalidCredentialsError(AuthError):
    """Invalid username or secret."""

    pass


class PrincipalInactiveError(AuthError):
    """Principal account is deactivated."""

    pass


class PrincipalExpiredError(AuthError):
    """Principal account has passed its expiry time."""

    pass


@dataclass(frozen=True)
class Principal:
    """Immutable snapshot of a DavUser, safe to cache across requests."""

    id: UUID
    username: str
    role: str
    is_active: bool
    can_read: bool
    max_sessions: int
    bind_address: str | None
    expires_at: datetime | None
    password_hash: str

    @classmethod
    def from_user(cls, user: DavUser) -> "Principal":
        return cls(
            id=user.id,
            username=user.username,
            role=user.role,
            is_active=user.is_active,
            can_read=user.can_read,
            max_sessions=user.max_sessions,
            bind_address=user.bind_address,
            expires_at=user.expires_at,
            password_hash=user.password_hash,
        )

    @property
    def is_admin(self) -> bool:
        return self.role == PrincipalRole.ADMIN

    @property
    def is_guest(self) -> bool:
        return self.role == PrincipalRole.GUEST

    def is_expired(self, now: datetime) -> bool:
        return (
            self.expires_at is not None
            and now > self.expires_at
            and not self.is_admin
            and not self.is_guest
        )


def hash_secret(secret: str) -> str:
    """Hash a secret using Argon2id."""
    return ph.hash(secret)


def verify_secret(secret: str, secret_hash: str) -> bool:
    """Verify a secret against its hash using constant-time comparison."""
    try:
        ph.verify(secret_hash, secret)
        return True
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return False


class PrincipalService:
    """Service for principal lookups and writes.

    Reads go through the PrincipalCache; every write invalidates it.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: PrincipalCache | None = None,
        now: Clock = utcnow,
    ):
        self.db = db
        self.cache = cache or PrincipalCache.get_instance()
        self.now = now

    async def _load_by_name(self, username: str) -> DavUser | None:
        result = await self.db.execute(select(DavUser).where(DavUser.username == username))
        return result.scalar_one_or_none()

    async def _load_by_role(self, role: PrincipalRole) -> DavUser | None:
        result = await self.db.execute(
            select(DavUser).where(DavUser.role == role.value).order_by(DavUser.created_at).limit(1)
        )
        return result.scalar_one_or_none()

    async def _get_user(self, user_id: UUID) -> DavUser:
        user = await self.db.get(DavUser, user_id)
        if user is None:
            raise NotFoundError(f"Principal {user_id} not found")
        return user

    async def _drop_expired(self, principal: Principal) -> None:
        logger.info(f"Principal {principal.username} expired, removing")
        self.cache.invalidate(principal.username, principal.role)
        await self.db.execute(delete(DavUser).where(DavUser.id == principal.id))
        await self.db.flush()

    async def get_by_name(self, username: str) -> Principal | None:
        """Get a principal by username.

        An expired principal is deleted and PrincipalExpiredError raised.
        """
        if not username:
            return None
        principal = self.cache.get(username)
        if principal is None:
            user = await self._load_by_name(username)
            if user is None:
                return None
            principal = Principal.from_user(user)
            self.cache.set(principal)
        if principal.is_expired(self.now()):
            await self._drop_expired(principal)
            raise PrincipalExpiredError(f"Principal {username} has expired")
        return principal

    async def get_admin(self) -> Principal | None:
        if self.cache.admin is None:
            user = await self._load_by_role(PrincipalRole.ADMIN)
            if user is None:
                return None
            self.cache.admin = Principal.from_user(user)
        return self.cache.admin

    async def get_guest(self) -> Principal | None:
        if self.cache.guest is None:
            user = await self._load_by_role(PrincipalRole.GUEST)
            if user is None:
                return None
            self.cache.guest = Principal.from_user(user)
        return self.cache.guest

    async def authenticate(self, username: str, secret: str) -> Principal:
        """Authenticate a principal by username and secret.

        Raises InvalidCredentialsError for both "unknown user" and
        "wrong secret" to prevent user enumeration.
        """
        principal = await self.get_by_name(username)

        if principal is None:
            verify_secret(secret, _DUMMY_HASH)
            raise InvalidCredentialsError("Invalid username or password")

        if not verify_secret(secret, principal.password_hash):
            raise InvalidCredentialsError("Invalid username or password")

        if not principal.is_active:
            raise PrincipalInactiveError("Principal account is deactivated")

        return principal

    async def create_principal(
        self,
        username: str,
        secret: str,
        role: PrincipalRole = PrincipalRole.GENERAL,
        max_sessions: int = 0,
        can_read: bool = True,
        expires_at: datetime | None = None,
    ) -> Principal:
        user = DavUser(
            username=username,
            password_hash=hash_secret(secret),
            role=role.value,
            max_sessions=max_sessions,
            can_read=can_read,
            expires_at=expires_at,
        )
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise ConflictError(f"Principal '{username}' already exists") from e
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create principal {username}: {e}") from e
        self.cache.invalidate(username, role.value)
        logger.info(f"Created principal {username} (role={role.value})")
        return Principal.from_user(user)

    async def update_principal(self, user_id: UUID, **changes: Any) -> Principal:
        """Apply policy changes (is_active, can_read, max_sessions, expires_at)."""
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        user = await self._get_user(user_id)
        for field, value in changes.items():
            setattr(user, field, value)
        await self._flush(user)
        logger.info(f"Updated principal {user.username}: {sorted(changes)}")
        return Principal.from_user(user)

    async def bind_address(self, user_id: UUID, address: str) -> Principal:
        user = await self._get_user(user_id)
        user.bind_address = address
        await self._flush(user)
        logger.info(f"Bound principal {user.username} to {address}")
        return Principal.from_user(user)

    async def clear_bind_address(self, user_id: UUID) -> Principal:
        user = await self._get_user(user_id)
        user.bind_address = None
        await self._flush(user)
        logger.info(f"Cleared address binding for principal {user.username}")
        return Principal.from_user(user)

    async def _flush(self, user: DavUser) -> None:
        self.cache.invalidate(user.username, user.role)
        try:
            await self.db.flush()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update principal {user.username}: {e}") from e

    async def cleanup_expired(self) -> int:
        """Delete expired general principals. Returns count removed."""
        result = await self.db.execute(
            delete(DavUser)
            .where(
                DavUser.expires_at.is_not(None),
                DavUser.expires_at < self.now(),
                DavUser.role == PrincipalRole.GENERAL.value,
            )
            .returning(DavUser.username)
        )
        removed = list(result.scalars().all())
        for username in removed:
            self.cache.invalidate(username)
        if removed:
            logger.info(f"Removed {len(removed)} expired principals")
        return len(removed)
