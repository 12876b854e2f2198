"""Principal cache - memoized principal lookups with explicit invalidation.

The admin and guest principals are looked up on every bearer-token and
anonymous request, so they get dedicated slots. Named principals are cached
for ``TTL_SECONDS`` so a change made by another process still propagates.

Every write to a principal must go through ``invalidate`` (PrincipalService
does this) so that a changed session limit, binding or deactivation takes
effect on the very next request handled by this process.
"""

import logging
import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from davgate.services.principal import Principal

logger = logging.getLogger(__name__)

TTL_SECONDS = 30


class PrincipalCache:
    _instance: "PrincipalCache | None" = None
    _instance_lock: threading.Lock = threading.Lock()

    def __init__(self, ttl_seconds: float = TTL_SECONDS):
        self._ttl = ttl_seconds
        self._lock = threading.Lock()
        self._by_name: dict[str, tuple["Principal", float]] = {}
        self._admin: "Principal | None" = None
        self._guest: "Principal | None" = None

    @classmethod
    def get_instance(cls) -> "PrincipalCache":
        """Get the process-wide cache (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def get(self, username: str) -> "Principal | None":
        with self._lock:
            entry = self._by_name.get(username)
            if entry is None:
                return None
            principal, loaded_at = entry
            if time.monotonic() - loaded_at >= self._ttl:
                del self._by_name[username]
                return None
            return principal

    def set(self, principal: "Principal") -> None:
        with self._lock:
            self._by_name[principal.username] = (principal, time.monotonic())

    @property
    def admin(self) -> "Principal | None":
        return self._admin

    @admin.setter
    def admin(self, principal: "Principal | None") -> None:
        self._admin = principal

    @property
    def guest(self) -> "Principal | None":
        return self._guest

    @guest.setter
    def guest(self, principal: "Principal | None") -> None:
        self._guest = principal

    def invalidate(self, username: str, role: str | None = None) -> None:
        """Drop everything cached for ``username``.

        The admin/guest slot is cleared when ``role`` names it, or when the
        slot currently holds that username.
        """
        from davgate.models.dav_user import PrincipalRole

        with self._lock:
            self._by_name.pop(username, None)
            if role == PrincipalRole.ADMIN or (self._admin and self._admin.username == username):
                self._admin = None
            if role == PrincipalRole.GUEST or (self._guest and self._guest.username == username):
                self._guest = None
        logger.debug(f"Principal cache invalidated for {username}")

    def clear(self) -> None:
        with self._lock:
            self._by_name.clear()
            self._admin = None
            self._guest = None
