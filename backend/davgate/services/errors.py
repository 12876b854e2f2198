"""Error taxonomy shared by the block registry and session manager.

Policy denials (blocked address, session limit, force-closed session) are
ordinary return values and never raised.
"""


class DavGateError(Exception):
    """Base error for davgate services."""

    pass


class StoreError(DavGateError):
    """The persistent store failed; callers must fail closed."""

    pass


class NotFoundError(DavGateError):
    """An administrative operation referenced a missing row."""

    pass


class ConflictError(DavGateError):
    """A write collided with an existing row's unique key."""

    pass
