# davgate Models
from davgate.models.base import BaseModel
from davgate.models.dav_block import DavBlock
from davgate.models.dav_session import DavSession
from davgate.models.dav_user import DavUser, PrincipalRole

__all__ = [
    "BaseModel",
    "DavBlock",
    "DavSession",
    "DavUser",
    "PrincipalRole",
]
