# davgate Pydantic Schemas
from davgate.schemas.block import (
    BlockCreate,
    BlockListResponse,
    BlockResponse,
    BlockUpdate,
)
from davgate.schemas.principal import (
    BindRequest,
    PrincipalCreate,
    PrincipalResponse,
    PrincipalUpdate,
)
from davgate.schemas.session import DavSessionInfo, SessionListResponse, SessionResponse

__all__ = [
    "BindRequest",
    "BlockCreate",
    "BlockListResponse",
    "BlockResponse",
    "BlockUpdate",
    "DavSessionInfo",
    "PrincipalCreate",
    "PrincipalResponse",
    "PrincipalUpdate",
    "SessionListResponse",
    "SessionResponse",
]
