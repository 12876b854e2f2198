# davgate API
from davgate.api.router import api_router

__all__ = ["api_router"]
