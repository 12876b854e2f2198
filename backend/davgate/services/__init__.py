# davgate Services
from davgate.services.block import BlockService
from davgate.services.errors import DavGateError, NotFoundError, StoreError
from davgate.services.expiry_sweep import ExpirySweepService
from davgate.services.principal import Principal, PrincipalService
from davgate.services.principal_cache import PrincipalCache
from davgate.services.session import Admission, AdmissionReason, SessionService

__all__ = [
    "Admission",
    "AdmissionReason",
    "BlockService",
    "DavGateError",
    "ExpirySweepService",
    "NotFoundError",
    "Principal",
    "PrincipalCache",
    "PrincipalService",
    "SessionService",
    "StoreError",
]
