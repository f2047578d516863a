"""Host-local IP address management for CNI plugin chains."""

from .allocator import Allocator
from .errors import (
    BadRequest,
    Conflict,
    IpamError,
    LeaseMismatch,
    NotFound,
    OwnerMismatch,
    PoolExhausted,
    StoreUnavailable,
)
from .handler import AddResult, Request, RequestHandler
from .ledger import LeaseLedger
from .models import Lease, OwnerKey, Pool
from .store import Mutation, PoolStore

__all__ = [
    "AddResult",
    "Allocator",
    "BadRequest",
    "Conflict",
    "IpamError",
    "Lease",
    "LeaseLedger",
    "LeaseMismatch",
    "Mutation",
    "NotFound",
    "OwnerKey",
    "OwnerMismatch",
    "Pool",
    "PoolExhausted",
    "PoolStore",
    "Request",
    "RequestHandler",
    "StoreUnavailable",
]
