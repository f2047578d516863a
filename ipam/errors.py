"""Error taxonomy for the IPAM component.

Every error carries a stable ``kind`` (the wire ``errorKind``) and a
``retryable`` flag so callers can tell "try again" apart from "needs an
operator".
"""

from __future__ import annotations

from typing import Any


class IpamError(Exception):
    kind = "IpamError"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {
            "errorKind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }


class NotFound(IpamError):
    """Unknown pool or lease."""
    kind = "NotFound"


class PoolExhausted(IpamError):
    """No eligible address left in the pool."""
    kind = "PoolExhausted"


class OwnerMismatch(IpamError):
    """Release attempted by an owner that does not hold the lease."""
    kind = "OwnerMismatch"


class LeaseMismatch(IpamError):
    """CHECK found a different address than the caller reports."""
    kind = "LeaseMismatch"


class StoreUnavailable(IpamError):
    """Durability layer unreachable or unreadable."""
    kind = "StoreUnavailable"
    retryable = True


class Conflict(IpamError):
    """A commit lost against the current persisted state."""
    kind = "Conflict"
    retryable = True


class BadRequest(IpamError):
    kind = "BadRequest"


_KINDS = {
    cls.kind: cls
    for cls in (NotFound, PoolExhausted, OwnerMismatch, LeaseMismatch,
                StoreUnavailable, Conflict, BadRequest)
}


def error_from_dict(data: dict[str, Any]) -> IpamError:
    """Rebuild a typed error from its wire form."""
    cls = _KINDS.get(data.get("errorKind"), IpamError)
    return cls(data.get("message") or "unknown error")


def to_wire(error: IpamError) -> dict[str, Any]:
    """Wire form of an error. A lost commit is reported as a retryable StoreUnavailable."""
    if isinstance(error, Conflict):
        return StoreUnavailable(f"Concurrent update, retry: {error.message}").to_dict()
    return error.to_dict()
