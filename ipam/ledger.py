"""Owner-keyed view over a pool's leases.

Released leases are tombstoned rather than deleted, so a late duplicate
DEL finds the tombstone and does nothing.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Callable, Optional

from .errors import NotFound
from .models import Lease, OwnerKey
from .store import Mutation, PoolStore

logger = logging.getLogger(__name__)


class LeaseLedger:

    def __init__(self, store: PoolStore):
        self._store = store

    def find_by_owner(self, pool: str, owner: OwnerKey) -> Optional[Lease]:
        return self._store.snapshot(pool).live_by_owner().get(owner)

    def find_by_address(self, pool: str, address: str) -> Optional[Lease]:
        return self._store.snapshot(pool).live_by_address().get(address)

    def history(self, pool: str, address: str) -> list[Lease]:
        """All lease records for an address, oldest first."""
        leases = [l for l in self._store.get_leases(pool, include_released=True)
                  if l.address == address]
        return sorted(leases, key=lambda l: l.sequence)

    def mark_released(self, pool: str, address: str) -> bool:
        """Tombstone the live lease on ``address``.

        Returns False when the address only has tombstones (already released).
        Raises NotFound when the address was never leased in this pool.
        """
        with self._store.lock(pool):
            lease = self.find_by_address(pool, address)
            if lease is None:
                if self.history(pool, address):
                    logger.debug(f"Lease on {address} in pool {pool} already released")
                    return False
                raise NotFound(f"No lease for {address} in pool {pool}")
            self._store.commit(pool, Mutation.release(
                replace(lease, released=True, released_at=time.time())
            ))
        logger.info(f"Released {address} (owner {lease.owner}) in pool {pool}")
        return True

    def sweep(self, pool: str, is_owner_alive: Callable[[OwnerKey], bool]) -> int:
        """Release every live lease whose owner is no longer alive."""
        released = 0
        with self._store.lock(pool):
            for lease in sorted(self._store.get_leases(pool), key=lambda l: l.sequence):
                if is_owner_alive(lease.owner):
                    continue
                if self.mark_released(pool, lease.address):
                    released += 1
        if released:
            logger.info(f"Sweep released {released} orphaned leases in pool {pool}")
        return released
