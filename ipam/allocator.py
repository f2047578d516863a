"""Lowest-free-address allocation within a pool."""

from __future__ import annotations

import ipaddress
import logging
from typing import Optional

from .errors import NotFound, OwnerMismatch, PoolExhausted
from .ledger import LeaseLedger
from .models import Lease, OwnerKey, Pool
from .store import LeaseSet, Mutation, PoolStore

logger = logging.getLogger(__name__)


def _first_free(pool: Pool, held: set[int]) -> Optional[int]:
    """Lowest address in the pool window that is neither excluded nor held."""
    low, high = pool.bounds
    intervals = pool.excluded_intervals()
    candidate = low
    idx = 0
    while candidate <= high:
        # intervals are sorted and merged, so skip past any we have left behind
        while idx < len(intervals) and intervals[idx].end < candidate:
            idx += 1
        if idx < len(intervals) and candidate in intervals[idx]:
            candidate = intervals[idx].end + 1
            continue
        if candidate not in held:
            return candidate
        candidate += 1
    return None


class Allocator:
    """Reserves and releases addresses. The only writer of the Pool Store."""

    def __init__(self, store: PoolStore, ledger: LeaseLedger | None = None):
        self.store = store
        self.ledger = ledger or LeaseLedger(store)

    def reserve(self, pool_name: str, owner: OwnerKey) -> Lease:
        """Bind the lowest free address to ``owner``.

        Scan, verification and commit all happen under the pool lock. If the
        owner already holds a lease (a concurrent duplicate ADD won), that
        lease is returned instead of allocating a second address.
        """
        with self.store.lock(pool_name):
            pool = self.store.load_pool(pool_name)
            state = self.store.snapshot(pool_name)

            existing = state.live_by_owner().get(owner)
            if existing is not None:
                logger.debug(f"Owner {owner} already holds {existing.address} in {pool_name}")
                return existing

            value = self._pick(pool, state)
            if value is None:
                raise PoolExhausted(f"Pool {pool_name} ({pool.cidr}) has no free address")

            lease = Lease(
                pool=pool_name,
                address=str(pool.address(value)),
                owner=owner,
                sequence=state.next_sequence,
            )
            self.store.commit(pool_name, Mutation.add(lease))

        logger.info(f"Reserved {lease.address} for {owner} in pool {pool_name} seq={lease.sequence}")
        return lease

    def reaffirm(self, pool_name: str, owner: OwnerKey) -> Optional[Lease]:
        self.store.load_pool(pool_name)
        return self.ledger.find_by_owner(pool_name, owner)

    def release(self, pool_name: str, address: str, owner: OwnerKey) -> None:
        with self.store.lock(pool_name):
            self.store.load_pool(pool_name)
            lease = self.ledger.find_by_address(pool_name, address)
            if lease is None:
                raise NotFound(f"No live lease for {address} in pool {pool_name}")
            if lease.owner != owner:
                raise OwnerMismatch(
                    f"{address} in pool {pool_name} is held by {lease.owner}, not {owner}"
                )
            self.ledger.mark_released(pool_name, address)

    def free_count(self, pool_name: str) -> int:
        pool = self.store.load_pool(pool_name)
        held = sum(1 for l in self.store.get_leases(pool_name)
                   if pool.is_allocatable(l.address))
        return pool.capacity() - held

    def usage(self, pool_name: str) -> dict[str, int]:
        pool = self.store.load_pool(pool_name)
        allocated = len(self.store.get_leases(pool_name))
        return {
            "capacity": pool.capacity(),
            "allocated": allocated,
            "free": self.free_count(pool_name),
        }

    def _pick(self, pool: Pool, state: LeaseSet) -> Optional[int]:
        held = set()
        for address in state.live_by_address():
            if pool.is_allocatable(address):
                held.add(int(ipaddress.ip_address(address)))
        return _first_free(pool, held)
