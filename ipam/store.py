"""JSON-file backed Pool Store.

Layout under the state directory::

    pools/<name>.json    pool definition
    leases/<name>.json   {"pool", "nextSequence", "leases": [...]}
    locks/<name>.lock    advisory lock file

Writes go to a temp file in the same directory, are fsync'd and then
renamed over the target, so a commit is either fully on disk or not at all.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Iterator, Optional

from .errors import Conflict, NotFound, StoreUnavailable
from .models import Lease, OwnerKey, Pool

logger = logging.getLogger(__name__)

POOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{1,64}$")

ADD = "add"
RELEASE = "release"
PURGE = "purge"


def validate_pool_name(name: str) -> str:
    if not name or not POOL_NAME_PATTERN.match(name) or name.startswith("."):
        raise NotFound(f"Invalid pool name: {name!r}")
    return name


@dataclass(frozen=True)
class Mutation:
    """A single-lease change applied by ``PoolStore.commit``."""
    kind: str
    lease: Lease

    @classmethod
    def add(cls, lease: Lease) -> "Mutation":
        return cls(ADD, lease)

    @classmethod
    def release(cls, lease: Lease) -> "Mutation":
        return cls(RELEASE, lease)

    @classmethod
    def purge(cls, lease: Lease) -> "Mutation":
        return cls(PURGE, lease)


@dataclass
class LeaseSet:
    """Persisted lease state of one pool."""
    pool: str
    next_sequence: int = 1
    leases: list[Lease] = field(default_factory=list)

    def live(self) -> list[Lease]:
        return [l for l in self.leases if l.live]

    def live_by_address(self) -> dict[str, Lease]:
        return {l.address: l for l in self.leases if l.live}

    def live_by_owner(self) -> dict[OwnerKey, Lease]:
        return {l.owner: l for l in self.leases if l.live}

    def to_dict(self) -> dict:
        return {
            "pool": self.pool,
            "nextSequence": self.next_sequence,
            "leases": [l.to_dict() for l in self.leases],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LeaseSet":
        return cls(
            pool=data["pool"],
            next_sequence=int(data.get("nextSequence", 1)),
            leases=[Lease.from_dict(l) for l in data.get("leases", [])],
        )


class _PoolLock:
    """Re-entrant per-pool lock: thread lock plus flock on a lock file."""

    def __init__(self, path: str):
        self._path = path
        self._rlock = threading.RLock()
        self._depth = 0
        self._fd: Optional[int] = None

    def acquire(self):
        self._rlock.acquire()
        if self._depth == 0:
            try:
                fd = os.open(self._path, os.O_RDWR | os.O_CREAT, 0o600)
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                except OSError:
                    os.close(fd)
                    raise
            except OSError as e:
                self._rlock.release()
                raise StoreUnavailable(f"Cannot lock {self._path}: {e}") from e
            self._fd = fd
        self._depth += 1

    def release(self):
        self._depth -= 1
        if self._depth == 0 and self._fd is not None:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                os.close(self._fd)
                self._fd = None
        self._rlock.release()


class PoolStore:
    """Durable pool definitions and lease sets, one pair of files per pool."""

    def __init__(self, state_dir: str):
        self.state_dir = state_dir
        self._pools_dir = os.path.join(state_dir, "pools")
        self._leases_dir = os.path.join(state_dir, "leases")
        self._locks_dir = os.path.join(state_dir, "locks")
        self._locks: dict[str, _PoolLock] = {}
        self._locks_guard = threading.Lock()
        try:
            for path in (self._pools_dir, self._leases_dir, self._locks_dir):
                os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise StoreUnavailable(f"Cannot create state dir {state_dir}: {e}") from e

    # --- Locking ---

    @contextmanager
    def lock(self, name: str) -> Iterator[None]:
        """Hold the pool's exclusive lock (re-entrant within a thread)."""
        validate_pool_name(name)
        with self._locks_guard:
            pool_lock = self._locks.get(name)
            if pool_lock is None:
                pool_lock = _PoolLock(os.path.join(self._locks_dir, f"{name}.lock"))
                self._locks[name] = pool_lock
        pool_lock.acquire()
        try:
            yield
        finally:
            pool_lock.release()

    # --- Pools ---

    def define_pool(self, pool: Pool) -> None:
        """Create or replace a pool definition. Existing leases are kept."""
        validate_pool_name(pool.name)
        with self.lock(pool.name):
            self._write_json(self._pool_path(pool.name), pool.to_dict())
            if not os.path.exists(self._lease_path(pool.name)):
                self._write_json(self._lease_path(pool.name), LeaseSet(pool.name).to_dict())
        logger.info(f"Defined pool {pool.name} ({pool.cidr}, gateway={pool.gateway})")

    def load_pool(self, name: str) -> Pool:
        validate_pool_name(name)
        data = self._read_json(self._pool_path(name))
        if data is None:
            raise NotFound(f"Unknown pool: {name}")
        try:
            return Pool.from_dict(data)
        except (KeyError, ValueError) as e:
            raise StoreUnavailable(f"Corrupt pool record {name}: {e}") from e

    def list_pools(self) -> list[str]:
        try:
            names = os.listdir(self._pools_dir)
        except OSError as e:
            raise StoreUnavailable(f"Cannot list pools: {e}") from e
        return sorted(n[:-5] for n in names if n.endswith(".json") and not n.startswith("."))

    # --- Leases ---

    def snapshot(self, name: str) -> LeaseSet:
        """Current lease state, re-read from disk."""
        validate_pool_name(name)
        data = self._read_json(self._lease_path(name))
        if data is None:
            if not os.path.exists(self._pool_path(name)):
                raise NotFound(f"Unknown pool: {name}")
            return LeaseSet(name)
        try:
            return LeaseSet.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailable(f"Corrupt lease record {name}: {e}") from e

    def list_leases(self, name: str, include_released: bool = False) -> set[Lease]:
        """Snapshot of the pool's leases, live only unless asked otherwise."""
        return set(self.get_leases(name, include_released))

    def get_leases(self, name: str, include_released: bool = False) -> list[Lease]:
        leases = self.snapshot(name).leases
        return leases if include_released else [l for l in leases if l.live]

    def commit(self, name: str, mutation: Mutation) -> None:
        """Apply one mutation atomically and durably, or raise Conflict."""
        with self.lock(name):
            state = self.snapshot(name)
            self._apply(state, mutation)
            self._write_json(self._lease_path(name), state.to_dict())
        logger.debug(
            f"Committed {mutation.kind} {mutation.lease.address} "
            f"seq={mutation.lease.sequence} in pool {name}"
        )

    def purge_released(self, name: str, older_than_seconds: float) -> int:
        """Drop tombstones released more than ``older_than_seconds`` ago."""
        cutoff = time.time() - older_than_seconds
        purged = 0
        with self.lock(name):
            for lease in self.get_leases(name, include_released=True):
                if lease.released and (lease.released_at or 0) <= cutoff:
                    self.commit(name, Mutation.purge(lease))
                    purged += 1
        if purged:
            logger.info(f"Purged {purged} released leases from pool {name}")
        return purged

    def _apply(self, state: LeaseSet, mutation: Mutation) -> None:
        lease = mutation.lease
        if lease.pool != state.pool:
            raise Conflict(f"Lease for pool {lease.pool} committed to {state.pool}")

        if mutation.kind == ADD:
            if lease.sequence != state.next_sequence:
                raise Conflict(
                    f"Stale sequence {lease.sequence} (next is {state.next_sequence})"
                )
            by_address = state.live_by_address()
            if lease.address in by_address:
                raise Conflict(f"Address {lease.address} is already leased")
            if lease.owner in state.live_by_owner():
                raise Conflict(f"Owner {lease.owner} already holds a lease")
            state.leases.append(lease)
            state.next_sequence += 1
        elif mutation.kind == RELEASE:
            for i, current in enumerate(state.leases):
                if current.sequence == lease.sequence and current.live:
                    state.leases[i] = replace(
                        current, released=True, released_at=lease.released_at or time.time()
                    )
                    return
            raise Conflict(f"No live lease seq={lease.sequence} for {lease.address}")
        elif mutation.kind == PURGE:
            for i, current in enumerate(state.leases):
                if current.sequence == lease.sequence and current.released:
                    del state.leases[i]
                    return
            raise Conflict(f"No released lease seq={lease.sequence} to purge")
        else:
            raise ValueError(f"Unknown mutation kind: {mutation.kind}")

    # --- Files ---

    def _pool_path(self, name: str) -> str:
        return os.path.join(self._pools_dir, f"{name}.json")

    def _lease_path(self, name: str) -> str:
        return os.path.join(self._leases_dir, f"{name}.json")

    def _read_json(self, path: str) -> Optional[dict]:
        try:
            with open(path, "r") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise StoreUnavailable(f"Cannot read {path}: {e}") from e

    def _write_json(self, path: str, data: dict) -> None:
        directory = os.path.dirname(path)
        temp_file = None
        try:
            fd, temp_file = tempfile.mkstemp(
                dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_file, path)
            temp_file = None
            dir_fd = os.open(directory, os.O_RDONLY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError as e:
            raise StoreUnavailable(f"Cannot write {path}: {e}") from e
        finally:
            if temp_file is not None and os.path.exists(temp_file):
                os.remove(temp_file)
