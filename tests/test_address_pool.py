"""Tests for the Allocator."""
import threading

import pytest

from ipam.allocator import Allocator
from ipam.errors import NotFound, OwnerMismatch, PoolExhausted
from ipam.models import Pool
from ipam.store import PoolStore

from conftest import owner


class TestAllocator:

    def test_lowest_free_first(self, allocator):
        first = allocator.reserve("net1", owner(1))
        second = allocator.reserve("net1", owner(2))

        # .0 network, .1 gateway
        assert first.address == "10.0.0.2"
        assert second.address == "10.0.0.3"
        assert second.sequence == first.sequence + 1

    def test_freed_address_is_reused_first(self, allocator):
        allocator.reserve("net1", owner(1))
        allocator.reserve("net1", owner(2))
        allocator.reserve("net1", owner(3))
        allocator.release("net1", "10.0.0.3", owner(2))

        assert allocator.reserve("net1", owner(4)).address == "10.0.0.3"

    def test_exclusions_are_skipped(self, store, allocator):
        store.define_pool(Pool("ex", "10.1.0.0/29", gateway="10.1.0.1",
                               exclusions=["10.1.0.2-10.1.0.4"]))
        assert allocator.reserve("ex", owner(1)).address == "10.1.0.5"
        assert allocator.reserve("ex", owner(2)).address == "10.1.0.6"
        with pytest.raises(PoolExhausted):
            allocator.reserve("ex", owner(3))

    def test_pool_exhaustion(self, allocator):
        # 10.0.0.0/30 with gateway .1 leaves only .2
        lease = allocator.reserve("tiny", owner(1))
        assert lease.address == "10.0.0.2"

        with pytest.raises(PoolExhausted, match="no free address"):
            allocator.reserve("tiny", owner(2))

    def test_same_owner_gets_existing_lease(self, allocator):
        first = allocator.reserve("net1", owner(1))
        again = allocator.reserve("net1", owner(1))
        assert again == first
        assert len(allocator.store.list_leases("net1")) == 1

    def test_same_container_different_interface(self, allocator):
        a = allocator.reserve("net1", owner(1, "eth0"))
        b = allocator.reserve("net1", owner(1, "eth1"))
        assert a.address != b.address

    def test_reaffirm(self, allocator):
        assert allocator.reaffirm("net1", owner(1)) is None
        lease = allocator.reserve("net1", owner(1))
        assert allocator.reaffirm("net1", owner(1)) == lease

    def test_unknown_pool(self, allocator):
        with pytest.raises(NotFound):
            allocator.reserve("nope", owner(1))
        with pytest.raises(NotFound):
            allocator.reaffirm("nope", owner(1))

    def test_release_owner_mismatch_keeps_lease(self, allocator):
        lease = allocator.reserve("net1", owner(1))

        with pytest.raises(OwnerMismatch):
            allocator.release("net1", lease.address, owner(2))

        assert allocator.reaffirm("net1", owner(1)) == lease

    def test_release_unknown_address(self, allocator):
        with pytest.raises(NotFound):
            allocator.release("net1", "10.0.0.77", owner(1))

    def test_free_count_round_trip(self, allocator):
        before = allocator.free_count("net1")
        lease = allocator.reserve("net1", owner(1))
        assert allocator.free_count("net1") == before - 1
        allocator.release("net1", lease.address, owner(1))
        assert allocator.free_count("net1") == before

    def test_usage(self, allocator):
        allocator.reserve("tiny", owner(1))
        assert allocator.usage("tiny") == {"capacity": 1, "allocated": 1, "free": 0}

    def test_ipv6_allocation(self, store, allocator):
        store.define_pool(Pool("v6", "fd00::/64", gateway="fd00::1"))
        assert allocator.reserve("v6", owner(1)).address == "fd00::2"

    def test_point_to_point_pools(self, store, allocator):
        store.define_pool(Pool("p2p", "192.168.9.0/31"))
        store.define_pool(Pool("host", "192.168.9.9/32"))

        assert allocator.reserve("p2p", owner(1)).address == "192.168.9.0"
        assert allocator.reserve("p2p", owner(2)).address == "192.168.9.1"
        with pytest.raises(PoolExhausted):
            allocator.reserve("p2p", owner(3))

        assert allocator.reserve("host", owner(1)).address == "192.168.9.9"
        assert allocator.usage("host") == {"capacity": 1, "allocated": 1, "free": 0}


class TestConcurrency:

    def test_parallel_reserves_get_distinct_addresses(self, store):
        results = []
        errors = []
        lock = threading.Lock()

        def worker(n):
            # separate store instances exercise the file lock, not just the thread lock
            alloc = Allocator(PoolStore(store.state_dir))
            try:
                lease = alloc.reserve("net1", owner(n))
                with lock:
                    results.append(lease.address)
            except Exception as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(30)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 30
        assert len(set(results)) == 30
        assert len(store.list_leases("net1")) == 30

    def test_racing_exhaustion_has_one_winner(self, store):
        outcomes = []
        lock = threading.Lock()

        def worker(n):
            alloc = Allocator(PoolStore(store.state_dir))
            try:
                alloc.reserve("tiny", owner(n))
                result = "ok"
            except PoolExhausted:
                result = "exhausted"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["exhausted", "ok"]

    def test_duplicate_owner_race_yields_one_lease(self, store):
        addresses = []
        lock = threading.Lock()

        def worker():
            alloc = Allocator(PoolStore(store.state_dir))
            lease = alloc.reserve("net1", owner(1))
            with lock:
                addresses.append(lease.address)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(addresses)) == 1
        assert len(store.list_leases("net1")) == 1
