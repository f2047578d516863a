import pytest

from ipam.allocator import Allocator
from ipam.handler import RequestHandler
from ipam.ledger import LeaseLedger
from ipam.models import OwnerKey, Pool
from ipam.store import PoolStore


@pytest.fixture
def store(tmp_path):
    store = PoolStore(str(tmp_path / "state"))
    store.define_pool(Pool("net1", "10.0.0.0/24", gateway="10.0.0.1"))
    store.define_pool(Pool("tiny", "10.0.0.0/30", gateway="10.0.0.1"))
    return store


@pytest.fixture
def allocator(store):
    return Allocator(store, LeaseLedger(store))


@pytest.fixture
def handler(allocator):
    return RequestHandler(allocator)


def owner(n, ifname="eth0"):
    return OwnerKey(f"container-{n}", ifname)
