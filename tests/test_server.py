import pytest

from ipam.errors import Conflict, StoreUnavailable
from ipam.server import create_app


@pytest.fixture
def client(handler):
    app = create_app(handler)
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


def cni(command, n=1, pool="net1", **extra):
    body = {
        "command": command,
        "poolName": pool,
        "ownerKey": {"containerID": f"container-{n}", "interfaceName": "eth0"},
    }
    body.update(extra)
    return body


def test_add_del_cycle(client):
    res = client.post("/cni", json=cni("ADD"))
    assert res.status_code == 200
    assert res.json == {"address": "10.0.0.2", "prefixLength": 24, "gateway": "10.0.0.1"}

    res = client.post("/cni", json=cni("CHECK", reportedAddress="10.0.0.2"))
    assert res.status_code == 200
    assert res.json == {}

    res = client.post("/cni", json=cni("DEL"))
    assert res.status_code == 200
    assert res.json == {}


def test_error_status_codes(client):
    client.post("/cni", json=cni("ADD", pool="tiny"))

    res = client.post("/cni", json=cni("ADD", n=2, pool="tiny"))
    assert res.status_code == 409
    assert res.json["errorKind"] == "PoolExhausted"

    res = client.post("/cni", json=cni("ADD", pool="missing"))
    assert res.status_code == 404

    res = client.post("/cni", json=cni("CHECK", pool="tiny", reportedAddress="10.0.0.3"))
    assert res.status_code == 409
    assert res.json["errorKind"] == "LeaseMismatch"

    res = client.post("/cni", data="not json", content_type="text/plain")
    assert res.status_code == 400
    assert res.json["errorKind"] == "BadRequest"


def test_pool_info(client):
    client.post("/cni", json=cni("ADD"))
    res = client.get("/pools/net1")
    assert res.status_code == 200
    assert res.json["cidr"] == "10.0.0.0/24"
    assert res.json["usage"] == {"capacity": 253, "allocated": 1, "free": 252}
    assert [l["address"] for l in res.json["leases"]] == ["10.0.0.2"]

    assert client.get("/pools/missing").status_code == 404


def test_sweep(client):
    for n in range(3):
        client.post("/cni", json=cni("ADD", n=n))

    res = client.post("/pools/net1/sweep", json={
        "liveOwners": [{"containerID": "container-1", "interfaceName": "eth0"}]
    })
    assert res.status_code == 200
    assert res.json == {"released": 2}
    assert client.get("/pools/net1").json["usage"]["allocated"] == 1


def test_sweep_bad_payload(client):
    res = client.post("/pools/net1/sweep", json={"liveOwners": "everyone"})
    assert res.status_code == 400
    res = client.post("/pools/net1/sweep", json={"liveOwners": [{"containerID": "x"}]})
    assert res.status_code == 400


def test_store_unavailable_maps_to_503(client, handler, monkeypatch):
    def broken(name):
        raise StoreUnavailable("disk gone")

    monkeypatch.setattr(handler.allocator.store, "snapshot", broken)
    res = client.post("/cni", json=cni("ADD"))
    assert res.status_code == 503
    assert res.json["retryable"] is True


def test_conflict_maps_to_503(client, handler, monkeypatch):
    def lost(name, mutation):
        raise Conflict("Owner container-1/eth0 already holds a lease")

    monkeypatch.setattr(handler.allocator.store, "commit", lost)
    res = client.post("/cni", json=cni("ADD"))
    assert res.status_code == 503
    assert res.json["errorKind"] == "StoreUnavailable"
    assert res.json["retryable"] is True
