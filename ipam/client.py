from typing import Dict, Iterable, Optional

import requests

from .errors import StoreUnavailable, error_from_dict
from .handler import AddResult
from .models import OwnerKey


class IpamClient:
    """Talks to an IPAM server on behalf of a CNI runtime."""

    def __init__(self, base_url: str, timeout: float = 5):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def add(self, pool_name: str, owner: OwnerKey) -> AddResult:
        data = self._cni("ADD", pool_name, owner)
        return AddResult(data["address"], int(data["prefixLength"]), data.get("gateway"))

    def delete(self, pool_name: str, owner: OwnerKey) -> None:
        self._cni("DEL", pool_name, owner)

    def check(self, pool_name: str, owner: OwnerKey, reported_address: Optional[str] = None) -> None:
        self._cni("CHECK", pool_name, owner, reported_address)

    def sweep(self, pool_name: str, live_owners: Iterable[OwnerKey]) -> int:
        payload = {"liveOwners": [o.to_dict() for o in live_owners]}
        data = self._post(f"/pools/{pool_name}/sweep", payload)
        return int(data["released"])

    def pool_usage(self, pool_name: str) -> Dict[str, int]:
        try:
            resp = requests.get(f"{self.base_url}/pools/{pool_name}", timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise StoreUnavailable(f"IPAM server unreachable: {e}") from e
        return self._decode(resp)["usage"]

    def _cni(self, command, pool_name, owner, reported_address=None):
        payload = {
            "command": command,
            "poolName": pool_name,
            "ownerKey": owner.to_dict(),
        }
        if reported_address is not None:
            payload["reportedAddress"] = reported_address
        return self._post("/cni", payload)

    def _post(self, path, payload):
        try:
            resp = requests.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise StoreUnavailable(f"IPAM server unreachable: {e}") from e
        return self._decode(resp)

    def _decode(self, resp):
        try:
            data = resp.json()
        except ValueError:
            data = None
        if resp.status_code >= 400:
            if isinstance(data, dict) and "errorKind" in data:
                raise error_from_dict(data)
            raise StoreUnavailable(f"IPAM server error {resp.status_code}: {resp.text}")
        return data or {}
