"""ADD / DEL / CHECK entry point for CNI-style callers."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from .allocator import Allocator
from .errors import BadRequest, IpamError, LeaseMismatch, NotFound, to_wire
from .models import Lease, OwnerKey

logger = logging.getLogger(__name__)

ADD = "ADD"
DEL = "DEL"
CHECK = "CHECK"
COMMANDS = (ADD, DEL, CHECK)

DEFAULT_CNI_VERSION = "1.0.0"


@dataclass(frozen=True)
class Request:
    command: str
    pool_name: str
    owner: OwnerKey
    reported_address: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Request":
        if not isinstance(data, dict):
            raise BadRequest("Request body must be a JSON object")

        command = str(data.get("command", "")).upper()
        if command not in COMMANDS:
            raise BadRequest(f"Unknown command: {data.get('command')!r}")

        pool_name = data.get("poolName")
        if not pool_name or not isinstance(pool_name, str):
            raise BadRequest("Missing poolName")

        owner_data = data.get("ownerKey")
        if not isinstance(owner_data, dict):
            raise BadRequest("Missing ownerKey")
        try:
            owner = OwnerKey.from_dict(owner_data)
        except ValueError as e:
            raise BadRequest(str(e)) from e

        reported = data.get("reportedAddress")
        if reported is not None:
            try:
                # Accept "10.0.0.2" or the CNI style "10.0.0.2/24"
                reported = str(ipaddress.ip_interface(reported).ip)
            except ValueError as e:
                raise BadRequest(f"Invalid reportedAddress: {reported!r}") from e

        return cls(command, pool_name, owner, reported)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "command": self.command,
            "poolName": self.pool_name,
            "ownerKey": self.owner.to_dict(),
        }
        if self.reported_address is not None:
            data["reportedAddress"] = self.reported_address
        return data


@dataclass(frozen=True)
class AddResult:
    address: str
    prefix_length: int
    gateway: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "prefixLength": self.prefix_length,
            "gateway": self.gateway,
        }

    def to_cni_result(self, cni_version: str = DEFAULT_CNI_VERSION) -> dict[str, Any]:
        """Result in the shape CNI IPAM plugins print on ADD."""
        ip: dict[str, Any] = {"address": f"{self.address}/{self.prefix_length}"}
        if self.gateway:
            ip["gateway"] = self.gateway
        return {"cniVersion": cni_version, "ips": [ip]}


class RequestHandler:
    """Translates requests into Allocator / Ledger calls."""

    def __init__(self, allocator: Allocator):
        self.allocator = allocator
        self.ledger = allocator.ledger

    def add(self, pool_name: str, owner: OwnerKey) -> AddResult:
        lease = self.allocator.reaffirm(pool_name, owner)
        if lease is None:
            lease = self.allocator.reserve(pool_name, owner)
        else:
            logger.debug(f"ADD {owner} in {pool_name}: reaffirmed {lease.address}")
        return self._result(pool_name, lease)

    def delete(self, pool_name: str, owner: OwnerKey) -> None:
        # lookup and release under one hold of the pool lock
        with self.allocator.store.lock(pool_name):
            lease = self.allocator.reaffirm(pool_name, owner)
            if lease is None:
                logger.debug(f"DEL {owner} in {pool_name}: no lease, nothing to do")
                return
            self.allocator.release(pool_name, lease.address, owner)

    def check(self, pool_name: str, owner: OwnerKey, reported_address: Optional[str] = None) -> None:
        lease = self.allocator.reaffirm(pool_name, owner)
        if reported_address is None:
            if lease is None:
                raise NotFound(f"No lease for {owner} in pool {pool_name}")
            return
        if lease is None:
            raise LeaseMismatch(
                f"{owner} reports {reported_address} but holds no lease in {pool_name}"
            )
        if lease.address != reported_address:
            raise LeaseMismatch(
                f"{owner} reports {reported_address} but lease in {pool_name} is {lease.address}"
            )

    def handle(self, request: Union[Request, dict]) -> dict[str, Any]:
        """Run one request and render the response; IpamErrors become error dicts."""
        try:
            if not isinstance(request, Request):
                request = Request.from_dict(request)
            if request.command == ADD:
                return self.add(request.pool_name, request.owner).to_dict()
            if request.command == DEL:
                self.delete(request.pool_name, request.owner)
            else:
                self.check(request.pool_name, request.owner, request.reported_address)
            return {}
        except IpamError as e:
            log = logger.warning if e.retryable else logger.info
            log(f"Request failed with {e.kind}: {e.message}")
            return to_wire(e)

    def _result(self, pool_name: str, lease: Lease) -> AddResult:
        pool = self.allocator.store.load_pool(pool_name)
        return AddResult(lease.address, pool.prefix_length, pool.gateway)
