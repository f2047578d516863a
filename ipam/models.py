"""Pool, Lease and owner identity records."""

from __future__ import annotations

import ipaddress
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass(frozen=True)
class OwnerKey:
    """Container ID plus interface name."""
    container_id: str
    interface_name: str

    def __post_init__(self):
        if not isinstance(self.container_id, str) or not isinstance(self.interface_name, str):
            raise ValueError("containerID and interfaceName must be strings")
        if not self.container_id or not self.interface_name:
            raise ValueError("Owner key needs both containerID and interfaceName")

    @property
    def key(self) -> str:
        return f"{self.container_id}/{self.interface_name}"

    def to_dict(self) -> dict[str, str]:
        return {"containerID": self.container_id, "interfaceName": self.interface_name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OwnerKey":
        return cls(data.get("containerID", ""), data.get("interfaceName", ""))

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class Interval:
    """Inclusive integer range of addresses."""
    start: int
    end: int

    def __contains__(self, value: int) -> bool:
        return self.start <= value <= self.end


def _parse_exclusion(network: IPNetwork, entry: str) -> Interval:
    entry = entry.strip()
    if "-" in entry:
        first, last = (ipaddress.ip_address(p.strip()) for p in entry.split("-", 1))
    elif "/" in entry:
        sub = ipaddress.ip_network(entry, strict=False)
        first, last = sub.network_address, sub.broadcast_address
    else:
        first = last = ipaddress.ip_address(entry)

    if first not in network or last not in network:
        raise ValueError(f"Exclusion {entry} is outside {network}")
    if int(first) > int(last):
        raise ValueError(f"Exclusion {entry} has start after end")
    return Interval(int(first), int(last))


def _host_bounds(network: IPNetwork) -> tuple[int, int]:
    """First and last usable host, following ``ip_network.hosts()`` rules."""
    first, last = int(network.network_address), int(network.broadcast_address)
    if network.version == 4:
        if network.prefixlen >= 31:
            return first, last
        return first + 1, last - 1
    if network.prefixlen == 128:
        return first, last
    # IPv6 skips the subnet-router anycast address only
    return first + 1, last


@dataclass
class Pool:
    """A named address range with its exclusions."""
    name: str
    cidr: str
    gateway: Optional[str] = None
    exclusions: list[str] = field(default_factory=list)
    range_start: Optional[str] = None
    range_end: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Pool name must not be empty")
        try:
            self._network = ipaddress.ip_network(self.cidr, strict=False)
        except ValueError as e:
            raise ValueError(f"Pool {self.name}: invalid CIDR {self.cidr}") from e
        self.cidr = self._network.with_prefixlen

        if self.gateway is not None:
            gw = ipaddress.ip_address(self.gateway)
            if gw not in self._network:
                raise ValueError(f"Pool {self.name}: gateway {gw} is outside {self.cidr}")
            self.gateway = str(gw)

        self._intervals = [_parse_exclusion(self._network, e) for e in self.exclusions]
        if self.gateway is not None:
            gw = int(ipaddress.ip_address(self.gateway))
            self._intervals.append(Interval(gw, gw))
        self._intervals = _merge(self._intervals)

        low, high = _host_bounds(self._network)
        for attr in ("range_start", "range_end"):
            value = getattr(self, attr)
            if value is None:
                continue
            addr = ipaddress.ip_address(value)
            if addr not in self._network:
                raise ValueError(f"Pool {self.name}: {attr} {addr} is outside {self.cidr}")
            setattr(self, attr, str(addr))
        if self.range_start is not None:
            low = max(low, int(ipaddress.ip_address(self.range_start)))
        if self.range_end is not None:
            high = min(high, int(ipaddress.ip_address(self.range_end)))
        if low > high and self.range_start is not None and self.range_end is not None:
            raise ValueError(f"Pool {self.name}: rangeStart is after rangeEnd")
        self._low, self._high = low, high

    @property
    def network(self) -> IPNetwork:
        return self._network

    @property
    def prefix_length(self) -> int:
        return self._network.prefixlen

    @property
    def bounds(self) -> tuple[int, int]:
        """Inclusive integer bounds of the allocatable window."""
        return self._low, self._high

    def excluded_intervals(self) -> list[Interval]:
        return list(self._intervals)

    def is_excluded(self, value: int) -> bool:
        return any(value in iv for iv in self._intervals)

    def is_allocatable(self, address: str) -> bool:
        addr = ipaddress.ip_address(address)
        if addr.version != self._network.version:
            return False
        value = int(addr)
        return self._low <= value <= self._high and not self.is_excluded(value)

    def capacity(self) -> int:
        """Number of allocatable addresses, ignoring leases."""
        if self._low > self._high:
            return 0
        total = self._high - self._low + 1
        for iv in self._intervals:
            lo, hi = max(iv.start, self._low), min(iv.end, self._high)
            if lo <= hi:
                total -= hi - lo + 1
        return total

    def address(self, value: int) -> IPAddress:
        return type(self._network.network_address)(value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "cidr": self.cidr,
            "gateway": self.gateway,
            "exclusions": list(self.exclusions),
            "rangeStart": self.range_start,
            "rangeEnd": self.range_end,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Pool":
        return cls(
            name=data.get("name", ""),
            cidr=data.get("cidr", ""),
            gateway=data.get("gateway"),
            exclusions=list(data.get("exclusions") or []),
            range_start=data.get("rangeStart"),
            range_end=data.get("rangeEnd"),
        )


def _merge(intervals: list[Interval]) -> list[Interval]:
    merged: list[Interval] = []
    for iv in sorted(intervals, key=lambda i: i.start):
        if merged and iv.start <= merged[-1].end + 1:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, iv.end))
        else:
            merged.append(iv)
    return merged


@dataclass(frozen=True)
class Lease:
    """One address bound to one owner within a pool."""
    pool: str
    address: str
    owner: OwnerKey
    sequence: int
    released: bool = False
    created_at: float = field(default_factory=time.time)
    released_at: Optional[float] = None

    @property
    def live(self) -> bool:
        return not self.released

    def to_dict(self) -> dict[str, Any]:
        return {
            "pool": self.pool,
            "address": self.address,
            "owner": self.owner.to_dict(),
            "sequence": self.sequence,
            "released": self.released,
            "createdAt": self.created_at,
            "releasedAt": self.released_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Lease":
        return cls(
            pool=data["pool"],
            address=data["address"],
            owner=OwnerKey.from_dict(data["owner"]),
            sequence=int(data["sequence"]),
            released=bool(data.get("released", False)),
            created_at=float(data.get("createdAt") or 0.0),
            released_at=data.get("releasedAt"),
        )
