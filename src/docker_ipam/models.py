"""
Value types for pools, leases and the persisted state document.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass
class Pool:
    pool_id: str
    subnet: IPNetwork
    gateway: Optional[IPAddress] = None

    def contains(self, address: IPAddress) -> bool:
        return address.version == self.subnet.version and address in self.subnet

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "subnet": str(self.subnet),
            "gateway": str(self.gateway) if self.gateway is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pool":
        gateway = data.get("gateway")
        return cls(
            pool_id=str(data["pool_id"]),
            subnet=ipaddress.ip_network(str(data["subnet"]), strict=False),
            gateway=ipaddress.ip_address(str(gateway)) if gateway else None,
        )


@dataclass
class Lease:
    ip_address: IPAddress
    container_name: str = "unknown"
    lease_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip_address": str(self.ip_address),
            "container_name": self.container_name,
            "lease_time": self.lease_time.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Lease":
        return cls(
            ip_address=ipaddress.ip_address(str(data["ip_address"])),
            container_name=str(data["container_name"]) if data.get("container_name") is not None else "unknown",
            lease_time=_parse_timestamp(data.get("lease_time")),
        )


@dataclass
class IpamState:
    """Every pool keyed by id, plus the flat list of leases across all pools."""

    pools: Dict[str, Pool] = field(default_factory=dict)
    leases: List[Lease] = field(default_factory=list)

    def find_lease(self, address: IPAddress) -> Optional[Lease]:
        for lease in self.leases:
            if lease.ip_address == address:
                return lease
        return None

    def leases_in(self, pool: Pool) -> List[Lease]:
        return [lease for lease in self.leases if pool.contains(lease.ip_address)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pools": {pool_id: pool.to_dict() for pool_id, pool in self.pools.items()},
            "leases": [lease.to_dict() for lease in self.leases],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IpamState":
        pools_data = data.get("pools") or {}
        leases_data = data.get("leases") or []
        if not isinstance(pools_data, dict):
            raise ValueError("'pools' must be a mapping of pool id to pool")
        if not isinstance(leases_data, list):
            raise ValueError("'leases' must be a list")

        pools: Dict[str, Pool] = {}
        for pool_id, pool_data in pools_data.items():
            pool = Pool.from_dict(pool_data)
            if pool.pool_id != str(pool_id):
                raise ValueError(f"Pool key {pool_id} does not match pool_id {pool.pool_id}")
            pools[pool.pool_id] = pool
        return cls(pools=pools, leases=[Lease.from_dict(item) for item in leases_data])


def _parse_timestamp(value: Any) -> datetime:
    # PyYAML hands back datetime objects for unquoted timestamps.
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
