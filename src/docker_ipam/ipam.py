import ipaddress
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List, Mapping, Optional

from .errors import (
    AddressInUse,
    AddressNotFound,
    DuplicateSubnet,
    InvalidAddress,
    InvalidSubnet,
    PoolExhausted,
    PoolExists,
    PoolInUse,
    PoolNotFound,
)
from .models import IPAddress, IPNetwork, IpamState, Lease, Pool
from .storage import StateStore

log = logging.getLogger(__name__)

CONTAINER_NAME_OPTIONS = (
    "com.docker.network.endpoint.name",
    "container_name",
    "com.docker.network.container.id",
)
REQUEST_ADDRESS_TYPE = "RequestAddressType"
GATEWAY_ADDRESS_TYPE = "com.docker.network.gateway"


@dataclass(frozen=True)
class Capabilities:
    requires_mac_address: bool = False
    requires_request_replay: bool = False


@dataclass(frozen=True)
class AddressSpaces:
    local: str = "local"
    global_: str = "global"


def parse_subnet(value: str) -> IPNetwork:
    try:
        return ipaddress.ip_network(value.strip(), strict=False)
    except (ValueError, AttributeError) as exc:
        raise InvalidSubnet(f"Invalid subnet format: {value!r}") from exc


def parse_address(value: str) -> IPAddress:
    """Accept a bare address or one carrying a /prefix suffix."""
    try:
        return ipaddress.ip_address(value.strip().split("/", 1)[0])
    except (ValueError, AttributeError) as exc:
        raise InvalidAddress(f"Invalid IP address format: {value!r}") from exc


def usable_hosts(pool: Pool) -> Iterator[IPAddress]:
    """
    Candidate addresses in ascending order, minus network, broadcast and gateway.

    IPv4 always loses both ends of the range, so /31 and /32 have no usable
    address. IPv6 has no broadcast and only loses the network address.
    """
    network = pool.subnet
    address_type = type(network.network_address)
    first = int(network.network_address) + 1
    last = int(network.broadcast_address)
    if network.version == 4:
        last -= 1
    for value in range(first, last + 1):
        host_ip = address_type(value)
        if pool.gateway is not None and host_ip == pool.gateway:
            continue
        yield host_ip


def container_name_from(options: Optional[Mapping[str, str]]) -> str:
    if options:
        for key in CONTAINER_NAME_OPTIONS:
            if options.get(key):
                return str(options[key])
    return "unknown"


class IpamPlugin:
    """Pool and address lifecycle on top of a StateStore."""

    def __init__(self, store: StateStore, default_subnet: str):
        self.store = store
        self.default_subnet = default_subnet

    def get_capabilities(self) -> Capabilities:
        return Capabilities()

    def get_default_address_spaces(self) -> AddressSpaces:
        return AddressSpaces()

    def request_pool(
        self,
        subnet: Optional[str] = None,
        pool_id: Optional[str] = None,
        options: Optional[Mapping[str, str]] = None,
        v6: bool = False,
    ) -> Pool:
        if not subnet:
            if v6:
                raise InvalidSubnet("IPv6 pools require an explicit subnet")
            subnet = self.default_subnet
        network = parse_subnet(subnet)

        def create(state: IpamState) -> Pool:
            for existing in state.pools.values():
                if existing.subnet.version == network.version and existing.subnet.overlaps(network):
                    raise DuplicateSubnet(
                        f"Subnet {network} overlaps pool {existing.pool_id} ({existing.subnet})"
                    )
            new_id = pool_id or f"pool-{uuid.uuid4().hex}"
            if new_id in state.pools:
                raise PoolExists(f"Pool already exists: {new_id}")
            pool = Pool(pool_id=new_id, subnet=network)
            state.pools[new_id] = pool
            return replace(pool)

        pool = self.store.with_state_mut(create)
        log.info("Pool requested: %s -> %s", pool.pool_id, pool.subnet)
        return pool

    def release_pool(self, pool_id: str) -> None:
        def remove(state: IpamState) -> None:
            pool = _lookup(state, pool_id)
            leases = state.leases_in(pool)
            if leases:
                raise PoolInUse(pool_id, len(leases))
            del state.pools[pool_id]

        self.store.with_state_mut(remove)
        log.info("Pool released: %s", pool_id)

    def request_address(
        self,
        pool_id: str,
        address: Optional[str] = None,
        options: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Lease an address in the pool and return it as ip/prefix."""
        requested = parse_address(address) if address else None
        is_gateway = bool(options) and options.get(REQUEST_ADDRESS_TYPE) == GATEWAY_ADDRESS_TYPE
        container_name = "gateway" if is_gateway else container_name_from(options)

        def lease(state: IpamState) -> str:
            pool = _lookup(state, pool_id)
            if requested is not None:
                if not pool.contains(requested):
                    raise InvalidAddress(f"IP address {requested} is not in subnet {pool.subnet}")
                if state.find_lease(requested) is not None:
                    raise AddressInUse(f"IP address {requested} is already allocated")
                ip = requested
            else:
                ip = _next_free(state, pool)

            new_lease = Lease(ip_address=ip, container_name=container_name)
            state.leases.append(new_lease)
            if is_gateway:
                pool.gateway = ip
            return f"{ip}/{pool.subnet.prefixlen}"

        allocated = self.store.with_state_mut(lease)
        log.info("Address allocated: %s to container '%s' (pool: %s)", allocated, container_name, pool_id)
        return allocated

    def release_address(self, pool_id: str, address: str) -> None:
        ip = parse_address(address)

        def release(state: IpamState) -> None:
            pool = _lookup(state, pool_id)
            existing = state.find_lease(ip) if pool.contains(ip) else None
            if existing is None:
                raise AddressNotFound(f"No lease for {ip} in pool {pool_id}")
            state.leases.remove(existing)

        self.store.with_state_mut(release)
        log.info("Address released: %s (pool: %s)", ip, pool_id)

    def list_pools(self) -> List[Pool]:
        return self.store.with_state(lambda state: [replace(pool) for pool in state.pools.values()])

    def list_leases(self) -> List[Lease]:
        return self.store.with_state(lambda state: [replace(lease) for lease in state.leases])

    def pool_leases(self, pool_id: str) -> List[Lease]:
        return self.store.with_state(
            lambda state: [replace(lease) for lease in state.leases_in(_lookup(state, pool_id))]
        )

    def snapshot(self) -> Dict[str, object]:
        return self.store.with_state(lambda state: state.to_dict())


def _lookup(state: IpamState, pool_id: str) -> Pool:
    pool = state.pools.get(pool_id)
    if pool is None:
        raise PoolNotFound(pool_id)
    return pool


def _next_free(state: IpamState, pool: Pool) -> IPAddress:
    used = {lease.ip_address for lease in state.leases_in(pool)}
    for host_ip in usable_hosts(pool):
        if host_ip in used:
            continue
        return host_ip
    raise PoolExhausted(f"No available IP addresses in subnet {pool.subnet}")
