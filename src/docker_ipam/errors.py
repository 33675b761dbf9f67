"""
Failure conditions raised by the allocation engine and the state store.
"""


class IpamError(RuntimeError):
    """Base class for every condition reported back to the driver caller."""


class InvalidSubnet(IpamError):
    pass


class InvalidAddress(IpamError):
    pass


class DuplicateSubnet(IpamError):
    pass


class PoolExists(IpamError):
    pass


class PoolNotFound(IpamError):
    def __init__(self, pool_id: str):
        super().__init__(f"Pool not found: {pool_id}")
        self.pool_id = pool_id


class PoolInUse(IpamError):
    def __init__(self, pool_id: str, lease_count: int):
        super().__init__(f"Pool {pool_id} still has {lease_count} active lease(s)")
        self.pool_id = pool_id
        self.lease_count = lease_count


class AddressInUse(IpamError):
    pass


class AddressNotFound(IpamError):
    pass


class PoolExhausted(IpamError):
    pass


class PersistenceError(IpamError):
    pass
