"""Docker IPAM driver with persistent, lock-guarded lease storage."""

__all__ = [
    "cli",
    "config",
    "errors",
    "ipam",
    "models",
    "server",
    "storage",
]

__version__ = "0.1.0"
