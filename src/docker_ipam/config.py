"""
Settings for the plugin process: defaults, YAML config file, environment, CLI.
"""

from __future__ import annotations

import ipaddress
import os
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import yaml

DEFAULT_SOCKET_PATH = "/run/docker/plugins/ipam.sock"
DEFAULT_STATE_FILE = "/var/lib/docker-ipam/state.yaml"
DEFAULT_SUBNET = "172.18.0.0/16"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

ENV_KEYS = {
    "socket_path": "SOCKET_PATH",
    "state_file": "STATE_FILE",
    "default_subnet": "DEFAULT_SUBNET",
    "tcp_addr": "TCP_ADDR",
    "log_level": "LOG_LEVEL",
}


@dataclass
class Settings:
    socket_path: str = DEFAULT_SOCKET_PATH
    state_file: str = DEFAULT_STATE_FILE
    default_subnet: str = DEFAULT_SUBNET
    tcp_addr: Optional[str] = None
    log_level: str = "INFO"

    def tcp_host_port(self) -> tuple[str, int]:
        if not self.tcp_addr:
            raise ValueError("tcp_addr is not set")
        return parse_host_port(self.tcp_addr)


def load_config_file(path: pathlib.Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError("Config file must define a mapping at the top level")
    unknown = set(data) - set(ENV_KEYS)
    if unknown:
        raise ValueError(f"Unknown config option(s): {', '.join(sorted(unknown))}")
    return data


def settings_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    return {key: env.get(name) or None for key, name in ENV_KEYS.items()}


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """
    Combine two config dictionaries, keeping override values when provided.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def build_settings(data: Dict[str, Any]) -> Settings:
    settings = Settings(**{key: str(value) for key, value in data.items() if value is not None})

    try:
        ipaddress.ip_network(settings.default_subnet, strict=False)
    except ValueError as exc:
        raise ValueError(f"Invalid default subnet: {settings.default_subnet}") from exc

    if settings.tcp_addr:
        parse_host_port(settings.tcp_addr)

    settings.log_level = settings.log_level.upper()
    if settings.log_level not in LOG_LEVELS:
        raise ValueError(f"Invalid log level: {settings.log_level} (must be one of {', '.join(LOG_LEVELS)})")
    return settings


def load_settings(
    config_path: Optional[pathlib.Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Resolve settings: defaults < config file < environment < overrides."""
    data: Dict[str, Any] = {}
    if config_path is not None:
        data = merge_config(data, load_config_file(config_path))
    data = merge_config(data, settings_from_env(environ))
    data = merge_config(data, overrides or {})
    return build_settings(data)


def parse_host_port(value: str) -> tuple[str, int]:
    # Support IPv6 in bracket form: [::1]:8080
    if value.startswith("["):
        host_part, _, port_part = value.partition("]")
        if not port_part.startswith(":"):
            raise ValueError("TCP address for IPv6 must be like [addr]:port")
        host, port = host_part[1:], port_part[1:]
    else:
        if ":" not in value:
            raise ValueError(f"TCP address must be host:port, got {value!r}")
        host, port = value.rsplit(":", 1)
    try:
        return host, int(port)
    except ValueError as exc:
        raise ValueError(f"TCP port must be an integer, got {port!r}") from exc
