import argparse
import json
import logging
import pathlib
import sys
from typing import Any, Dict

from .config import LOG_LEVELS, Settings, load_settings
from .errors import PersistenceError
from .ipam import IpamPlugin
from .server import create_app, serve
from .storage import StateStore, read_state_file

log = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Docker IPAM driver with a YAML-backed lease store.")
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        help="Optional YAML config file (keys: socket_path, state_file, default_subnet, tcp_addr, log_level)",
    )
    parser.add_argument("--state-file", help="Path to the state file (env: STATE_FILE)")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=list(LOG_LEVELS),
        help="Log level (env: LOG_LEVEL, default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the plugin endpoint")
    serve_parser.add_argument("--socket", dest="socket_path", help="Unix socket path (env: SOCKET_PATH)")
    serve_parser.add_argument("--tcp", dest="tcp_addr", help="Listen on host:port instead of a socket (env: TCP_ADDR)")
    serve_parser.add_argument("--default-subnet", help="Subnet for pools requested without one (env: DEFAULT_SUBNET)")

    subparsers.add_parser("status", help="Print pools and leases from the state file")
    subparsers.add_parser("check", help="Verify that the state file parses")

    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    )


def resolve_settings(args: argparse.Namespace) -> Settings:
    overrides: Dict[str, Any] = {
        "state_file": args.state_file,
        "log_level": args.log_level,
        "socket_path": getattr(args, "socket_path", None),
        "tcp_addr": getattr(args, "tcp_addr", None),
        "default_subnet": getattr(args, "default_subnet", None),
    }
    return load_settings(args.config, overrides)


def command_serve(settings: Settings) -> int:
    log.info("Starting Docker IPAM plugin")
    log.info("Socket path: %s", settings.socket_path)
    log.info("State file: %s", settings.state_file)
    log.info("Default subnet: %s", settings.default_subnet)
    try:
        store = StateStore.open(settings.state_file)
    except PersistenceError as exc:
        log.error("Refusing to start with unreadable state: %s", exc)
        return 1

    plugin = IpamPlugin(store, settings.default_subnet)
    serve(create_app(plugin), settings)
    return 0


def command_status(settings: Settings) -> int:
    try:
        store = StateStore.open(settings.state_file)
    except PersistenceError as exc:
        log.error("%s", exc)
        return 1
    plugin = IpamPlugin(store, settings.default_subnet)
    print(json.dumps(plugin.snapshot(), indent=2))
    return 0


def command_check(settings: Settings) -> int:
    path = pathlib.Path(settings.state_file)
    try:
        state = read_state_file(path)
    except PersistenceError as exc:
        print(f"INVALID: {exc}", file=sys.stderr)
        return 1
    if state is None:
        print(f"No state file at {path}")
        return 0
    print(f"OK: {path} ({len(state.pools)} pool(s), {len(state.leases)} lease(s))")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        settings = resolve_settings(args)
    except Exception as exc:  # broad catch to surface config issues to users
        configure_logging(args.log_level or "INFO")
        logging.error("Failed to load config: %s", exc)
        return 1

    configure_logging(settings.log_level)

    if args.command == "serve":
        return command_serve(settings)
    if args.command == "status":
        return command_status(settings)
    if args.command == "check":
        return command_check(settings)
    return 1


if __name__ == "__main__":
    sys.exit(main())
