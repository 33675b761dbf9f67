"""
HTTP front end speaking Docker's IPAM driver protocol.

Every endpoint is a POST with a JSON body. Failures are reported the way the
driver protocol expects: HTTP 200 with an ``Err`` field.
"""

from __future__ import annotations

import json
import logging
import os
import pathlib
from typing import Any, Dict

from flask import Flask, Response, jsonify, request
from werkzeug.serving import make_server

from .config import Settings
from .errors import IpamError
from .ipam import IpamPlugin

log = logging.getLogger(__name__)


class BadRequest(ValueError):
    pass


def parse_body() -> Dict[str, Any]:
    """Decode the request body whatever Content-Type Docker sent."""
    raw = request.get_data(cache=False)
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise BadRequest(f"Failed to parse JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise BadRequest("Request body must be a JSON object")
    return payload


def required(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not value:
        raise BadRequest(f"Missing required field: {key}")
    return str(value)


def options_of(payload: Dict[str, Any]) -> Dict[str, Any]:
    options = payload.get("Options") or {}
    if not isinstance(options, dict):
        raise BadRequest("Options must be a JSON object")
    return options


def error_response(message: str) -> Response:
    log.error("Request failed: %s", message)
    return jsonify({"Err": message})


def create_app(plugin: IpamPlugin) -> Flask:
    app = Flask(__name__)
    app.config["IPAM_PLUGIN"] = plugin

    @app.errorhandler(IpamError)
    def handle_ipam_error(exc: IpamError):
        return error_response(str(exc))

    @app.errorhandler(BadRequest)
    def handle_bad_request(exc: BadRequest):
        return error_response(str(exc))

    @app.errorhandler(405)
    @app.errorhandler(404)
    def handle_not_found(exc):
        log.warning("Unknown endpoint: %s %s", request.method, request.path)
        return Response("Not Found", status=404, mimetype="text/plain")

    @app.before_request
    def log_request():
        log.debug("%s %s", request.method, request.path)

    @app.post("/Plugin.Activate")
    def activate():
        return jsonify({"Implements": ["IpamDriver"]})

    @app.post("/IpamDriver.GetCapabilities")
    def get_capabilities():
        caps = plugin.get_capabilities()
        return jsonify(
            {
                "RequiresMACAddress": caps.requires_mac_address,
                "RequiresRequestReplay": caps.requires_request_replay,
            }
        )

    @app.post("/IpamDriver.GetDefaultAddressSpaces")
    def get_default_address_spaces():
        spaces = plugin.get_default_address_spaces()
        return jsonify(
            {
                "LocalDefaultAddressSpace": spaces.local,
                "GlobalDefaultAddressSpace": spaces.global_,
            }
        )

    @app.post("/IpamDriver.RequestPool")
    def request_pool():
        payload = parse_body()
        pool = plugin.request_pool(
            subnet=payload.get("Pool") or None,
            pool_id=payload.get("PoolID") or None,
            options=options_of(payload),
            v6=bool(payload.get("V6")),
        )
        return jsonify({"PoolID": pool.pool_id, "Pool": str(pool.subnet), "Data": {}})

    @app.post("/IpamDriver.ReleasePool")
    def release_pool():
        payload = parse_body()
        plugin.release_pool(required(payload, "PoolID"))
        return jsonify({})

    @app.post("/IpamDriver.RequestAddress")
    def request_address():
        payload = parse_body()
        address = plugin.request_address(
            required(payload, "PoolID"),
            address=payload.get("Address") or None,
            options=options_of(payload),
        )
        return jsonify({"Address": address, "Data": {}})

    @app.post("/IpamDriver.ReleaseAddress")
    def release_address():
        payload = parse_body()
        plugin.release_address(required(payload, "PoolID"), required(payload, "Address"))
        return jsonify({})

    return app


def serve(app: Flask, settings: Settings) -> None:
    """Serve the app on TCP when tcp_addr is set, otherwise on the plugin socket."""
    socket_path = None
    if settings.tcp_addr:
        host, port = settings.tcp_host_port()
        log.warning("Running in TCP mode (for testing only)")
        server = make_server(host, port, app, threaded=True)
        log.info("IPAM plugin listening on http://%s:%d", host, port)
    else:
        socket_path = pathlib.Path(settings.socket_path)
        socket_path.parent.mkdir(parents=True, exist_ok=True)
        # make_server unlinks a stale socket file before binding.
        server = make_server(f"unix://{socket_path}", 0, app, threaded=True)

    try:
        if socket_path is not None:
            os.chmod(socket_path, 0o666)
            log.info("IPAM plugin listening on %s", socket_path)
        server.serve_forever()
    finally:
        server.server_close()
