"""Flask application exposing the connection manager as a JSON API.

Translates HTTP requests into ConnectionManager calls and serialhub
errors into ``{"error": kind, "message": text}`` responses.  Holds no
state of its own; the manager is passed in by the caller.

Example:
    $ serialhub serialhub.toml
    $ curl -X POST localhost:8765/api/connections \\
          -H 'Content-Type: application/json' \\
          -d '{"port": "/dev/ttyUSB0", "baud_rate": 115200}'
    {"config": {...}, "handle": "3f2a...", "port": "/dev/ttyUSB0"}
"""

import logging

from flask import Flask, jsonify, request

from serialhub.config import DEFAULT_ENCODING, DEFAULT_MAX_BYTES, DEFAULT_TIMEOUT_MS
from serialhub.encoding import ENC_RAW, encode_payload, normalize_encoding
from serialhub.errors import (
    ConnectionLost,
    DeviceUnavailable,
    EncodingError,
    HandleNotFound,
    InvalidConfiguration,
    ManagerClosed,
    PortEnumerationError,
    SerialHubError,
    SessionLimitExceeded,
)
from serialhub.ports import list_ports
from serialhub.session import SerialConfig

log = logging.getLogger(__name__)

_STATUS = {
    InvalidConfiguration: 400,
    EncodingError: 400,
    HandleNotFound: 404,
    DeviceUnavailable: 409,
    SessionLimitExceeded: 409,
    ConnectionLost: 410,
    PortEnumerationError: 503,
    ManagerClosed: 503,
}


def create_app(manager) -> Flask:
    """Create the Flask application around *manager*.

    Args:
        manager: A ConnectionManager (or any object with the same
            methods).

    Example:
        >>> app = create_app(ConnectionManager())
        >>> app.test_client().get("/api/connections").get_json()
        []
    """
    app = Flask(__name__)

    @app.errorhandler(SerialHubError)
    def _serialhub_error(exc: SerialHubError) -> tuple:
        """Render a manager error as JSON with its mapped status."""
        status = _status_for(exc)
        log.debug("%s %s -> %d %s: %s", request.method, request.path,
                  status, exc.kind, exc)
        return jsonify({"error": exc.kind, "message": str(exc)}), status

    @app.route("/api/ports")
    def api_ports() -> tuple:
        """Return the serial devices currently present.

        Response JSON:
            [{"device": "/dev/ttyUSB0", "description": "...", ...}, ...]
        """
        return jsonify([p.to_dict() for p in list_ports()]), 200

    @app.route("/api/connections", methods=["GET"])
    def api_list() -> tuple:
        """Return info for every open connection."""
        return jsonify(manager.sessions()), 200

    @app.route("/api/connections", methods=["POST"])
    def api_open() -> tuple:
        """Open a serial port.

        Request JSON:
            {"port": "/dev/ttyUSB0", "baud_rate": 115200, "data_bits": 8,
             "parity": "none", "stop_bits": 1, "flow_control": "none"}

        Only ``port`` and ``baud_rate`` are required.
        """
        body = _json_body()
        port = body.get("port")
        if not isinstance(port, str) or not port:
            raise InvalidConfiguration("port parameter required")
        config = SerialConfig.from_dict(body)
        handle = manager.open(port, config)
        return jsonify({
            "handle": handle,
            "port": port,
            "config": config.to_dict(),
            "settings": config.describe(),
        }), 201

    @app.route("/api/connections/<handle>", methods=["GET"])
    def api_status(handle: str) -> tuple:
        """Return info for one connection."""
        return jsonify(manager.session_info(handle)), 200

    @app.route("/api/connections/<handle>/write", methods=["POST"])
    def api_write(handle: str) -> tuple:
        """Write data to a connection.

        Request JSON:
            {"data": "48 0a", "encoding": "hex"}

        ``encoding`` defaults to ``utf8``.
        """
        body = _json_body()
        data = body.get("data")
        if data is None:
            raise InvalidConfiguration("data parameter required")
        encoding = _text_encoding(body.get("encoding", DEFAULT_ENCODING))
        written = manager.write(handle, data, encoding)
        return jsonify({"handle": handle, "bytes_written": written}), 200

    @app.route("/api/connections/<handle>/read", methods=["POST"])
    def api_read(handle: str) -> tuple:
        """Read data from a connection.

        Request JSON (all optional):
            {"max_bytes": 1024, "timeout_ms": 1000, "encoding": "utf8"}

        A read that times out with nothing received is a success with
        ``bytes_read`` 0 and ``timed_out`` true.
        """
        body = _json_body(required=False)
        encoding = _text_encoding(body.get("encoding", DEFAULT_ENCODING))
        max_bytes = body.get("max_bytes", DEFAULT_MAX_BYTES)
        timeout_ms = body.get("timeout_ms", DEFAULT_TIMEOUT_MS)
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, (int, float)):
            raise InvalidConfiguration("timeout_ms must be a number, got %r" % (timeout_ms,))

        data = manager.read(handle, max_bytes, timeout_ms / 1000.0)
        return jsonify({
            "handle": handle,
            "bytes_read": len(data),
            "data": encode_payload(data, encoding),
            "encoding": encoding,
            "timed_out": not data,
        }), 200

    @app.route("/api/connections/<handle>/cancel", methods=["POST"])
    def api_cancel(handle: str) -> tuple:
        """Interrupt a read in flight on a connection."""
        cancelled = manager.cancel_read(handle)
        return jsonify({"handle": handle, "cancelled": cancelled}), 200

    @app.route("/api/connections/<handle>", methods=["DELETE"])
    def api_close(handle: str) -> tuple:
        """Close a connection.  Closing twice returns 404."""
        manager.close(handle)
        return jsonify({"handle": handle, "closed": True}), 200

    @app.route("/api/stats")
    def api_stats() -> tuple:
        """Return connection manager counters."""
        return jsonify(manager.stats()), 200

    return app


def _status_for(exc: SerialHubError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS:
            return _STATUS[cls]
    return 500


def _json_body(required: bool = True) -> dict:
    """Return the request's JSON object, or raise InvalidConfiguration."""
    body = request.get_json(silent=True)
    if body is None:
        if required or request.get_data():
            raise InvalidConfiguration("request body must be a JSON object")
        return {}
    if not isinstance(body, dict):
        raise InvalidConfiguration("request body must be a JSON object")
    return body


def _text_encoding(name: object) -> str:
    """Validate an encoding name for use over JSON."""
    enc = normalize_encoding(name)
    if enc == ENC_RAW:
        raise EncodingError("raw encoding is not available over JSON; use hex or base64")
    return enc
