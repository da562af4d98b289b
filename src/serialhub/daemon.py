"""Serialhub daemon -- serves the connection manager over HTTP.

Foreground process driven by an optional TOML config file.  Binds the
JSON API from ``serialhub.dispatcher`` to the configured host and
port, and on SIGINT or SIGTERM stops the HTTP server and closes every
open serial session before exiting.
"""

import argparse
import atexit
import logging
import signal
import sys
import threading

from werkzeug.serving import make_server

from serialhub.config import DEFAULT_CONFIG_TOML, load_config
from serialhub.dispatcher import create_app
from serialhub.errors import PortEnumerationError
from serialhub.manager import ConnectionManager
from serialhub.paths import resolve_config
from serialhub.ports import list_ports

log = logging.getLogger(__name__)

_shutdown = threading.Event()


def _on_signal(signum: int, frame) -> None:
    """Set the module-level shutdown event on SIGINT/SIGTERM."""
    _shutdown.set()


def configure_logging(level: str, log_file: str = "", verbose: bool = False) -> None:
    """Set up root logging.  ``-v`` overrides the configured level."""
    kwargs = {
        "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        "level": logging.DEBUG if verbose else getattr(logging, level.upper()),
    }
    if log_file:
        kwargs["filename"] = log_file
    logging.basicConfig(**kwargs)


def run_server(server, shutdown: threading.Event) -> None:
    """Serve HTTP requests on a worker thread until *shutdown* is set.

    *server* is anything with ``serve_forever()`` and ``shutdown()``,
    normally a ``werkzeug.serving.make_server`` result.
    """
    thread = threading.Thread(
        target=server.serve_forever, name="serialhub-http", daemon=True,
    )
    thread.start()
    try:
        while not shutdown.is_set():
            shutdown.wait(0.5)
    finally:
        server.shutdown()
        thread.join()


def print_ports(out=None) -> int:
    """Print one line per serial device.  Returns the number printed."""
    out = out or sys.stdout
    ports = list_ports()
    for p in ports:
        print("%-20s %s" % (p.device, p.description), file=out)
    return len(ports)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="serialhub serial port server")
    parser.add_argument(
        "config", nargs="?",
        help="TOML config file (default: $SERIALHUB_CONFIG, then serialhub.toml "
        "in ./, ~/.config/serialhub/, /etc/serialhub/)",
    )
    parser.add_argument("--host", help="override server.host")
    parser.add_argument("--port", type=int, help="override server.port")
    parser.add_argument(
        "--generate-config", action="store_true",
        help="print a default config file and exit",
    )
    parser.add_argument(
        "--list-ports", action="store_true",
        help="print the serial devices present and exit",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="enable debug logging",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point -- parse args, load config, run the daemon."""
    _shutdown.clear()
    args = build_parser().parse_args(argv)

    if args.generate_config:
        print(DEFAULT_CONFIG_TOML, end="")
        return 0

    config_path = resolve_config(args.config)
    cfg = load_config(config_path)
    if args.host:
        cfg["host"] = args.host
    if args.port:
        cfg["port"] = args.port

    configure_logging(cfg["log_level"], cfg["log_file"], args.verbose)

    if args.list_ports:
        try:
            print_ports()
        except PortEnumerationError as exc:
            log.error("%s", exc)
            return 1
        return 0

    manager = ConnectionManager.from_config(cfg)
    atexit.register(manager.shutdown)
    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    server = make_server(cfg["host"], cfg["port"], create_app(manager), threaded=True)
    log.info(
        "starting: host=%s port=%d config=%s max_connections=%d",
        cfg["host"], cfg["port"], config_path or "(defaults)",
        cfg["max_connections"],
    )
    try:
        run_server(server, _shutdown)
    finally:
        manager.shutdown()
        log.info("shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
