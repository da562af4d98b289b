"""Connection manager -- owns the handle -> Session table.

One ``ConnectionManager`` exists per process.  It is built at startup,
handed to the dispatcher, and shut down at exit, closing every session.

Locking: a single table lock guards the handle table and the set of
claimed device paths.  It is held only for bookkeeping, never while a
device is opened, read, written or closed.  Device I/O is serialized
per session by the session's own lock, so a slow device never blocks
operations on other handles.

Example:
    >>> from serialhub.manager import ConnectionManager
    >>> from serialhub.session import SerialConfig
    >>> with ConnectionManager() as manager:
    ...     handle = manager.open("/dev/ttyUSB0", SerialConfig(115200))
    ...     manager.write(handle, "H", "utf8")
    ...     manager.read(handle, 500, 2.0)
    ...     manager.close(handle)
    1
    b'Commands: ...'
"""

import functools
import logging
import threading
import uuid

import serial

from serialhub.config import (
    DEFAULT_ENCODING,
    DEFAULT_MAX_BYTES,
    DEFAULT_TIMEOUT_MS,
    DEFAULTS,
    MAX_TIMEOUT_S,
)
from serialhub.encoding import decode_payload
from serialhub.errors import (
    ConnectionLost,
    DeviceUnavailable,
    HandleNotFound,
    InvalidConfiguration,
    ManagerClosed,
    SessionLimitExceeded,
)
from serialhub.session import SerialConfig, SerialDevice, Session

log = logging.getLogger(__name__)


class ConnectionManager:
    """Owns every open serial session and arbitrates access to them.

    Args:
        opener: Callable ``opener(device_path, config)`` returning an
            open device.  Defaults to ``SerialDevice``.
        max_connections: Most sessions open at once.
        max_buffer_size: Cap on ``max_bytes`` for a single read.
        max_data_size: Largest payload a single write may carry.
        write_timeout_ms: Driver write timeout for the default opener.
        restrict_ports: Enforce *allowed_ports* / *blocked_ports*.
        allowed_ports: Substrings one of which a device path must contain.
            An empty list allows every port.
        blocked_ports: Substrings no device path may contain.
    """

    def __init__(
        self,
        opener=None,
        max_connections: int = DEFAULTS["max_connections"],
        max_buffer_size: int = DEFAULTS["max_buffer_size"],
        max_data_size: int = DEFAULTS["max_data_size"],
        write_timeout_ms: int = DEFAULTS["write_timeout_ms"],
        restrict_ports: bool = False,
        allowed_ports: list[str] | None = None,
        blocked_ports: list[str] | None = None,
    ):
        if opener is None:
            opener = functools.partial(
                SerialDevice, write_timeout_s=write_timeout_ms / 1000.0,
            )
        self._opener = opener
        self._max_connections = max_connections
        self._max_buffer_size = max_buffer_size
        self._max_data_size = max_data_size
        self._restrict_ports = restrict_ports
        self._allowed_ports = list(allowed_ports or [])
        self._blocked_ports = list(blocked_ports or [])

        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        # Device paths with an open session or an open in progress.
        self._claimed: set[str] = set()
        # Every handle ever issued, so none is reused.
        self._issued: set[str] = set()
        self._closed = False
        self._stats = {
            "total_opened": 0,
            "open_failures": 0,
            "connections_lost": 0,
            "retired_bytes_sent": 0,
            "retired_bytes_received": 0,
        }

    @classmethod
    def from_config(cls, cfg: dict, opener=None) -> "ConnectionManager":
        """Build a manager from a ``load_config()`` result."""
        return cls(
            opener=opener,
            max_connections=cfg["max_connections"],
            max_buffer_size=cfg["max_buffer_size"],
            max_data_size=cfg["max_data_size"],
            write_timeout_ms=cfg["write_timeout_ms"],
            restrict_ports=cfg["restrict_ports"],
            allowed_ports=cfg["allowed_ports"],
            blocked_ports=cfg["blocked_ports"],
        )

    # -- open ----------------------------------------------------------------

    def open(self, device_path: str, config: SerialConfig) -> str:
        """Open *device_path* with *config* and return a new handle.

        The device path is claimed under the table lock before the
        device is opened, so concurrent opens of one path cannot both
        succeed.  A failed open leaves nothing behind.

        Raises:
            InvalidConfiguration: Bad path, bad config, or the port is
                refused by the port access policy.  No device touched.
            SessionLimitExceeded: ``max_connections`` sessions are open.
            DeviceUnavailable: The device is missing, busy, or already
                open in this process.
            ManagerClosed: The manager has been shut down.
        """
        if not isinstance(device_path, str) or not device_path.strip():
            raise InvalidConfiguration("port name cannot be empty")
        if not isinstance(config, SerialConfig):
            raise InvalidConfiguration(
                "config must be SerialConfig, got %s" % type(config).__name__
            )
        config.validate()
        self._check_port_policy(device_path)

        with self._lock:
            if self._closed:
                raise ManagerClosed("connection manager is shut down")
            if device_path in self._claimed:
                raise DeviceUnavailable("port %s is already open" % device_path)
            if len(self._claimed) >= self._max_connections:
                raise SessionLimitExceeded(
                    "connection limit reached (max %d)" % self._max_connections
                )
            self._claimed.add(device_path)

        try:
            device = self._opener(device_path, config)
        except (serial.SerialException, OSError, ValueError) as exc:
            with self._lock:
                self._claimed.discard(device_path)
                self._stats["open_failures"] += 1
            log.warning("failed to open %s: %s", device_path, exc)
            raise DeviceUnavailable("cannot open %s: %s" % (device_path, exc)) from exc

        with self._lock:
            accepted = not self._closed
            if accepted:
                handle = self._new_handle()
                self._sessions[handle] = Session(handle, device_path, config, device)
                self._stats["total_opened"] += 1

        if not accepted:
            # Shut down while the device was being opened.
            try:
                device.close()
            except (serial.SerialException, OSError) as exc:
                log.warning("error closing %s: %s", device_path, exc)
            with self._lock:
                self._claimed.discard(device_path)
            raise ManagerClosed("connection manager is shut down")

        log.info("opened %s (%s) as %s", device_path, config.describe(), handle)
        return handle

    def _new_handle(self) -> str:
        """Return a never-before-issued handle.  Caller holds the lock."""
        while True:
            handle = uuid.uuid4().hex
            if handle not in self._issued:
                self._issued.add(handle)
                return handle

    def _check_port_policy(self, device_path: str) -> None:
        if not self._restrict_ports:
            return
        if self._allowed_ports and not any(
            pattern in device_path for pattern in self._allowed_ports
        ):
            raise InvalidConfiguration(
                "port %s is not in the allowed ports list" % device_path
            )
        if any(pattern in device_path for pattern in self._blocked_ports):
            raise InvalidConfiguration("port %s is blocked" % device_path)

    # -- I/O -----------------------------------------------------------------

    def write(self, handle: str, data: str | bytes, encoding: str = DEFAULT_ENCODING) -> int:
        """Decode *data* per *encoding* and transmit all of it.

        Returns the number of bytes written, only on full success.

        Raises:
            HandleNotFound: Unknown, closed or dead handle.
            EncodingError: *data* is malformed for *encoding*.
            InvalidConfiguration: Payload larger than ``max_data_size``.
            ConnectionLost: The device failed; the handle is gone.
        """
        session = self._lookup(handle)
        payload = decode_payload(data, encoding)
        if len(payload) > self._max_data_size:
            raise InvalidConfiguration(
                "payload is %d bytes, max is %d" % (len(payload), self._max_data_size)
            )
        if not payload:
            return 0

        try:
            return session.write(payload)
        except ConnectionLost:
            self._discard(session, lost=True)
            raise

    def read(
        self,
        handle: str,
        max_bytes: int = DEFAULT_MAX_BYTES,
        timeout: float = DEFAULT_TIMEOUT_MS / 1000.0,
    ) -> bytes:
        """Read up to *max_bytes*, waiting at most *timeout* seconds.

        An empty result means the device was silent; it is not an error.
        *max_bytes* is capped at ``max_buffer_size``.

        Raises:
            HandleNotFound: Unknown, closed or dead handle.
            InvalidConfiguration: *max_bytes* < 1, or *timeout* outside
                ``0..MAX_TIMEOUT_S``.
            ConnectionLost: The device failed; the handle is gone.
        """
        if isinstance(max_bytes, bool) or not isinstance(max_bytes, int) or max_bytes < 1:
            raise InvalidConfiguration("max_bytes must be a positive int, got %r" % (max_bytes,))
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) \
                or not 0 <= timeout <= MAX_TIMEOUT_S:
            raise InvalidConfiguration(
                "timeout must be 0-%g seconds, got %r" % (MAX_TIMEOUT_S, timeout)
            )

        session = self._lookup(handle)
        try:
            return session.read(min(max_bytes, self._max_buffer_size), float(timeout))
        except ConnectionLost:
            self._discard(session, lost=True)
            raise

    def cancel_read(self, handle: str) -> bool:
        """Interrupt a read in flight on *handle*.

        Returns True if a read was interrupted.  The session stays open.

        Raises:
            HandleNotFound: Unknown, closed or dead handle.
        """
        return self._lookup(handle).cancel_read()

    # -- close ---------------------------------------------------------------

    def close(self, handle: str) -> None:
        """Close *handle*, waiting for any operation in flight on it.

        Raises:
            HandleNotFound: Unknown handle, including a second close.
        """
        session = self._lookup(handle)
        session.close()
        self._discard(session)
        log.info("closed %s (%s)", handle, session.device_path)

    def shutdown(self) -> None:
        """Cancel pending reads, close every session and refuse new opens.

        Idempotent.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sessions = list(self._sessions.values())

        log.info("shutting down: closing %d sessions", len(sessions))
        for session in sessions:
            session.cancel_read()
        for session in sessions:
            try:
                session.close()
            except HandleNotFound:
                # Closed or died while we were getting here.
                pass
            self._discard(session)
        log.info("all sessions closed")

    def __enter__(self) -> "ConnectionManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # -- introspection -------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, handle: str) -> bool:
        with self._lock:
            return handle in self._sessions

    def sessions(self) -> list[dict]:
        """Return ``info()`` for every live session."""
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.info() for s in sessions]

    def session_info(self, handle: str) -> dict:
        """Return ``info()`` for *handle*.

        Raises:
            HandleNotFound: Unknown, closed or dead handle.
        """
        return self._lookup(handle).info()

    def stats(self) -> dict:
        """Return counters for the life of this manager."""
        with self._lock:
            sessions = list(self._sessions.values())
            stats = dict(self._stats)
        return {
            "total_opened": stats["total_opened"],
            "open_failures": stats["open_failures"],
            "connections_lost": stats["connections_lost"],
            "active_sessions": len(sessions),
            "bytes_sent": stats["retired_bytes_sent"]
            + sum(s.bytes_sent for s in sessions),
            "bytes_received": stats["retired_bytes_received"]
            + sum(s.bytes_received for s in sessions),
        }

    # -- table bookkeeping ---------------------------------------------------

    def _lookup(self, handle: str) -> Session:
        with self._lock:
            session = self._sessions.get(handle)
        if session is None:
            raise HandleNotFound(handle)
        return session

    def _discard(self, session: Session, lost: bool = False) -> None:
        """Remove *session* from the table once its device is released."""
        with self._lock:
            if self._sessions.get(session.handle) is not session:
                return
            del self._sessions[session.handle]
            self._claimed.discard(session.device_path)
            self._stats["retired_bytes_sent"] += session.bytes_sent
            self._stats["retired_bytes_received"] += session.bytes_received
            if lost:
                self._stats["connections_lost"] += 1
