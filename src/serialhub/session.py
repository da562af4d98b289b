"""Serial sessions: line settings, the pyserial device, and Session.

A ``Session`` is one open serial device plus its fixed line settings.
It owns a lock that admits one read, write or close at a time, and it
turns device faults into ``ConnectionLost`` after marking itself dead.

The device a Session drives is duck-typed: anything with
``write(data)``, ``read(size, timeout_s)``, ``flush()`` and ``close()``
will do.  ``SerialDevice`` is the
pyserial implementation; tests substitute fakes.

Example:
    >>> from serialhub.session import SerialConfig, SerialDevice, Session
    >>> cfg = SerialConfig(baudrate=115200)
    >>> s = Session("h1", "/dev/ttyUSB0", cfg, SerialDevice("/dev/ttyUSB0", cfg))
    >>> s.write(b"H")
    1
    >>> s.read(500, 2.0)
    b'Commands: ...'
"""

import enum
import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone

import serial

from serialhub.config import (
    MAX_BAUDRATE,
    READ_INTER_BYTE_S,
    READ_SLICE_S,
    WRITE_RETRY_DELAY_S,
    WRITE_RETRY_LIMIT,
)
from serialhub.errors import ConnectionLost, HandleNotFound, InvalidConfiguration

log = logging.getLogger(__name__)

# -- Line settings -----------------------------------------------------------

DATA_BITS = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}

PARITIES = {
    "none": serial.PARITY_NONE,
    "odd": serial.PARITY_ODD,
    "even": serial.PARITY_EVEN,
    "mark": serial.PARITY_MARK,
    "space": serial.PARITY_SPACE,
}

STOP_BITS = {
    1: serial.STOPBITS_ONE,
    1.5: serial.STOPBITS_ONE_POINT_FIVE,
    2: serial.STOPBITS_TWO,
}

FLOW_CONTROLS = ("none", "hardware", "software")


@dataclass(frozen=True)
class SerialConfig:
    """Line settings for one session.  Immutable once opened.

    Defaults to 115200 8N1 without flow control.
    """

    baudrate: int = 115200
    data_bits: int = 8
    parity: str = "none"
    stop_bits: float = 1
    flow_control: str = "none"

    def validate(self) -> None:
        """Check every field against its allowed range.

        Raises:
            InvalidConfiguration: On the first field out of range.
        """
        if not _is_int(self.baudrate) or not 0 < self.baudrate <= MAX_BAUDRATE:
            raise InvalidConfiguration(
                "baud rate must be 1-%d, got %r" % (MAX_BAUDRATE, self.baudrate)
            )
        if not _is_int(self.data_bits) or self.data_bits not in DATA_BITS:
            raise InvalidConfiguration(
                "data bits must be 5, 6, 7 or 8, got %r" % (self.data_bits,)
            )
        if not isinstance(self.parity, str) or self.parity not in PARITIES:
            raise InvalidConfiguration(
                "parity must be one of %s, got %r"
                % (", ".join(PARITIES), self.parity)
            )
        if not isinstance(self.stop_bits, (int, float)) or isinstance(self.stop_bits, bool) \
                or self.stop_bits not in STOP_BITS:
            raise InvalidConfiguration(
                "stop bits must be 1, 1.5 or 2, got %r" % (self.stop_bits,)
            )
        if not isinstance(self.flow_control, str) or self.flow_control not in FLOW_CONTROLS:
            raise InvalidConfiguration(
                "flow control must be one of %s, got %r"
                % (", ".join(FLOW_CONTROLS), self.flow_control)
            )

    @classmethod
    def from_dict(cls, raw: dict) -> "SerialConfig":
        """Build and validate a SerialConfig from request parameters.

        Accepts ``baud_rate`` or ``baudrate``.  Numeric fields may be
        given as strings (``"8"``, ``"1.5"``); parity and flow control
        names are case-insensitive.

        Raises:
            InvalidConfiguration: On a missing baud rate or a bad value.

        Example:
            >>> SerialConfig.from_dict({"baud_rate": 9600, "parity": "Even"})
            SerialConfig(baudrate=9600, data_bits=8, parity='even', stop_bits=1, flow_control='none')
        """
        baudrate = raw.get("baud_rate", raw.get("baudrate"))
        if baudrate is None:
            raise InvalidConfiguration("baud rate is required")
        defaults = cls()
        cfg = cls(
            baudrate=_to_number(baudrate, int, "baud rate"),
            data_bits=_to_number(raw.get("data_bits", defaults.data_bits), int, "data bits"),
            parity=_to_name(raw.get("parity", defaults.parity), "parity"),
            stop_bits=_to_number(raw.get("stop_bits", defaults.stop_bits), float, "stop bits"),
            flow_control=_to_name(raw.get("flow_control", defaults.flow_control), "flow control"),
        )
        cfg.validate()
        return cfg

    def describe(self) -> str:
        """Return the conventional short form, e.g. ``"115200 8N1"``."""
        stop = "%g" % self.stop_bits
        return "%d %d%s%s" % (
            self.baudrate, self.data_bits, self.parity[0].upper(), stop,
        )

    def to_dict(self) -> dict:
        """Return the settings as a plain dict."""
        return asdict(self)


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _to_number(value: object, kind: type, name: str):
    """Coerce *value* to *kind*; whole floats collapse to int."""
    if isinstance(value, bool):
        raise InvalidConfiguration("%s must be a number, got %r" % (name, value))
    try:
        number = kind(value)
    except (TypeError, ValueError):
        raise InvalidConfiguration(
            "%s must be a number, got %r" % (name, value)
        ) from None
    if kind is int and isinstance(value, float) and value != number:
        raise InvalidConfiguration("%s must be a whole number, got %r" % (name, value))
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def _to_name(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise InvalidConfiguration("%s must be str, got %r" % (name, value))
    return value.strip().lower()


# -- pyserial device ---------------------------------------------------------


class SerialDevice:
    """An exclusively opened serial port.

    Wraps ``serial.Serial`` with the primitives a Session needs.
    Duck-typed -- tests can substitute any object with matching
    methods.

    Args:
        port: Serial port device path (e.g. ``"/dev/ttyUSB0"``).
        config: Line settings.
        write_timeout_s: Seconds a single write may block before
            pyserial gives up.

    Raises:
        serial.SerialException: If the port does not exist or is
            already locked by another handle.
    """

    def __init__(self, port: str, config: SerialConfig, write_timeout_s: float = 1.0):
        """Open and configure the serial port."""
        self._ser = serial.Serial(
            port=port,
            baudrate=config.baudrate,
            bytesize=DATA_BITS[config.data_bits],
            parity=PARITIES[config.parity],
            stopbits=STOP_BITS[config.stop_bits],
            xonxoff=config.flow_control == "software",
            rtscts=config.flow_control == "hardware",
            timeout=0,
            write_timeout=write_timeout_s,
            exclusive=True,
        )

    def write(self, data) -> int:
        """Write *data*; return the number of bytes the driver accepted."""
        return self._ser.write(data) or 0

    def flush(self) -> None:
        """Block until all written bytes have left the output buffer."""
        self._ser.flush()

    def read(self, size: int, timeout_s: float) -> bytes:
        """Return up to *size* bytes without waiting to fill the buffer.

        Returns whatever is already buffered.  If nothing is, waits up to
        *timeout_s* seconds for a first byte and then takes whatever else
        has arrived alongside it.  Returns ``b""`` on timeout.
        """
        waiting = self._ser.in_waiting
        if waiting:
            self._set_timeout(0)
            return self._ser.read(min(waiting, size))
        if timeout_s <= 0:
            return b""

        self._set_timeout(timeout_s)
        first = self._ser.read(1)
        if not first or size == 1:
            return first
        self._set_timeout(0)
        return first + self._ser.read(min(self._ser.in_waiting, size - 1))

    def _set_timeout(self, timeout_s: float) -> None:
        # Each assignment reconfigures the port.
        if self._ser.timeout != timeout_s:
            self._ser.timeout = timeout_s

    def close(self) -> None:
        """Close the serial port."""
        self._ser.close()


# -- Session -----------------------------------------------------------------


class SessionState(enum.Enum):
    """Session lifecycle.  ``CLOSED`` and ``DEAD`` are terminal."""

    OPEN = "open"
    CLOSED = "closed"
    DEAD = "dead"


_DEVICE_ERRORS = (serial.SerialException, OSError)


class Session:
    """One open serial device, its fixed configuration and its lock.

    Every public I/O method takes the session lock for its whole
    duration and releases it on every exit path.  Once the session is
    closed or dead, every method raises ``HandleNotFound``.

    Args:
        handle: Opaque identifier assigned by the connection manager.
        device_path: Port name the device was opened from.
        config: Line settings the device was opened with.
        device: Open device object (see module docstring).
        retry_limit: Consecutive zero-progress writes tolerated.
        retry_delay_s: Pause between zero-progress write attempts.
    """

    def __init__(
        self,
        handle: str,
        device_path: str,
        config: SerialConfig,
        device,
        retry_limit: int = WRITE_RETRY_LIMIT,
        retry_delay_s: float = WRITE_RETRY_DELAY_S,
    ):
        self.handle = handle
        self.device_path = device_path
        self.config = config
        self.state = SessionState.OPEN
        self.created_at = datetime.now(timezone.utc)
        self.last_activity = self.created_at
        self.bytes_sent = 0
        self.bytes_received = 0
        self.writes = 0
        self.reads = 0
        self.error: str | None = None

        self._device = device
        self._retry_limit = retry_limit
        self._retry_delay_s = retry_delay_s
        self._lock = threading.Lock()
        # Guards _reading and _cancelled; never held during device I/O.
        self._cancel_lock = threading.Lock()
        self._reading = False
        self._cancelled = False

    @property
    def is_open(self) -> bool:
        return self.state is SessionState.OPEN

    def write(self, data: bytes) -> int:
        """Transmit all of *data*, retrying partial writes.

        Returns the total byte count, which is always ``len(data)``.

        Raises:
            HandleNotFound: If the session is no longer open.
            ConnectionLost: If the device faults or stops accepting
                bytes; the session is dead afterwards.
        """
        with self._lock:
            self._require_open()
            view = memoryview(data)
            sent = 0
            stalls = 0
            try:
                while sent < len(view):
                    n = self._device.write(view[sent:])
                    if n > 0:
                        sent += n
                        stalls = 0
                        continue
                    stalls += 1
                    if stalls > self._retry_limit:
                        raise self._die(
                            "device accepted no data after %d attempts (%d/%d bytes sent)"
                            % (stalls, sent, len(view))
                        )
                    time.sleep(self._retry_delay_s)
                self._device.flush()
            except _DEVICE_ERRORS as exc:
                raise self._die("write failed: %s" % exc) from exc

            self.bytes_sent += sent
            self.writes += 1
            self._touch()
            log.debug("%s: wrote %d bytes", self.handle, sent)
            return sent

    def read(self, max_bytes: int, timeout_s: float) -> bytes:
        """Read up to *max_bytes*, waiting at most *timeout_s* seconds.

        Waits for the first byte up to the deadline, in slices of
        ``READ_SLICE_S`` so ``cancel_read`` can stop it, then keeps draining
        while bytes arrive within ``READ_INTER_BYTE_S`` of each other.
        Returns early at *max_bytes*; never waits past the deadline.  An
        empty result means the device stayed silent.

        Raises:
            HandleNotFound: If the session is no longer open.
            ConnectionLost: If the device faults; the session is dead
                afterwards.
        """
        with self._lock:
            self._require_open()
            with self._cancel_lock:
                self._reading = True
                self._cancelled = False
            deadline = time.monotonic() + timeout_s
            try:
                data = bytearray(self._wait_first(max_bytes, deadline))
                while data and len(data) < max_bytes and not self._cancelled:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        break
                    chunk = self._device.read(
                        max_bytes - len(data), min(READ_INTER_BYTE_S, remaining),
                    )
                    if not chunk:
                        break
                    data += chunk
            except _DEVICE_ERRORS as exc:
                raise self._die("read failed: %s" % exc) from exc
            finally:
                with self._cancel_lock:
                    self._reading = False

            self.reads += 1
            if data:
                self.bytes_received += len(data)
                self._touch()
            log.debug("%s: read %d bytes", self.handle, len(data))
            return bytes(data)

    def _wait_first(self, max_bytes: int, deadline: float) -> bytes:
        """Wait for data until *deadline* or a cancel.  Caller holds the lock."""
        while True:
            remaining = deadline - time.monotonic()
            chunk = self._device.read(max_bytes, max(0.0, min(READ_SLICE_S, remaining)))
            if chunk or remaining <= READ_SLICE_S or self._cancelled:
                return chunk

    def cancel_read(self) -> bool:
        """Stop a read in flight on this session, if there is one.

        Does not take the session lock.  The interrupted read returns
        what it has collected within one ``READ_SLICE_S``; the session
        stays open.  A cancel with no read in flight does nothing and
        never affects a later read.  Returns True if a read was
        interrupted.
        """
        with self._cancel_lock:
            if not self._reading or not self.is_open:
                return False
            self._cancelled = True
        log.debug("%s: read cancelled", self.handle)
        return True

    def close(self) -> None:
        """Release the device.  Waits for any operation in flight.

        Raises:
            HandleNotFound: If the session is already closed or dead.
        """
        with self._lock:
            self._require_open()
            self.state = SessionState.CLOSED
            self._release_device()

    def info(self) -> dict:
        """Return a JSON-serializable snapshot of the session."""
        now = datetime.now(timezone.utc)
        return {
            "handle": self.handle,
            "port": self.device_path,
            "config": self.config.to_dict(),
            "settings": self.config.describe(),
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "idle_seconds": (now - self.last_activity).total_seconds(),
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "writes": self.writes,
            "reads": self.reads,
            "error": self.error,
        }

    def _require_open(self) -> None:
        if self.state is not SessionState.OPEN:
            raise HandleNotFound(self.handle)

    def _touch(self) -> None:
        self.last_activity = datetime.now(timezone.utc)

    def _die(self, reason: str) -> ConnectionLost:
        """Mark the session dead, release the device, return the error.

        Caller must hold the session lock.
        """
        self.state = SessionState.DEAD
        self.error = reason
        log.warning("%s: connection to %s lost: %s", self.handle, self.device_path, reason)
        self._release_device()
        return ConnectionLost("%s: %s" % (self.device_path, reason))

    def _release_device(self) -> None:
        try:
            self._device.close()
        except _DEVICE_ERRORS as exc:
            log.warning("%s: error closing %s: %s", self.handle, self.device_path, exc)
