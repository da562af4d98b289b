"""Shared pytest fixtures for serialhub tests."""

import threading

import pytest
import serial

from serialhub.manager import ConnectionManager

# Canned reply to "H", as a small firmware prints it.
HELP_RESPONSE = (b"Commands: H help, V version, R reset, S status\r\n" * 5)[:198]


def help_responder(data: bytes) -> bytes:
    """Reply to ``H`` with HELP_RESPONSE; ignore everything else."""
    return HELP_RESPONSE if data == b"H" else b""


class FakeDevice:
    """Test double for SerialDevice.

    Records written bytes, feeds canned replies into its receive
    buffer and tracks how many I/O calls are running at once so tests
    can check that a session never overlaps device access.

    Args:
        responder: Called with each accepted write; whatever it returns
            is appended to the receive buffer.
        chunk_sizes: Byte counts the next writes accept, one per call.
            ``0`` simulates a stalled driver.  When exhausted, writes
            are accepted whole.
        read_chunk: Most bytes a single ``read`` returns.
        io_delay_s: Seconds each read/write holds the device.
    """

    def __init__(self, responder=None, chunk_sizes=None, read_chunk=None,
                 io_delay_s=0.0):
        """Initialize an open, idle device."""
        self.written = bytearray()
        self.write_calls = 0
        self.flushes = 0
        self.closed = False
        self.close_count = 0
        self.fail = None
        self.active = 0
        self.max_active = 0
        self._responder = responder
        self._chunk_sizes = list(chunk_sizes or [])
        self._read_chunk = read_chunk
        self._io_delay_s = io_delay_s
        self._rx = bytearray()
        self._cond = threading.Condition()
        self._guard = threading.Lock()
        self.reading = threading.Event()

    def feed(self, data: bytes) -> None:
        """Make *data* available to the next read."""
        with self._cond:
            self._rx += data
            self._cond.notify_all()

    def write(self, data) -> int:
        """Accept all of *data*, or the next entry of chunk_sizes."""
        self._enter()
        try:
            self._check()
            self.write_calls += 1
            n = len(data)
            if self._chunk_sizes:
                n = min(self._chunk_sizes.pop(0), n)
            self.written += data[:n]
            if n and self._responder is not None:
                self.feed(self._responder(bytes(data[:n])))
            return n
        finally:
            self._exit()

    def flush(self) -> None:
        """Count the flush."""
        self._enter()
        try:
            self._check()
            self.flushes += 1
        finally:
            self._exit()

    def read(self, size: int, timeout_s: float) -> bytes:
        """Return up to *size* buffered bytes, waiting up to *timeout_s*."""
        self._enter()
        try:
            self._check()
            self.reading.set()
            with self._cond:
                if not self._rx and timeout_s > 0:
                    self._cond.wait_for(lambda: self._rx, timeout=timeout_s)
                if self._read_chunk:
                    size = min(size, self._read_chunk)
                data = bytes(self._rx[:size])
                del self._rx[:size]
            self._check()
            return data
        finally:
            self._exit()

    def close(self) -> None:
        """Mark the device closed."""
        self._enter()
        try:
            self.closed = True
            self.close_count += 1
        finally:
            self._exit()

    def _check(self) -> None:
        if self.fail is not None:
            raise self.fail

    def _enter(self) -> None:
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self._io_delay_s:
            threading.Event().wait(self._io_delay_s)

    def _exit(self) -> None:
        with self._guard:
            self.active -= 1


class FakeOpener:
    """Test double for the manager's device opener.

    Hands out a fresh FakeDevice for each known path and raises
    ``serial.SerialException`` for any other, the way pyserial does for
    a missing port.
    """

    def __init__(self, paths=("/dev/ttyFAKE0", "/dev/ttyFAKE1"), **device_kwargs):
        """Initialize with the set of paths that exist."""
        self.paths = set(paths)
        self.devices = {}
        self.calls = []
        self.gate = None
        self.entered = threading.Event()
        self._device_kwargs = device_kwargs

    def __call__(self, path: str, config) -> FakeDevice:
        """Open *path*, blocking on ``gate`` first if one is set."""
        self.calls.append((path, config))
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if path not in self.paths:
            raise serial.SerialException(
                "[Errno 2] could not open port %s: No such file or directory" % path
            )
        device = FakeDevice(**self._device_kwargs)
        self.devices[path] = device
        return device


@pytest.fixture()
def opener():
    """A FakeOpener whose devices answer "H" with HELP_RESPONSE."""
    return FakeOpener(responder=help_responder)


@pytest.fixture()
def manager(opener):
    """Yield a ConnectionManager over *opener*, shut down afterwards."""
    m = ConnectionManager(opener=opener)
    yield m
    m.shutdown()
