#!/usr/bin/env python3
"""Virtual serial device simulator for serialhub.

Listens on a serial port (typically one end of a socat PTY pair) and
behaves like a small command-line firmware: ``H`` returns a help text,
``V`` returns a version line, and any other byte is echoed back.

Usage:
    socat -d -d pty,raw,echo=0,link=/tmp/sh-dev pty,raw,echo=0,link=/tmp/sh-host
    python serial_simulator.py /tmp/sh-dev 115200

    # then open /tmp/sh-host through serialhub

Args:
    port: Serial port path (e.g. /tmp/sh-dev).
    baudrate: Baud rate (e.g. 115200).
"""

import sys

# Add parent src to path so we can import serialhub
sys.path.insert(0, str(__import__("pathlib").Path(__file__).resolve().parents[1] / "src"))

from serialhub.session import SerialConfig, SerialDevice

HELP_TEXT = (
    b"Commands:\r\n"
    b"  H  show this help\r\n"
    b"  V  print firmware version\r\n"
    b"  anything else is echoed back\r\n"
)

VERSION_TEXT = b"serial_simulator 1.0\r\n"


def respond(data: bytes) -> bytes:
    """Return the simulator's reply to *data*."""
    reply = bytearray()
    for b in data:
        if b == ord("H"):
            reply += HELP_TEXT
        elif b == ord("V"):
            reply += VERSION_TEXT
        else:
            reply.append(b)
    return bytes(reply)


def run(port: str, baudrate: int) -> None:
    """Run the simulator loop until interrupted."""
    device = SerialDevice(port, SerialConfig(baudrate=baudrate))

    print("serial_simulator: listening on {}".format(port), flush=True)

    try:
        while True:
            data = device.read(256, 0.5)
            if not data:
                continue
            device.write(respond(data))
            device.flush()
    except KeyboardInterrupt:
        pass
    finally:
        device.close()


if __name__ == "__main__":
    if len(sys.argv) != 3:
        print("usage: serial_simulator.py <port> <baudrate>", file=sys.stderr)
        sys.exit(1)
    run(sys.argv[1], int(sys.argv[2]))
