"""Serial port enumeration.

Queries the operating system for currently attached serial devices
through ``serial.tools.list_ports``.  Nothing is cached: every call
reflects the devices present at that moment.

Example:
    >>> from serialhub.ports import list_ports
    >>> [p.device for p in list_ports()]
    ['/dev/ttyACM0', '/dev/ttyUSB0']
"""

import logging
from dataclasses import asdict, dataclass

import serial
import serial.tools.list_ports

from serialhub.errors import PortEnumerationError

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortDescriptor:
    """One serial device as reported by the operating system.

    ``device`` is always present; the remaining fields are filled in
    when the OS knows them (USB adapters usually do, built-in UARTs
    usually do not).
    """

    device: str
    description: str
    hardware_id: str | None = None
    manufacturer: str | None = None
    product: str | None = None
    serial_number: str | None = None

    def to_dict(self) -> dict:
        """Return the descriptor as a plain dict."""
        return asdict(self)


def list_ports() -> list[PortDescriptor]:
    """Return descriptors for every serial device currently present.

    Sorted by device name.

    Raises:
        PortEnumerationError: If the OS query fails.
    """
    try:
        infos = serial.tools.list_ports.comports()
    except (OSError, serial.SerialException) as exc:
        log.warning("port enumeration failed: %s", exc)
        raise PortEnumerationError("failed to list ports: %s" % exc) from exc

    ports = [_describe(info) for info in infos]
    ports.sort(key=lambda p: p.device)
    log.debug("found %d serial ports", len(ports))
    return ports


def _describe(info) -> PortDescriptor:
    """Build a PortDescriptor from a pyserial ``ListPortInfo``."""
    description = info.description
    if not description or description == "n/a":
        if info.manufacturer or info.product:
            description = " ".join(
                part for part in (info.manufacturer, info.product) if part
            )
        else:
            description = "Serial Port"

    hardware_id = None
    if info.vid is not None and info.pid is not None:
        hardware_id = "USB VID:PID=%04X:%04X" % (info.vid, info.pid)
    elif info.hwid and info.hwid != "n/a":
        hardware_id = info.hwid

    return PortDescriptor(
        device=info.device,
        description=description,
        hardware_id=hardware_id,
        manufacturer=info.manufacturer,
        product=info.product,
        serial_number=info.serial_number,
    )
