"""Tests for serialhub.ports."""

from types import SimpleNamespace
from unittest.mock import patch

import pytest
import serial

from serialhub.errors import PortEnumerationError
from serialhub.ports import PortDescriptor, list_ports


def _info(device, description="n/a", hwid="n/a", vid=None, pid=None,
          manufacturer=None, product=None, serial_number=None):
    """Build a stand-in for pyserial's ListPortInfo."""
    return SimpleNamespace(
        device=device, description=description, hwid=hwid, vid=vid, pid=pid,
        manufacturer=manufacturer, product=product, serial_number=serial_number,
    )


class TestListPorts:
    """Tests for list_ports()."""

    @patch("serialhub.ports.serial.tools.list_ports.comports")
    def test_sorted_by_device(self, mock_comports):
        """Ports come back sorted by device name."""
        mock_comports.return_value = [_info("/dev/ttyUSB0"), _info("/dev/ttyACM0")]
        assert [p.device for p in list_ports()] == ["/dev/ttyACM0", "/dev/ttyUSB0"]

    @patch("serialhub.ports.serial.tools.list_ports.comports")
    def test_no_ports(self, mock_comports):
        """An empty system yields an empty list, not an error."""
        mock_comports.return_value = []
        assert list_ports() == []

    @patch("serialhub.ports.serial.tools.list_ports.comports")
    def test_usb_descriptor(self, mock_comports):
        """USB adapters report VID:PID and their USB strings."""
        mock_comports.return_value = [_info(
            "/dev/ttyUSB0", description="FT232R USB UART",
            hwid="USB VID:PID=0403:6001 SER=A50285BI", vid=0x0403, pid=0x6001,
            manufacturer="FTDI", product="FT232R USB UART", serial_number="A50285BI",
        )]
        (port,) = list_ports()
        assert port == PortDescriptor(
            device="/dev/ttyUSB0",
            description="FT232R USB UART",
            hardware_id="USB VID:PID=0403:6001",
            manufacturer="FTDI",
            product="FT232R USB UART",
            serial_number="A50285BI",
        )

    @patch("serialhub.ports.serial.tools.list_ports.comports")
    def test_builtin_uart(self, mock_comports):
        """A port with no description gets a generic one and no hardware id."""
        mock_comports.return_value = [_info("/dev/ttyS0")]
        (port,) = list_ports()
        assert port.description == "Serial Port"
        assert port.hardware_id is None

    @patch("serialhub.ports.serial.tools.list_ports.comports")
    def test_description_from_usb_strings(self, mock_comports):
        """Missing description falls back to manufacturer and product."""
        mock_comports.return_value = [_info(
            "/dev/ttyACM0", manufacturer="Arduino", product="Uno",
            hwid="ACPI\\PNP0501",
        )]
        (port,) = list_ports()
        assert port.description == "Arduino Uno"
        assert port.hardware_id == "ACPI\\PNP0501"

    @patch("serialhub.ports.serial.tools.list_ports.comports")
    def test_os_failure(self, mock_comports):
        """An OS error becomes PortEnumerationError."""
        mock_comports.side_effect = OSError("sysfs unavailable")
        with pytest.raises(PortEnumerationError, match="sysfs unavailable"):
            list_ports()

    @patch("serialhub.ports.serial.tools.list_ports.comports")
    def test_serial_failure(self, mock_comports):
        """A SerialException becomes PortEnumerationError."""
        mock_comports.side_effect = serial.SerialException("boom")
        with pytest.raises(PortEnumerationError):
            list_ports()

    def test_to_dict(self):
        """to_dict() returns every field."""
        d = PortDescriptor("/dev/ttyS0", "Serial Port").to_dict()
        assert d == {
            "device": "/dev/ttyS0",
            "description": "Serial Port",
            "hardware_id": None,
            "manufacturer": None,
            "product": None,
            "serial_number": None,
        }
