"""Error kinds raised by the connection manager and its helpers.

Every failure the manager reports to a caller is a ``SerialHubError``
subclass.  The ``kind`` attribute is the stable name the dispatcher
puts on the wire; the message is for humans.

Example:
    >>> from serialhub.errors import HandleNotFound
    >>> try:
    ...     manager.close("deadbeef")
    ... except HandleNotFound as exc:
    ...     exc.kind
    'HandleNotFound'
"""


class SerialHubError(Exception):
    """Base class for all serialhub errors."""

    kind = "SerialHubError"


class InvalidConfiguration(SerialHubError, ValueError):
    """A parameter is out of range; no device was touched."""

    kind = "InvalidConfiguration"


class DeviceUnavailable(SerialHubError):
    """The device does not exist or is already claimed."""

    kind = "DeviceUnavailable"


class HandleNotFound(SerialHubError, KeyError):
    """The handle is unknown, closed, or its session died."""

    kind = "HandleNotFound"

    def __init__(self, handle: str):
        super().__init__(handle)
        self.handle = handle

    def __str__(self) -> str:
        return "connection not found: %s" % self.handle


class EncodingError(SerialHubError, ValueError):
    """The payload is malformed for the requested encoding."""

    kind = "EncodingError"


class ConnectionLost(SerialHubError):
    """The device failed mid-operation; its session has been destroyed."""

    kind = "ConnectionLost"


class SessionLimitExceeded(SerialHubError):
    """Opening another session would exceed ``max_connections``."""

    kind = "SessionLimitExceeded"


class PortEnumerationError(SerialHubError):
    """The operating system could not list serial ports."""

    kind = "PortEnumerationError"


class ManagerClosed(SerialHubError):
    """The manager has been shut down and accepts no new sessions."""

    kind = "ManagerClosed"
