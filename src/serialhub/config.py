"""Project-wide configuration constants and config-file loading.

Central place for tuneable parameters shared across modules.
Import individual names where needed.

Example:
    >>> from serialhub.config import load_config, DEFAULT_TIMEOUT_MS
    >>> cfg = load_config("serialhub.toml")
    >>> cfg["max_connections"]
    10
"""

import tomllib

# Defaults for read requests that omit them.
DEFAULT_TIMEOUT_MS = 1000
DEFAULT_MAX_BYTES = 1024
DEFAULT_ENCODING = "utf8"

# Once a read has data, keep draining while bytes arrive within this gap.
READ_INTER_BYTE_S = 0.05

# Longest read timeout accepted, and the slice a waiting read checks for
# cancellation.
MAX_TIMEOUT_S = 3600.0
READ_SLICE_S = 0.1

# A write that makes no progress is retried this many times, this far apart.
WRITE_RETRY_LIMIT = 5
WRITE_RETRY_DELAY_S = 0.01

# Upper bound on any baud rate we hand to the driver.
MAX_BAUDRATE = 4_000_000

# Bounds enforced on the config file.
MAX_CONNECTIONS_LIMIT = 1000
MAX_BUFFER_SIZE_LIMIT = 1024 * 1024

LOG_LEVELS = ("debug", "info", "warning", "error")

DEFAULTS = {
    "host": "127.0.0.1",
    "port": 8765,
    "max_connections": 10,
    "max_buffer_size": 8192,
    "max_data_size": 65536,
    "write_timeout_ms": 1000,
    "restrict_ports": False,
    "allowed_ports": [],
    "blocked_ports": [],
    "log_level": "info",
    "log_file": "",
}

DEFAULT_CONFIG_TOML = """\
# serialhub configuration.  Every key is optional.

[server]
host = "127.0.0.1"
port = 8765
max_connections = 10

[serial]
max_buffer_size = 8192      # largest single read, bytes
max_data_size = 65536       # largest single write, bytes
write_timeout_ms = 1000

[security]
restrict_ports = false
allowed_ports = []          # substrings, e.g. ["ttyUSB", "ttyACM"]
blocked_ports = []

[logging]
level = "info"              # debug, info, warning, error
file = ""                   # empty logs to stderr
"""


def default_config() -> dict:
    """Return a fresh copy of the built-in defaults."""
    cfg = dict(DEFAULTS)
    cfg["allowed_ports"] = list(DEFAULTS["allowed_ports"])
    cfg["blocked_ports"] = list(DEFAULTS["blocked_ports"])
    return cfg


def load_config(path: str | None) -> dict:
    """Read a TOML config file, validate it, and merge in defaults.

    All sections (``[server]``, ``[serial]``, ``[security]``,
    ``[logging]``) and all keys are optional.  A *path* of ``None``
    returns the defaults.

    The result is a flat dict: ``host``, ``port``, ``max_connections``,
    ``max_buffer_size``, ``max_data_size``, ``write_timeout_ms``,
    ``restrict_ports``, ``allowed_ports``, ``blocked_ports``,
    ``log_level``, ``log_file``.

    Raises:
        ValueError: If any key has the wrong type or is out of range.

    Example:
        >>> cfg = load_config("serialhub.toml")
        >>> cfg["port"]
        8765
    """
    cfg = default_config()
    if path is None:
        return cfg

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    server = _section(raw, "server")
    if "host" in server:
        _require_str(server, "host", "server.host")
        cfg["host"] = server["host"]
    if "port" in server:
        cfg["port"] = _require_range(server, "port", "server.port", 1, 65535)
    if "max_connections" in server:
        cfg["max_connections"] = _require_range(
            server, "max_connections", "server.max_connections",
            1, MAX_CONNECTIONS_LIMIT,
        )

    serial_ = _section(raw, "serial")
    if "max_buffer_size" in serial_:
        cfg["max_buffer_size"] = _require_range(
            serial_, "max_buffer_size", "serial.max_buffer_size",
            1, MAX_BUFFER_SIZE_LIMIT,
        )
    if "max_data_size" in serial_:
        cfg["max_data_size"] = _require_range(
            serial_, "max_data_size", "serial.max_data_size",
            1, MAX_BUFFER_SIZE_LIMIT,
        )
    if "write_timeout_ms" in serial_:
        cfg["write_timeout_ms"] = _require_range(
            serial_, "write_timeout_ms", "serial.write_timeout_ms", 0, 600000,
        )

    security = _section(raw, "security")
    if "restrict_ports" in security:
        _require_bool(security, "restrict_ports", "security.restrict_ports")
        cfg["restrict_ports"] = security["restrict_ports"]
    for key in ("allowed_ports", "blocked_ports"):
        if key in security:
            _require_str_list(security, key, "security.%s" % key)
            cfg[key] = list(security[key])

    logging_ = _section(raw, "logging")
    if "level" in logging_:
        _require_str(logging_, "level", "logging.level")
        level = logging_["level"].lower()
        if level not in LOG_LEVELS:
            raise ValueError(
                "logging.level must be one of %s, got '%s'"
                % (", ".join(LOG_LEVELS), logging_["level"])
            )
        cfg["log_level"] = level
    if "file" in logging_:
        _require_str(logging_, "file", "logging.file")
        cfg["log_file"] = logging_["file"]

    return cfg


def _section(raw: dict[str, object], name: str) -> dict[str, object]:
    """Return table *name* from *raw*, or an empty dict if absent."""
    if name not in raw:
        return {}
    section = raw[name]
    if not isinstance(section, dict):
        raise ValueError("[%s] must be a table" % name)
    return section


def _require_str(raw: dict[str, object], key: str, name: str) -> None:
    """Validate that *key* in *raw* is a str."""
    if not isinstance(raw[key], str):
        raise ValueError("%s must be str, got %s" % (name, type(raw[key]).__name__))


def _require_bool(raw: dict[str, object], key: str, name: str) -> None:
    """Validate that *key* in *raw* is a bool."""
    if not isinstance(raw[key], bool):
        raise ValueError("%s must be bool, got %s" % (name, type(raw[key]).__name__))


def _require_range(
    raw: dict[str, object], key: str, name: str, lo: int, hi: int,
) -> int:
    """Validate that *key* in *raw* is an int in ``lo..hi`` and return it."""
    value = raw[key]
    # bool is an int subclass; TOML true/false is never a valid count.
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError("%s must be int, got %s" % (name, type(value).__name__))
    if value < lo or value > hi:
        raise ValueError("%s must be %d-%d, got %d" % (name, lo, hi, value))
    return value


def _require_str_list(raw: dict[str, object], key: str, name: str) -> None:
    """Validate that *key* in *raw* is a list of str."""
    if not isinstance(raw[key], list):
        raise ValueError("%s must be a list of str" % name)
    for i, v in enumerate(raw[key]):
        if not isinstance(v, str):
            raise ValueError("%s[%d] must be str, got %s" % (name, i, type(v).__name__))
