"""Payload encoding and decoding for data crossing the write/read boundary.

Callers hand over text; the device wants bytes.  ``decode_payload``
turns caller data into the raw byte sequence to transmit and
``encode_payload`` renders received bytes back into text.

Supported encodings: ``utf8`` (alias ``utf-8``), ``hex``, ``base64``
and ``raw`` (data already supplied as bytes).
"""

import base64
import binascii

from serialhub.errors import EncodingError

# -- Encoding names ----------------------------------------------------------

ENC_UTF8 = "utf8"
ENC_HEX = "hex"
ENC_BASE64 = "base64"
ENC_RAW = "raw"

ENCODINGS = (ENC_UTF8, ENC_HEX, ENC_BASE64, ENC_RAW)

_ALIASES = {
    "utf-8": ENC_UTF8,
    "utf8": ENC_UTF8,
    "hex": ENC_HEX,
    "base64": ENC_BASE64,
    "raw": ENC_RAW,
    "binary": ENC_RAW,
}


def normalize_encoding(name: str) -> str:
    """Return the canonical encoding name for *name*.

    Raises:
        EncodingError: If *name* is not a supported encoding.

    Example:
        >>> normalize_encoding("UTF-8")
        'utf8'
    """
    if not isinstance(name, str):
        raise EncodingError("encoding must be str, got %s" % type(name).__name__)
    try:
        return _ALIASES[name.strip().lower()]
    except KeyError:
        raise EncodingError(
            "unsupported encoding '%s' (expected one of: %s)"
            % (name, ", ".join(ENCODINGS))
        ) from None


# -- Decoding (caller -> device) ---------------------------------------------


def decode_payload(data: str | bytes, encoding: str) -> bytes:
    """Convert caller-supplied *data* into raw bytes for transmission.

    ``hex`` accepts pairs of hex digits, optionally separated by
    whitespace (``"48 65 6c"`` or ``"48656c"``).  ``utf8`` accepts a str,
    or bytes that must be valid UTF-8.  ``raw`` requires bytes.

    Raises:
        EncodingError: On an unknown encoding, a type mismatch, odd-length
            or non-hex input, invalid UTF-8, or malformed base64.

    Example:
        >>> decode_payload("48 69", "hex")
        b'Hi'
    """
    enc = normalize_encoding(encoding)

    if enc == ENC_RAW:
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise EncodingError(
                "raw encoding requires bytes, got %s" % type(data).__name__
            )
        return bytes(data)

    if enc == ENC_UTF8:
        if isinstance(data, (bytes, bytearray)):
            try:
                bytes(data).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise EncodingError("invalid UTF-8: %s" % exc) from None
            return bytes(data)
        _require_text(data, enc)
        try:
            return data.encode("utf-8")
        except UnicodeEncodeError as exc:
            raise EncodingError("invalid UTF-8: %s" % exc) from None

    _require_text(data, enc)

    if enc == ENC_HEX:
        digits = "".join(data.split())
        if len(digits) % 2 != 0:
            raise EncodingError(
                "hex string must have even length, got %d digits" % len(digits)
            )
        try:
            return bytes.fromhex(digits)
        except ValueError as exc:
            raise EncodingError("invalid hex string: %s" % exc) from None

    try:
        return base64.b64decode(data.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EncodingError("invalid base64: %s" % exc) from None


def _require_text(data: object, enc: str) -> None:
    """Validate that *data* is a str for text encodings."""
    if not isinstance(data, str):
        raise EncodingError(
            "%s encoding requires str, got %s" % (enc, type(data).__name__)
        )


# -- Encoding (device -> caller) ---------------------------------------------


def encode_payload(data: bytes, encoding: str) -> str | bytes:
    """Render received *data* in the requested *encoding*.

    ``utf8`` replaces undecodable bytes with U+FFFD; it never fails.  ``hex``
    produces space-separated lowercase pairs.  ``raw`` returns the bytes
    unchanged.

    Example:
        >>> encode_payload(b"Hi", "hex")
        '48 69'
    """
    enc = normalize_encoding(encoding)
    if enc == ENC_RAW:
        return bytes(data)
    if enc == ENC_UTF8:
        return data.decode("utf-8", errors="replace")
    if enc == ENC_HEX:
        return data.hex(" ")
    return base64.b64encode(data).decode("ascii")
