"""Helpers for the hex encodings nodes use for hashes, topics and quantities."""

from typing import Any

from hexbytes import HexBytes


def to_hex_str(value: Any) -> str:
    """
    Render bytes-like or hex-string values as a lowercase 0x-prefixed string.

    Providers return hashes and topics either as HexBytes/bytes objects or
    as hex strings (with or without prefix), depending on the transport.

    :param value: bytes, HexBytes, or hex string
    :return: 0x-prefixed lowercase hex string ("0x" for empty input)
    """
    if value is None:
        return "0x"
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith(('0x', '0X')) else value
        return '0x' + hex_str.lower()
    return '0x' + bytes(HexBytes(value)).hex()


def to_bytes(value: Any) -> bytes:
    """Convert a hex string or bytes-like value to raw bytes."""
    if value is None:
        return b''
    return bytes(HexBytes(value))


def parse_hex_int(value: Any) -> int:
    """
    Parse a quantity that may arrive as int, hex string or bytes.

    :param value: The value to parse (int, bytes, str, or None)
    :return: Integer value, 0 for empty or missing input
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, byteorder='big')
    if isinstance(value, str):
        if value.startswith(('0x', '0X')):
            hex_str = value[2:]
            return int(hex_str, 16) if hex_str else 0
        return int(value) if value else 0
    raise TypeError(f"Cannot parse {type(value).__name__} as integer")
