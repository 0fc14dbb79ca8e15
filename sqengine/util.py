"""Helpers for client-supplied values, SNMP request ids and debugging dumps."""

from __future__ import annotations

import ipaddress
import time

from .ber import BerError, decode_oid

OID_STRING_LIMIT = 4096

_HEX = "0123456789abcdef"
_HEX_POSITIONS = (0, 3, 6, 9, 12, 15, 18, 21, 25, 28, 31, 34, 37, 40, 43, 46)
_DUMP_WIDTH = 67
_TEXT_COLUMN = 51


def object_to_string(obj: object, max_size: int = 256) -> str:
    """Turn a string, binary or non-negative integer into text shorter than max_size bytes."""
    if isinstance(obj, bool):
        raise ValueError("booleans are not strings")
    if isinstance(obj, (bytes, bytearray)):
        raw = bytes(obj)
        text = raw.decode("utf-8", errors="surrogateescape")
    elif isinstance(obj, str):
        text = obj
        raw = obj.encode("utf-8", errors="surrogateescape")
    elif isinstance(obj, int) and obj >= 0:
        text = str(obj)
        raw = text.encode("ascii")
    else:
        raise ValueError(f"cannot use {type(obj).__name__} as a string")
    if len(raw) >= max_size:
        raise ValueError(f"string of {len(raw)} bytes does not fit in {max_size}")
    return text


def object_to_ip(obj: object) -> str:
    """Parse a dotted-quad IPv4 address given as a string or binary."""
    text = object_to_string(obj, 16)
    try:
        return str(ipaddress.IPv4Address(text))
    except ipaddress.AddressValueError as exc:
        raise ValueError(f"bad IPv4 address {text!r}") from exc


def dump_buf(data: bytes) -> str:
    """Render bytes as a hex dump, sixteen bytes per line with a text column."""
    data = bytes(data)
    lines = []
    for start in range(0, len(data), 16):
        row = [" "] * _DUMP_WIDTH
        for column, (pos, byte) in enumerate(zip(_HEX_POSITIONS, data[start:start + 16])):
            row[pos] = _HEX[byte >> 4]
            row[pos + 1] = _HEX[byte & 0x0F]
            row[_TEXT_COLUMN + column] = chr(byte) if 0x20 <= byte < 0x7F else "."
        lines.append("".join(row) + "\n")
    return "".join(lines)


def oid_to_str(encoded: bytes) -> str:
    """Dotted form of an encoded OID, or "oid-too-long" when it cannot be shown."""
    try:
        text = decode_oid(encoded)
    except BerError:
        return "oid-too-long"
    if len(text) >= OID_STRING_LIMIT:
        return "oid-too-long"
    return text


class SidGenerator:
    """Produces SNMP request ids: increasing, 32-bit, never zero."""

    def __init__(self, seed: int | None = None):
        if seed is None:
            now_us = time.time_ns() // 1000
            seconds, micros = divmod(now_us, 1_000_000)
            seed = seconds % 500009 + micros
        self._sid = seed & 0xFFFFFFFF

    def next_sid(self) -> int:
        self._sid = (self._sid + 1) & 0xFFFFFFFF
        if self._sid == 0:
            self._sid = 1
        return self._sid