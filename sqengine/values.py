"""Conversion of BER values and engine outcomes into reply objects."""

from __future__ import annotations

from .ber import (
    AT_COUNTER,
    AT_COUNTER64,
    AT_END_OF_MIB_VIEW,
    AT_INTEGER,
    AT_IP_ADDRESS,
    AT_NO_SUCH_INSTANCE,
    AT_NO_SUCH_OBJECT,
    AT_NULL,
    AT_OID,
    AT_STRING,
    AT_TIMETICKS,
    AT_UNSIGNED,
    VAL_DECODE_ERROR,
    VAL_IGNORED,
    VAL_MISSING,
    VAL_NON_INCREASING,
    VAL_STRING_ERROR,
    VAL_TIMEOUT,
    BerError,
    BerReader,
)
from .util import oid_to_str

_ERROR_WORDS = {
    AT_NO_SUCH_OBJECT: "no-such-object",
    AT_NO_SUCH_INSTANCE: "no-such-instance",
    AT_END_OF_MIB_VIEW: "end-of-mib",
    VAL_TIMEOUT: "timeout",
    VAL_MISSING: "missing",
    VAL_DECODE_ERROR: "decode-error",
    VAL_IGNORED: "ignored",
    VAL_NON_INCREASING: "non-increasing",
}


def _to_bytes(text: str | bytes) -> bytes:
    if isinstance(text, (bytes, bytearray)):
        return bytes(text)
    return text.encode("utf-8", errors="surrogateescape")


def _error(text: str | bytes) -> list[bytes]:
    return [_to_bytes(text)]


def _signed(value: int, length: int) -> int:
    if 1 <= length <= 3:
        sign_bit = 1 << (8 * length - 1)
        if value & sign_bit:
            return value - (sign_bit << 1)
        return value
    if value & 0x80000000:
        return value - 0x100000000
    return value


def oid_value(encoded: bytes) -> bytes:
    """The dotted form of an encoded OID, as binary."""
    return _to_bytes(oid_to_str(encoded))


def _decode(reader: BerReader, tag: int, length: int, whole: bytes) -> object:
    if tag in (AT_INTEGER, AT_COUNTER, AT_UNSIGNED):
        value = reader.read_integer(length)
        return _signed(value, length) if tag == AT_INTEGER else value
    if tag == AT_STRING:
        return reader.data[reader.pos:reader.pos + length]
    if tag == AT_NULL:
        return None
    if tag == AT_TIMETICKS:
        return reader.read_timeticks(length)
    if tag == AT_COUNTER64:
        return reader.read_counter64(length)
    if tag == AT_IP_ADDRESS:
        return _to_bytes(reader.read_ipv4(length))
    if tag == AT_OID:
        return oid_value(whole)
    if tag in _ERROR_WORDS:
        return _error(_ERROR_WORDS[tag])
    if tag == VAL_STRING_ERROR:
        return [reader.data[reader.pos:reader.pos + length]]
    return _error(f"unsupported type 0x{tag:02x}")


def decode_value(value: bytes) -> object:
    """Turn an encoded value into what a reply carries for it."""
    reader = BerReader(value)
    try:
        tag, length = reader.read_type_len()
        return _decode(reader, tag, length, reader.data)
    except BerError:
        return _error(_ERROR_WORDS[VAL_DECODE_ERROR])


def error_reply(code: int, cid: int, message: str | bytes) -> list:
    """An error reply: the request type with the error bit, the id and a message."""
    return [code, cid, _to_bytes(message)]


def named(name: str, value: int | str | bytes) -> tuple[bytes, int | bytes]:
    """A key and value pair for a reply map, with text carried as binary."""
    if isinstance(value, (str, bytes, bytearray)):
        return _to_bytes(name), _to_bytes(value)
    return _to_bytes(name), value