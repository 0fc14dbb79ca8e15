"""BER encoding and decoding for the subset of SNMP that the engine speaks."""

from __future__ import annotations

import ipaddress
from collections.abc import Iterable

AT_INTEGER = 0x02
AT_STRING = 0x04
AT_NULL = 0x05
AT_OID = 0x06
AT_SEQUENCE = 0x30

AT_IP_ADDRESS = 0x40
AT_COUNTER = 0x41
AT_UNSIGNED = 0x42
AT_TIMETICKS = 0x43
AT_OPAQUE = 0x44
AT_COUNTER64 = 0x46

AT_NO_SUCH_OBJECT = 0x80
AT_NO_SUCH_INSTANCE = 0x81
AT_END_OF_MIB_VIEW = 0x82

PDU_GET_REQUEST = 0xA0
PDU_GET_NEXT_REQUEST = 0xA1
PDU_GET_RESPONSE = 0xA2
PDU_SET_REQUEST = 0xA3
PDU_TRAP = 0xA4
PDU_GET_BULK_REQUEST = 0xA5
PDU_INFORM_REQUEST = 0xA6
PDU_SNMPV2_TRAP = 0xA7
PDU_REPORT = 0xA8

# Internal pseudo-types used to carry engine-level outcomes as values.
VAL_TIMEOUT = 0x8A
VAL_MISSING = 0x8B
VAL_UNSUPPORTED = 0x8C
VAL_DECODE_ERROR = 0x8D
VAL_IGNORED = 0x8E
VAL_NON_INCREASING = 0x8F
VAL_STRING_ERROR = 0x90

MAX_OID = 0xFFFFFFFF
MAX_PACKET_SIZE = 65000

BER_NULL = bytes((AT_NULL, 0))
BER_TIMEOUT = bytes((VAL_TIMEOUT, 0))
BER_MISSING = bytes((VAL_MISSING, 0))
BER_IGNORED = bytes((VAL_IGNORED, 0))
BER_NON_INCREASING = bytes((VAL_NON_INCREASING, 0))

_ERROR_STATUS_NAMES = (
    "noError",
    "tooBig",
    "noSuchName",
    "badValue",
    "readOnly",
    "genErr",
    "noAccess",
    "wrongType",
    "wrongLength",
    "wrongEncoding",
    "wrongValue",
    "noCreation",
    "inconsistentValue",
    "resourceUnavailable",
    "commitFailed",
    "undoFailed",
    "authorizationError",
    "notWritable",
    "inconsistentName",
)

_DIGITS = "0123456789"


class BerError(ValueError):
    """Raised when data cannot be encoded or decoded as BER."""


def _check_size(data: bytes, max_size: int | None) -> bytes:
    if max_size is not None and len(data) > max_size:
        raise BerError(f"encoding needs {len(data)} bytes, only {max_size} available")
    return data


def encode_length(length: int) -> bytes:
    """Encode a BER definite length."""
    if length < 0:
        raise BerError("negative length")
    if length <= 127:
        return bytes((length,))
    if length <= 0xFF:
        return bytes((0x81, length))
    if length <= 0xFFFF:
        return b"\x82" + length.to_bytes(2, "big")
    if length <= 0xFFFFFF:
        return b"\x83" + length.to_bytes(3, "big")
    if length <= 0xFFFFFFFF:
        return b"\x84" + length.to_bytes(4, "big")
    raise BerError(f"length {length} out of range")


def encode_type_len(tag: int, length: int) -> bytes:
    """Encode a tag byte followed by a length."""
    return bytes((tag,)) + encode_length(length)


def encode_integer(value: int, force_size: int = 0) -> bytes:
    """Encode an unsigned 32-bit value as an INTEGER, optionally of a fixed width."""
    if value < 0 or value > 0xFFFFFFFF:
        raise BerError(f"integer {value} out of range")
    if not 0 <= force_size <= 4:
        raise BerError(f"unsupported integer width {force_size}")
    if force_size:
        size = force_size
    elif value <= 0xFF:
        size = 1
    elif value <= 0xFFFF:
        size = 2
    elif value <= 0xFFFFFF:
        size = 3
    else:
        size = 4
    truncated = value & ((1 << (8 * size)) - 1)
    return encode_type_len(AT_INTEGER, size) + truncated.to_bytes(size, "big")


def encode_string(s: str | bytes, max_size: int | None = None) -> bytes:
    """Encode an OCTET STRING."""
    raw = s.encode("utf-8") if isinstance(s, str) else bytes(s)
    return _check_size(encode_type_len(AT_STRING, len(raw)) + raw, max_size)


def _parse_oid(oid: str) -> list[int]:
    end = len(oid)
    if end == 0:
        raise BerError("empty OID")
    pos = 1 if oid[0] == "." else 0
    if pos >= end:
        raise BerError("truncated OID")

    first = 0
    while oid[pos] in _DIGITS:
        first = first * 10 + int(oid[pos])
        pos += 1
        if pos >= end:
            raise BerError("OID has a single component")
    if oid[pos] != ".":
        raise BerError(f"unexpected character {oid[pos]!r} in OID")
    pos += 1
    if pos >= end:
        raise BerError("truncated OID")

    second = 0
    while pos < end and oid[pos] in _DIGITS:
        second = second * 10 + int(oid[pos])
        pos += 1
    if second >= 40:
        raise BerError("second OID component must be below 40")

    subids = [40 * first + second]
    while pos < end:
        if oid[pos] != ".":
            raise BerError(f"unexpected character {oid[pos]!r} in OID")
        pos += 1
        if pos >= end:
            raise BerError("OID ends with a dot")
        value = 0
        while pos < end and oid[pos] in _DIGITS:
            value = value * 10 + int(oid[pos])
            pos += 1
        subids.append(value)

    for value in subids:
        if value > MAX_OID:
            raise BerError(f"OID component {value} out of range")
    return subids


def _encode_subid(value: int) -> bytes:
    out = [value & 0x7F]
    value >>= 7
    while value:
        out.append(0x80 | (value & 0x7F))
        value >>= 7
    return bytes(reversed(out))


def encode_oid(oid: str | bytes, max_size: int | None = None) -> bytes:
    """Encode a dotted OID string, with an optional leading dot."""
    text = oid.decode("latin-1") if isinstance(oid, (bytes, bytearray)) else oid
    content = b"".join(_encode_subid(value) for value in _parse_oid(text))
    if len(content) > 0xFFFF:
        raise BerError("OID too long")
    return _check_size(encode_type_len(AT_OID, len(content)) + content, max_size)


def _read_subid(content: bytes, pos: int) -> tuple[int, int]:
    end = len(content)
    value = 0
    continuation = 0
    while pos < end and content[pos] >= 0x80:
        value = ((value << 7) | (content[pos] & 0x7F)) & MAX_OID
        pos += 1
        continuation += 1
    if pos >= end:
        raise BerError("truncated OID sub-identifier")
    value = ((value << 7) | (content[pos] & 0x7F)) & MAX_OID
    pos += 1
    if continuation > 4:
        raise BerError("OID sub-identifier too long")
    return value, pos


def decode_oid(data: bytes) -> str:
    """Decode an encoded OID into dotted form; trailing bytes are ignored."""
    data = bytes(data)
    if not data or data[0] != AT_OID:
        raise BerError("not an OID")
    if len(data) < 2:
        raise BerError("truncated OID")
    length = data[1]
    pos = 2
    remaining = len(data) - pos
    if length <= 127:
        pass
    elif length == 0x81 and remaining >= 1:
        length = data[pos]
        pos += 1
    elif length == 0x82 and remaining >= 2:
        length = int.from_bytes(data[pos:pos + 2], "big")
        pos += 2
    else:
        raise BerError("bad OID length")
    if length > len(data) - pos:
        raise BerError("OID length exceeds data")

    content = data[pos:pos + length]
    parts: list[int] = []
    cpos = 0
    while cpos < len(content):
        value, cpos = _read_subid(content, cpos)
        if parts:
            parts.append(value)
        else:
            parts.extend((value // 40, value % 40))
    return ".".join(str(part) for part in parts)


def is_null(value: bytes) -> bool:
    """Tell whether an encoded value is an ASN.1 NULL."""
    return len(value) >= 2 and value[0] == AT_NULL and value[1] == 0


def error_status_value(status: int) -> bytes:
    """Build the internal string-error value describing an SNMP error-status."""
    if 0 <= status < len(_ERROR_STATUS_NAMES):
        text = _ERROR_STATUS_NAMES[status]
    else:
        text = f"error-status {status}"
    encoded = bytearray(encode_string(text))
    encoded[0] = VAL_STRING_ERROR
    return bytes(encoded)


def _oid_content(encoded: bytes) -> bytes:
    reader = BerReader(encoded)
    tag, length = reader.read_type_len()
    if tag != AT_OID:
        raise BerError("not an OID")
    return reader.data[reader.pos:reader.pos + length]


def oid_compare(a: bytes, b: bytes) -> int:
    """Compare two encoded OIDs lexicographically: -1, 0 or 1."""
    reader_a = BerReader(a)
    tag_a, _ = reader_a.read_type_len()
    reader_b = BerReader(b)
    tag_b, _ = reader_b.read_type_len()
    if tag_a != AT_OID or tag_b != AT_OID:
        raise BerError("not an OID")
    content_a = _oid_content(a)
    content_b = _oid_content(b)

    pos_a = pos_b = 0
    while pos_a < len(content_a) and pos_b < len(content_b):
        value_a, pos_a = _read_subid(content_a, pos_a)
        value_b, pos_b = _read_subid(content_b, pos_b)
        if value_a < value_b:
            return -1
        if value_a > value_b:
            return 1
    if pos_a < len(content_a):
        return 1
    if pos_b < len(content_b):
        return -1
    return 0


def oid_belongs_to_table(oid: bytes, table: bytes) -> bool:
    """Tell whether an encoded OID lies strictly below an encoded table OID."""
    try:
        oid_reader = BerReader(oid)
        oid_tag, oid_len = oid_reader.read_type_len()
        table_reader = BerReader(table)
        table_tag, table_len = table_reader.read_type_len()
    except BerError:
        return False
    if oid_len <= table_len:
        return False
    if oid_tag != AT_OID or table_tag != AT_OID:
        return False
    oid_start = oid_reader.pos
    table_start = table_reader.pos
    return (
        oid_reader.data[oid_start:oid_start + table_len]
        == table_reader.data[table_start:table_start + table_len]
    )


class BerReader:
    """Sequential reader over a BER-encoded buffer."""

    def __init__(self, data: bytes):
        self.data = bytes(data)
        self.pos = 0

    def _need(self, count: int) -> None:
        if self.pos + count > len(self.data):
            raise BerError("message too short")

    def _take(self, count: int) -> bytes:
        self._need(count)
        chunk = self.data[self.pos:self.pos + count]
        self.pos += count
        return chunk

    def read_type_len(self) -> tuple[int, int]:
        """Read a tag and length; the contents must fit in the buffer."""
        self._need(2)
        tag = self.data[self.pos]
        first = self.data[self.pos + 1]
        self.pos += 2
        if first <= 127:
            length = first
        elif 0x81 <= first <= 0x84:
            length = int.from_bytes(self._take(first & 0x7F), "big")
        else:
            raise BerError(f"unsupported length form 0x{first:02x}")
        self._need(length)
        return tag, length

    def read_composite(self, tag: int) -> int:
        """Enter a constructed value of the given tag; return its end position."""
        actual, length = self.read_type_len()
        if actual != tag:
            raise BerError(f"expected tag 0x{tag:02x}, got 0x{actual:02x}")
        return self.pos + length

    def read_sequence(self) -> int:
        return self.read_composite(AT_SEQUENCE)

    def _length_for(self, tag: int, length: int | None) -> int:
        if length is not None and length >= 0:
            return length
        actual, length = self.read_type_len()
        if actual != tag:
            raise BerError(f"expected tag 0x{tag:02x}, got 0x{actual:02x}")
        return length

    def read_integer(self, length: int | None = None) -> int:
        """Read an unsigned 32-bit INTEGER, or raw contents when length is given."""
        size = self._length_for(AT_INTEGER, length)
        return int.from_bytes(self._take(size), "big") & 0xFFFFFFFF

    def read_counter64(self, length: int | None = None) -> int:
        size = self._length_for(AT_COUNTER64, length)
        return int.from_bytes(self._take(size), "big") & 0xFFFFFFFFFFFFFFFF

    def read_timeticks(self, length: int | None = None) -> int:
        size = self._length_for(AT_TIMETICKS, length)
        return self.read_counter64(size)

    def read_ipv4(self, length: int | None = None) -> str:
        size = self._length_for(AT_IP_ADDRESS, length)
        return str(ipaddress.IPv4Address(self.read_integer(size)))

    def read_oid(self) -> bytes:
        """Read an OID and return its whole encoding."""
        start = self.pos
        tag, length = self.read_type_len()
        if tag != AT_OID:
            raise BerError(f"expected an OID, got tag 0x{tag:02x}")
        self.pos += length
        return self.data[start:self.pos]

    def read_any(self) -> bytes:
        """Read any value and return its whole encoding."""
        start = self.pos
        _, length = self.read_type_len()
        self.pos += length
        return self.data[start:self.pos]

    def skip(self, length: int) -> None:
        self._take(length)


class PacketBuilder:
    """Incrementally assembles an SNMP request packet."""

    def __init__(self, version: int, community: str | bytes, request_id: int):
        if version not in (0, 1):
            raise BerError(f"unsupported SNMP version {version}")
        self._head = encode_integer(version) + encode_string(community)
        self._request_id = encode_integer(request_id, 4)
        self._varbinds = bytearray()
        self.oid_count = 0
        # Size counted with every enclosing header at its two-byte minimum.
        self.size = 2 + len(self._head) + 2 + len(self._request_id) + 3 + 3 + 2
        if self.size > MAX_PACKET_SIZE:
            raise BerError("packet too large")

    def add_oid(self, encoded_oid: bytes) -> None:
        """Append a variable binding of the OID with a NULL value."""
        body = bytes(encoded_oid) + BER_NULL
        varbind = encode_type_len(AT_SEQUENCE, len(body)) + body
        if self.size + len(varbind) > MAX_PACKET_SIZE:
            raise BerError("packet too large")
        self._varbinds += varbind
        self.size += len(varbind)
        self.oid_count += 1

    def finalize(self, pdu_type: int, max_repetitions: int = 0) -> tuple[bytes, int]:
        """Return the packet and the offset of the four request-id bytes in it."""
        error_index = 0
        if pdu_type == PDU_GET_BULK_REQUEST:
            if max_repetitions <= 0:
                max_repetitions = 10
            error_index = min(max_repetitions, 255)
        varbind_list = encode_type_len(AT_SEQUENCE, len(self._varbinds)) + self._varbinds
        pdu_body = (
            self._request_id
            + encode_integer(0)
            + encode_integer(error_index, 1)
            + varbind_list
        )
        pdu_header = encode_type_len(pdu_type, len(pdu_body))
        body = self._head + pdu_header + pdu_body
        if len(body) > 0xFFFF:
            raise BerError("packet too large")
        packet = encode_type_len(AT_SEQUENCE, len(body)) + body
        if len(packet) > MAX_PACKET_SIZE:
            raise BerError("packet too large")
        sid_offset = (len(packet) - len(body)) + len(self._head) + len(pdu_header) + 2
        return bytes(packet), sid_offset


def build_get_request_packet(
    version: int, community: str | bytes, oids: Iterable[str], request_id: int
) -> bytes:
    """Build a complete GetRequest packet for the given OIDs."""
    builder = PacketBuilder(version, community, request_id)
    for oid in oids:
        builder.add_oid(encode_oid(oid))
    packet, _ = builder.finalize(PDU_GET_REQUEST)
    return packet