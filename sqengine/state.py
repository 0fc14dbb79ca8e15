"""Bookkeeping for destinations, client requests, request ids and OIDs in flight."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Any

from .ber import BerError, PacketBuilder, encode_oid
from .stats import ProgramStats
from .values import decode_value, named, oid_value

RT_UNKNOWN = 0
RT_SETOPT = 1
RT_GETOPT = 2
RT_INFO = 3
RT_GET = 4
RT_GETTABLE = 5
RT_DEST_INFO = 6

RT_REPLY = 0x10
RT_ERROR = 0x20

DEFAULT_MAX_PACKETS_ON_THE_WIRE = 3
DEFAULT_MAX_REQUEST_PACKET_SIZE = 1400
DEFAULT_MAX_REPLY_PACKET_SIZE = 1472
DEFAULT_ESTIMATED_VALUE_SIZE = 9
DEFAULT_MAX_OIDS_PER_REQUEST = 64
DEFAULT_TIMEOUT = 2000
DEFAULT_RETRIES = 3
DEFAULT_MIN_INTERVAL = 10
DEFAULT_MAX_REPETITIONS = 10
DEFAULT_IGNORE_THRESHOLD = 0
DEFAULT_IGNORE_DURATION = 300000

DEFAULT_VERSION = 1  # SNMP v2c
DEFAULT_COMMUNITY = "public"

OID_BUFFER_SIZE = 2048


def _bytes(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape")


def _normalize_ip(ip: str | bytes) -> str:
    if isinstance(ip, (bytes, bytearray)):
        ip = bytes(ip).decode("ascii")
    return str(ipaddress.IPv4Address(ip))


def _ip_sort_key(address: tuple[str, int]) -> tuple[int, int]:
    return int(ipaddress.IPv4Address(address[0])), address[1]


@dataclass(eq=False)
class OidInfo:
    """One OID requested by a client, with its value once known.

    A table request is marked by a non-None last_known_table_entry.
    """

    cid: int
    fd: int
    oid: bytes
    sid: int = 0
    value: bytes | None = None
    last_known_table_entry: OidInfo | None = None
    max_repetitions: int = 0

    @property
    def is_table(self) -> bool:
        return self.last_known_table_entry is not None

    def dump(self) -> dict:
        return dict(
            (
                named("sid", self.sid),
                named("cid", self.cid),
                named("fd", self.fd),
                named("max_repetitions", self.max_repetitions),
                (b"oid", oid_value(self.oid)),
                (b"value", None if self.value is None else decode_value(self.value)),
            )
        )


def _encode_request_oid(obj: object) -> bytes:
    if isinstance(obj, (str, bytes, bytearray)):
        return encode_oid(obj, OID_BUFFER_SIZE)
    raise ValueError(f"an OID must be a string, not {type(obj).__name__}")


def allocate_oid_info(obj: object, cid_info: CidInfo, stats: ProgramStats) -> OidInfo:
    """Make an OidInfo from a client-supplied OID string; raise ValueError if bad."""
    encoded = _encode_request_oid(obj)
    stats.active_oid_infos += 1
    stats.total_oid_infos += 1
    return OidInfo(cid=cid_info.cid, fd=cid_info.fd, oid=encoded)


def allocate_oid_info_list(objs: list, cid_info: CidInfo, stats: ProgramStats) -> list[OidInfo]:
    """Make OidInfos for every OID of a list; on a bad one, none are kept."""
    result: list[OidInfo] = []
    try:
        for obj in objs:
            result.append(allocate_oid_info(obj, cid_info, stats))
    except (ValueError, BerError):
        stats.active_oid_infos -= len(result)
        raise
    return result


@dataclass(eq=False)
class CidInfo:
    """A single client request, identified by the client's request id."""

    cid: int
    cri: ClientRequests
    fd: int
    n_oids: int = 0
    n_oids_being_queried: int = 0
    n_oids_done: int = 0
    oids_done: list[OidInfo] = field(default_factory=list)

    @property
    def label(self) -> bytes:
        return _bytes(f"CID({self.cid})")

    def reply_message(self, request_type: int) -> list:
        """The reply carrying every finished OID with its value."""
        return [
            request_type | RT_REPLY,
            self.cid,
            [[oid_value(oi.oid), decode_value(oi.value or b"")] for oi in self.oids_done],
        ]

    def dump(self) -> dict:
        dest = self.cri.dest
        return dict(
            (
                (b"cri", _bytes(f"CRI({dest.ip}:{dest.port}->{self.cri.fd})")),
                named("cid", self.cid),
                named("fd", self.fd),
                named("n_oids", self.n_oids),
                named("n_oids_being_queried", self.n_oids_being_queried),
                named("n_oids_done", self.n_oids_done),
                named("#OIDS_DONE", len(self.oids_done)),
                (b"@OIDS_DONE", [oi.dump() for oi in self.oids_done]),
            )
        )


class Destination:
    """An SNMP agent, with its throttling settings and per-destination counters."""

    def __init__(self, ip: str, port: int):
        self.ip = ip
        self.port = port

        self.packets_on_the_wire = 0
        self.can_query_at = 0
        self.fd_of_last_query = 0
        self.client_requests: dict[int, ClientRequests] = {}
        self.sid_info: dict[int, SidInfo] = {}
        self.timeouts_in_a_row = 0
        self.ignore_until = 0

        self.max_packets_on_the_wire = DEFAULT_MAX_PACKETS_ON_THE_WIRE
        self.max_request_packet_size = DEFAULT_MAX_REQUEST_PACKET_SIZE
        self.max_reply_packet_size = DEFAULT_MAX_REPLY_PACKET_SIZE
        self.estimated_value_size = DEFAULT_ESTIMATED_VALUE_SIZE
        self.max_oids_per_request = DEFAULT_MAX_OIDS_PER_REQUEST
        self.min_interval = DEFAULT_MIN_INTERVAL
        self.max_repetitions = DEFAULT_MAX_REPETITIONS
        self.ignore_threshold = DEFAULT_IGNORE_THRESHOLD
        self.ignore_duration = DEFAULT_IGNORE_DURATION

        self.octets_received = 0
        self.octets_sent = 0

    def __repr__(self) -> str:
        return f"Destination({self.ip!r}, {self.port})"

    @property
    def address(self) -> tuple[str, int]:
        return self.ip, self.port

    @property
    def label(self) -> bytes:
        return _bytes(f"DEST({self.ip}:{self.port})")

    def dump(self) -> dict:
        items: list[tuple[bytes, Any]] = [
            named(name, getattr(self, name))
            for name in (
                "max_packets_on_the_wire",
                "max_request_packet_size",
                "max_reply_packet_size",
                "estimated_value_size",
                "max_oids_per_request",
                "min_interval",
                "max_repetitions",
                "ignore_threshold",
                "ignore_duration",
                "packets_on_the_wire",
                "fd_of_last_query",
            )
        ]
        items.append(named("#CRI", len(self.client_requests)))
        items.append(named("#SID", len(self.sid_info)))
        items.append(
            (
                b"@CRI",
                {
                    cri.label: cri.dump()
                    for _, cri in sorted(self.client_requests.items())
                },
            )
        )
        return dict(items)


@dataclass(eq=False)
class SidInfo:
    """One SNMP request packet in flight, identified by its request id."""

    sid: int
    cri: ClientRequests
    retries_left: int
    version: int
    builder: PacketBuilder | None = None
    packet: bytes = b""
    sid_offset: int = 0
    will_timeout_at: int = 0
    table_oid: OidInfo | None = None
    oids_being_queried: list[OidInfo] = field(default_factory=list)

    @property
    def label(self) -> bytes:
        return _bytes(f"SID({self.sid})")

    def dump(self) -> dict:
        dest = self.cri.dest
        table = self.table_oid
        last = table.last_known_table_entry if table is not None else None
        return dict(
            (
                (b"cri", _bytes(f"CRI({dest.ip}:{dest.port}->{self.cri.fd})")),
                named("retries_left", self.retries_left),
                named("version", self.version),
                (b"table_oid", table.dump() if table is not None else None),
                (b"last_known_table_oid", last.dump() if last is not None else None),
                named("#OID", len(self.oids_being_queried)),
                (b"@OID", [oi.dump() for oi in self.oids_being_queried]),
            )
        )


class ClientRequests:
    """Everything one client connection asks of one destination.

    The connection must carry an ``fd`` and its own ``stats``.
    """

    def __init__(self, dest: Destination, conn: Any):
        self.dest = dest
        self.conn = conn
        self.fd: int = conn.fd
        self.cid_info: dict[int, CidInfo] = {}
        self.oids_to_query: list[OidInfo] = []
        self.sid_infos: list[SidInfo] = []

        self.version = DEFAULT_VERSION
        self.community = DEFAULT_COMMUNITY
        self.timeout = DEFAULT_TIMEOUT
        self.retries = DEFAULT_RETRIES

    def __repr__(self) -> str:
        return f"ClientRequests({self.dest!r}, fd={self.fd})"

    @property
    def stats(self) -> ProgramStats:
        return self.conn.stats

    @property
    def label(self) -> bytes:
        return _bytes(f"CRI({self.fd})")

    def options(self) -> dict:
        """The settings in effect for this client and destination."""
        dest = self.dest
        return dict(
            (
                named("ip", dest.ip),
                named("port", dest.port),
                named("community", self.community),
                named("version", self.version + 1),
                named("max_packets", dest.max_packets_on_the_wire),
                named("max_req_size", dest.max_request_packet_size),
                named("max_reply_size", dest.max_reply_packet_size),
                named("estimated_value_size", dest.estimated_value_size),
                named("max_oids_per_request", dest.max_oids_per_request),
                named("timeout", self.timeout),
                named("retries", self.retries),
                named("min_interval", dest.min_interval),
                named("max_repetitions", dest.max_repetitions),
                named("ignore_threshold", dest.ignore_threshold),
                named("ignore_duration", dest.ignore_duration),
            )
        )

    def dump(self) -> dict:
        return dict(
            (
                (b"dest", self.dest.label),
                named("fd", self.fd),
                named("version", self.version),
                named("community", self.community),
                named("timeout", self.timeout),
                named("retries", self.retries),
                named("#CID", len(self.cid_info)),
                named("#QUERY_QUEUE", len(self.oids_to_query)),
                (b"@QUERY_QUEUE", [oi.dump() for oi in self.oids_to_query]),
                named("#SID", len(self.sid_infos)),
                (
                    b"@CID",
                    {ci.label: ci.dump() for _, ci in sorted(self.cid_info.items())},
                ),
                (b"@SID", {si.label: si.dump() for si in self.sid_infos}),
            )
        )


class Registry:
    """All destinations, and the client requests of every connection."""

    def __init__(self, stats: ProgramStats | None = None):
        self.stats = stats if stats is not None else ProgramStats()
        self._destinations: dict[tuple[str, int], Destination] = {}
        self._by_fd: dict[int, dict[tuple[str, int], ClientRequests]] = {}

    def get_destination(self, ip: str | bytes, port: int) -> Destination:
        """The destination for an address, created with defaults on first use."""
        key = (_normalize_ip(ip), port)
        dest = self._destinations.get(key)
        if dest is None:
            dest = Destination(*key)
            self._destinations[key] = dest
        return dest

    def find_destination(self, ip: str | bytes, port: int) -> Destination | None:
        try:
            key = (_normalize_ip(ip), port)
        except ValueError:
            return None
        return self._destinations.get(key)

    def destinations(self) -> list[Destination]:
        """Every destination, ordered by numeric address and then port."""
        return [
            self._destinations[key]
            for key in sorted(self._destinations, key=_ip_sort_key)
        ]

    def get_client_requests(self, ip: str | bytes, port: int, conn: Any) -> ClientRequests:
        dest = self.get_destination(ip, port)
        per_conn = self._by_fd.setdefault(conn.fd, {})
        cri = per_conn.get(dest.address)
        if cri is None:
            self.stats.active_cr_infos += 1
            self.stats.total_cr_infos += 1
            conn.stats.active_cr_infos += 1
            conn.stats.total_cr_infos += 1
            cri = ClientRequests(dest, conn)
            per_conn[dest.address] = cri
        dest.client_requests[conn.fd] = cri
        return cri

    def get_cid_info(self, cri: ClientRequests, cid: int) -> CidInfo:
        ci = cri.cid_info.get(cid)
        if ci is None:
            self.stats.active_cid_infos += 1
            self.stats.total_cid_infos += 1
            cri.stats.active_cid_infos += 1
            cri.stats.total_cid_infos += 1
            ci = CidInfo(cid=cid, cri=cri, fd=cri.fd)
            cri.cid_info[cid] = ci
        return ci

    def _free_oids(self, oids: list[OidInfo]) -> None:
        self.stats.active_oid_infos -= len(oids)
        oids.clear()

    def free_cid_info(self, ci: CidInfo) -> None:
        self.stats.active_cid_infos -= 1
        ci.cri.stats.active_cid_infos -= 1
        if ci.cri.cid_info.get(ci.cid) is ci:
            del ci.cri.cid_info[ci.cid]
        self._free_oids(ci.oids_done)

    def free_all_for_connection(self, conn: Any) -> list[ClientRequests]:
        """Forget a connection's client requests and return them.

        Their queued OIDs and client requests are released here; the
        SNMP requests still listed in their sid_infos are left to the caller.
        """
        per_conn = self._by_fd.pop(conn.fd, None)
        if per_conn is None:
            return []
        released = []
        for key in sorted(per_conn, key=_ip_sort_key):
            cri = per_conn[key]
            self.stats.active_cr_infos -= 1
            cri.stats.active_cr_infos -= 1
            self._free_oids(cri.oids_to_query)
            for _, ci in sorted(cri.cid_info.items()):
                self.free_cid_info(ci)
            cri.dest.client_requests.pop(cri.fd, None)
            released.append(cri)
        return released

    def dump_all_destinations(self) -> dict:
        return {dest.label: dest.dump() for dest in self.destinations()}