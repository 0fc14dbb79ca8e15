"""Validation and handling of client requests arriving as msgpack arrays."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .ber import BerError
from .state import (
    RT_DEST_INFO,
    RT_ERROR,
    RT_GET,
    RT_GETOPT,
    RT_GETTABLE,
    RT_INFO,
    RT_REPLY,
    RT_SETOPT,
    RT_UNKNOWN,
    allocate_oid_info,
    allocate_oid_info_list,
)
from .timers import ms_passed_since
from .util import object_to_ip, object_to_string
from .values import error_reply, named

RI_TYPE = 0
RI_CID = 1
RI_IP = 2
RI_PORT = 3
RI_SETOPT_OPT = 4
RI_GET_OIDS = 4
RI_GETTABLE_OID = 4
RI_GETTABLE_MREP = 5

OPTION_NAME_SIZE = 256
COMMUNITY_SIZE = 256
_NO_PORT = 65536
_MAX_PORT = 65535


class RequestError(Exception):
    """A request that cannot be carried out; its reply tells the client why."""

    def __init__(self, request_type: int, cid: int, message: str):
        super().__init__(message)
        self.request_type = request_type
        self.cid = cid
        self.message = message

    @property
    def reply(self) -> list:
        return error_reply(self.request_type | RT_ERROR, self.cid, self.message)


def _is_uint(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _address(request: list, request_type: int, cid: int) -> tuple[str, int]:
    """The destination IP and port of a request, both validated."""
    port_obj = request[RI_PORT]
    port = port_obj & 0xFFFFFFFF if _is_uint(port_obj) else _NO_PORT
    if port > _MAX_PORT:
        raise RequestError(request_type, cid, "bad port number")
    try:
        ip = object_to_ip(request[RI_IP])
    except ValueError as exc:
        raise RequestError(request_type, cid, "bad IP") from exc
    return ip, port


def _count(engine: Any, conn: Any, counter: str) -> None:
    setattr(engine.stats, counter, getattr(engine.stats, counter) + 1)
    setattr(conn.stats, counter, getattr(conn.stats, counter) + 1)


@dataclass(frozen=True)
class _IntOption:
    target: str  # "dest" or "cri"
    attribute: str
    low: int
    high: int
    message: str


_INT_OPTIONS = {
    "max_packets": _IntOption("dest", "max_packets_on_the_wire", 1, 1000, "invalid max packets"),
    "max_req_size": _IntOption("dest", "max_request_packet_size", 500, 50000, "invalid max request size"),
    "max_reply_size": _IntOption("dest", "max_reply_packet_size", 500, 50000, "invalid max reply size"),
    "estimated_value_size": _IntOption(
        "dest", "estimated_value_size", 1, 1024, "invalid estimated value size"
    ),
    "max_oids_per_request": _IntOption(
        "dest", "max_oids_per_request", 1, 1024, "invalid max oids per request"
    ),
    "timeout": _IntOption("cri", "timeout", 0, 30000, "invalid timeout"),
    "retries": _IntOption("cri", "retries", 1, 10, "invalid retries"),
    "min_interval": _IntOption("dest", "min_interval", 0, 10000, "invalid min interval"),
    "max_repetitions": _IntOption("dest", "max_repetitions", 1, 255, "invalid max repetitions"),
    "ignore_threshold": _IntOption("dest", "ignore_threshold", 0, 1000, "invalid ignore threshold"),
    "ignore_duration": _IntOption("dest", "ignore_duration", 0, 86400000, "invalid ignore duration"),
}
_RESETS_IGNORE = ("ignore_threshold", "ignore_duration")
_OPTION_NAMES = frozenset(_INT_OPTIONS) | {"version", "community", "global_max_packets"}


def handle_setopt(engine: Any, conn: Any, cid: int, request: list) -> None:
    """Change the settings for a destination; all or none of them are applied."""
    if len(request) != 5:
        raise RequestError(RT_SETOPT, cid, "bad request length")
    ip, port = _address(request, RT_SETOPT, cid)
    options = request[RI_SETOPT_OPT]
    if not isinstance(options, dict):
        raise RequestError(RT_SETOPT, cid, "options is not a map")

    cri = engine.registry.get_client_requests(ip, port, conn)
    dest = cri.dest
    changes: dict[str, dict[str, Any]] = {"dest": {}, "cri": {}}

    for key, value in options.items():
        try:
            name = object_to_string(key, OPTION_NAME_SIZE)
        except ValueError as exc:
            raise RequestError(RT_SETOPT, cid, "bad option key") from exc
        if name not in _OPTION_NAMES:
            raise RequestError(RT_SETOPT, cid, "bad option key")

        if name == "version":
            if not _is_uint(value) or value not in (1, 2):
                raise RequestError(RT_SETOPT, cid, "invalid SNMP version")
            changes["cri"]["version"] = value - 1
        elif name == "community":
            try:
                changes["cri"]["community"] = object_to_string(value, COMMUNITY_SIZE)
            except ValueError as exc:
                raise RequestError(RT_SETOPT, cid, "invalid SNMP community") from exc
        elif name == "global_max_packets":
            if not _is_uint(value) or not 1 <= value <= 2000000:
                raise RequestError(RT_SETOPT, cid, "invalid global max packets")
            engine.stats.max_packets_on_the_wire = value
        else:
            option = _INT_OPTIONS[name]
            if not _is_uint(value) or not option.low <= value <= option.high:
                raise RequestError(RT_SETOPT, cid, option.message)
            changes[option.target][option.attribute] = value
            if name in _RESETS_IGNORE and getattr(dest, name) != value:
                changes["dest"]["ignore_until"] = 0

    _count(engine, conn, "setopt_requests")
    for attribute, value in changes["cri"].items():
        setattr(cri, attribute, value)
    for attribute, value in changes["dest"].items():
        setattr(dest, attribute, value)
    conn.send([RT_SETOPT | RT_REPLY, cid, cri.options()])


def handle_getopt(engine: Any, conn: Any, cid: int, request: list) -> None:
    """Reply with the settings in effect for a destination."""
    if len(request) != 4:
        raise RequestError(RT_GETOPT, cid, "bad request length")
    ip, port = _address(request, RT_GETOPT, cid)
    _count(engine, conn, "getopt_requests")
    cri = engine.registry.get_client_requests(ip, port, conn)
    conn.send([RT_GETOPT | RT_REPLY, cid, cri.options()])


def _stats_map(stats: Any) -> dict:
    return dict(named(name, value) for name, value in stats.as_dict().items())


def handle_info(engine: Any, conn: Any, cid: int, request: list) -> None:
    """Reply with program and connection counters, or a dump of all destinations."""
    if len(request) < 2:
        raise RequestError(RT_INFO, cid, "bad request length")
    _count(engine, conn, "info_requests")

    if len(request) == 3 and _is_uint(request[2]) and request[2] == 1:
        conn.send([RT_INFO | RT_REPLY, cid, engine.registry.dump_all_destinations()])
        return

    now = engine.clock()
    engine.stats.uptime = ms_passed_since(engine.started_at, now)
    conn.stats.uptime = ms_passed_since(getattr(conn, "created", 0), now)
    conn.send(
        [
            RT_INFO | RT_REPLY,
            cid,
            {b"global": _stats_map(engine.stats), b"connection": _stats_map(conn.stats)},
        ]
    )


def handle_dest_info(engine: Any, conn: Any, cid: int, request: list) -> None:
    """Reply with the traffic counters of one destination."""
    if len(request) != 4:
        raise RequestError(RT_DEST_INFO, cid, "bad request length")
    ip, port = _address(request, RT_DEST_INFO, cid)
    _count(engine, conn, "dest_info_requests")
    cri = engine.registry.get_client_requests(ip, port, conn)
    dest = cri.dest
    counters = dict(
        named(name, getattr(dest, name))
        for name in ("octets_received", "octets_sent")
        if getattr(dest, name) >= 0
    )
    conn.send([RT_DEST_INFO | RT_REPLY, cid, counters])


def handle_get(engine: Any, conn: Any, cid: int, request: list) -> None:
    """Queue a list of OIDs for an SNMP get."""
    if len(request) != 5:
        raise RequestError(RT_GET, cid, "bad request length")
    ip, port = _address(request, RT_GET, cid)
    oids = request[RI_GET_OIDS]
    if not isinstance(oids, (list, tuple)):
        raise RequestError(RT_GET, cid, "oids must be an array")
    if not oids:
        raise RequestError(RT_GET, cid, "oids is an empty array")

    cri = engine.registry.get_client_requests(ip, port, conn)
    ci = engine.registry.get_cid_info(cri, cid)
    if ci.n_oids != 0:
        raise RequestError(RT_GET, cid, "duplicate request id")
    try:
        infos = allocate_oid_info_list(list(oids), ci, engine.stats)
    except (ValueError, BerError) as exc:
        raise RequestError(RT_GET, cid, "bad oid list") from exc
    ci.n_oids = len(infos)
    cri.oids_to_query.extend(infos)

    _count(engine, conn, "get_requests")
    engine.maybe_query_destination(cri.dest)


def handle_gettable(engine: Any, conn: Any, cid: int, request: list) -> None:
    """Queue a table walk starting at one OID."""
    if len(request) not in (5, 6):
        raise RequestError(RT_GETTABLE, cid, "bad request length")
    ip, port = _address(request, RT_GETTABLE, cid)

    cri = engine.registry.get_client_requests(ip, port, conn)
    max_repetitions = cri.dest.max_repetitions
    if len(request) == 6:
        value = request[RI_GETTABLE_MREP]
        max_repetitions = value if _is_uint(value) else -1
        if not 1 <= max_repetitions <= 255:
            raise RequestError(RT_GETTABLE, cid, "bad max repetitions")

    ci = engine.registry.get_cid_info(cri, cid)
    if ci.n_oids != 0:
        raise RequestError(RT_GETTABLE, cid, "duplicate request id")
    try:
        oi = allocate_oid_info(request[RI_GETTABLE_OID], ci, engine.stats)
    except (ValueError, BerError) as exc:
        raise RequestError(RT_GETTABLE, cid, "bad oid") from exc
    oi.last_known_table_entry = oi
    oi.max_repetitions = max_repetitions
    ci.n_oids += 1
    cri.oids_to_query.append(oi)

    _count(engine, conn, "gettable_requests")
    engine.maybe_query_destination(cri.dest)


_HANDLERS = {
    RT_SETOPT: handle_setopt,
    RT_GETOPT: handle_getopt,
    RT_INFO: handle_info,
    RT_DEST_INFO: handle_dest_info,
    RT_GET: handle_get,
    RT_GETTABLE: handle_gettable,
}


def _route(engine: Any, conn: Any, request: object) -> None:
    if not isinstance(request, (list, tuple)):
        raise RequestError(RT_UNKNOWN, 0, "Request is not an array")
    if len(request) < 1:
        raise RequestError(RT_UNKNOWN, 0, "Request is an empty array")
    if len(request) < 2:
        raise RequestError(RT_UNKNOWN, 0, "Request without an id")
    if not _is_uint(request[RI_CID]):
        raise RequestError(RT_UNKNOWN, 0, "Request id is not a positive integer")
    cid = request[RI_CID] & 0xFFFFFFFF
    if not _is_uint(request[RI_TYPE]):
        raise RequestError(RT_UNKNOWN, cid, "Request type is not a positive integer")
    request_type = request[RI_TYPE] & 0xFFFFFFFF
    handler = _HANDLERS.get(request_type)
    if handler is None:
        raise RequestError(request_type, cid, "Unknown request type")
    handler(engine, conn, cid, list(request))


def dispatch(engine: Any, conn: Any, request: object) -> bool:
    """Handle one decoded client request; on failure send the error reply.

    Returns whether the request was valid.
    """
    _count(engine, conn, "client_requests")
    try:
        _route(engine, conn, request)
    except RequestError as exc:
        conn.send(exc.reply)
        _count(engine, conn, "invalid_requests")
        return False
    return True