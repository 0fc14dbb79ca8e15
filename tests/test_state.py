from dataclasses import dataclass, field

import msgpack
import pytest

from sqengine.ber import BER_NULL, BerError, encode_oid
from sqengine.state import (
    DEFAULT_IGNORE_DURATION,
    DEFAULT_MAX_OIDS_PER_REQUEST,
    DEFAULT_MAX_PACKETS_ON_THE_WIRE,
    DEFAULT_MAX_REPLY_PACKET_SIZE,
    DEFAULT_MAX_REQUEST_PACKET_SIZE,
    DEFAULT_RETRIES,
    DEFAULT_TIMEOUT,
    RT_GET,
    RT_REPLY,
    Destination,
    OidInfo,
    Registry,
    SidInfo,
    allocate_oid_info,
    allocate_oid_info_list,
)
from sqengine.stats import ProgramStats

OID_25 = ".1.3.6.1.2.1.2.2.1.2.25"
OID_25_BER = b"\x06\x0a\x2b\x06\x01\x02\x01\x02\x02\x01\x02\x19"


@dataclass
class FakeConn:
    fd: int
    stats: ProgramStats = field(default_factory=ProgramStats.for_connection)


@pytest.fixture
def registry():
    return Registry(ProgramStats())


def test_destination_defaults():
    dest = Destination("10.0.0.1", 161)
    assert dest.max_packets_on_the_wire == DEFAULT_MAX_PACKETS_ON_THE_WIRE
    assert dest.max_request_packet_size == DEFAULT_MAX_REQUEST_PACKET_SIZE
    assert dest.max_reply_packet_size == DEFAULT_MAX_REPLY_PACKET_SIZE
    assert dest.max_oids_per_request == DEFAULT_MAX_OIDS_PER_REQUEST
    assert dest.ignore_duration == DEFAULT_IGNORE_DURATION
    assert dest.packets_on_the_wire == 0
    assert dest.label == b"DEST(10.0.0.1:161)"


def test_get_destination_is_stable(registry):
    first = registry.get_destination("10.0.0.1", 161)
    assert registry.get_destination("10.0.0.1", 161) is first
    assert registry.find_destination("10.0.0.1", 161) is first
    assert registry.find_destination("10.0.0.1", 162) is None
    assert registry.find_destination("not-an-ip", 161) is None


def test_get_destination_rejects_bad_ip(registry):
    with pytest.raises(ValueError):
        registry.get_destination("300.1.1.1", 161)


def test_destinations_in_numeric_order(registry):
    registry.get_destination("10.0.0.20", 161)
    registry.get_destination("10.0.0.3", 162)
    registry.get_destination("10.0.0.3", 161)
    order = [d.address for d in registry.destinations()]
    assert order == [("10.0.0.3", 161), ("10.0.0.3", 162), ("10.0.0.20", 161)]


def test_client_requests_defaults_and_stats(registry):
    conn = FakeConn(fd=7)
    cri = registry.get_client_requests("127.0.0.1", 161, conn)
    assert cri.version == 1
    assert cri.community == "public"
    assert cri.timeout == DEFAULT_TIMEOUT
    assert cri.retries == DEFAULT_RETRIES
    assert cri.dest.client_requests[7] is cri
    assert registry.get_client_requests("127.0.0.1", 161, conn) is cri
    assert registry.stats.active_cr_infos == 1
    assert conn.stats.total_cr_infos == 1


def test_options_report_version_plus_one(registry):
    cri = registry.get_client_requests("127.0.0.1", 161, FakeConn(fd=3))
    opts = cri.options()
    assert len(opts) == 15
    assert opts[b"ip"] == b"127.0.0.1"
    assert opts[b"community"] == b"public"
    assert opts[b"version"] == 2
    assert opts[b"max_packets"] == DEFAULT_MAX_PACKETS_ON_THE_WIRE


def test_get_and_free_cid_info(registry):
    conn = FakeConn(fd=3)
    cri = registry.get_client_requests("127.0.0.1", 161, conn)
    ci = registry.get_cid_info(cri, 42)
    assert registry.get_cid_info(cri, 42) is ci
    assert registry.stats.active_cid_infos == 1
    ci.oids_done.append(allocate_oid_info(OID_25, ci, registry.stats))
    registry.free_cid_info(ci)
    assert 42 not in cri.cid_info
    assert registry.stats.active_cid_infos == 0
    assert conn.stats.active_cid_infos == 0
    assert registry.stats.active_oid_infos == 0
    assert registry.stats.total_oid_infos == 1


def test_allocate_oid_info_encodes(registry):
    cri = registry.get_client_requests("127.0.0.1", 161, FakeConn(fd=3))
    ci = registry.get_cid_info(cri, 5)
    oi = allocate_oid_info(OID_25.encode(), ci, registry.stats)
    assert oi.oid == OID_25_BER
    assert (oi.cid, oi.fd) == (5, 3)
    assert not oi.is_table


def test_allocate_oid_info_rejects_non_string(registry):
    cri = registry.get_client_requests("127.0.0.1", 161, FakeConn(fd=3))
    ci = registry.get_cid_info(cri, 5)
    with pytest.raises(ValueError):
        allocate_oid_info(12, ci, registry.stats)
    assert registry.stats.active_oid_infos == 0


def test_allocate_list_reverts_on_failure(registry):
    cri = registry.get_client_requests("127.0.0.1", 161, FakeConn(fd=3))
    ci = registry.get_cid_info(cri, 5)
    with pytest.raises(BerError):
        allocate_oid_info_list([OID_25, "1.3.6", "1.99"], ci, registry.stats)
    assert registry.stats.active_oid_infos == 0
    good = allocate_oid_info_list([OID_25, "1.3.6"], ci, registry.stats)
    assert [oi.oid for oi in good] == [OID_25_BER, encode_oid("1.3.6")]
    assert registry.stats.active_oid_infos == 2


def test_reply_message(registry):
    cri = registry.get_client_requests("127.0.0.1", 161, FakeConn(fd=3))
    ci = registry.get_cid_info(cri, 9)
    oi = allocate_oid_info(OID_25, ci, registry.stats)
    oi.value = BER_NULL
    ci.oids_done.append(oi)
    assert ci.reply_message(RT_GET) == [
        RT_GET | RT_REPLY,
        9,
        [[b"1.3.6.1.2.1.2.2.1.2.25", None]],
    ]


def test_free_all_for_connection(registry):
    conn = FakeConn(fd=4)
    other = FakeConn(fd=5)
    cri = registry.get_client_requests("10.0.0.1", 161, conn)
    kept = registry.get_client_requests("10.0.0.1", 161, other)
    ci = registry.get_cid_info(cri, 1)
    cri.oids_to_query.extend(allocate_oid_info_list([OID_25], ci, registry.stats))
    released = registry.free_all_for_connection(conn)
    assert released == [cri]
    assert cri.oids_to_query == []
    assert cri.cid_info == {}
    assert cri.dest.client_requests == {5: kept}
    assert registry.stats.active_cr_infos == 1
    assert registry.stats.active_oid_infos == 0
    assert registry.free_all_for_connection(conn) == []


def test_dumps_shapes(registry):
    conn = FakeConn(fd=6)
    cri = registry.get_client_requests("10.0.0.1", 161, conn)
    ci = registry.get_cid_info(cri, 2)
    oi = allocate_oid_info(OID_25, ci, registry.stats)
    cri.oids_to_query.append(oi)
    assert set(oi.dump()) == {b"sid", b"cid", b"fd", b"max_repetitions", b"oid", b"value"}
    assert oi.dump()[b"value"] is None
    assert len(ci.dump()) == 8
    assert ci.dump()[b"cri"] == b"CRI(10.0.0.1:161->6)"
    dumped = cri.dump()
    assert len(dumped) == 12
    assert dumped[b"#QUERY_QUEUE"] == 1
    assert list(dumped[b"@CID"]) == [b"CID(2)"]
    dest_dump = cri.dest.dump()
    assert len(dest_dump) == 14
    assert list(dest_dump[b"@CRI"]) == [b"CRI(6)"]


def test_sid_info_dump_with_table(registry):
    cri = registry.get_client_requests("10.0.0.1", 161, FakeConn(fd=6))
    ci = registry.get_cid_info(cri, 2)
    table = allocate_oid_info(OID_25, ci, registry.stats)
    table.last_known_table_entry = table
    si = SidInfo(sid=77, cri=cri, retries_left=2, version=1, table_oid=table)
    dumped = si.dump()
    assert si.label == b"SID(77)"
    assert len(dumped) == 7
    assert dumped[b"table_oid"][b"oid"] == b"1.3.6.1.2.1.2.2.1.2.25"
    assert dumped[b"last_known_table_oid"] == dumped[b"table_oid"]
    assert dumped[b"#OID"] == 0


def test_dump_all_destinations_packs(registry):
    registry.get_client_requests("10.0.0.2", 161, FakeConn(fd=1))
    registry.get_destination("10.0.0.1", 161)
    dumped = registry.dump_all_destinations()
    assert list(dumped) == [b"DEST(10.0.0.1:161)", b"DEST(10.0.0.2:161)"]
    packed = msgpack.packb(dumped, use_bin_type=True)
    assert msgpack.unpackb(packed, raw=True, strict_map_key=False) == dumped


def test_oid_info_table_flag():
    oi = OidInfo(cid=1, fd=2, oid=OID_25_BER)
    oi.last_known_table_entry = oi
    assert oi.is_table
    assert oi.dump()[b"oid"] == b"1.3.6.1.2.1.2.2.1.2.25"