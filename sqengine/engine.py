"""Scheduling of SNMP requests, their retries and timeouts, and reply assembly."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from .ber import (
    AT_STRING,
    BER_IGNORED,
    BER_MISSING,
    BER_NON_INCREASING,
    BER_TIMEOUT,
    PDU_GET_BULK_REQUEST,
    PDU_GET_NEXT_REQUEST,
    PDU_GET_REQUEST,
    PDU_GET_RESPONSE,
    BerError,
    BerReader,
    PacketBuilder,
    error_status_value,
    is_null,
    oid_belongs_to_table,
    oid_compare,
)
from .state import (
    RT_GET,
    RT_GETTABLE,
    CidInfo,
    ClientRequests,
    Destination,
    OidInfo,
    Registry,
    SidInfo,
)
from .stats import ProgramStats
from .timers import USEC_PER_SEC, TimerQueue, set_timeout
from .util import SidGenerator

log = logging.getLogger(__name__)

SendDatagram = Callable[[bytes, "tuple[str, int]"], Any]


def _now_us() -> int:
    return time.time_ns() // 1000


class Engine:
    """Turns queued client OIDs into SNMP packets and answers clients as values arrive.

    ``send_datagram(packet, (ip, port))`` puts a packet on the wire and may raise
    BlockingIOError when the socket cannot take it. ``clock`` returns the
    current time in microseconds.
    """

    def __init__(self, send_datagram: SendDatagram, clock: Callable[[], int] | None = None):
        self.send_datagram = send_datagram
        self.clock = clock if clock is not None else _now_us
        self.stats = ProgramStats()
        self.registry = Registry(self.stats)
        self.timers = TimerQueue(self.stats, self.clock)
        self.sids = SidGenerator()
        self.started_at = self.clock()
        self.last_unclog = 0

    # Destinations

    def maybe_query_destination(self, dest: Destination) -> None:
        """Send the next request to a destination if limits and intervals allow."""
        if dest.ignore_threshold and dest.timeouts_in_a_row >= dest.ignore_threshold:
            self.stats.destination_ignores += 1
            dest.timeouts_in_a_row = 0
            dest.ignore_until = set_timeout(dest.ignore_duration, self.clock())
        if dest.ignore_until // USEC_PER_SEC > 0:
            if self.clock() < dest.ignore_until:
                self.flush_ignored_destination(dest)
                return
            dest.ignore_until = 0

        if self.stats.packets_on_the_wire >= self.stats.max_packets_on_the_wire:
            self.stats.global_throttles += 1
            return
        if dest.packets_on_the_wire >= dest.max_packets_on_the_wire:
            self.stats.destination_throttles += 1
            return
        if dest.can_query_at // USEC_PER_SEC > 0 and self.clock() < dest.can_query_at:
            return

        fds = sorted(dest.client_requests)
        if not fds:
            return
        later = [fd for fd in fds if fd > dest.fd_of_last_query]
        fd = later[0] if later else fds[0]
        self.build_snmp_query(dest.client_requests[fd])
        dest.fd_of_last_query = fd

    def flush_ignored_destination(self, dest: Destination) -> None:
        """Answer everything pending for an ignored destination with "ignored"."""
        current_on_the_wire = dest.packets_on_the_wire
        for fd in sorted(dest.client_requests):
            cri = dest.client_requests.get(fd)
            if cri is None:
                continue
            for si in list(cri.sid_infos):
                if si.table_oid is not None:
                    self.oid_done(si, si.table_oid, BER_IGNORED, RT_GETTABLE, 0)
                    si.table_oid = None
                else:
                    self.all_oids_done(si, BER_IGNORED)
                self.free_sid_info(si)
            cri.sid_infos.clear()

            for oi in list(cri.oids_to_query):
                ci = self._live_cid_info(cri, oi.cid, "flush_ignored_destination")
                oi.value = BER_IGNORED
                oi.sid = 0
                cri.oids_to_query.remove(oi)
                ci.oids_done.append(oi)
                self.stats.oids_ignored += 1
                ci.n_oids_done += 1
                if ci.n_oids_done == ci.n_oids:
                    self.cid_reply(ci, RT_GETTABLE if oi.is_table else RT_GET)
        dest.packets_on_the_wire = 0
        self.stats.packets_on_the_wire = max(
            0, self.stats.packets_on_the_wire - current_on_the_wire
        )

    def destination_timer(self, dest: Destination) -> None:
        self.destination_stop_timing(dest)
        self.maybe_query_destination(dest)

    def destination_stop_timing(self, dest: Destination) -> None:
        timer = self.timers.find_timer(dest.can_query_at)
        if timer is not None and dest in timer.throttled_destinations:
            timer.throttled_destinations.remove(dest)
        dest.can_query_at = 0

    def destination_start_timing(self, dest: Destination) -> None:
        """Hold the destination back for its minimum interval."""
        self.destination_stop_timing(dest)
        dest.can_query_at = set_timeout(dest.min_interval, self.clock())
        self.timers.new_timer(dest.can_query_at).throttled_destinations.append(dest)

    def unclog_all_destinations(self) -> None:
        for dest in self.registry.destinations():
            self.maybe_query_destination(dest)

    # SNMP requests

    def new_sid_info(self, cri: ClientRequests) -> SidInfo:
        sid = self.sids.next_sid()
        dest = cri.dest
        if sid in dest.sid_info:
            raise RuntimeError(f"request id {sid} is already in use")
        si = SidInfo(
            sid=sid,
            cri=cri,
            retries_left=cri.retries,
            version=cri.version,
            builder=PacketBuilder(cri.version, cri.community, sid),
        )
        dest.sid_info[sid] = si
        cri.sid_infos.append(si)
        self.stats.active_sid_infos += 1
        self.stats.total_sid_infos += 1
        cri.stats.active_sid_infos += 1
        cri.stats.total_sid_infos += 1
        return si

    def find_sid_info(self, dest: Destination, sid: int) -> SidInfo | None:
        return dest.sid_info.get(sid)

    def _live_cid_info(self, cri: ClientRequests, cid: int, where: str) -> CidInfo:
        ci = self.registry.get_cid_info(cri, cid)
        if ci.n_oids == 0:
            raise RuntimeError(f"{where}: cid_info unexpectedly missing")
        return ci

    def _count_send(self, si: SidInfo) -> None:
        conn_stats = si.cri.stats
        self.stats.snmp_sends += 1
        conn_stats.snmp_sends += 1
        if si.version == 0:
            self.stats.snmp_v1_sends += 1
            conn_stats.snmp_v1_sends += 1
        else:
            self.stats.snmp_v2c_sends += 1
            conn_stats.snmp_v2c_sends += 1

    def build_snmp_query(self, cri: ClientRequests) -> None:
        """Build and send one packet from the client's queued OIDs."""
        if not cri.oids_to_query:
            return
        dest = cri.dest
        si = self.new_sid_info(cri)
        builder = si.builder
        assert builder is not None

        first = cri.oids_to_query[0]
        if first.is_table:
            assert first.last_known_table_entry is not None
            builder.add_oid(first.last_known_table_entry.oid)
            cri.oids_to_query.pop(0)
            first.sid = si.sid
            ci = self._live_cid_info(cri, first.cid, "build_snmp_query")
            ci.n_oids_being_queried += 1
            si.table_oid = first
            self.stats.oids_requested += 1
            cri.stats.oids_requested += 1
            pdu = PDU_GET_NEXT_REQUEST if cri.version == 0 else PDU_GET_BULK_REQUEST
            si.packet, si.sid_offset = builder.finalize(pdu, first.max_repetitions)
        else:
            oids_in_request = 0
            estimated_values_size = 0
            for oi in list(cri.oids_to_query):
                if oi.is_table:
                    continue
                extra_size = 4
                oids_in_request += 1
                estimated_values_size += dest.estimated_value_size
                if len(oi.oid) >= 128:
                    extra_size += 1
                needed = builder.size + len(oi.oid) + extra_size
                if needed >= dest.max_request_packet_size:
                    break
                if oids_in_request > dest.max_oids_per_request:
                    break
                if needed + estimated_values_size >= dest.max_reply_packet_size:
                    break
                self.stats.oids_requested += 1
                cri.stats.oids_requested += 1
                builder.add_oid(oi.oid)
                cri.oids_to_query.remove(oi)
                oi.sid = si.sid
                ci = self._live_cid_info(cri, oi.cid, "build_snmp_query")
                ci.n_oids_being_queried += 1
                si.oids_being_queried.append(oi)
            si.packet, si.sid_offset = builder.finalize(PDU_GET_REQUEST, 0)

        self.sid_start_timing(si)
        si.retries_left -= 1
        self._count_send(si)
        self.snmp_send(dest, si.packet)

    def sid_start_timing(self, si: SidInfo) -> None:
        si.will_timeout_at = set_timeout(si.cri.timeout, self.clock())
        self.timers.new_timer(si.will_timeout_at).timed_out_sids.append(si)

    def sid_stop_timing(self, si: SidInfo) -> None:
        timer = self.timers.find_timer(si.will_timeout_at)
        if timer is not None and si in timer.timed_out_sids:
            timer.timed_out_sids.remove(si)
        si.will_timeout_at = 0

    def free_sid_info(self, si: SidInfo) -> None:
        """Forget a request, along with the OIDs still attached to it."""
        self.stats.active_sid_infos -= 1
        si.cri.stats.active_sid_infos -= 1
        if si in si.cri.sid_infos:
            si.cri.sid_infos.remove(si)
        sid_map = si.cri.dest.sid_info
        if sid_map.get(si.sid) is si:
            del sid_map[si.sid]
        self.sid_stop_timing(si)
        si.packet = b""
        released = len(si.oids_being_queried) + (1 if si.table_oid is not None else 0)
        self.stats.active_oid_infos -= released
        si.oids_being_queried.clear()
        si.table_oid = None

    def _packet_gone(self, dest: Destination) -> None:
        dest.packets_on_the_wire = max(0, dest.packets_on_the_wire - 1)
        self.stats.packets_on_the_wire = max(0, self.stats.packets_on_the_wire - 1)

    def free_client_requests(self, cri: ClientRequests) -> None:
        """Drop every SNMP request still in flight for released client requests."""
        for si in list(cri.sid_infos):
            self.free_sid_info(si)
            self._packet_gone(cri.dest)
        cri.sid_infos.clear()

    def resend_query_with_new_sid(self, si: SidInfo) -> None:
        """Send the same packet again under a fresh request id."""
        dest = si.cri.dest
        if dest.sid_info.get(si.sid) is si:
            del dest.sid_info[si.sid]
        si.sid = self.sids.next_sid()
        packet = bytearray(si.packet)
        packet[si.sid_offset:si.sid_offset + 4] = si.sid.to_bytes(4, "big")
        si.packet = bytes(packet)
        for oi in si.oids_being_queried:
            oi.sid = si.sid
        if si.sid in dest.sid_info:
            raise RuntimeError(f"request id {si.sid} is already in use")
        dest.sid_info[si.sid] = si

        self.sid_start_timing(si)
        si.retries_left -= 1
        self._count_send(si)
        self.stats.snmp_retries += 1
        si.cri.stats.snmp_retries += 1
        self.snmp_send(dest, si.packet)

    def sid_timer(self, si: SidInfo) -> None:
        """Handle a request whose reply did not come in time."""
        self.stats.udp_timeouts += 1
        si.cri.stats.udp_timeouts += 1
        self._packet_gone(si.cri.dest)
        self.sid_stop_timing(si)
        if si.retries_left > 0:
            self.resend_query_with_new_sid(si)
            return
        self.stats.snmp_timeouts += 1
        si.cri.stats.snmp_timeouts += 1

        if si.table_oid is not None:
            self.oid_done(si, si.table_oid, BER_TIMEOUT, RT_GETTABLE, 0)
            si.table_oid = None
        else:
            self.all_oids_done(si, BER_TIMEOUT)
        dest = si.cri.dest
        self.free_sid_info(si)
        dest.timeouts_in_a_row += 1
        self.maybe_query_destination(dest)

    # Results

    def cid_reply(self, ci: CidInfo, request_type: int) -> None:
        """Send the client its finished request and forget it."""
        message = ci.reply_message(request_type)
        count = len(ci.oids_done)
        self.stats.oids_returned_to_client += count
        ci.cri.stats.oids_returned_to_client += count
        ci.cri.conn.send(message)
        self.registry.free_cid_info(ci)

    def _stored_value(self, value: bytes, error_status: int) -> bytes:
        if is_null(value) and error_status:
            return error_status_value(error_status)
        return bytes(value)

    def oid_done(
        self, si: SidInfo, oi: OidInfo, value: bytes, op: int, error_status: int
    ) -> None:
        ci = self._live_cid_info(si.cri, oi.cid, "oid_done")
        oi.value = self._stored_value(value, error_status)
        oi.sid = 0
        if op != RT_GETTABLE:
            si.oids_being_queried.remove(oi)
        ci.oids_done.append(oi)
        if value is BER_IGNORED:
            self.stats.oids_ignored += 1
        ci.n_oids_being_queried -= 1
        ci.n_oids_done += 1
        if ci.n_oids_done == ci.n_oids:
            self.cid_reply(ci, op)

    def got_table_oid(
        self,
        si: SidInfo,
        table_oi: OidInfo,
        oid: bytes,
        value: bytes,
        error_status: int,
    ) -> None:
        """Record one row of a table walk."""
        ci = self._live_cid_info(si.cri, table_oi.cid, "got_table_oid")
        row = OidInfo(
            cid=table_oi.cid,
            fd=ci.fd,
            oid=bytes(oid),
            value=self._stored_value(value, error_status),
        )
        table_oi.last_known_table_entry = row
        self.stats.active_oid_infos += 1
        self.stats.total_oid_infos += 1
        ci.oids_done.append(row)
        ci.n_oids_done += 1
        ci.n_oids += 1

    def all_oids_done(self, si: SidInfo, value: bytes) -> None:
        for oi in list(si.oids_being_queried):
            self.oid_done(si, oi, value, RT_GET, 0)

    def process_sid_info_response(self, si: SidInfo, reader: BerReader) -> bool:
        """Take in a response positioned past its request id; False if it is malformed."""
        cri = si.cri
        table_done = False
        try:
            error_status = reader.read_integer()
            reader.read_integer()  # error-index
            oids_end = reader.read_sequence()
            while reader.pos < oids_end:
                reader.read_sequence()
                oid = reader.read_oid()
                value = reader.read_any()
                self.stats.oids_returned_from_snmp += 1
                cri.stats.oids_returned_from_snmp += 1
                table = si.table_oid
                if table is not None:
                    if not oid_belongs_to_table(oid, table.oid):
                        table_done = True
                        break
                    last = table.last_known_table_entry
                    if last is not None and self._compare(oid, last.oid) <= 0:
                        self.got_table_oid(si, table, oid, BER_NON_INCREASING, error_status)
                        self.stats.oids_non_increasing += 1
                        cri.stats.oids_non_increasing += 1
                        table_done = True
                        break
                    self.got_table_oid(si, table, oid, value, error_status)
                else:
                    for oi in si.oids_being_queried:
                        if oi.oid == oid:
                            self.oid_done(si, oi, value, RT_GET, error_status)
                            break
        except BerError as exc:
            self.stats.bad_snmp_responses += 1
            log.warning("sid %u: bad SNMP packet, ignoring: %s", si.sid, exc)
            return False

        if si.table_oid is not None:
            ci = self.registry.get_cid_info(cri, si.table_oid.cid)
            ci.n_oids_being_queried -= 1
            if table_done:
                self.stats.active_oid_infos -= 1
                si.table_oid = None
                ci.n_oids -= 1
                if ci.n_oids_done == ci.n_oids:
                    self.cid_reply(ci, RT_GETTABLE)
            else:
                cri.oids_to_query.append(si.table_oid)
                si.table_oid = None
        elif si.oids_being_queried:
            log.warning("SID %u: unexpectedly, not all oids are accounted for!", si.sid)
            self.all_oids_done(si, BER_MISSING)

        self.stats.good_snmp_responses += 1
        cri.stats.good_snmp_responses += 1
        cri.dest.timeouts_in_a_row = 0
        cri.dest.ignore_until = 0
        return True

    @staticmethod
    def _compare(a: bytes, b: bytes) -> int:
        try:
            return oid_compare(a, b)
        except BerError:
            return -1

    # Wire

    def snmp_send(self, dest: Destination, packet: bytes) -> None:
        self.destination_start_timing(dest)
        dest.packets_on_the_wire += 1
        self.stats.packets_on_the_wire += 1
        try:
            self.send_datagram(packet, dest.address)
        except BlockingIOError:
            self.stats.udp_send_buffer_overflow += 1
            return
        dest.octets_sent += len(packet)
        self.stats.octets_sent += len(packet)

    def process_datagram(self, address: tuple, data: bytes) -> None:
        """Handle a datagram received from an SNMP agent."""
        size = len(data)
        self.stats.octets_received += size
        ip, port = address[0], address[1]
        dest = self.registry.find_destination(ip, port)
        if dest is None:
            log.warning("destination %s:%d is not known, ignoring packet", ip, port)
            return
        dest.octets_received += size
        self._packet_gone(dest)

        reader = BerReader(data)
        try:
            reader.read_sequence()
            reader.read_integer()  # version
            tag, length = reader.read_type_len()
            if tag != AT_STRING:
                raise BerError("community is not a string")
            reader.skip(length)
            reader.read_composite(PDU_GET_RESPONSE)
            sid = reader.read_integer()
        except BerError as exc:
            self.stats.bad_snmp_responses += 1
            log.warning("bad SNMP packet, ignoring: %s", exc)
            self.maybe_query_destination(dest)
            return

        si = self.find_sid_info(dest, sid)
        if si is None:
            log.warning("unable to find sid_info with sid %u, ignoring packet", sid)
            return
        if self.process_sid_info_response(si, reader):
            self.free_sid_info(si)
        self.maybe_query_destination(dest)

    def trigger_timers(self) -> None:
        """Run every timer that is due, and nudge all destinations once a second."""
        now = self.clock()
        if self.last_unclog // USEC_PER_SEC < now // USEC_PER_SEC:
            self.last_unclog = now
            self.unclog_all_destinations()
        while True:
            timer = self.timers.next_timer()
            if timer is None or timer.when > now:
                return
            if timer.throttled_destinations:
                self.destination_timer(timer.throttled_destinations[0])
            elif timer.timed_out_sids:
                self.sid_timer(timer.timed_out_sids[0])
            else:
                self.timers.cleanup_timer(timer)

    def client_gone(self, conn: Any) -> None:
        """Release everything a departed client connection held, and count it gone."""
        self.stats.active_client_connections -= 1
        for cri in self.registry.free_all_for_connection(conn):
            self.free_client_requests(cri)