"""Counters reported by the info request, globally and per client connection."""

from __future__ import annotations

from dataclasses import dataclass, fields

PROGRAM_VERSION = 2014052300
GLOBAL_MAX_PACKETS_ON_THE_WIRE = 1000000

# Marks a counter that is not tracked for a single connection.
_UNTRACKED = -42

_CONNECTION_UNTRACKED = (
    "active_client_connections",
    "total_client_connections",
    "active_timers_sec",
    "active_timers_usec",
    "total_timers_sec",
    "total_timers_usec",
    "bad_snmp_responses",
    "active_oid_infos",
    "total_oid_infos",
    "destination_throttles",
    "oids_ignored",
    "destination_ignores",
    "udp_receive_buffer_size",
    "udp_send_buffer_size",
    "udp_send_buffer_overflow",
    "packets_on_the_wire",
    "max_packets_on_the_wire",
    "global_throttles",
    "program_version",
    "octets_received",
    "octets_sent",
)


@dataclass
class ProgramStats:
    """Program counters; negative values are not reported."""

    active_client_connections: int = 0
    total_client_connections: int = 0

    client_requests: int = 0
    invalid_requests: int = 0
    setopt_requests: int = 0
    getopt_requests: int = 0
    info_requests: int = 0
    get_requests: int = 0
    gettable_requests: int = 0
    dest_info_requests: int = 0

    snmp_retries: int = 0
    snmp_sends: int = 0
    snmp_v1_sends: int = 0
    snmp_v2c_sends: int = 0
    snmp_timeouts: int = 0
    udp_timeouts: int = 0
    bad_snmp_responses: int = 0
    good_snmp_responses: int = 0
    oids_non_increasing: int = 0
    oids_requested: int = 0
    oids_returned_from_snmp: int = 0
    oids_returned_to_client: int = 0
    oids_ignored: int = 0

    octets_received: int = 0
    octets_sent: int = 0

    active_timers_sec: int = 0
    active_timers_usec: int = 0
    total_timers_sec: int = 0
    total_timers_usec: int = 0
    uptime: int = 0

    active_sid_infos: int = 0
    total_sid_infos: int = 0
    active_oid_infos: int = 0
    total_oid_infos: int = 0
    active_cid_infos: int = 0
    total_cid_infos: int = 0
    active_cr_infos: int = 0
    total_cr_infos: int = 0

    destination_throttles: int = 0
    destination_ignores: int = 0

    udp_receive_buffer_size: int = 0
    udp_send_buffer_size: int = 0
    udp_send_buffer_overflow: int = 0
    packets_on_the_wire: int = 0
    max_packets_on_the_wire: int = GLOBAL_MAX_PACKETS_ON_THE_WIRE
    global_throttles: int = 0
    program_version: int = PROGRAM_VERSION

    @classmethod
    def for_connection(cls) -> ProgramStats:
        """Counters for one client connection, with program-wide ones left out."""
        return cls(**{name: _UNTRACKED for name in _CONNECTION_UNTRACKED})

    def as_dict(self) -> dict[str, int]:
        """Reported counters in report order."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) >= 0
        }