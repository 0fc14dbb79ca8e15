"""Network front end: the client listener, the SNMP socket and the program entry."""

from __future__ import annotations

import asyncio
import contextlib
import getopt
import itertools
import logging
import os
import re
import socket
import sys
from dataclasses import dataclass
from typing import NoReturn

import msgpack

from .engine import Engine
from .handlers import dispatch
from .stats import ProgramStats

DEFAULT_PORT = 7667
LISTEN_BACKLOG = 1024
LISTEN_ADDRESS = "127.0.0.1"
_SOCKET_BUFFER_TRY = 100 * 1024 * 1024

log = logging.getLogger(__name__)


def _grow_buffer(sock, option: int) -> int:
    """Ask for a very large socket buffer, halving until the system accepts."""
    size = _SOCKET_BUFFER_TRY
    while size > 0:
        try:
            sock.setsockopt(socket.SOL_SOCKET, option, size)
        except OSError:
            size //= 2
            continue
        return size
    return 0


class ClientConnection(asyncio.Protocol):
    """One client on the TCP listener, speaking msgpack arrays both ways."""

    def __init__(self, server: Server):
        self.server = server
        self.engine = server.engine
        self.fd = server._next_fd()
        self.stats = ProgramStats.for_connection()
        self.created = 0
        self.transport: asyncio.BaseTransport | None = None
        self._unpacker = msgpack.Unpacker(
            raw=False, unicode_errors="surrogateescape", strict_map_key=False
        )
        self._packer = msgpack.Packer(use_bin_type=True)
        self._gone = False

    def connection_made(self, transport) -> None:
        self.transport = transport
        self.created = self.engine.clock()
        self.engine.stats.active_client_connections += 1
        self.engine.stats.total_client_connections += 1
        self.server._connections.add(self)
        if not self.server.quiet:
            peer = transport.get_extra_info("peername")
            host = peer[0] if peer else "unknown"
            print(f"incoming connection from {host}!", file=sys.stderr)

    def data_received(self, data: bytes) -> None:
        self._unpacker.feed(data)
        while True:
            try:
                request = next(self._unpacker)
            except StopIteration:
                break
            except (ValueError, msgpack.UnpackException) as exc:
                log.warning("client %d: undecodable input, closing: %s", self.fd, exc)
                if self.transport is not None:
                    self.transport.close()
                break
            dispatch(self.engine, self, request)
        self.server._poke()

    def connection_lost(self, exc: Exception | None) -> None:
        if self._gone:
            return
        self._gone = True
        self.transport = None
        self.server._connections.discard(self)
        self.engine.client_gone(self)
        if not self.server.quiet:
            print("client disconnect", file=sys.stderr)
        self.server._poke()

    def send(self, message: object) -> None:
        """Queue one reply for the client; dropped once the connection is closing."""
        transport = self.transport
        if transport is None or transport.is_closing():
            return
        transport.write(self._packer.pack(message))


class SnmpProtocol(asyncio.DatagramProtocol):
    """The UDP socket through which SNMP agents are queried."""

    def __init__(self, server: Server):
        self.server = server
        self.transport = None

    def connection_made(self, transport) -> None:
        self.transport = transport
        self.server.snmp = self
        sock = transport.get_extra_info("socket")
        if sock is not None:
            stats = self.server.engine.stats
            stats.udp_receive_buffer_size = _grow_buffer(sock, socket.SO_RCVBUF)
            stats.udp_send_buffer_size = _grow_buffer(sock, socket.SO_SNDBUF)

    def datagram_received(self, data: bytes, addr) -> None:
        self.server.engine.process_datagram(addr, data)
        self.server._poke()

    def error_received(self, exc: Exception) -> None:
        log.warning("SNMP socket error: %s", exc)

    def connection_lost(self, exc: Exception | None) -> None:
        if self.server.snmp is self:
            self.server.snmp = None
        self.transport = None

    def send(self, packet: bytes, address) -> None:
        if self.transport is None:
            raise RuntimeError("the SNMP socket is not open")
        self.transport.sendto(packet, address)


class Server:
    """Accepts clients on the loopback interface and queries SNMP agents for them."""

    def __init__(self, port: int = DEFAULT_PORT, quiet: bool = False):
        self.port = port
        self.quiet = quiet
        self.engine = Engine(self._send_datagram)
        self.snmp: SnmpProtocol | None = None
        self._connections: set[ClientConnection] = set()
        self._fds = itertools.count(1)
        self._listener: asyncio.AbstractServer | None = None
        self._snmp_transport = None
        self._timer_task: asyncio.Task | None = None
        self._wake: asyncio.Event | None = None

    def _next_fd(self) -> int:
        return next(self._fds)

    def _send_datagram(self, packet: bytes, address) -> None:
        if self.snmp is None:
            raise RuntimeError("the SNMP socket is not open")
        self.snmp.send(packet, address)

    def _poke(self) -> None:
        if self._wake is not None:
            self._wake.set()

    async def start(self) -> None:
        """Open the SNMP socket and the client listener, and start the timers."""
        if self._listener is not None:
            raise RuntimeError("server already started")
        loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self._snmp_transport, _ = await loop.create_datagram_endpoint(
            lambda: SnmpProtocol(self), local_addr=("0.0.0.0", 0)
        )
        self._listener = await loop.create_server(
            lambda: ClientConnection(self),
            LISTEN_ADDRESS,
            self.port,
            reuse_address=True,
            backlog=LISTEN_BACKLOG,
        )
        self.port = self._listener.sockets[0].getsockname()[1]
        self._timer_task = asyncio.create_task(self._run_timers())

    async def _run_timers(self) -> None:
        assert self._wake is not None
        while True:
            timeout = self.engine.timers.ms_to_next_timer() / 1000
            try:
                await asyncio.wait_for(self._wake.wait(), timeout)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            self.engine.trigger_timers()

    async def serve_forever(self) -> None:
        if self._listener is None:
            await self.start()
        assert self._listener is not None
        try:
            await self._listener.serve_forever()
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop the timers and close every socket."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._timer_task
            self._timer_task = None
        for conn in list(self._connections):
            if conn.transport is not None:
                conn.transport.close()
        if self._listener is not None:
            self._listener.close()
            await self._listener.wait_closed()
            self._listener = None
        if self._snmp_transport is not None:
            self._snmp_transport.close()
            self._snmp_transport = None
        self._wake = None


@dataclass(frozen=True)
class Options:
    port: int = DEFAULT_PORT
    quiet: bool = False


def _program_name() -> str:
    if sys.argv and sys.argv[0]:
        return os.path.basename(sys.argv[0])
    return "sqengine"


def _usage(error: str | None) -> NoReturn:
    stream = sys.stderr if error is not None else sys.stdout
    if error:
        print(error, file=stream)
    print("Usage:", file=stream)
    print(f"    {_program_name()} [options]", file=stream)
    print("Usage parameters:", file=stream)
    print("\t-h\t\tproduce usage text and quit", file=stream)
    print("\t-p port\t\tlisten on port prt instead of default 7667", file=stream)
    print("\t-q\t\tquiet operation", file=stream)
    raise SystemExit(1 if error is not None else 0)


def _leading_int(text: str) -> int:
    match = re.match(r"\s*([+-]?\d+)", text)
    return int(match.group(1)) if match else 0


def parse_args(argv: list[str] | None = None) -> Options:
    """Read the command line; exits with the usage text on bad input or -h."""
    if argv is None:
        argv = sys.argv[1:]
    try:
        opts, rest = getopt.getopt(list(argv), "hp:q")
    except getopt.GetoptError as exc:
        _usage(str(exc))
    port = DEFAULT_PORT
    quiet = False
    for flag, value in opts:
        if flag == "-h":
            _usage(None)
        elif flag == "-p":
            port = _leading_int(value)
        elif flag == "-q":
            quiet = True
    if rest:
        _usage("extraneous arguments")
    return Options(port=port, quiet=quiet)


def main(argv: list[str] | None = None) -> int:
    options = parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format="%(name)s: %(message)s")
    server = Server(options.port, options.quiet)
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        pass
    return 0