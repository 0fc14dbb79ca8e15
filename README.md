# sqengine

`sqengine` is a small daemon that runs SNMP queries for its clients.
Clients connect over TCP and send msgpack-encoded requests. The engine packs
the requested OIDs into as few SNMP packets as the size limits allow. It caps
the number of packets in flight, both per destination and overall, and it
retries a request when the reply times out. Table walks use GETNEXT for SNMPv1
and GETBULK for SNMPv2c. Each client request gets one msgpack reply, sent once
every OID in it has an answer.

## Installation

```
pip install .
```

The only runtime dependency is `msgpack`.

## Running

```
sqengine            # listen on 127.0.0.1:7667
sqengine -p 9000    # listen on another port
sqengine -q         # quiet: no connect/disconnect messages
sqengine -h         # print usage and exit
```

The client listener binds to the loopback interface only. All SNMP traffic
goes out through a single UDP socket. Malformed or unexpected SNMP packets are
reported through the `logging` module and then ignored.

## Protocol

Every request is a msgpack array. Its first element is the request type and
its second is a request id (`cid`, a non-negative integer) that the client
picks. A successful reply is `[type | 0x10, cid, payload]`. An error reply is
`[type | 0x20, cid, message]`. A request too malformed to have a type is
answered with type 0. Text in replies is sent as msgpack binary.

| type | name      | request                                                  |
|------|-----------|----------------------------------------------------------|
| 1    | setopt    | `[1, cid, ip, port, {option: value, ...}]`               |
| 2    | getopt    | `[2, cid, ip, port]`                                     |
| 3    | info      | `[3, cid]` for counters, `[3, cid, 1]` to dump all state |
| 4    | get       | `[4, cid, ip, port, [oid, ...]]`                         |
| 5    | gettable  | `[5, cid, ip, port, oid]` or `[..., max_repetitions]`    |
| 6    | dest_info | `[6, cid, ip, port]`                                     |

OIDs are dotted strings, with or without a leading dot. A get or gettable
reply carries a list of `[oid, value]` pairs. Integers, counters and timeticks
come back as numbers, strings as binary, and IP addresses and OIDs as dotted
text. A failed value comes back as a one-element list, for example
`["timeout"]`, `["missing"]`, `["no-such-object"]`, `["no-such-instance"]`,
`["end-of-mib"]`, `["ignored"]`, `["non-increasing"]`, `["decode-error"]`, or
an SNMP error-status name such as `["noSuchName"]`.

A client that sends bytes that are not valid msgpack is disconnected.

### Options

Options are set per destination (`ip`, `port`). `version`, `community`,
`timeout` and `retries` are kept separately for each client connection.
`global_max_packets` applies to the whole engine. Each setopt either applies
all its options or, if one is invalid, none of them. The reply carries the
options now in effect.

| option               | default | range          |
|----------------------|---------|----------------|
| version              | 2       | 1 or 2         |
| community            | public  | string         |
| max_packets          | 3       | 1..1000        |
| global_max_packets   | 1000000 | 1..2000000     |
| max_req_size         | 1400    | 500..50000     |
| max_reply_size       | 1472    | 500..50000     |
| estimated_value_size | 9       | 1..1024        |
| max_oids_per_request | 64      | 1..1024        |
| timeout (ms)         | 2000    | 0..30000       |
| retries              | 3       | 1..10          |
| min_interval (ms)    | 10      | 0..10000       |
| max_repetitions      | 10      | 1..255         |
| ignore_threshold     | 0       | 0..1000        |
| ignore_duration (ms) | 300000  | 0..86400000    |

Setting `ignore_threshold` to a non-zero value turns on ignoring. Once that
many timeouts happen in a row, the destination is ignored for
`ignore_duration` milliseconds. While it is ignored, every pending query to it
is answered with `["ignored"]`.

## Example client

```python
import socket
import msgpack

with socket.create_connection(("127.0.0.1", 7667)) as sock:
    sock.sendall(msgpack.packb([4, 1, "192.0.2.10", 161, ["1.3.6.1.2.1.1.5.0"]]))
    unpacker = msgpack.Unpacker(raw=True)
    reply = None
    while reply is None:
        unpacker.feed(sock.recv(65536))
        reply = next(unpacker, None)
    print(reply)
```

## Using the library

The package can also be embedded in another program:

- `sqengine.server.Server(port, quiet)` runs the engine on an asyncio loop,
  through `start()`, `serve_forever()` and `close()`. `sqengine.server.main`
  is the command-line entry point.
- `sqengine.engine.Engine(send_datagram, clock)` does the scheduling without
  any sockets. `send_datagram(packet, (ip, port))` must send a packet.
  `process_datagram(address, data)` takes each reply, and `trigger_timers()`
  runs whatever timers are due.
- `sqengine.handlers.dispatch(engine, conn, request)` validates one decoded
  client request and handles it.
- `sqengine.ber` holds the BER encoder and decoder: `encode_oid`,
  `decode_oid`, `oid_compare`, `oid_belongs_to_table`,
  `build_get_request_packet`, `BerReader` and `PacketBuilder`.

## What it does not do

- SNMP only: v1 and v2c, and GET, GETNEXT and GETBULK. There is no SET, no
  SNMPv3 and no trap handling.
- IPv4 only: destinations must be dotted-quad IPv4 addresses.
- The listener accepts loopback connections only, and there is no
  authentication of clients.
- No daemonizing, pid file or log file: the process stays in the foreground
  and writes to standard error.

## Tests

```
pip install .[test]
pytest
```