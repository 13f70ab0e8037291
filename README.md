# sipwire

`sipwire` is the networking core of a SIP (RFC 3261) stack: URIs, transports that
send and receive messages over UDP, TCP and TLS, a reference-counting connection
pool, and the server transaction state machines. It uses only the standard library.

## Modules

- `sipwire.uri` – the `Uri` dataclass (`scheme`, `user`, `password`, `host`, `port`,
  `uri_params`, `headers`, ...). `str(uri)` renders it; `clone()`, `is_encrypted()`,
  `endpoint()`, `addr()` and `host_port()` give its parts.
- `sipwire.transport` – the `Addr` dataclass (`ip`, `port`, `hostname`), transport
  constants, and `default_port`, `parse_addr`, `parse_ip`, `join_host_port`,
  `is_reliable`, `network_to_lower` and `network_to_upper`.
- `sipwire.connection_pool` – the abstract `Connection` (`local_addr`, `write_msg`,
  `ref`, `try_close`, `close`) and the thread-safe `ConnectionPool`.
- `sipwire.udp` – `UDPConnection` and `UDPTransport`. Messages larger than 1300
  bytes raise `UDPMTUCongestionError`.
- `sipwire.tcp` – `TCPConnection` and `TCPTransport`; stream data goes through an
  incremental parser and CRLF keep-alives are answered.
- `sipwire.tls` – `TLSTransport`, a `TCPTransport` whose outgoing connections are
  wrapped with an `ssl.SSLContext`.
- `sipwire.transport_layer` – `TransportLayer`, which owns the three transports,
  finds or creates the connection for a request, fills in the Via sent-by host and
  port, resolves hostnames through a `Resolver` (`SystemResolver` by default) and
  hands received messages to its handlers. An unknown network raises
  `TransportNotSupportedError`.
- `sipwire.fsm` – the `FsmInput` enumeration of state machine inputs.
- `sipwire.server_tx` – `ServerTx`, the INVITE and non-INVITE server transactions
  (RFC 3261 §17.2 with the RFC 6026 Accepted state), with `TxState`, `TxTimers` and
  `TransactionCanceledError`.
- `sipwire.utils` – ASCII case helpers, `header_to_lower`, `rand_string`, `nonce`,
  `split_by_whitespace` and quote-aware `find_unescaped` / `find_any_unescaped`.

## Installing

```
pip install .
```

## Examples

```python
from sipwire.transport import default_port, parse_addr, network_to_lower
from sipwire.uri import Uri
from sipwire.utils import header_to_lower

default_port("TLS")              # 5061
parse_addr("127.0.0.1:5060")     # ("127.0.0.1", 5060)
network_to_lower("UDP")          # "udp"
header_to_lower("CSeq")          # "cseq"

uri = Uri(user="alice", host="example.com", port=5060, uri_params={"transport": "tcp"})
str(uri)          # "sip:alice@example.com:5060;transport=tcp"
uri.addr()        # "sip:alice@example.com:5060"
uri.host_port()   # "example.com:5060"
```

### Connection pool

`ConnectionPool.add(addr, conn)` stores a connection, `get(addr)` returns it with its
reference count raised (release it with `conn.try_close()`), and
`close_and_delete(conn, addr)` removes and releases it. `delete`, `delete_multiple`,
`clear` and `size` (also `len(pool)` and `addr in pool`) complete the API.

### Server transactions

A `ServerTx` is built from a key, the request that opened it, the `Connection` its
responses go out on, and a `response_factory(request, status, reason)` used for the
responses it sends by itself (100 Trying for INVITE, 487 after a CANCEL). Requests need
`method` and `transport`; responses need `status_code` and `method` (their CSeq method).

```python
from types import SimpleNamespace

from sipwire.connection_pool import Connection
from sipwire.server_tx import ServerTx, TxState


class Recorder(Connection):
    def __init__(self):
        self.sent = []
        self.refs = 0

    def local_addr(self):
        return "127.0.0.1:5060"

    def write_msg(self, msg):
        self.sent.append(msg)

    def ref(self, i):
        self.refs += i
        return self.refs

    def try_close(self):
        self.refs -= 1
        return self.refs

    def close(self):
        self.refs = 0


def make_response(req, status, reason):
    return SimpleNamespace(status_code=status, reason=reason, method=req.method)


options = SimpleNamespace(method="OPTIONS", transport="UDP")
conn = Recorder()
tx = ServerTx("z9hG4bK-1", options, conn, make_response)
tx.init()
tx.respond(make_response(options, 200, "OK"))
tx.state            # TxState.COMPLETED
len(conn.sent)      # 1
tx.terminate()
tx.done.is_set()    # True
```

`receive(req)` feeds retransmissions, ACKs and CANCELs; ACKs are put on `tx.acks`
(a `queue.Queue`). `respond` raises the transaction error if sending failed;
after a CANCEL, `tx.err` is a `TransactionCanceledError`. `on_cancel(fn)` and
`on_terminate(fn)` register callbacks, and `terminate_gracefully()` waits for the
retransmission timers of a final response on UDP before ending. Timer durations
come from `TxTimers`.

### Transport layer

```python
layer = TransportLayer(parser, stream_parser_factory)
layer.on_message(handler)
```

`parser(data)` turns one datagram into a message and `stream_parser_factory()`
returns an object whose `parse(data)` yields the complete messages in a stream; both
raise `ValueError` on malformed input. Received messages get `transport` and
`source` set before the handlers are called. Outgoing messages carry `transport`,
`destination` (`host:port`) and, for requests, `via` with writable `host` and `port`;
responses carry `status_code`. A message is serialised with `bytes(msg)` when it
defines it, otherwise `str(msg)`.

`write_msg(msg)` and `write_msg_to(msg, addr, network)` send, `client_request_connection(req)`
and `get_connection(network, addr)` look connections up, `serve_udp`, `serve_tcp` and
`serve_tls` serve sockets, `get_listen_port` / `listen_ports` report what is served,
and `close()` shuts every transport down. The `connection_reuse` and
`dns_prefer_srv` attributes tune connection reuse and lookup order.

## What this package does not do

- It has no SIP message types or message parser: requests, responses and the
  parsers handed to `TransportLayer` come from the caller.
- It has no client transactions and no transaction layer that matches incoming
  messages to `ServerTx` objects.
- It has no WebSocket transports; only UDP, TCP and TLS.
- `SystemResolver` cannot do SRV lookups; supply your own `Resolver` for that.
- It has no command-line program.

## Running the tests

```
pip install .[test]
pytest
```