import queue
import socket
import threading
import time
from dataclasses import dataclass

import pytest

from sipwire.transport import Addr, parse_ip
from sipwire.udp import (
    UDP_MTU_SIZE,
    UDPConnection,
    UDPMTUCongestionError,
    UDPTransport,
)


@dataclass
class Msg:
    payload: bytes
    destination: str = ""
    transport: str = ""
    source: str = ""

    def __bytes__(self) -> bytes:
        return self.payload


def parse(data: bytes) -> Msg:
    if data.startswith(b"BAD"):
        raise ValueError("bad message")
    return Msg(payload=data)


def bound_socket() -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    return sock


def addr_of(sock: socket.socket) -> str:
    host, port = sock.getsockname()[:2]
    return f"{host}:{port}"


def wait_until(cond, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if cond():
            return True
        time.sleep(0.02)
    return cond()


@pytest.fixture
def receiver():
    sock = bound_socket()
    sock.settimeout(3)
    yield sock
    sock.close()


def test_write_msg_sends_to_destination(receiver):
    sender = bound_socket()
    conn = UDPConnection(sender, refcount=1)
    try:
        conn.write_msg(Msg(b"OPTIONS sip:bob SIP/2.0\r\n\r\n", destination=addr_of(receiver)))
        data, source = receiver.recvfrom(2048)
        assert data == b"OPTIONS sip:bob SIP/2.0\r\n\r\n"
        assert f"{source[0]}:{source[1]}" == conn.local_addr()
    finally:
        sender.close()


def test_write_msg_limit(receiver):
    sender = bound_socket()
    conn = UDPConnection(sender, refcount=1)
    try:
        limit = UDP_MTU_SIZE - 200
        conn.write_msg(Msg(b"x" * limit, destination=addr_of(receiver)))
        data, _ = receiver.recvfrom(4096)
        assert len(data) == limit
        with pytest.raises(UDPMTUCongestionError):
            conn.write_msg(Msg(b"x" * (limit + 1), destination=addr_of(receiver)))
    finally:
        sender.close()


def test_write_msg_bad_destination():
    sender = bound_socket()
    conn = UDPConnection(sender, refcount=1)
    try:
        with pytest.raises(ValueError):
            conn.write_msg(Msg(b"hello", destination="no-port-here"))
    finally:
        sender.close()


def test_ref_and_try_close_closes_at_zero():
    sock = bound_socket()
    conn = UDPConnection(sock, refcount=2)
    assert conn.ref(0) == 2
    assert conn.try_close() == 1
    assert sock.fileno() != -1
    assert conn.try_close() == 0
    assert sock.fileno() == -1
    assert conn.closed


def test_try_close_negative_returns_zero():
    sock = bound_socket()
    conn = UDPConnection(sock, refcount=0)
    conn.close()
    assert conn.try_close() == 0


def test_close_twice_raises():
    sock = bound_socket()
    conn = UDPConnection(sock, refcount=3)
    conn.close()
    assert conn.ref(0) == 0
    with pytest.raises(OSError):
        conn.close()


def test_listener_is_not_closed_by_reference():
    sock = bound_socket()
    try:
        conn = UDPConnection(sock, listener=True, refcount=1)
        assert conn.try_close() == 0
        conn.close()
        assert sock.fileno() != -1
        assert not conn.closed
    finally:
        sock.close()


def test_network_name():
    assert UDPTransport(parse).network() == "UDP"


def test_get_connection_raises_reference():
    transport = UDPTransport(parse)
    sock = bound_socket()
    try:
        conn = UDPConnection(sock, listener=True)
        transport.pool.add("10.0.0.1:5060", conn)
        assert conn.ref(0) == 1
        assert transport.get_connection("10.0.0.1:5060") is conn
        assert conn.ref(0) == 2
        assert transport.get_connection("10.0.0.2:5060") is None
    finally:
        sock.close()


def test_serve_handles_messages_and_stops_on_close():
    transport = UDPTransport(parse)
    listener = bound_socket()
    listen_addr = addr_of(listener)
    received: queue.Queue = queue.Queue()
    server = threading.Thread(target=transport.serve, args=(listener, received.put), daemon=True)
    server.start()

    peer = bound_socket()
    try:
        assert wait_until(lambda: listen_addr in transport.pool)
        peer.sendto(b"\r\n\r\n", listener.getsockname())
        peer.sendto(b"\x00\x00\x00", listener.getsockname())
        peer.sendto(b"BAD data", listener.getsockname())
        peer.sendto(b"INVITE sip:bob SIP/2.0\r\n\r\n", listener.getsockname())

        msg = received.get(timeout=3)
        assert msg.payload == b"INVITE sip:bob SIP/2.0\r\n\r\n"
        assert msg.transport == "UDP"
        assert msg.source == addr_of(peer)
        assert received.empty()
        assert addr_of(peer) in transport.pool
    finally:
        peer.close()
        listener.close()

    server.join(timeout=3)
    assert not server.is_alive()
    assert transport.pool.size() == 0


def test_create_connection_reads_and_cleans_up():
    transport = UDPTransport(parse)
    peer = bound_socket()
    peer.settimeout(3)
    received: queue.Queue = queue.Queue()
    raddr = Addr(ip=parse_ip("127.0.0.1"), port=peer.getsockname()[1])
    conn = transport.create_connection(Addr(ip=parse_ip("127.0.0.1")), raddr, received.put)
    try:
        assert conn.ref(0) == 3
        assert str(raddr) in transport.pool
        assert conn.local_addr() in transport.pool

        conn.write_msg(Msg(b"REGISTER sip:bob SIP/2.0\r\n\r\n", destination=str(raddr)))
        data, source = peer.recvfrom(2048)
        assert data == b"REGISTER sip:bob SIP/2.0\r\n\r\n"

        peer.sendto(b"SIP/2.0 200 OK\r\n\r\n", source)
        msg = received.get(timeout=3)
        assert msg.payload == b"SIP/2.0 200 OK\r\n\r\n"
        assert msg.source == addr_of(peer)
    finally:
        transport.close()
        peer.close()

    assert conn.closed
    assert wait_until(lambda: transport.pool.size() == 0)


def test_create_connection_bind_failure():
    transport = UDPTransport(parse)
    with pytest.raises(OSError):
        transport.create_connection(
            Addr(ip=parse_ip("192.0.2.123"), port=5060),
            Addr(ip=parse_ip("127.0.0.1"), port=5060),
            lambda msg: None,
        )
    assert transport.pool.size() == 0