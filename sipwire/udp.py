"""UDP transport: datagram sockets shared by reference count."""

from __future__ import annotations

import errno
import logging
import select
import socket
import threading
from collections.abc import Callable
from typing import Any

from .connection_pool import Connection, ConnectionPool
from .tcp import MessageHandler, _encode, _format_sockaddr
from .transport import (
    DEFAULT_UDP_PORT,
    IDLE_CONNECTION,
    TRANSPORT_BUFFER_READ_SIZE,
    TRANSPORT_UDP,
    Addr,
    parse_addr,
)

UDP_MTU_SIZE = 1500

# How often a blocked reader wakes up to notice that its socket was closed.
_POLL_INTERVAL = 0.2

MessageParser = Callable[[bytes], Any]


class UDPMTUCongestionError(ConnectionError):
    """The serialised message is too large to send over UDP."""

    def __init__(self) -> None:
        super().__init__("size of packet larger than MTU")


class UDPConnection(Connection):
    """A reference-counted datagram socket.

    A listener connection wraps a socket handed to ``serve``; it is never
    closed by reference counting, only by its owner.
    """

    def __init__(
        self,
        sock: Any,
        packet_addr: str | None = None,
        listener: bool = False,
        refcount: int = 0,
    ) -> None:
        self.sock = sock
        self.listener = listener
        self._refcount = refcount
        self._closed = False
        self._lock = threading.Lock()
        self._log = logging.getLogger(__name__)
        if packet_addr is None:
            try:
                packet_addr = _format_sockaddr(sock.getsockname())
            except (OSError, AttributeError):
                packet_addr = ""
        self.packet_addr = packet_addr

    @property
    def closed(self) -> bool:
        """True once the connection has been closed."""
        return self._closed

    def local_addr(self) -> str:
        return self.packet_addr

    def ref(self, i: int) -> int:
        with self._lock:
            self._refcount += i
            return self._refcount

    def close(self) -> None:
        """Close the socket; raise OSError if it was closed already.

        Listener sockets are left to their owner.
        """
        with self._lock:
            self._refcount = 0
            already = self._closed
            if not self.listener:
                self._closed = True
        if self.listener:
            return
        if already:
            raise OSError(errno.EBADF, "use of closed network connection")
        self._log.debug("UDP listener doing hard close ip=%s", self.packet_addr)
        self.sock.close()

    def try_close(self) -> int:
        with self._lock:
            self._refcount -= 1
            ref = self._refcount
        if self.listener:
            return ref
        self._log.debug("UDP reference decrement src=%s ref=%d", self.packet_addr, ref)
        if ref > 0:
            return ref
        if ref < 0:
            self._log.warning("UDP ref went negative src=%s ref=%d", self.packet_addr, ref)
            return 0
        self.close()
        return ref

    def write_msg(self, msg: Any) -> None:
        """Send ``msg`` to its resolved destination.

        Raises UDPMTUCongestionError for oversized messages, ValueError for a
        malformed destination and ConnectionError when sending fails.
        """
        data = _encode(msg)
        if len(data) > UDP_MTU_SIZE - 200:
            raise UDPMTUCongestionError()

        host, port = parse_addr(msg.destination)
        if port == 0:
            port = DEFAULT_UDP_PORT
        try:
            sent = self.sock.sendto(data, (host, port))
        except OSError as exc:
            raise ConnectionError(f"udp conn {self.packet_addr} err. {exc}") from exc
        if sent == 0:
            raise ConnectionError("wrote 0 bytes")
        if sent != len(data):
            raise ConnectionError("fail to write full message")


class UDPTransport:
    """Datagram transport; listener sockets double as client connections."""

    def __init__(self, parser: MessageParser, logger: logging.Logger | None = None) -> None:
        self.parser = parser
        self.pool = ConnectionPool()
        self._log = logger or logging.getLogger(__name__)

    def __str__(self) -> str:
        return "transport<UDP>"

    def network(self) -> str:
        return TRANSPORT_UDP

    def close(self) -> None:
        """Close every pooled connection; listeners are left to their owners."""
        self.pool.clear()

    def serve(self, sock: Any, handler: MessageHandler) -> None:
        """Read datagrams from ``sock`` until it is closed."""
        conn = UDPConnection(sock, listener=True)
        self._log.debug("begin listening network=%s addr=%s", self.network(), conn.packet_addr)
        self.pool.add(conn.packet_addr, conn)
        self._read_listener_connection(conn, conn.packet_addr, handler)

    def get_connection(self, addr: str) -> Connection | None:
        """Pooled connection for ``addr`` with its reference raised, or None."""
        return self.pool.get(addr)

    def create_connection(self, laddr: Addr, raddr: Addr, handler: MessageHandler) -> Connection:
        """Bind a new datagram socket on ``laddr`` and start reading from it."""
        if laddr.ip is not None:
            family = socket.AF_INET6 if laddr.ip.version == 6 else socket.AF_INET
            bind_host = str(laddr.ip)
        else:
            family = socket.AF_INET6 if raddr.ip is not None and raddr.ip.version == 6 else socket.AF_INET
            bind_host = laddr.hostname

        sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            sock.bind((bind_host, laddr.port))
        except OSError:
            sock.close()
            raise

        # One reference for the caller, one for the reader.
        conn = UDPConnection(sock, refcount=2 + IDLE_CONNECTION)
        addr = str(raddr)
        self._log.debug("New connection raddr=%s", addr)

        self.pool.add(conn.packet_addr, conn)
        self.pool.add(addr, conn)
        reader = threading.Thread(
            target=self._read_udp_connection,
            args=(conn, addr, conn.packet_addr, handler),
            name=f"{self} reader {addr}",
            daemon=True,
        )
        reader.start()
        return conn

    def _read_udp_connection(self, conn: UDPConnection, raddr: str, laddr: str, handler: MessageHandler) -> None:
        try:
            self._read_listener_connection(conn, laddr, handler)
        finally:
            self.pool.delete(raddr)

    def _receive(self, conn: UDPConnection) -> tuple[bytes, Any] | None:
        """Wait for one datagram; None means nothing arrived yet."""
        sock = conn.sock
        if conn.closed or sock.fileno() == -1:
            raise OSError(errno.EBADF, "use of closed network connection")
        ready, _, _ = select.select([sock], [], [], _POLL_INTERVAL)
        if not ready:
            return None
        return sock.recvfrom(TRANSPORT_BUFFER_READ_SIZE)

    def _read_listener_connection(self, conn: UDPConnection, laddr: str, handler: MessageHandler) -> None:
        accepted: list[str] = []
        last_raddr = ""
        try:
            while True:
                try:
                    received = self._receive(conn)
                except (OSError, ValueError) as exc:
                    if conn.closed or conn.sock.fileno() == -1:
                        self._log.debug("Read connection closed laddr=%s: %s", laddr, exc)
                    else:
                        self._log.error("Read connection error laddr=%s: %s", laddr, exc)
                    return
                if received is None:
                    continue
                data, source = received
                if not data.strip(b"\x00"):
                    continue
                rastr = _format_sockaddr(source)
                if rastr != last_raddr:
                    self.pool.add(rastr, conn)
                    accepted.append(rastr)
                self._parse_and_handle(data, rastr, handler)
                last_raddr = rastr
        finally:
            self.pool.delete_multiple(accepted)
            self._log.debug("Read listener connection stopped laddr=%s", laddr)
            try:
                self.pool.close_and_delete(conn, laddr)
            except OSError as exc:
                self._log.warning("connection pool not clean cleanup: %s", exc)

    def _parse_and_handle(self, data: bytes, src: str, handler: MessageHandler) -> None:
        if len(data) <= 4 and not data.strip(b"\r\n"):
            self._log.debug("Keep alive CRLF received")
            return
        try:
            msg = self.parser(data)
        except ValueError as exc:
            self._log.error("failed to parse data=%r: %s", data, exc)
            return
        msg.transport = TRANSPORT_UDP
        msg.source = src
        handler(msg)