"""TCP transport: stream connections with reference counting and stream parsing."""

from __future__ import annotations

import errno
import logging
import socket
import threading
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from .connection_pool import Connection, ConnectionPool
from .transport import (
    IDLE_CONNECTION,
    TRANSPORT_BUFFER_READ_SIZE,
    TRANSPORT_TCP,
    Addr,
    join_host_port,
)

MessageHandler = Callable[[Any], None]


class StreamParser(Protocol):
    """Incremental SIP parser for one stream.

    ``parse`` buffers partial data and yields every complete message;
    it raises ValueError on malformed input.
    """

    def parse(self, data: bytes) -> Iterable[Any]: ...


StreamParserFactory = Callable[[], StreamParser]


def _format_sockaddr(addr: Any) -> str:
    if isinstance(addr, tuple):
        return join_host_port(str(addr[0]), int(addr[1]))
    return str(addr)


def _encode(msg: Any) -> bytes:
    if isinstance(msg, (bytes, bytearray)):
        return bytes(msg)
    if hasattr(msg, "__bytes__"):
        return bytes(msg)
    return str(msg).encode("utf-8")


def _ip_host(addr: Addr) -> str:
    return "" if addr.ip is None else str(addr.ip)


class TCPConnection(Connection):
    """A reference-counted stream socket."""

    def __init__(self, sock: Any, refcount: int = 0) -> None:
        self.sock = sock
        self._refcount = refcount
        self._lock = threading.Lock()
        self._log = logging.getLogger(__name__)
        self._laddr = self._address(sock.getsockname)
        self._raddr = self._address(sock.getpeername)

    @staticmethod
    def _address(getter: Callable[[], Any]) -> str:
        try:
            return _format_sockaddr(getter())
        except OSError:
            return ""

    def local_addr(self) -> str:
        return self._laddr

    def ref(self, i: int) -> int:
        with self._lock:
            self._refcount += i
            ref = self._refcount
        self._log.debug("TCP reference increment ip=%s dst=%s ref=%d", self._laddr, self._raddr, ref)
        return ref

    def close(self) -> None:
        with self._lock:
            self._refcount = 0
        self._log.debug("TCP doing hard close ip=%s dst=%s", self._laddr, self._raddr)
        self._close_socket()

    def try_close(self) -> int:
        with self._lock:
            self._refcount -= 1
            ref = self._refcount
        self._log.debug("TCP reference decrement ip=%s dst=%s ref=%d", self._laddr, self._raddr, ref)
        if ref > 0:
            return ref
        if ref < 0:
            self._log.warning("TCP ref went negative ip=%s dst=%s ref=%d", self._laddr, self._raddr, ref)
            return 0
        self._log.debug("TCP closing ip=%s dst=%s", self._laddr, self._raddr)
        self._close_socket()
        return ref

    def _close_socket(self) -> None:
        # Shutting down first wakes any thread blocked in recv.
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def write_msg(self, msg: Any) -> None:
        data = _encode(msg)
        try:
            self.sock.sendall(data)
        except OSError as exc:
            raise ConnectionError(f"conn {self._raddr} write err={exc}") from exc
        if not data:
            raise ConnectionError("wrote 0 bytes")


class TCPTransport:
    """Stream transport that dials, accepts and reads TCP connections."""

    def __init__(self, parser_factory: StreamParserFactory, logger: logging.Logger | None = None) -> None:
        self.parser_factory = parser_factory
        self.pool = ConnectionPool()
        self._transport = TRANSPORT_TCP
        self._log = logger or logging.getLogger(__name__)

    def __str__(self) -> str:
        return "Transport<TCP>"

    def network(self) -> str:
        return self._transport

    def close(self) -> None:
        """Close every pooled connection."""
        self.pool.clear()

    def serve(self, listener: Any, handler: MessageHandler) -> None:
        """Accept connections on ``listener`` until accepting fails, then raise."""
        self._log.debug("begin listening on network=%s laddr=%s", self.network(), _format_sockaddr(listener.getsockname()))
        while True:
            try:
                sock, raddr = listener.accept()
            except OSError as exc:
                self._log.debug("Fail to accept connection: %s", exc)
                raise
            self._init_connection(sock, _format_sockaddr(raddr), handler)

    def get_connection(self, addr: str) -> Connection | None:
        """Pooled connection for ``addr`` with its reference raised, or None."""
        return self.pool.get(addr)

    def create_connection(self, laddr: Addr, raddr: Addr, handler: MessageHandler) -> Connection:
        """Dial ``raddr`` (from ``laddr`` when it has an IP) and start reading."""
        addr = join_host_port(_ip_host(raddr), raddr.port)
        self._log.debug("Dialing new connection raddr=%s", addr)
        try:
            sock = self._dial(laddr, raddr)
        except OSError as exc:
            raise ConnectionError(f"{self} dial err={exc}") from exc
        conn = self._init_connection(sock, addr, handler)
        conn.ref(1)
        return conn

    def _dial(self, laddr: Addr, raddr: Addr) -> socket.socket:
        source = None
        if laddr.ip is not None:
            source = (str(laddr.ip), laddr.port)
        return socket.create_connection((_ip_host(raddr), raddr.port), source_address=source)

    def _init_connection(self, sock: Any, raddr: str, handler: MessageHandler) -> TCPConnection:
        laddr = _format_sockaddr(sock.getsockname())
        self._log.debug("New connection raddr=%s", raddr)
        conn = TCPConnection(sock, refcount=1 + IDLE_CONNECTION)
        self.pool.add(laddr, conn)
        self.pool.add(raddr, conn)
        reader = threading.Thread(
            target=self._read_connection,
            args=(conn, laddr, raddr, handler),
            name=f"{self} reader {raddr}",
            daemon=True,
        )
        reader.start()
        return conn

    def _read_connection(self, conn: TCPConnection, laddr: str, raddr: str, handler: MessageHandler) -> None:
        parser = self.parser_factory()
        try:
            while True:
                try:
                    data = conn.sock.recv(TRANSPORT_BUFFER_READ_SIZE)
                except OSError as exc:
                    if isinstance(exc, ConnectionError) or exc.errno in (errno.EBADF, errno.ENOTCONN):
                        self._log.debug("connection was closed: %s", exc)
                    else:
                        self._log.error("Read error: %s", exc)
                    return
                if not data:
                    self._log.debug("connection was closed: EOF")
                    return
                if not data.strip(b"\x00"):
                    continue
                if len(data) <= 4 and not data.strip(b"\r\n"):
                    self._log.debug("Keep alive CRLF received")
                    if len(data) == 4:
                        try:
                            conn.sock.sendall(data[:2])
                        except OSError as exc:
                            self._log.error("Failed to pong keep alive: %s", exc)
                            return
                    continue
                self._parse_stream(parser, data, raddr, handler)
        finally:
            try:
                self.pool.close_and_delete(conn, raddr)
            except OSError as exc:
                self._log.warning("connection pool not clean cleanup: %s", exc)
            self.pool.delete(laddr)

    def _parse_stream(self, parser: StreamParser, data: bytes, src: str, handler: MessageHandler) -> None:
        try:
            for msg in parser.parse(data):
                msg.transport = self.network()
                msg.source = src
                handler(msg)
        except ValueError as exc:
            self._log.error("failed to parse: %s data=%r", exc, data)