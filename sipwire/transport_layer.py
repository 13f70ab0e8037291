"""Transport layer: picks, creates and reuses connections for SIP messages."""

from __future__ import annotations

import logging
import socket
import ssl
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from .connection_pool import Connection
from .tcp import MessageHandler, StreamParserFactory, TCPTransport, _format_sockaddr
from .tls import TLSTransport
from .transport import (
    Addr,
    default_port,
    network_to_lower,
    parse_addr,
    parse_ip,
)
from .udp import MessageParser, UDPTransport

_SLOW_DNS_SECONDS = 0.05


class TransportNotSupportedError(ValueError):
    """The requested network has no transport."""

    def __init__(self, network: str) -> None:
        super().__init__(f"transport {network} is not supported")
        self.network = network


class Resolver(Protocol):
    """Name resolution used when a destination is not an IP literal."""

    def lookup_ip(self, host: str) -> list[str]:
        """IP addresses of ``host`` as strings."""
        ...

    def lookup_srv(self, service: str, proto: str, host: str) -> list[tuple[str, int]]:
        """``(target, port)`` records, ordered by priority."""
        ...


class SystemResolver:
    """Resolver backed by the operating system; it has no SRV support."""

    def lookup_ip(self, host: str) -> list[str]:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
        return list(dict.fromkeys(str(info[4][0]) for info in infos))

    def lookup_srv(self, service: str, proto: str, host: str) -> list[tuple[str, int]]:
        raise LookupError("SRV lookup is not supported by the system resolver")


class _Transport(Protocol):
    def network(self) -> str: ...

    def get_connection(self, addr: str) -> Connection | None: ...

    def create_connection(self, laddr: Addr, raddr: Addr, handler: MessageHandler) -> Connection: ...

    def close(self) -> None: ...


def _is_response(msg: Any) -> bool:
    return getattr(msg, "status_code", None) is not None


class TransportLayer:
    """Owns the UDP, TCP and TLS transports and routes messages through them.

    Requests are expected to carry ``transport``, a writable ``destination``
    (``host:port``) and ``via``, the top Via hop with writable ``host`` and
    ``port``; responses additionally carry ``status_code``.
    """

    def __init__(
        self,
        parser: MessageParser,
        stream_parser_factory: StreamParserFactory,
        ssl_context: ssl.SSLContext | None = None,
        resolver: Resolver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._log = logger or logging.getLogger(__name__)
        self._resolver: Resolver = resolver if resolver is not None else SystemResolver()
        self._handlers: list[MessageHandler] = []
        self._listen_ports: dict[str, list[int]] = {}
        self._listen_lock = threading.Lock()

        # Reuse an existing connection to the same destination when possible.
        self.connection_reuse = True
        # Always try SRV lookup before plain address lookup.
        self.dns_prefer_srv = False

        self.udp = UDPTransport(parser, self._log.getChild("udp"))
        self.tcp = TCPTransport(stream_parser_factory, self._log.getChild("tcp"))
        self.tls = TLSTransport(stream_parser_factory, ssl_context, self._log.getChild("tls"))
        self._transports: dict[str, _Transport] = {
            "udp": self.udp,
            "tcp": self.tcp,
            "tls": self.tls,
        }

    def on_message(self, handler: MessageHandler) -> None:
        """Register a handler called for every received message, in registration order."""
        self._handlers.append(handler)

    def _handle_message(self, msg: Any) -> None:
        for handler in self._handlers:
            handler(msg)

    def serve_udp(self, sock: Any) -> None:
        """Read datagrams from a bound socket until it is closed."""
        _, port = parse_addr(_format_sockaddr(sock.getsockname()))
        self._add_listen_port("udp", port)
        self.udp.serve(sock, self._handle_message)

    def serve_tcp(self, listener: Any) -> None:
        """Accept TCP connections on a listening socket until accepting fails."""
        _, port = parse_addr(_format_sockaddr(listener.getsockname()))
        self._add_listen_port("tcp", port)
        self.tcp.serve(listener, self._handle_message)

    def serve_tls(self, listener: Any) -> None:
        """Accept connections on a TLS-wrapped listening socket until accepting fails."""
        _, port = parse_addr(_format_sockaddr(listener.getsockname()))
        self._add_listen_port("tls", port)
        self.tls.serve(listener, self._handle_message)

    def _add_listen_port(self, network: str, port: int) -> None:
        # Only the first listener of a network is recorded.
        with self._listen_lock:
            self._listen_ports.setdefault(network, [port])

    def get_listen_port(self, network: str) -> int:
        """First listening port of ``network``, or 0."""
        with self._listen_lock:
            ports = self._listen_ports.get(network_to_lower(network), [])
            return ports[0] if ports else 0

    def listen_ports(self, network: str) -> list[int]:
        """Copy of the listening ports of ``network``."""
        with self._listen_lock:
            return list(self._listen_ports.get(network_to_lower(network), []))

    def write_msg(self, msg: Any) -> None:
        """Send ``msg`` over its own transport to its destination."""
        self.write_msg_to(msg, msg.destination, msg.transport)

    def write_msg_to(self, msg: Any, addr: str, network: str) -> None:
        """Send ``msg``; requests get a client connection, responses an existing one."""
        if _is_response(msg):
            conn = self.get_connection(network, addr)
        else:
            conn = self.client_request_connection(msg)
        try:
            conn.write_msg(msg)
        finally:
            conn.try_close()

    def _transport(self, network: str) -> _Transport:
        transport = self._transports.get(network)
        if transport is None:
            raise TransportNotSupportedError(network)
        return transport

    def client_request_connection(self, req: Any) -> Connection:
        """Find or create the connection a request should be sent on.

        A resolved hostname destination is written back to ``req.destination``,
        and the Via sent-by host and port are filled in from the connection.
        """
        network = network_to_lower(req.transport)
        transport = self._transport(network)

        dest = req.destination
        try:
            host, port = parse_addr(dest)
        except ValueError as exc:
            raise ValueError(f"build address target for {dest}: {exc}") from exc

        raddr = Addr(ip=parse_ip(host), port=port, hostname=host)
        if raddr.port == 0:
            raddr.port = default_port(network)

        if raddr.ip is None:
            self._resolve_addr(network, host, raddr)
            req.destination = str(raddr)

        via = req.via
        if via is None:
            raise ValueError("missing Via Header")

        laddr = Addr(ip=parse_ip(via.host), port=via.port)

        if laddr.ip is not None and laddr.port > 0:
            conn = transport.get_connection(str(laddr))
            if conn is not None:
                return conn
        elif self.connection_reuse:
            addr = str(raddr)
            conn = transport.get_connection(addr)
            if conn is not None:
                self._update_sent_by(via, conn, network)
                return conn
            self._log.debug("Active connection not found addr=%s raddr=%s", addr, raddr)

        self._log.debug(
            "Via header used for creating connection host=%s port=%s network=%s", via.host, via.port, network
        )
        conn = transport.create_connection(laddr, raddr, self._handle_message)

        if not via.host or laddr.ip is None or via.port == 0:
            self._update_sent_by(via, conn, network)
        return conn

    @staticmethod
    def _update_sent_by(via: Any, conn: Connection, network: str) -> None:
        local = conn.local_addr()
        try:
            host, port = parse_addr(local)
        except ValueError as exc:
            raise ValueError(
                f"fail to parse local connection address network={network} addr={local}: {exc}"
            ) from exc
        if not via.host:
            via.host = host
        via.port = port

    def _resolve_addr(self, network: str, host: str, addr: Addr) -> None:
        start = time.monotonic()
        try:
            if self.dns_prefer_srv:
                try:
                    self._resolve_addr_srv(network, host, addr)
                    return
                except (OSError, LookupError) as exc:
                    self._log.warning("Doing SRV lookup failed. host=%s error=%s", host, exc)
                self._resolve_addr_ip(host, addr)
                return

            try:
                self._resolve_addr_ip(host, addr)
                return
            except (OSError, LookupError) as exc:
                self._log.info("IP addr resolving failed, doing via dns SRV resolver... error=%s", exc)
            self._resolve_addr_srv(network, host, addr)
        finally:
            elapsed = time.monotonic() - start
            if elapsed > _SLOW_DNS_SECONDS:
                self._log.warning("DNS resolution is slow dur=%.3fs", elapsed)

    def _resolve_addr_ip(self, hostname: str, addr: Addr) -> None:
        self._log.debug("DNS Resolving host=%s", hostname)
        ips = [ip for ip in (parse_ip(raw) for raw in self._resolver.lookup_ip(hostname)) if ip is not None]
        if not ips:
            raise LookupError("lookup ip addr did not return any ip addr")
        addr.ip = next((ip for ip in ips if ip.version == 4), ips[0])

    def _resolve_addr_srv(self, network: str, hostname: str, addr: Addr) -> None:
        if network in ("udp", "udp4", "udp6"):
            proto = "udp"
        elif network == "tls":
            proto = "tls"
        else:
            proto = "tcp"

        self._log.debug("Doing SRV lookup proto=%s host=%s", proto, hostname)
        try:
            records = self._resolver.lookup_srv("sip", proto, hostname)
        except (OSError, LookupError) as exc:
            raise LookupError(f'fail to lookup SRV for "{hostname}": {exc}') from exc
        if not records:
            raise LookupError(f'fail to lookup SRV for "{hostname}": no records')

        self._log.debug("SRV resolved addrs=%s", records)
        target, port = records[0]
        ips = self._resolver.lookup_ip(target)
        self._log.debug("SRV resolved IPS ips=%s target=%s", ips, target)
        ip = parse_ip(ips[0]) if ips else None
        if ip is None:
            raise LookupError(f'SRV resolving failed for "{target}"')
        addr.ip = ip
        addr.port = int(port)

    def get_connection(self, network: str, addr: str) -> Connection:
        """Existing connection to ``addr``; raise ConnectionError when there is none."""
        network = network_to_lower(network)
        transport = self._transport(network)
        self._log.debug("getting connection network=%s addr=%s", network, addr)
        conn = transport.get_connection(addr)
        if conn is None:
            raise ConnectionError(f'connection "{addr}" does not exist')
        return conn

    def close(self) -> None:
        """Close every transport; raise the failure(s) once all were tried."""
        self._log.debug("Layer is closing")
        errors: list[OSError] = []
        for transport in self._transports.values():
            try:
                transport.close()
            except OSError as exc:
                errors.append(exc)
        if not errors:
            return
        self._log.debug("Layer closed with error: %s", errors)
        if len(errors) == 1:
            raise errors[0]
        raise OSError("; ".join(str(err) for err in errors)) from errors[0]


ResolverFactory = Callable[[], Resolver]