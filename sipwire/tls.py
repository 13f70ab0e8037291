"""TLS transport built on the TCP stream transport."""

from __future__ import annotations

import logging
import ssl

from .connection_pool import Connection
from .tcp import MessageHandler, StreamParserFactory, TCPTransport, _ip_host
from .transport import TRANSPORT_TLS, Addr, join_host_port


class TLSTransport(TCPTransport):
    """TCP transport whose outgoing connections are wrapped in TLS."""

    def __init__(
        self,
        parser_factory: StreamParserFactory,
        ssl_context: ssl.SSLContext | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(parser_factory, logger)
        self._transport = TRANSPORT_TLS
        self._ssl_context = ssl_context if ssl_context is not None else ssl.create_default_context()

    def __str__(self) -> str:
        return "Transport<TLS>"

    def create_connection(self, laddr: Addr, raddr: Addr, handler: MessageHandler) -> Connection:
        """Dial ``raddr``, complete a TLS handshake and start reading.

        The server name checked is the original hostname, or the IP when none is known.
        """
        hostname = raddr.hostname or _ip_host(raddr)
        addr = join_host_port(_ip_host(raddr), raddr.port)
        self._log.debug("Dialing new connection raddr=%s", addr)
        try:
            raw = self._dial(laddr, raddr)
        except OSError as exc:
            raise ConnectionError(f"dial TCP error: {exc}") from exc

        try:
            sock = self._ssl_context.wrap_socket(raw, server_hostname=hostname)
        except (ssl.SSLError, OSError) as exc:
            raw.close()
            raise ConnectionError(f"TLS handshake error: {exc}") from exc

        conn = self._init_connection(sock, addr, handler)
        conn.ref(1)
        return conn