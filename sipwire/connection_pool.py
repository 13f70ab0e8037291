"""Reference-counted pool of live connections keyed by address."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any


class Connection(ABC):
    """A transport connection that sends SIP messages and is shared by reference count."""

    @abstractmethod
    def local_addr(self) -> str:
        """Local ``host:port`` of the connection."""

    @abstractmethod
    def write_msg(self, msg: Any) -> None:
        """Serialise a message and send it."""

    @abstractmethod
    def ref(self, i: int) -> int:
        """Add ``i`` to the reference count and return the new count."""

    @abstractmethod
    def try_close(self) -> int:
        """Drop one reference, closing when none are left; return the remaining count."""

    @abstractmethod
    def close(self) -> None:
        """Close regardless of the reference count."""


class ConnectionPool:
    """Thread-safe mapping of addresses to connections."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._conns: dict[str, Connection] = {}

    def add(self, addr: str, conn: Connection) -> None:
        """Store ``conn`` under ``addr``, giving it at least one reference."""
        if conn.ref(0) < 1:
            conn.ref(1)
        with self._lock:
            self._conns[addr] = conn

    def add_if_not_exists(self, addr: str, conn: Connection) -> None:
        """Replace the connection under ``addr`` only when one is already stored there."""
        with self._lock:
            if addr not in self._conns:
                return
            self._conns[addr] = conn
        if conn.ref(0) < 1:
            conn.ref(1)

    def get(self, addr: str) -> Connection | None:
        """Return the connection for ``addr`` with its reference raised, or None.

        Callers should ``try_close`` the connection when done with it.
        """
        with self._lock:
            conn = self._conns.get(addr)
        if conn is None:
            return None
        conn.ref(1)
        return conn

    def close_and_delete(self, conn: Connection, addr: str) -> None:
        """Remove ``addr`` and release ``conn``, forcing a close if still referenced."""
        with self._lock:
            self._conns.pop(addr, None)
            try:
                remaining = conn.try_close()
            except OSError:
                remaining = 0
            if remaining > 0:
                conn.close()

    def delete(self, addr: str) -> None:
        """Remove ``addr`` from the pool without closing anything."""
        with self._lock:
            self._conns.pop(addr, None)

    def delete_multiple(self, addrs: Iterable[str]) -> None:
        """Remove every address in ``addrs``."""
        with self._lock:
            for addr in addrs:
                self._conns.pop(addr, None)

    def clear(self) -> None:
        """Close every referenced connection and empty the pool.

        Raises the close error, or a combined OSError when several closes fail.
        """
        errors: list[OSError] = []
        with self._lock:
            try:
                for conn in self._conns.values():
                    if conn.ref(0) <= 0:
                        continue
                    try:
                        conn.close()
                    except OSError as exc:
                        errors.append(exc)
            finally:
                self._conns = {}
        if len(errors) == 1:
            raise errors[0]
        if errors:
            raise OSError("; ".join(str(err) for err in errors)) from errors[0]

    def size(self) -> int:
        """Number of stored addresses."""
        with self._lock:
            return len(self._conns)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, addr: object) -> bool:
        with self._lock:
            return addr in self._conns