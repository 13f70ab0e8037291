import pytest

from sipwire.connection_pool import Connection, ConnectionPool
from sipwire.tcp import TCPConnection


class FakeConn(Connection):
    def __init__(self, refcount=0, close_error=None):
        self.refcount = refcount
        self.closed = 0
        self.close_error = close_error

    def local_addr(self):
        return "127.0.0.1:5060"

    def write_msg(self, msg):
        pass

    def ref(self, i):
        self.refcount += i
        return self.refcount

    def try_close(self):
        self.refcount -= 1
        if self.refcount == 0:
            self.closed += 1
        return max(self.refcount, 0)

    def close(self):
        self.refcount = 0
        self.closed += 1
        if self.close_error is not None:
            raise self.close_error


class FakeSocket:
    def __init__(self, laddr, raddr):
        self.laddr = laddr
        self.raddr = raddr
        self.closed = False

    def getsockname(self):
        return self.laddr

    def getpeername(self):
        return self.raddr

    def sendall(self, data):
        pass

    def shutdown(self, how):
        pass

    def close(self):
        self.closed = True


def test_connection_pool_tcp_connection():
    pool = ConnectionPool()
    sock = FakeSocket(("127.0.0.1", 5060), ("127.0.0.2", 5060))
    conn = TCPConnection(sock)
    pool.add("127.0.0.2:5060", conn)
    assert pool.get("127.0.0.2:5060") is conn


def test_add_gives_one_reference_and_get_increments():
    pool = ConnectionPool()
    conn = FakeConn()
    pool.add("a", conn)
    assert conn.refcount == 1
    assert pool.get("a") is conn
    assert conn.refcount == 2


def test_add_keeps_existing_reference():
    pool = ConnectionPool()
    conn = FakeConn(refcount=3)
    pool.add("a", conn)
    assert conn.refcount == 3


def test_get_missing_returns_none():
    assert ConnectionPool().get("missing") is None


def test_add_if_not_exists_only_replaces_present():
    pool = ConnectionPool()
    first = FakeConn()
    pool.add_if_not_exists("a", first)
    assert pool.size() == 0
    assert first.refcount == 0

    pool.add("a", first)
    second = FakeConn()
    pool.add_if_not_exists("a", second)
    assert pool.get("a") is second
    assert second.refcount == 2


def test_delete_and_delete_multiple():
    pool = ConnectionPool()
    conn = FakeConn()
    for addr in ("a", "b", "c"):
        pool.add(addr, conn)
    assert pool.size() == 3
    pool.delete("a")
    assert "a" not in pool
    pool.delete_multiple(["b", "c", "zzz"])
    assert len(pool) == 0
    assert conn.closed == 0


def test_close_and_delete_forces_close_when_still_referenced():
    pool = ConnectionPool()
    conn = FakeConn(refcount=2)
    pool.add("a", conn)
    pool.close_and_delete(conn, "a")
    assert pool.size() == 0
    assert conn.closed == 1
    assert conn.refcount == 0


def test_close_and_delete_last_reference_closes_once():
    pool = ConnectionPool()
    conn = FakeConn()
    pool.add("a", conn)
    pool.close_and_delete(conn, "a")
    assert conn.closed == 1
    assert "a" not in pool


def test_clear_closes_referenced_and_empties():
    pool = ConnectionPool()
    live = FakeConn(refcount=1)
    dead = FakeConn(refcount=1)
    pool.add("live", live)
    pool.add("dead", dead)
    dead.refcount = 0
    pool.clear()
    assert pool.size() == 0
    assert live.closed == 1
    assert dead.closed == 0


def test_clear_same_connection_twice_closes_once():
    pool = ConnectionPool()
    conn = FakeConn()
    pool.add("laddr", conn)
    pool.add("raddr", conn)
    pool.clear()
    assert conn.closed == 1


def test_clear_raises_close_error_and_still_empties():
    pool = ConnectionPool()
    pool.add("a", FakeConn(close_error=OSError("boom")))
    pool.add("b", FakeConn())
    with pytest.raises(OSError, match="boom"):
        pool.clear()
    assert pool.size() == 0