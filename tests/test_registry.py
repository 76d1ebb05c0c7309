from studenthub_msg.registry import Connection, ConnectionRegistry


class Socket:
    closed = False


def test_register_and_lookup():
    registry = ConnectionRegistry()
    conn = Connection("u1", Socket())
    registry.register("u1", conn)

    assert registry.lookup("u1") is conn
    assert registry.is_online("u1")
    assert registry.lookup("u2") is None
    assert len(registry) == 1


def test_last_connection_wins():
    registry = ConnectionRegistry()
    old, new = Connection("u1", Socket()), Connection("u1", Socket())
    registry.register("u1", old)
    registry.register("u1", new)

    assert registry.lookup("u1") is new
    assert registry.list_users() == ["u1"]


def test_stale_unregister_keeps_newer_connection():
    registry = ConnectionRegistry()
    old, new = Connection("u1", Socket()), Connection("u1", Socket())
    registry.register("u1", old)
    registry.register("u1", new)

    assert registry.unregister("u1", old) is False
    assert registry.lookup("u1") is new

    assert registry.unregister("u1", new) is True
    assert registry.lookup("u1") is None
    assert not registry.is_online("u1")


def test_unregister_unknown_user():
    assert ConnectionRegistry().unregister("ghost", Connection("ghost", Socket())) is False


def test_connection_open_state():
    sock = Socket()
    conn = Connection("u1", sock)
    assert conn.is_open
    sock.closed = True
    assert not conn.is_open
