import threading

from conftest import chat_env, connect, join, send

from rrpd.config import HubRuntimeConfig
from rrpd.constants import T_CHAT, T_LEAVE_ANNOUNCE
from rrpd.service import HubService
from rrpd.session import CloseCause, ConnectionState
from rrpd.store import SnapshotStore


def test_accept_creates_pending_handle_outside_registry(hub) -> None:
    handle = connect(hub)

    assert handle.state is ConnectionState.PENDING
    assert handle not in hub.registry
    assert hub.session_manager.get(handle.link) is handle


def test_handles_are_never_equal_or_reused(hub) -> None:
    first = connect(hub)
    hub.session_manager.on_close(first, CloseCause.VOLUNTARY)
    second = connect(hub)

    assert first != second
    assert second.conn_id > first.conn_id


def test_double_close_broadcasts_one_leave(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")

    assert hub.session_manager.on_close(b, CloseCause.VOLUNTARY) is True
    assert hub.session_manager.on_close(b, CloseCause.ERROR) is False

    assert len(transport.received(a, T_LEAVE_ANNOUNCE)) == 1
    assert hub.stats_manager.get("leaves") == 1
    assert hub.session_manager.get(b.link) is None


def test_messages_after_close_are_ignored(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")
    hub.session_manager.on_close(a, CloseCause.VOLUNTARY)

    send(hub, a, chat_env("a@x", "b@x", "ghost"))

    assert transport.received(b, T_CHAT) == []
    assert a.state is ConnectionState.CLOSED


def test_shutdown_closes_pending_and_active(hub, transport) -> None:
    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")
    pending = connect(hub)

    assert hub.session_manager.shutdown() == 3

    for handle in (a, b, pending):
        assert handle.state is ConnectionState.CLOSED
        assert handle in transport.closed
    assert len(hub.registry) == 0
    assert hub.session_manager.connections() == []


def test_stop_flushes_store(hub, tmp_path) -> None:
    join(hub, "Alice", "a@x")
    hub.stop()

    reloaded = hub.store.load()
    assert "a@x" in reloaded.users
    assert reloaded.admin_secret == "s3cret"
    assert hub.session_manager.connections() == []


def test_concurrent_joins_and_closes_leave_registry_consistent(hub) -> None:
    handles = [connect(hub, f"c{i}") for i in range(40)]

    def worker(i: int) -> None:
        h = handles[i]
        send(hub, h, {0: 1, 1: 1, 2: b"12345678", 3: 1, 4: {0: f"u{i}", 1: f"u{i}@x"}})
        if i % 2:
            hub.session_manager.on_close(h, CloseCause.VOLUNTARY)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(len(handles))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    present = {e.identity.email for e in hub.registry.entries()}
    assert present == {f"u{i}@x" for i in range(0, len(handles), 2)}
    for i, h in enumerate(handles):
        expected = ConnectionState.CLOSED if i % 2 else ConnectionState.ACTIVE
        assert h.state is expected


def test_stats_counts_states(hub) -> None:
    join(hub, "Alice", "a@x")
    connect(hub)

    stats = hub.session_manager.get_stats()
    assert stats == {"total": 2, "pending": 1, "active": 1}


class SlowStore(SnapshotStore):
    """A store whose save blocks until released."""

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.entered = threading.Event()
        self.release = threading.Event()
        self.saves = 0

    def save(self, snapshot):
        self.entered.set()
        self.release.wait(timeout=10)
        self.saves += 1
        return super().save(snapshot)


def test_chat_delivery_does_not_wait_on_store_writes(tmp_path, transport) -> None:
    store = SlowStore(str(tmp_path / "store.toml"))
    cfg = HubRuntimeConfig(store_path=store.path, persist_interval_s=0.0)
    hub = HubService(cfg, transport=transport, store=store)
    hub.start_persister()

    a = join(hub, "Alice", "a@x")
    b = join(hub, "Bob", "b@x")
    assert store.entered.wait(timeout=5)

    # The writer thread is now stuck inside save.
    sender = threading.Thread(target=send, args=(hub, a, chat_env("a@x", "b@x", "hi")))
    sender.start()
    sender.join(timeout=2)

    try:
        assert not sender.is_alive()
        assert len(transport.received(b, T_CHAT)) == 1
    finally:
        store.release.set()
        hub.stop()

    assert "a@x" in store.load().users
    assert len(store.load().messages) == 1


def test_events_only_mark_the_snapshot_dirty(hub) -> None:
    saves = []
    hub.store.save = lambda snapshot: saves.append(snapshot)

    a = join(hub, "Alice", "a@x")
    join(hub, "Bob", "b@x")
    send(hub, a, chat_env("a@x", "b@x", "hi"))

    assert saves == []
    assert hub._dirty.is_set()

    hub.stop()
    assert len(saves) == 1
    assert len(saves[0].messages) == 1
