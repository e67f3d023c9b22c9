from __future__ import annotations

import logging
import os
import signal
import threading
import time
from dataclasses import replace
from typing import Any

import RNS

from .admin import AdminHandler
from .codec import encode
from .config import HubRuntimeConfig
from .messages import RoutedMessage
from .registry import ConnectionRegistry, UserIdentity
from .router import MessageRouter
from .session import CloseCause, SessionManager
from .stats import StatsManager
from .store import Snapshot, SnapshotStore, StoredMessage, UserRecord, utcnow
from .transport import LinkTransport, Transport
from .util import expand_path


class HubService:
    def __init__(
        self,
        config: HubRuntimeConfig,
        *,
        transport: Transport | None = None,
        store: SnapshotStore | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("rrpd.hub")

        # Guards the persisted snapshot and the stats counters. The presence
        # registry has its own lock and never nests inside this one.
        self._state_lock = threading.RLock()
        self._persist_lock = threading.Lock()

        self._shutdown = threading.Event()
        # Set when the snapshot has changes the store has not seen yet.
        self._dirty = threading.Event()

        self.registry = ConnectionRegistry()
        self.transport: Transport = transport if transport is not None else LinkTransport()

        if store is None:
            path = expand_path(config.store_path) if config.store_path else None
            store = SnapshotStore(path)
        self.store = store
        self.snapshot = Snapshot()

        self.stats_manager = StatsManager(self)

        # Presence and routing engine
        self.router = MessageRouter(self)

        # Connection lifecycle
        self.session_manager = SessionManager(self)

        # Shared-secret admin commands
        self.admin = AdminHandler(self)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None
        self._announce_thread: threading.Thread | None = None
        self._persist_thread: threading.Thread | None = None

    def _fmt_link_id(self, link: Any) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    def _inc(self, key: str, delta: int = 1) -> None:
        self.stats_manager.inc(key, delta)

    def load_snapshot(self) -> None:
        snapshot = self.store.load()
        with self._state_lock:
            self.snapshot = snapshot

    def persist(self) -> str | None:
        with self._persist_lock:
            with self._state_lock:
                snapshot = self.snapshot.copy()
            err = self.store.save(snapshot)
        if err is not None:
            self.log.warning("Snapshot not persisted: %s", err)
        else:
            self._inc("snapshots_saved")
        return err

    def mark_dirty(self) -> None:
        """Schedule a background save of the snapshot."""
        self._dirty.set()

    def start_persister(self) -> None:
        if self._persist_thread is not None:
            return
        self._persist_thread = threading.Thread(
            target=self._persist_loop,
            name="rrpd-store",
            daemon=True,
        )
        self._persist_thread.start()

    def _persist_loop(self) -> None:
        interval = max(0.0, float(self.config.persist_interval_s))
        while not self._shutdown.is_set():
            self._dirty.wait()
            if self._shutdown.is_set():
                break
            # Batch whatever else changes during the interval into one write.
            if interval and self._shutdown.wait(interval):
                break
            self._dirty.clear()
            try:
                self.persist()
            except Exception:
                self.log.exception("Background snapshot save failed")

    def _record_join(self, identity: UserIdentity) -> None:
        now = utcnow()
        with self._state_lock:
            users = self.snapshot.users
            existing = users.get(identity.email)
            if existing is None:
                users[identity.email] = UserRecord(
                    name=identity.name,
                    email=identity.email,
                    avatar=identity.avatar,
                    first_joined=now,
                    last_seen=now,
                )
            else:
                users[identity.email] = replace(existing, last_seen=now)
        self.mark_dirty()

    def _record_leave(self, identity: UserIdentity) -> None:
        with self._state_lock:
            existing = self.snapshot.users.get(identity.email)
            if existing is None:
                return
            self.snapshot.users[identity.email] = replace(existing, last_seen=utcnow())
        self.mark_dirty()

    def _record_chat(self, message: RoutedMessage) -> None:
        if not self.config.record_history:
            return
        with self._state_lock:
            messages = self.snapshot.messages
            messages.append(
                StoredMessage(
                    sender=message.sender,
                    recipient=message.recipient,
                    body=message.body,
                    timestamp=message.timestamp,
                    msg_id=message.msg_id.hex(),
                )
            )
            cap = int(self.config.max_stored_messages)
            if cap > 0 and len(messages) > cap:
                del messages[: len(messages) - cap]
        self.mark_dirty()

    def _history_for(self, email: str) -> list[StoredMessage]:
        limit = int(self.config.history_limit)
        with self._state_lock:
            mine = [
                m for m in self.snapshot.messages if m.sender == email or m.recipient == email
            ]
        if limit > 0:
            mine = mine[-limit:]
        return mine

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats_manager.set_start_time()
        self.load_snapshot()
        self.start_persister()

        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop,
                name="rrpd-announce",
                daemon=True,
            )
            self._announce_thread.start()

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        with self._state_lock:
            admin_enabled = bool(self.snapshot.admin_secret)
        self.log.info(
            "Policy max_msg_body_bytes=%s record_history=%s admin_enabled=%s",
            self.config.max_msg_body_bytes,
            self.config.record_history,
            admin_enabled,
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "rrp", "v": 1, "hub": self.config.hub_name})
            )
            self._inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        """Close every connection, then flush the snapshot."""
        if self._shutdown.is_set():
            return
        self._shutdown.set()
        self.log.info("Shutting down")

        # Wake the writer so it sees the shutdown.
        self._dirty.set()
        if self._persist_thread is not None:
            self._persist_thread.join(timeout=5.0)

        closed = self.session_manager.shutdown()
        self.persist()

        self.log.info("Hub stopped connections_closed=%d", closed)

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    def _close_cause(self, link: Any) -> CloseCause:
        reason = getattr(link, "teardown_reason", None)
        if reason == RNS.Link.TIMEOUT:
            return CloseCause.ERROR
        # The hub is the link destination, so its own teardowns report
        # DESTINATION_CLOSED.
        if reason == RNS.Link.DESTINATION_CLOSED:
            return CloseCause.FORCED
        return CloseCause.VOLUNTARY

    def _on_link(self, link: RNS.Link) -> None:
        handle = self.session_manager.on_accept(link)

        link.set_packet_callback(lambda data, pkt: self.session_manager.on_message(handle, data))
        link.set_link_closed_callback(
            lambda closed_link: self.session_manager.on_close(
                handle, self._close_cause(closed_link)
            )
        )
