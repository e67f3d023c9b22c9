from __future__ import annotations

import enum
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .util import fmt_email

if TYPE_CHECKING:
    from .service import HubService


class ConnectionState(enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


class CloseCause(enum.Enum):
    VOLUNTARY = "voluntary"
    ERROR = "error"
    FORCED = "forced"


_conn_ids = itertools.count(1)


@dataclass(eq=False)
class Connection:
    """One accepted transport connection.

    Handles compare by identity and their ids are never reused, so a closed
    handle can never be mistaken for a later connection.
    """

    link: Any
    conn_id: int = field(default_factory=lambda: next(_conn_ids))
    state: ConnectionState = ConnectionState.PENDING
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)


class SessionManager:
    """
    Manages connection lifecycle for RRP hub links.

    This class is responsible for:
    - Creating a PENDING handle for every accepted link
    - Serializing message processing per handle
    - Driving the close transition exactly once per handle
    - Closing every connection on shutdown
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("rrpd.session")
        self._lock = threading.Lock()
        self._connections: dict[Any, Connection] = {}

    def on_accept(self, link: Any) -> Connection:
        handle = Connection(link=link)
        with self._lock:
            self._connections[link] = handle
        self.log.info(
            "Connection accepted conn=%s link_id=%s",
            handle.conn_id,
            self.hub._fmt_link_id(link),
        )
        return handle

    def get(self, link: Any) -> Connection | None:
        with self._lock:
            return self._connections.get(link)

    def connections(self) -> list[Connection]:
        with self._lock:
            return list(self._connections.values())

    def on_message(self, handle: Connection, data: bytes) -> None:
        with handle.lock:
            if handle.state is ConnectionState.CLOSED:
                return
            evictions = self.hub.router.route_packet(handle, data)

        # Evicting takes the targets' locks, so it runs after ours is released.
        for email in evictions:
            self.hub.router.disconnect(email)

    def on_close(self, handle: Connection, cause: CloseCause) -> bool:
        """Run the close transition for ``handle``.

        Returns False when the handle was already closed.
        """
        with handle.lock:
            if handle.state is ConnectionState.CLOSED:
                return False
            was = handle.state
            handle.state = ConnectionState.CLOSED

            with self._lock:
                if self._connections.get(handle.link) is handle:
                    self._connections.pop(handle.link, None)

            entry = self.hub.router.handle_close(handle)

        self.log.info(
            "Connection closed conn=%s cause=%s state=%s email=%s",
            handle.conn_id,
            cause.value,
            was.value,
            fmt_email(entry.identity.email if entry else None),
        )
        return True

    def shutdown(self) -> int:
        """Close every accepted connection. Returns how many were open."""
        handles = self.connections()
        for handle in handles:
            try:
                self.hub.transport.close(handle)
            except Exception:
                self.log.debug("Transport close failed conn=%s", handle.conn_id, exc_info=True)
            self.on_close(handle, CloseCause.FORCED)
        return len(handles)

    def get_stats(self) -> dict[str, int]:
        handles = self.connections()
        pending = sum(1 for h in handles if h.state is ConnectionState.PENDING)
        active = sum(1 for h in handles if h.state is ConnectionState.ACTIVE)
        return {
            "total": len(handles),
            "pending": pending,
            "active": active,
        }
